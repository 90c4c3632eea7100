"""
Static fallback tier — one "search on <merchant>" link per configured store.

Deterministic, offline, always succeeds. This is what the user sees when
every real provider failed or came back empty, so the result list is never
silently empty.
"""
from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import quote

from search_backends.base import FallbackBackend, ProductMatch, Provenance


@dataclass(frozen=True)
class FallbackMerchant:
    name: str
    url_template: str       # "{query}" is replaced by the percent-encoded text


DEFAULT_MERCHANTS: tuple[FallbackMerchant, ...] = (
    FallbackMerchant("Amazon",          "https://www.amazon.com/s?k={query}"),
    FallbackMerchant("eBay",            "https://www.ebay.com/sch/i.html?_nkw={query}"),
    FallbackMerchant("Wayfair",         "https://www.wayfair.com/keyword.html?keyword={query}"),
    FallbackMerchant("IKEA",            "https://www.ikea.com/us/en/search/products/?q={query}"),
    FallbackMerchant("Google Shopping", "https://www.google.com/search?tbm=shop&q={query}"),
    FallbackMerchant("Lazada",          "https://www.lazada.sg/catalog/?q={query}"),
    FallbackMerchant("Shopee",          "https://shopee.sg/search?keyword={query}"),
    FallbackMerchant("HipVan",          "https://www.hipvan.com/search?q={query}"),
)


class FallbackLinksBackend(FallbackBackend):

    def __init__(self, merchants: tuple[FallbackMerchant, ...] = DEFAULT_MERCHANTS) -> None:
        self._merchants = tuple(merchants)

    @property
    def name(self) -> str:
        return "fallback_links"

    async def search_by_keyword(self, text: str, max_results: int = 0) -> list[ProductMatch]:
        """max_results is ignored: every configured merchant gets a link."""
        query = (text or "").strip()
        if not query:
            return []
        encoded = quote(query, safe="")
        return [
            ProductMatch(
                title=f"Search on {m.name}",
                url=m.url_template.replace("{query}", encoded),
                provenance=Provenance.FALLBACK,
                merchant=m.name,
            )
            for m in self._merchants
        ]
