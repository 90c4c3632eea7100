"""
SerpApi "Google Shopping" backend (keyword tier).

Free text in, priced listings out. Results keep the provider's own ranking;
nothing here re-sorts them.
"""
from __future__ import annotations

import logging
from typing import Optional

from currency import clean_price, infer_currency, parse_price
from search_backends.base import KeywordBackend, ProductMatch, Provenance
from search_backends.serpapi_client import serpapi_get, to_float, to_int

logger = logging.getLogger(__name__)


class ShoppingBackend(KeywordBackend):

    def __init__(
        self,
        api_key: Optional[str],
        region: str = "sg",
        language: str = "en",
        request_timeout: float = 30.0,
    ) -> None:
        self._key      = api_key
        self._region   = region
        self._language = language
        self._timeout  = request_timeout

    @property
    def name(self) -> str:
        return "serpapi_google_shopping"

    async def search_by_keyword(self, text: str, max_results: int = 10) -> list[ProductMatch]:
        query = (text or "").strip()
        if not query:
            return []

        params = {
            "engine": "google_shopping",
            "q":      query,
            "hl":     self._language,
            "gl":     self._region,
            "num":    str(max_results),
        }
        data = await serpapi_get(params, self._key, self.name, self._timeout)

        raw_results = data.get("shopping_results") or []
        logger.info("[Shopping] %d results for '%s'", len(raw_results), query)

        matches: list[ProductMatch] = []
        for raw in raw_results:
            if len(matches) >= max_results:
                break
            match = self._parse_result(raw)
            if match:
                matches.append(match)
        return matches

    def _parse_result(self, raw: dict) -> Optional[ProductMatch]:
        if not raw or not isinstance(raw, dict):
            return None
        try:
            title = (raw.get("title") or "").strip()
            link = raw.get("link") or raw.get("product_link")
            if not title or not link:
                return None

            raw_price = raw.get("price")
            price = clean_price(raw_price)
            numeric = to_float(raw.get("extracted_price"))
            if numeric is None and price:
                numeric = parse_price(price)

            return ProductMatch(
                title=title,
                url=link,
                provenance=Provenance.KEYWORD,
                price=price,
                numeric_price=numeric,
                currency=infer_currency(raw_price, self._region),
                merchant=raw.get("source"),
                image_url=raw.get("thumbnail"),
                rating=to_float(raw.get("rating")),
                review_count=to_int(raw.get("reviews")),
                shipping_note=raw.get("delivery"),
                condition=raw.get("second_hand_condition"),
            )
        except Exception as exc:
            logger.warning("Failed to parse shopping result %s: %s", raw.get("link", "?"), exc)
            return None
