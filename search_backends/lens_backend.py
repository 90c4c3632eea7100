"""
SerpApi "Google Lens — products" backend (image similarity tier).

SerpApi fetches the image itself, so the reference must be a public URL:
localhost, private addresses and data:/blob: URIs are rejected up-front
with UnreachableReference instead of burning an API call.

Cropping:
  When the orchestrator hands us a PixelRect and the image is served by a
  crop-capable provider (imgix), the crop is applied server-side by rewriting
  the URL. Otherwise the full image is searched and a warning is logged.

Currency:
  visual_matches[].price.currency is usually a bare symbol ("$"), not a code,
  so anything that isn't an ISO code goes through currency.infer_currency with
  the configured region ("$" in Singapore results means SGD).
"""
from __future__ import annotations

import logging
import re
from typing import Optional

from currency import clean_price, infer_currency, parse_price
from errors import UnreachableReference
from geometry import PixelRect
from image_crop import ImageCropProvider, is_network_reachable
from search_backends.base import ImageSimilarityBackend, ProductMatch, Provenance
from search_backends.serpapi_client import serpapi_get, to_float, to_int

logger = logging.getLogger(__name__)

_ISO_CODE = re.compile(r"^[A-Z]{3}$")


class LensBackend(ImageSimilarityBackend):

    def __init__(
        self,
        api_key: Optional[str],
        crop_provider: ImageCropProvider,
        region: str = "sg",
        language: str = "en",
        max_output_width: int = 500,
        request_timeout: float = 60.0,
    ) -> None:
        self._key      = api_key
        self._crop     = crop_provider
        self._region   = region
        self._language = language
        self._max_w    = max_output_width
        self._timeout  = request_timeout

    @property
    def name(self) -> str:
        return "serpapi_google_lens_products"

    async def search_by_image(
        self,
        image_ref: str,
        crop: Optional[PixelRect],
        max_results: int = 10,
    ) -> list[ProductMatch]:
        if not is_network_reachable(image_ref):
            raise UnreachableReference(
                f"{self.name}: image reference is not publicly reachable: {str(image_ref)[:80]}"
            )

        url = image_ref
        if crop is not None:
            if self._crop.supports(image_ref):
                url = self._crop.crop(image_ref, crop, self._max_w)
            else:
                logger.warning(
                    "[GoogleLens] %s cannot crop %s, searching the full image",
                    self._crop.name, image_ref[:80],
                )

        params = {
            "engine":  "google_lens",
            "type":    "products",
            "url":     url,
            "hl":      self._language,
            "gl":      self._region,
            "country": self._region,
        }
        data = await serpapi_get(params, self._key, self.name, self._timeout)

        raw_matches = data.get("visual_matches") or []
        logger.info("[GoogleLens] %d visual matches for %s", len(raw_matches), url[:80])

        matches: list[ProductMatch] = []
        for raw in raw_matches:
            if len(matches) >= max_results:
                break
            match = self._parse_match(raw)
            if match:
                matches.append(match)
        return matches

    # ── Parser ────────────────────────────────────────────────────────────────

    def _parse_match(self, raw: dict) -> Optional[ProductMatch]:
        if not raw or not isinstance(raw, dict):
            return None
        try:
            title = (raw.get("title") or "").strip()
            link = raw.get("link")
            if not title or not link:
                return None

            price_info = raw.get("price") or {}
            if not isinstance(price_info, dict):
                price_info = {"value": price_info}
            raw_price = price_info.get("value")
            price = clean_price(raw_price)

            numeric = to_float(price_info.get("extracted_value"))
            if numeric is None and price:
                numeric = parse_price(price)

            provider_currency = price_info.get("currency")
            if provider_currency and _ISO_CODE.match(str(provider_currency)):
                currency = provider_currency
            else:
                hint = str(raw_price or "")
                if provider_currency and str(provider_currency) not in hint:
                    hint = f"{provider_currency}{hint}"
                currency = infer_currency(hint, self._region)

            in_stock = raw.get("in_stock")
            return ProductMatch(
                title=title,
                url=link,
                provenance=Provenance.IMAGE,
                price=price,
                numeric_price=numeric,
                currency=currency,
                merchant=raw.get("source"),
                image_url=raw.get("image") or raw.get("thumbnail"),
                rating=to_float(raw.get("rating")),
                review_count=to_int(raw.get("reviews")),
                condition=raw.get("condition"),
                in_stock=bool(in_stock) if in_stock is not None else None,
            )
        except Exception as exc:
            logger.warning("Failed to parse Lens match %s: %s", raw.get("link", "?"), exc)
            return None
