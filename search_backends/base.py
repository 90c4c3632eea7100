"""
Shared types, adapter interfaces and the single adapter call site.

Every backend returns ProductMatch objects; the orchestrator doesn't care
which provider produced them beyond the provenance tag.

Adapters form a closed set of kinds (AdapterKind). invoke() is the only place
that calls into an adapter: it dispatches on kind, enforces the timeout and
converts every exception into an AdapterResult, so nothing thrown inside a
backend ever reaches the orchestrator.
"""
from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Optional

import aiohttp

from errors import AdapterResult, ErrorInfo, ErrorKind, SearchError
from geometry import PixelRect

logger = logging.getLogger(__name__)


class Provenance(str, Enum):
    IMAGE    = "image"
    KEYWORD  = "keyword"
    FALLBACK = "fallback"


class AdapterKind(str, Enum):
    DETECTION        = "detection"
    IMAGE_SIMILARITY = "image_similarity"
    KEYWORD          = "keyword"
    STATIC_FALLBACK  = "static_fallback"


@dataclass(frozen=True)
class ProductMatch:
    title: str
    url: str
    provenance: Provenance
    price: Optional[str] = None           # display string as the provider sent it
    numeric_price: Optional[float] = None
    currency: Optional[str] = None
    merchant: Optional[str] = None
    image_url: Optional[str] = None
    rating: Optional[float] = None        # 0–5
    review_count: Optional[int] = None
    shipping_note: Optional[str] = None
    condition: Optional[str] = None
    in_stock: Optional[bool] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["provenance"] = self.provenance.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ProductMatch":
        fields = dict(data)
        fields["provenance"] = Provenance(fields["provenance"])
        return cls(**fields)


# ── Adapter interfaces ────────────────────────────────────────────────────────

class Adapter(ABC):
    """Common surface: a kind tag for dispatch and a name for logs/provenance."""

    kind: AdapterKind

    @property
    @abstractmethod
    def name(self) -> str:
        ...


class ImageSimilarityBackend(Adapter):
    kind = AdapterKind.IMAGE_SIMILARITY

    @abstractmethod
    async def search_by_image(
        self,
        image_ref: str,
        crop: Optional[PixelRect],
        max_results: int,
    ) -> list[ProductMatch]:
        """Visually similar products for `image_ref`, cropped to `crop` when given."""
        ...


class KeywordBackend(Adapter):
    kind = AdapterKind.KEYWORD

    @abstractmethod
    async def search_by_keyword(self, text: str, max_results: int) -> list[ProductMatch]:
        ...


class FallbackBackend(Adapter):
    kind = AdapterKind.STATIC_FALLBACK

    @abstractmethod
    async def search_by_keyword(self, text: str, max_results: int) -> list[ProductMatch]:
        """Must never touch the network and never fail."""
        ...


@dataclass(frozen=True)
class AdapterCall:
    """Arguments for one adapter call; which fields matter depends on the kind."""
    image: Any = None                    # image ref (URL) or raw bytes for detection
    crop: Optional[PixelRect] = None
    text: Optional[str] = None
    max_results: int = 10


# ── The adapter boundary ──────────────────────────────────────────────────────

async def _dispatch(adapter: Adapter, call: AdapterCall) -> Any:
    kind = adapter.kind
    if kind == AdapterKind.DETECTION:
        return await adapter.detect(call.image, call.max_results)
    elif kind == AdapterKind.IMAGE_SIMILARITY:
        return await adapter.search_by_image(call.image, call.crop, call.max_results)
    elif kind == AdapterKind.KEYWORD:
        return await adapter.search_by_keyword(call.text or "", call.max_results)
    elif kind == AdapterKind.STATIC_FALLBACK:
        return await adapter.search_by_keyword(call.text or "", call.max_results)
    raise AssertionError(f"unhandled adapter kind: {kind!r}")


async def invoke(adapter: Adapter, call: AdapterCall, timeout: float) -> AdapterResult:
    """
    Run one adapter call with a hard timeout. Never raises.

    SearchError subclasses keep their typed kind; timeouts become
    provider_timeout; anything else (transport errors, parser bugs) becomes
    provider_error.
    """
    t0 = time.monotonic()

    def elapsed() -> int:
        return int((time.monotonic() - t0) * 1000)

    try:
        payload = await asyncio.wait_for(_dispatch(adapter, call), timeout=timeout)
    except SearchError as exc:
        logger.warning("[%s] %s", adapter.name, exc)
        return AdapterResult.failed(adapter.name, exc.to_info(), elapsed())
    except asyncio.TimeoutError:
        logger.warning("[%s] timed out after %.1fs", adapter.name, timeout)
        info = ErrorInfo(ErrorKind.PROVIDER_TIMEOUT, f"{adapter.name} timed out after {timeout:.1f}s")
        return AdapterResult.failed(adapter.name, info, elapsed())
    except aiohttp.ClientError as exc:
        logger.warning("[%s] transport error: %s", adapter.name, exc)
        info = ErrorInfo(ErrorKind.PROVIDER_ERROR, f"{adapter.name} transport error: {exc}")
        return AdapterResult.failed(adapter.name, info, elapsed())
    except Exception as exc:
        logger.error("[%s] Failed: %s", adapter.name, exc, exc_info=True)
        info = ErrorInfo(ErrorKind.PROVIDER_ERROR, f"{adapter.name}: {exc}")
        return AdapterResult.failed(adapter.name, info, elapsed())

    latency_ms = elapsed()
    logger.info("[%s] OK latency=%dms", adapter.name, latency_ms)
    return AdapterResult.ok(adapter.name, payload, latency_ms)
