"""
orchestrator.py — turns "find products for this object" into one SearchResult.

Pipeline for search():
  1. Pick the keyword label (select_label: one ordered priority list); with no
     caller hints, web detection supplies the best guess and web entities
  2. Resolve the crop rect for the image tier (geometry.box_to_rect)
  3. Cache lookup by content key
  4. Image tier + keyword tier concurrently, each through invoke() with its
     own timeout; a failure in one never suppresses the other
  5. Merge: image matches first, then keyword matches, each tier's own order
  6. Nothing from either tier → static fallback links; nothing at all →
     success=False with an explicit no_results error
  7. Write back to the cache (real results only) and history

Errors from adapters arrive as AdapterResult values; nothing here catches
provider exceptions because invoke() never lets one through.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Optional, Protocol, Sequence

from errors import ErrorInfo, ErrorKind, SearchError
from geometry import BoundingBox, CoordinateSpace, ImageDimensions, PixelRect, box_to_rect
from history import AnalysisHistory, HistoryEntry
from image_crop import ImageCropProvider
from providers.base import (
    DetectedObject, DetectionResult, Detector, ImageInput, WebDetection, WebEntity,
)
from providers.manager import filter_objects, pick_detector
from result_cache import ResultCache, fingerprint, make_cache_key
from search_backends.base import (
    AdapterCall, FallbackBackend, ImageSimilarityBackend, KeywordBackend,
    ProductMatch, invoke,
)

logger = logging.getLogger(__name__)


# ── Request / result types ────────────────────────────────────────────────────

@dataclass(frozen=True)
class SearchOptions:
    max_results: int = 10                       # per tier
    best_guess_label: Optional[str] = None
    web_entities: tuple[WebEntity, ...] = ()
    coordinate_space: CoordinateSpace = CoordinateSpace.NORMALIZED
    force_refresh: bool = False


@dataclass(frozen=True)
class SearchObject:
    label: str
    bounding_box: Optional[BoundingBox] = None  # None → whole image


class ObjectLike(Protocol):
    label: str
    bounding_box: Optional[BoundingBox]


class WebDetector(Protocol):
    name: str

    async def web_detect(self, image: ImageInput, max_results: int = 10) -> WebDetection: ...


@dataclass(frozen=True)
class SearchRequest:
    query: Optional[str] = None
    image_ref: Optional[str] = None
    crop: Optional[BoundingBox] = None
    image_dimensions: Optional[ImageDimensions] = None
    options: SearchOptions = field(default_factory=SearchOptions)

    def __post_init__(self) -> None:
        if not (self.query and self.query.strip()) and not self.image_ref:
            raise ValueError("SearchRequest needs a query, an image_ref, or both")


@dataclass(frozen=True)
class SearchResult:
    matches: tuple[ProductMatch, ...]
    source: str                                 # contributing adapters, "+"-joined
    search_type: str                            # image | keyword | image+keyword | fallback
    processing_time_ms: int
    success: bool
    error: Optional[ErrorInfo] = None
    query: Optional[str] = None
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    from_cache: bool = False
    tier_errors: tuple[ErrorInfo, ...] = ()

    @property
    def provenances(self) -> set[str]:
        return {m.provenance.value for m in self.matches}

    def to_dict(self) -> dict:
        return {
            "matches": [m.to_dict() for m in self.matches],
            "source": self.source,
            "search_type": self.search_type,
            "processing_time_ms": self.processing_time_ms,
            "success": self.success,
            "error": self.error.to_dict() if self.error else None,
            "query": self.query,
            "request_id": self.request_id,
            "tier_errors": [e.to_dict() for e in self.tier_errors],
        }

    @classmethod
    def from_dict(cls, data: dict, from_cache: bool = False) -> "SearchResult":
        return cls(
            matches=tuple(ProductMatch.from_dict(m) for m in data["matches"]),
            source=data["source"],
            search_type=data["search_type"],
            processing_time_ms=int(data.get("processing_time_ms", 0)),
            success=bool(data["success"]),
            error=ErrorInfo.from_dict(data["error"]) if data.get("error") else None,
            query=data.get("query"),
            request_id=data.get("request_id") or str(uuid.uuid4()),
            from_cache=from_cache,
            tier_errors=tuple(ErrorInfo.from_dict(e) for e in data.get("tier_errors", [])),
        )


# ── Label selection ───────────────────────────────────────────────────────────

def select_label(
    detected_label: Optional[str],
    best_guess_label: Optional[str] = None,
    web_entities: Sequence[WebEntity] = (),
    threshold: float = 0.5,
) -> str:
    """
    The text to run a keyword search with, highest priority first:
      1. an explicit best-guess label
      2. the first web entity scoring above `threshold` with a description
      3. the detector's object label
    """
    if best_guess_label and best_guess_label.strip():
        return best_guess_label.strip()
    for entity in web_entities:
        if entity.score > threshold and (entity.description or "").strip():
            return entity.description.strip()
    return (detected_label or "").strip()


# ── Orchestrator ──────────────────────────────────────────────────────────────

class SearchOrchestrator:

    def __init__(
        self,
        image_backend: Optional[ImageSimilarityBackend],
        keyword_backend: Optional[KeywordBackend],
        fallback_backend: FallbackBackend,
        crop_provider: ImageCropProvider,
        cache: ResultCache,
        history: AnalysisHistory,
        detectors: Optional[dict[str, Detector]] = None,
        web_detector: Optional[WebDetector] = None,
        *,
        image_timeout: float = 60.0,
        keyword_timeout: float = 30.0,
        detection_timeout: float = 30.0,
        entity_threshold: float = 0.5,
        detection_threshold: float = 0.5,
        max_detected_objects: int = 10,
    ) -> None:
        self._image     = image_backend
        self._keyword   = keyword_backend
        self._fallback  = fallback_backend
        self._crop      = crop_provider
        self.cache      = cache
        self.history    = history
        self._detectors = detectors or {}
        self._web       = web_detector

        self._image_timeout     = image_timeout
        self._keyword_timeout   = keyword_timeout
        self._detection_timeout = detection_timeout
        self._entity_threshold  = entity_threshold
        self._detect_threshold  = detection_threshold
        self._max_objects       = max_detected_objects

        # slot name → id of the newest request issued for it
        self._slots: dict[str, str] = {}

    # ── Public API ────────────────────────────────────────────────────────────

    async def search(
        self,
        obj: ObjectLike,
        image_ref: Optional[str],
        image_dimensions: Optional[ImageDimensions] = None,
        options: Optional[SearchOptions] = None,
    ) -> SearchResult:
        """Image + keyword search for one object. Never raises for provider failures."""
        options = options or SearchOptions()
        if image_ref and self._web is not None and not (
            options.best_guess_label or options.web_entities
        ):
            options = await self._with_web_hints(image_ref, options)
        label = select_label(
            obj.label, options.best_guess_label, options.web_entities, self._entity_threshold,
        )

        tier_errors: list[ErrorInfo] = []
        rect: Optional[PixelRect] = None
        run_image = self._image is not None and bool(image_ref)
        if run_image:
            try:
                rect = self.resolve_crop(
                    obj.bounding_box, image_ref, image_dimensions, options.coordinate_space,
                )
            except SearchError as exc:
                logger.warning("Skipping image search, crop could not be resolved: %s", exc)
                tier_errors.append(exc.to_info())
                run_image = False

        fp = fingerprint(image_ref or label)
        key = make_cache_key(
            "search", fp,
            query=label,
            crop=rect,
            box=obj.bounding_box.rounded() if obj.bounding_box else None,
            image=self._image.name if run_image else None,
            keyword=self._keyword.name if self._keyword else None,
            max_results=options.max_results,
        )
        return await self._execute(
            key, fp, label, image_ref if run_image else None, rect, options, tier_errors,
        )

    async def search_text(self, query: str, options: Optional[SearchOptions] = None) -> SearchResult:
        """Keyword tier (plus fallback) only, for a search without an image."""
        options = options or SearchOptions()
        label = (query or "").strip()
        fp = fingerprint(label)
        key = make_cache_key(
            "text", fp,
            query=label,
            keyword=self._keyword.name if self._keyword else None,
            max_results=options.max_results,
        )
        return await self._execute(key, fp, label, None, None, options, [])

    async def handle(self, request: SearchRequest) -> SearchResult:
        """Route a SearchRequest to search() or search_text()."""
        if request.image_ref:
            obj = SearchObject(label=request.query or "", bounding_box=request.crop)
            return await self.search(obj, request.image_ref, request.image_dimensions, request.options)
        return await self.search_text(request.query or "", request.options)

    async def search_for_slot(
        self,
        slot: str,
        obj: ObjectLike,
        image_ref: Optional[str],
        image_dimensions: Optional[ImageDimensions] = None,
        options: Optional[SearchOptions] = None,
    ) -> Optional[SearchResult]:
        """
        search() for a UI slot. If a newer request for the same slot started
        while this one was running, returns None: the result still lands in
        the cache but is not delivered to the stale consumer.
        """
        request_id = str(uuid.uuid4())
        self._slots[slot] = request_id
        result = await self.search(obj, image_ref, image_dimensions, options)
        if self._slots.get(slot) != request_id:
            logger.info("Slot %s superseded, dropping result of request %s", slot, request_id)
            return None
        return result

    async def refresh(
        self,
        obj: ObjectLike,
        image_ref: Optional[str],
        image_dimensions: Optional[ImageDimensions] = None,
        options: Optional[SearchOptions] = None,
    ) -> SearchResult:
        """Forget everything cached for this image, then search again."""
        options = options or SearchOptions()
        if image_ref:
            try:
                await self.cache.invalidate_fingerprint(fingerprint(image_ref))
            except Exception as exc:
                logger.warning("Cache invalidation failed for refresh: %s", exc)
        return await self.search(obj, image_ref, image_dimensions, replace(options, force_refresh=True))

    async def detect(
        self,
        image: ImageInput,
        provider: Optional[str] = None,
        threshold: Optional[float] = None,
        max_objects: Optional[int] = None,
        force_refresh: bool = False,
    ) -> DetectionResult:
        """
        Run object detection. Unknown provider names raise ValueError; a
        missing key or provider failure comes back as success=False.
        """
        t0 = time.monotonic()
        threshold = self._detect_threshold if threshold is None else threshold
        max_objects = self._max_objects if max_objects is None else max_objects

        detector = pick_detector(self._detectors, provider)
        if detector is None:
            return DetectionResult(
                provider=provider or "none",
                success=False,
                error=ErrorInfo(ErrorKind.PROVIDER_AUTH_MISSING, "no detection provider is configured"),
            )

        fp = fingerprint(image)
        key = make_cache_key(
            "detect", fp, provider=detector.name, threshold=threshold, max_objects=max_objects,
        )
        if not force_refresh:
            cached = await self._cached(key, DetectionResult.from_dict)
            if cached is not None:
                logger.info("[detect] cache hit for %s", fp[:12])
                return cached

        outcome = await invoke(
            detector, AdapterCall(image=image, max_results=max_objects), self._detection_timeout,
        )
        elapsed_ms = int((time.monotonic() - t0) * 1000)
        if not outcome.success:
            return DetectionResult(
                provider=detector.name, success=False,
                processing_time_ms=elapsed_ms, error=outcome.error,
            )

        objects: list[DetectedObject] = filter_objects(outcome.payload or [], threshold, max_objects)
        result = DetectionResult(
            provider=detector.name,
            success=True,
            objects=tuple(objects),
            processing_time_ms=elapsed_ms,
        )
        await self.cache.put(key, result.to_dict())
        await self._record_history(fp, detector.name, object_count=len(objects))
        return result

    async def recent_history(self, limit: Optional[int] = None) -> list[HistoryEntry]:
        return await self.history.entries(limit)

    def resolve_crop(
        self,
        box: Optional[BoundingBox],
        image_ref: Optional[str],
        image_dimensions: Optional[ImageDimensions],
        space: CoordinateSpace = CoordinateSpace.NORMALIZED,
    ) -> Optional[PixelRect]:
        """
        Absolute crop rect for `box`, or None for the whole image. A box on an
        image that is already a crop is composed onto that crop.
        """
        if box is None:
            return None
        existing = None
        if image_ref and self._crop.supports(image_ref):
            existing = self._crop.existing_rect(image_ref)
        return box_to_rect(box, space, image_dimensions, existing)

    # ── Internals ─────────────────────────────────────────────────────────────

    async def _execute(
        self,
        key: str,
        fp: str,
        label: str,
        image_ref: Optional[str],
        rect: Optional[PixelRect],
        options: SearchOptions,
        tier_errors: list[ErrorInfo],
    ) -> SearchResult:
        t0 = time.monotonic()

        if not options.force_refresh:
            cached = await self._cached(key, SearchResult.from_dict)
            if cached is not None:
                logger.info("Cache hit for '%s' (%d matches)", label, len(cached.matches))
                return cached

        tiers: dict[str, Any] = {}
        if image_ref and self._image is not None:
            tiers["image"] = invoke(
                self._image,
                AdapterCall(image=image_ref, crop=rect, max_results=options.max_results),
                self._image_timeout,
            )
        if label and self._keyword is not None:
            tiers["keyword"] = invoke(
                self._keyword,
                AdapterCall(text=label, max_results=options.max_results),
                self._keyword_timeout,
            )
        outcomes = dict(zip(tiers, await asyncio.gather(*tiers.values())))

        matches: list[ProductMatch] = []
        contributed: list[str] = []
        sources: list[str] = []
        for tier in ("image", "keyword"):
            outcome = outcomes.get(tier)
            if outcome is None:
                continue
            if not outcome.success:
                tier_errors.append(outcome.error)
                continue
            found = list(outcome.payload or [])[: options.max_results]
            if found:
                matches.extend(found)
                contributed.append(tier)
                sources.append(outcome.adapter)

        if matches:
            result = SearchResult(
                matches=tuple(matches),
                source="+".join(sources),
                search_type="+".join(contributed),
                processing_time_ms=int((time.monotonic() - t0) * 1000),
                success=True,
                query=label or None,
                tier_errors=tuple(tier_errors),
            )
            await self.cache.put(key, result.to_dict())
            await self._record_history(fp, result.source)
            logger.info(
                "Search '%s' → %d matches via %s", label, len(matches), result.search_type,
            )
            return result

        return await self._fall_back(fp, label, tier_errors, t0)

    async def _fall_back(
        self,
        fp: str,
        label: str,
        tier_errors: list[ErrorInfo],
        t0: float,
    ) -> SearchResult:
        outcome = await invoke(self._fallback, AdapterCall(text=label), self._keyword_timeout)
        links = list(outcome.payload or []) if outcome.success else []
        if not outcome.success:
            tier_errors.append(outcome.error)

        elapsed_ms = int((time.monotonic() - t0) * 1000)
        if links:
            logger.warning(
                "No provider results for '%s', returning %d fallback links", label, len(links),
            )
            # Not cached: the next request should retry the real providers.
            await self._record_history(fp, outcome.adapter)
            return SearchResult(
                matches=tuple(links),
                source=outcome.adapter,
                search_type="fallback",
                processing_time_ms=elapsed_ms,
                success=True,
                query=label or None,
                tier_errors=tuple(tier_errors),
            )

        reasons = "; ".join(str(e) for e in tier_errors) or "no searchable label or image"
        logger.warning("Search for '%s' produced nothing: %s", label, reasons)
        return SearchResult(
            matches=(),
            source="none",
            search_type="fallback",
            processing_time_ms=elapsed_ms,
            success=False,
            error=ErrorInfo(ErrorKind.NO_RESULTS, f"no results from any provider ({reasons})"),
            query=label or None,
            tier_errors=tuple(tier_errors),
        )

    async def _cached(self, key: str, decode) -> Optional[Any]:
        payload = await self.cache.get(key)
        if payload is None:
            return None
        try:
            return decode(payload, from_cache=True)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Cached payload for %s does not decode (%s), purged", key, exc)
            await self.cache.invalidate(key)
            return None

    async def _with_web_hints(self, image_ref: str, options: SearchOptions) -> SearchOptions:
        """Fill best_guess_label / web_entities from web detection; unchanged on failure."""
        try:
            hints = await asyncio.wait_for(
                self._web.web_detect(image_ref), timeout=self._detection_timeout,
            )
        except Exception as exc:
            logger.warning("Web detection via %s failed, using the object label: %s", self._web.name, exc)
            return options
        return replace(
            options, best_guess_label=hints.best_guess_label, web_entities=hints.entities,
        )

    async def _record_history(self, fp: str, provider: str, object_count: Optional[int] = None) -> None:
        try:
            await self.history.record(fp, provider, object_count=object_count)
        except Exception as exc:
            logger.warning("Could not record history for %s: %s", fp[:12], exc)
