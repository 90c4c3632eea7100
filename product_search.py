"""
product_search.py — public interface for product search.

Callers import only from here:
  from product_search import search_products, get_orchestrator

Everything is built from one Settings object (config.load_settings() unless
one is passed in):

  image tier     →  SerpApi Google Lens (products)    needs SERPAPI_KEY
  keyword tier   →  SerpApi Google Shopping            needs SERPAPI_KEY
  fallback tier  →  static "search on <merchant>" links (always available)
  detection      →  Google Vision / OpenAI             needs GOOGLE_CLOUD_API_KEY / OPENAI_API_KEY

A missing SerpApi key is not fatal: the tiers still run, report
provider_auth_missing, and the fallback links are returned.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import config
from config import Settings
from geometry import BoundingBox, ImageDimensions
from history import AnalysisHistory, MemoryHistoryStore
from image_crop import ImageCropProvider, ImgixCropProvider
from orchestrator import SearchOptions, SearchOrchestrator, SearchRequest, SearchResult
from providers.base import Detector
from providers.manager import build_detectors
from result_cache import MemoryCacheStorage, ResultCache
from search_backends.base import FallbackBackend, ImageSimilarityBackend, KeywordBackend
from search_backends.fallback_links import FallbackLinksBackend
from search_backends.lens_backend import LensBackend
from search_backends.shopping_backend import ShoppingBackend

logger = logging.getLogger(__name__)

__all__ = [
    "AdapterSet", "build_adapter_set", "build_orchestrator",
    "get_orchestrator", "reset_orchestrator", "search_products",
]

_orchestrator: Optional[SearchOrchestrator] = None
_settings: Optional[Settings] = None


@dataclass
class AdapterSet:
    image: ImageSimilarityBackend
    keyword: KeywordBackend
    fallback: FallbackBackend
    crop: ImageCropProvider
    detectors: dict[str, Detector]


def build_adapter_set(settings: Settings) -> AdapterSet:
    """Instantiate every adapter with credentials and region from `settings`."""
    crop = ImgixCropProvider()
    if not settings.serpapi_key:
        logger.warning("SERPAPI_KEY is not set; image and keyword tiers will report auth errors")
    return AdapterSet(
        image=LensBackend(
            settings.serpapi_key,
            crop,
            region=settings.search_region,
            language=settings.search_language,
            max_output_width=settings.max_crop_output_width,
            request_timeout=settings.image_search_timeout,
        ),
        keyword=ShoppingBackend(
            settings.serpapi_key,
            region=settings.search_region,
            language=settings.search_language,
            request_timeout=settings.keyword_search_timeout,
        ),
        fallback=FallbackLinksBackend(),
        crop=crop,
        detectors=build_detectors(settings),
    )


def _build_storage(settings: Settings):
    if settings.cache_backend == "sqlite":
        import database
        database.set_data_dir(settings.data_dir)
        logger.info("Result cache: sqlite at %s", database.DB_PATH)
        return database.SQLiteCacheStorage(), database.SQLiteHistoryStore()
    logger.info("Result cache: in-memory")
    return MemoryCacheStorage(), MemoryHistoryStore()


def build_orchestrator(
    settings: Settings,
    adapters: Optional[AdapterSet] = None,
) -> SearchOrchestrator:
    adapters = adapters or build_adapter_set(settings)
    cache_storage, history_store = _build_storage(settings)
    return SearchOrchestrator(
        image_backend=adapters.image,
        keyword_backend=adapters.keyword,
        fallback_backend=adapters.fallback,
        crop_provider=adapters.crop,
        cache=ResultCache(
            cache_storage,
            ttl=settings.cache_ttl_secs,
            max_entries=settings.cache_max_entries,
            evict_batch=settings.cache_evict_batch,
        ),
        history=AnalysisHistory(history_store, max_entries=settings.history_max_entries),
        detectors=adapters.detectors,
        web_detector=adapters.detectors.get("google_vision") if settings.web_detection else None,
        image_timeout=settings.image_search_timeout,
        keyword_timeout=settings.keyword_search_timeout,
        detection_timeout=settings.detection_timeout,
        entity_threshold=settings.entity_confidence_threshold,
        detection_threshold=settings.detection_confidence_threshold,
        max_detected_objects=settings.max_detected_objects,
    )


def get_orchestrator(settings: Optional[Settings] = None) -> SearchOrchestrator:
    """Return the shared orchestrator, building it once on first call."""
    global _orchestrator, _settings
    if _orchestrator is None:
        _settings = settings or config.load_settings()
        _orchestrator = build_orchestrator(_settings)
        logger.info("Search orchestrator ready")
    return _orchestrator


def reset_orchestrator() -> None:
    """Drop the shared orchestrator so the next call rebuilds it (e.g. after a key change)."""
    global _orchestrator, _settings
    _orchestrator = None
    _settings = None


async def search_products(
    query: Optional[str] = None,
    image_ref: Optional[str] = None,
    crop: Optional[BoundingBox] = None,
    image_dimensions: Optional[ImageDimensions] = None,
    options: Optional[SearchOptions] = None,
) -> SearchResult:
    """
    One-call search: text, image, or both. Raises ValueError only when
    neither a query nor an image is given.
    """
    orchestrator = get_orchestrator()
    request = SearchRequest(
        query=query,
        image_ref=image_ref,
        crop=crop,
        image_dimensions=image_dimensions,
        options=options or SearchOptions(max_results=_settings.max_results),
    )
    return await orchestrator.handle(request)
