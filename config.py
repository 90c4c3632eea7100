"""
Central configuration — reads from the environment / .env file.

load_settings() is the only function in the project that looks at os.environ.
Everything else receives a Settings object (or individual values from it) as
constructor arguments, so tests can build one directly without touching env.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


@dataclass(frozen=True)
class Settings:
    # ── Provider credentials ──────────────────────────────────────────────────
    # Leave unset to disable the provider; its tier then reports
    # provider_auth_missing and the fallback chain carries on.
    serpapi_key: Optional[str]          = None
    google_cloud_api_key: Optional[str] = None
    openai_api_key: Optional[str]       = None

    # ── Search behaviour ──────────────────────────────────────────────────────
    # Region drives SerpApi gl/country and the currency default for bare "$".
    search_region: str                  = "sg"
    search_language: str                = "en"
    max_results: int                    = 10
    max_crop_output_width: int          = 500
    entity_confidence_threshold: float  = 0.5
    # Ask Google Vision WEB_DETECTION for a label before keyword search
    web_detection: bool                 = True

    # ── Timeouts (seconds) ────────────────────────────────────────────────────
    image_search_timeout: float         = 60.0
    keyword_search_timeout: float       = 30.0
    detection_timeout: float            = 30.0

    # ── Detection ─────────────────────────────────────────────────────────────
    # google | openai
    detection_provider: str             = "google"
    detection_confidence_threshold: float = 0.5
    max_detected_objects: int           = 10
    openai_detection_model: str         = "gpt-4o-mini"

    # ── Cache / history ───────────────────────────────────────────────────────
    # memory → per-process dict; sqlite → DATA_DIR/search_cache.db
    cache_backend: str                  = "memory"
    cache_ttl_secs: int                 = 24 * 60 * 60
    cache_max_entries: int              = 50
    cache_evict_batch: int              = 10
    history_max_entries: int            = 20
    data_dir: str                       = "data"


def _int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else default


def _float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else default


def _bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    return raw in ("1", "true", "yes", "on") if raw else default


def _str(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.getenv(name, "").strip() or default


def load_settings(dotenv: bool = True) -> Settings:
    """Build Settings from the environment, loading .env first unless told not to."""
    if dotenv:
        load_dotenv()

    cache_backend = (_str("CACHE_BACKEND", "memory") or "memory").lower()
    if cache_backend not in ("memory", "sqlite"):
        raise ValueError(f"CACHE_BACKEND must be 'memory' or 'sqlite', got {cache_backend!r}")

    return Settings(
        serpapi_key=_str("SERPAPI_KEY"),
        google_cloud_api_key=_str("GOOGLE_CLOUD_API_KEY"),
        openai_api_key=_str("OPENAI_API_KEY"),
        search_region=(_str("SEARCH_REGION", "sg") or "sg").lower(),
        search_language=_str("SEARCH_LANGUAGE", "en") or "en",
        max_results=_int("MAX_RESULTS", 10),
        max_crop_output_width=_int("MAX_CROP_OUTPUT_WIDTH", 500),
        entity_confidence_threshold=_float("ENTITY_CONFIDENCE_THRESHOLD", 0.5),
        web_detection=_bool("WEB_DETECTION", True),
        image_search_timeout=_float("IMAGE_SEARCH_TIMEOUT", 60.0),
        keyword_search_timeout=_float("KEYWORD_SEARCH_TIMEOUT", 30.0),
        detection_timeout=_float("DETECTION_TIMEOUT", 30.0),
        detection_provider=(_str("DETECTION_PROVIDER", "google") or "google").lower(),
        detection_confidence_threshold=_float("DETECTION_CONFIDENCE_THRESHOLD", 0.5),
        max_detected_objects=_int("MAX_DETECTED_OBJECTS", 10),
        openai_detection_model=_str("OPENAI_DETECTION_MODEL", "gpt-4o-mini") or "gpt-4o-mini",
        cache_backend=cache_backend,
        cache_ttl_secs=_int("CACHE_TTL_SECS", 24 * 60 * 60),
        cache_max_entries=_int("CACHE_MAX_ENTRIES", 50),
        cache_evict_batch=_int("CACHE_EVICT_BATCH", 10),
        history_max_entries=_int("HISTORY_MAX_ENTRIES", 20),
        data_dir=_str("DATA_DIR", "data") or "data",
    )
