"""
Detector Manager — builds the detection providers whose keys are present and
post-filters what they return.

Providers (DETECTION_PROVIDER selects the default):
  google  — Google Cloud Vision OBJECT_LOCALIZATION   (GOOGLE_CLOUD_API_KEY)
  openai  — OpenAI vision model asked for JSON boxes  (OPENAI_API_KEY)
"""
from __future__ import annotations

import logging
from typing import Iterable, Optional

from config import Settings
from providers.base import DetectedObject, Detector

logger = logging.getLogger(__name__)

# Short names accepted on the CLI / in DETECTION_PROVIDER
_ALIASES = {
    "google":        "google_vision",
    "google_vision": "google_vision",
    "vision":        "google_vision",
    "openai":        "openai",
}


def build_detectors(settings: Settings) -> dict[str, Detector]:
    """
    Instantiate every detector whose API key is available.
    Returns dict keyed by short name ("google_vision", "openai"), default first.
    An empty dict is valid: detection then reports provider_auth_missing.
    """
    detectors: dict[str, Detector] = {}

    # ── Google Cloud Vision ───────────────────────────────────────────────────
    if settings.google_cloud_api_key:
        from providers.google_vision_provider import GoogleVisionDetector
        detectors["google_vision"] = GoogleVisionDetector(
            settings.google_cloud_api_key, settings.detection_timeout,
        )
        logger.info("Loaded detector: google_vision")

    # ── OpenAI ────────────────────────────────────────────────────────────────
    if settings.openai_api_key:
        from providers.openai_provider import OpenAIDetector
        p = OpenAIDetector(settings.openai_api_key, settings.openai_detection_model)
        detectors["openai"] = p
        logger.info("Loaded detector: %s", p.name)

    preferred = _ALIASES.get(settings.detection_provider, settings.detection_provider)
    if preferred in detectors:
        detectors = {preferred: detectors[preferred], **detectors}
    return detectors


def pick_detector(
    detectors: dict[str, Detector],
    requested: Optional[str] = None,
) -> Optional[Detector]:
    """
    Resolve a provider name (or alias) to a detector. With no name, the first
    (preferred) detector. Unknown names are a caller error.
    """
    if not requested:
        return next(iter(detectors.values()), None)
    key = _ALIASES.get(requested.lower(), requested.lower())
    if key not in detectors:
        available = ", ".join(detectors) or "none"
        raise ValueError(f"Detector '{requested}' not available. Available: {available}")
    return detectors[key]


def filter_objects(
    objects: Iterable[DetectedObject],
    threshold: float,
    max_objects: int,
) -> list[DetectedObject]:
    """Keep objects at or above `threshold`, provider order preserved, at most `max_objects`."""
    kept = [o for o in objects if o.confidence >= threshold]
    dropped = 0
    if max_objects >= 0 and len(kept) > max_objects:
        dropped = len(kept) - max_objects
        kept = kept[:max_objects]
    if dropped:
        logger.debug("Dropped %d objects over the max_objects cap", dropped)
    return kept
