"""
Shared types and base class for all object-detection providers.
"""
from __future__ import annotations

import base64
import json
import logging
import uuid
from abc import abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Union

from errors import ErrorInfo
from geometry import BoundingBox
from search_backends.base import Adapter, AdapterKind

logger = logging.getLogger(__name__)

ImageInput = Union[str, bytes]

# ── Prompt (LLM-backed detectors) ─────────────────────────────────────────────

DETECTION_PROMPT = """You are an object detection assistant for a shopping app.
Find the distinct purchasable objects in the photo (furniture, appliances,
decor, clothing, electronics). Return ONLY a valid JSON object with no markdown and no prose.

JSON schema:
{
  "objects": [
    {
      "label":      "short lowercase noun phrase, e.g. \\"coffee machine\\"",
      "confidence": 0.0-1.0,
      "box":        {"x": 0-1, "y": 0-1, "width": 0-1, "height": 0-1}
    }
  ]
}

Rules:
- box is normalized to the full image, origin top-left
- x + width <= 1 and y + height <= 1
- most prominent objects first
"""


# ── Shared result types ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class DetectedObject:
    id: str
    label: str
    confidence: float
    bounding_box: BoundingBox

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "label": self.label,
            "confidence": self.confidence,
            "bounding_box": self.bounding_box.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DetectedObject":
        return cls(
            id=data["id"],
            label=data["label"],
            confidence=float(data["confidence"]),
            bounding_box=BoundingBox.from_dict(data["bounding_box"]),
        )


@dataclass(frozen=True)
class WebEntity:
    description: str
    score: float


@dataclass(frozen=True)
class WebDetection:
    """What a reverse-image lookup thinks the whole picture shows."""
    best_guess_label: Optional[str] = None
    entities: tuple[WebEntity, ...] = ()          # highest score first


@dataclass(frozen=True)
class DetectionResult:
    provider: str
    success: bool
    objects: tuple[DetectedObject, ...] = ()
    processing_time_ms: int = 0
    error: Optional[ErrorInfo] = None
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    from_cache: bool = False

    def to_dict(self) -> dict:
        return {
            "provider": self.provider,
            "success": self.success,
            "objects": [o.to_dict() for o in self.objects],
            "processing_time_ms": self.processing_time_ms,
            "error": self.error.to_dict() if self.error else None,
            "request_id": self.request_id,
        }

    @classmethod
    def from_dict(cls, data: dict, from_cache: bool = False) -> "DetectionResult":
        return cls(
            provider=data["provider"],
            success=bool(data["success"]),
            objects=tuple(DetectedObject.from_dict(o) for o in data.get("objects", [])),
            processing_time_ms=int(data.get("processing_time_ms", 0)),
            error=ErrorInfo.from_dict(data["error"]) if data.get("error") else None,
            request_id=data.get("request_id") or str(uuid.uuid4()),
            from_cache=from_cache,
        )


def split_image(image: ImageInput) -> tuple[Optional[str], Optional[str]]:
    """
    Normalise an image input to (public_url, base64_content); exactly one is set.
    Accepts an http(s) URL, a data: URI, bare base64 text, or raw bytes.
    """
    if isinstance(image, bytes):
        return None, base64.b64encode(image).decode()
    text = image.strip()
    if text.startswith(("http://", "https://")):
        return text, None
    if text.startswith("data:") and "," in text:
        return None, text.split(",", 1)[1]
    return None, text


def parse_json_response(raw: str, provider_name: str) -> dict:
    """
    Parse JSON from a model response, handling markdown fences gracefully.
    Raises ValueError on parse failure.
    """
    text = (raw or "").strip()
    # Strip ```json ... ``` or ``` ... ``` fences if present
    if text.startswith("```"):
        lines = text.split("\n")
        text = "\n".join(lines[1:-1] if lines[-1].strip() == "```" else lines[1:])
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        logger.error("[%s] Non-JSON response: %s", provider_name, (raw or "")[:300])
        raise ValueError(f"[{provider_name}] JSON parse error: {exc}") from exc


# ── Abstract base ─────────────────────────────────────────────────────────────

class Detector(Adapter):
    """Base class all detection providers must implement."""

    kind = AdapterKind.DETECTION

    @abstractmethod
    async def detect(self, image: ImageInput, max_objects: int = 10) -> list[DetectedObject]:
        """Locate objects in `image`; boxes normalized to the full image."""
        ...
