"""
Google Cloud Vision detector.

OBJECT_LOCALIZATION returns each object as a polygon of four normalized
vertices:
  [0] top-left, [1] top-right, [2] bottom-right, [3] bottom-left
which we collapse to an axis-aligned BoundingBox {x, y, width, height}.

WEB_DETECTION (web_detect) names the whole picture from matching images on
the web: a best-guess label plus scored web entities. The orchestrator uses
those ahead of the detector's own object label for keyword search.

Auth: API key as a `key` query param (GOOGLE_CLOUD_API_KEY).
"""
from __future__ import annotations

import logging
from typing import Optional

import aiohttp

from errors import ProviderAuthMissing, ProviderHTTPError, ProviderResponseError
from geometry import BoundingBox
from providers.base import (
    DetectedObject, Detector, ImageInput, WebDetection, WebEntity, split_image,
)

logger = logging.getLogger(__name__)

API_URL = "https://vision.googleapis.com/v1/images:annotate"


class GoogleVisionDetector(Detector):

    def __init__(self, api_key: Optional[str], request_timeout: float = 30.0) -> None:
        self._key = api_key
        self._timeout = request_timeout

    @property
    def name(self) -> str:
        return "google_vision"

    async def detect(self, image: ImageInput, max_objects: int = 10) -> list[DetectedObject]:
        response = await self._annotate(image, "OBJECT_LOCALIZATION", max_objects)
        annotations = response.get("localizedObjectAnnotations") or []
        objects = [
            obj for obj in (
                _to_object(raw, index) for index, raw in enumerate(annotations)
            ) if obj is not None
        ]
        logger.info("[GoogleVision] %d objects detected", len(objects))
        return objects

    async def web_detect(self, image: ImageInput, max_results: int = 10) -> WebDetection:
        response = await self._annotate(image, "WEB_DETECTION", max_results)
        web = response.get("webDetection") or {}

        entities = sorted(
            (
                WebEntity(description=raw["description"].strip(), score=float(raw.get("score") or 0))
                for raw in web.get("webEntities") or []
                if (raw.get("description") or "").strip()
            ),
            key=lambda e: -e.score,
        )
        labels = [
            raw["label"].strip() for raw in web.get("bestGuessLabels") or []
            if (raw.get("label") or "").strip()
        ]
        result = WebDetection(
            best_guess_label=labels[0] if labels else None,
            entities=tuple(entities),
        )
        logger.info(
            "[GoogleVision] web detection: best guess %r, %d entities",
            result.best_guess_label, len(result.entities),
        )
        return result

    async def _annotate(self, image: ImageInput, feature: str, max_results: int) -> dict:
        """One images:annotate request for a single feature; returns its response object."""
        if not self._key:
            raise ProviderAuthMissing(f"{self.name}: GOOGLE_CLOUD_API_KEY is not set")

        url, content = split_image(image)
        image_source = {"source": {"imageUri": url}} if url else {"content": content}
        body = {
            "requests": [{
                "image": image_source,
                "features": [{"type": feature, "maxResults": max_results}],
            }]
        }

        async with aiohttp.ClientSession() as session:
            async with session.post(
                API_URL,
                params={"key": self._key},
                json=body,
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            ) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise ProviderHTTPError(self.name, resp.status, text)
                data = await resp.json(content_type=None)

        response = (data.get("responses") or [{}])[0]
        if response.get("error"):
            raise ProviderResponseError(
                f"{self.name}: {response['error'].get('message', 'unknown error')}"
            )
        return response

def _to_object(raw: dict, index: int) -> Optional[DetectedObject]:
    vertices = (raw.get("boundingPoly") or {}).get("normalizedVertices") or []
    if len(vertices) < 3:
        logger.warning("[GoogleVision] object %d has no usable polygon, skipped", index)
        return None

    x = vertices[0].get("x", 0.0)
    y = vertices[0].get("y", 0.0)
    x2 = vertices[2].get("x", 0.0)
    y2 = vertices[2].get("y", 0.0)

    return DetectedObject(
        id=f"obj_{index + 1}",
        label=(raw.get("name") or "unknown").lower(),
        confidence=float(raw.get("score") or 0),
        bounding_box=BoundingBox(
            x=round(x, 4),
            y=round(y, 4),
            width=round(x2 - x, 4),
            height=round(y2 - y, 4),
        ),
    )
