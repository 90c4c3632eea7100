"""
OpenAI vision detector — gpt-4o / gpt-4o-mini asked for JSON object boxes.

The model is prompted with DETECTION_PROMPT and answers with normalized boxes.
Boxes that fall outside the image are clipped; boxes left with no area are
dropped with a warning.
"""
from __future__ import annotations

import logging

import openai
from openai import AsyncOpenAI

from errors import ProviderAuthMissing, ProviderHTTPError, ProviderResponseError, ProviderTimeout
from geometry import BoundingBox
from providers.base import (
    DETECTION_PROMPT, DetectedObject, Detector, ImageInput,
    parse_json_response, split_image,
)

logger = logging.getLogger(__name__)


class OpenAIDetector(Detector):

    def __init__(self, api_key: str, model: str = "gpt-4o-mini"):
        self.model_id = model
        self._client = AsyncOpenAI(api_key=api_key)

    @property
    def name(self) -> str:
        return f"openai/{self.model_id}"

    async def detect(self, image: ImageInput, max_objects: int = 10) -> list[DetectedObject]:
        url, b64 = split_image(image)
        image_url = url or f"data:image/jpeg;base64,{b64}"

        try:
            response = await self._client.chat.completions.create(
                model=self.model_id,
                max_tokens=800,
                temperature=0,
                messages=[
                    {"role": "system", "content": DETECTION_PROMPT},
                    {
                        "role": "user",
                        "content": [
                            {
                                "type": "image_url",
                                "image_url": {"url": image_url, "detail": "high"},
                            },
                            {"type": "text", "text": f"List at most {max_objects} objects."},
                        ],
                    },
                ],
            )
        except openai.AuthenticationError as exc:
            raise ProviderAuthMissing(f"{self.name}: {exc}") from exc
        except openai.APITimeoutError as exc:
            raise ProviderTimeout(f"{self.name}: {exc}") from exc
        except openai.APIStatusError as exc:
            raise ProviderHTTPError(self.name, exc.status_code, str(exc)) from exc

        raw = response.choices[0].message.content
        try:
            data = parse_json_response(raw, self.name)
        except ValueError as exc:
            raise ProviderResponseError(str(exc)) from exc

        objects: list[DetectedObject] = []
        for item in data.get("objects") or []:
            if len(objects) >= max_objects:
                break
            obj = _to_object(item, len(objects))
            if obj is not None:
                objects.append(obj)

        logger.info("[%s] %d objects detected", self.name, len(objects))
        return objects


def _to_object(item: dict, index: int) -> DetectedObject | None:
    try:
        box = item.get("box") or {}
        x = min(max(float(box.get("x", 0)), 0.0), 1.0)
        y = min(max(float(box.get("y", 0)), 0.0), 1.0)
        width = min(float(box.get("width", 0)), 1.0 - x)
        height = min(float(box.get("height", 0)), 1.0 - y)
        label = str(item.get("label") or "").strip().lower()
        confidence = float(item.get("confidence", 0))
    except (TypeError, ValueError, AttributeError) as exc:
        logger.warning("[OpenAI] malformed object %d: %s", index, exc)
        return None

    if not label or width <= 0 or height <= 0:
        logger.warning("[OpenAI] object %d has no label or an empty box, skipped", index)
        return None

    return DetectedObject(
        id=f"obj_{index + 1}",
        label=label,
        confidence=confidence,
        bounding_box=BoundingBox(
            x=round(x, 4), y=round(y, 4), width=round(width, 4), height=round(height, 4),
        ),
    )
