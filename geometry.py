"""
geometry.py — bounding box → pixel rectangle conversion.

Pure functions only: nothing here does I/O or logging-driven control flow,
so every function is safe to test in isolation.

Two cases matter when turning a detected object into a crop request:

  • The image reference is the original image.
      Box × image dimensions → absolute pixel rect (to_pixel_rect).

  • The image reference is *already* a crop of a larger original
    (e.g. an imgix URL carrying rect=x,y,w,h).
      The box is relative to that crop, so it has to be composed onto the
      existing rect (compose_nested). Running to_pixel_rect against the
      original dimensions here silently selects the wrong region.

Rounding is round-half-up everywhere. Results are clamped to the image (or
parent crop) so that rounding two edges up can never push a rect outside, but
a box reaching past the edge by more than half a pixel raises InvalidCrop.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from errors import InvalidCrop, InvalidDimensions

logger = logging.getLogger(__name__)

# Params that fight an explicit pixel rect: resize hints and device-pixel-ratio.
CONFLICTING_PARAMS: tuple[str, ...] = ("dpr", "fit", "h", "ar")


class CoordinateSpace(str, Enum):
    NORMALIZED  = "normalized"
    PIXELS      = "pixels"
    LEGACY_AUTO = "legacy_auto"     # guess from magnitude; compatibility only


# ── Value types ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class BoundingBox:
    x: float
    y: float
    width: float
    height: float

    @classmethod
    def from_dict(cls, data: dict) -> "BoundingBox":
        return cls(
            x=float(data.get("x") or 0),
            y=float(data.get("y") or 0),
            width=float(data.get("width") or 0),
            height=float(data.get("height") or 0),
        )

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}

    @property
    def is_normalized(self) -> bool:
        """True when the box satisfies 0 ≤ x, y and x+width ≤ 1, y+height ≤ 1."""
        return (
            self.x >= 0 and self.y >= 0
            and self.x + self.width <= 1
            and self.y + self.height <= 1
        )

    def rounded(self, precision: int = 4) -> tuple[float, float, float, float]:
        return (
            round(self.x, precision),
            round(self.y, precision),
            round(self.width, precision),
            round(self.height, precision),
        )


@dataclass(frozen=True)
class PixelRect:
    x: int
    y: int
    width: int
    height: int

    def __post_init__(self) -> None:
        if self.x < 0 or self.y < 0:
            raise InvalidCrop(f"negative origin in rect {self.to_param()}")
        if self.width <= 0 or self.height <= 0:
            raise InvalidCrop(f"degenerate rect {self.to_param()}")

    def to_param(self) -> str:
        return f"{self.x},{self.y},{self.width},{self.height}"

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}

    @classmethod
    def parse(cls, value: str) -> "PixelRect":
        """Parse an 'x,y,w,h' rect parameter. Raises InvalidCrop on malformed input."""
        try:
            x, y, w, h = (int(float(p)) for p in value.split(","))
        except ValueError as exc:
            raise InvalidCrop(f"malformed rect parameter {value!r}") from exc
        return cls(x, y, w, h)


@dataclass(frozen=True)
class ImageDimensions:
    width: int
    height: int

    @classmethod
    def from_dict(cls, data: dict) -> "ImageDimensions":
        return cls(width=int(data.get("width") or 0), height=int(data.get("height") or 0))


@dataclass(frozen=True)
class CropDescriptor:
    """Provider-ready crop: absolute rect, capped output width, params to drop."""
    rect: PixelRect
    output_width: int
    strip: tuple[str, ...] = CONFLICTING_PARAMS

    def as_params(self) -> dict[str, str]:
        return {"rect": self.rect.to_param(), "w": str(self.output_width)}


# ── Transforms ────────────────────────────────────────────────────────────────

# Detector boxes arrive rounded to 4 decimals; anything past this plus half a
# pixel is a coordinate-space mismatch, not rounding.
_EDGE_SLACK = 1e-4


def _round(value: float) -> int:
    return int(math.floor(value + 0.5))


def _project(start: float, length: float, origin: int, extent: int) -> tuple[int, int]:
    """Map a normalized [start, start+length) span onto `extent` pixels at `origin`."""
    slack = _EDGE_SLACK + 0.5 / extent
    if start < -slack or start + length > 1 + slack:
        raise InvalidCrop(
            f"span start={start} length={length} falls outside [0, 1]; "
            "box is not in normalized coordinates"
        )
    offset = min(max(_round(start * extent), 0), extent - 1)
    size = min(_round(length * extent), extent - offset)
    if size <= 0:
        raise InvalidCrop(
            f"span start={start} length={length} rounds to zero over {extent}px"
        )
    return origin + offset, size


def to_pixel_rect(box: BoundingBox, dims: ImageDimensions) -> PixelRect:
    if dims.width <= 0 or dims.height <= 0:
        raise InvalidDimensions(f"image dimensions must be positive, got {dims.width}x{dims.height}")
    x, width = _project(box.x, box.width, 0, dims.width)
    y, height = _project(box.y, box.height, 0, dims.height)
    return PixelRect(x, y, width, height)


def compose_nested(existing: PixelRect, box: BoundingBox) -> PixelRect:
    """Treat `box` as relative to `existing` and return the absolute rect."""
    if existing is None:
        raise ValueError("compose_nested() needs the rect the image reference already encodes")
    x, width = _project(box.x, box.width, existing.x, existing.width)
    y, height = _project(box.y, box.height, existing.y, existing.height)
    return PixelRect(x, y, width, height)


def serialize_crop_param(rect: PixelRect, max_output_width: int) -> CropDescriptor:
    if max_output_width <= 0:
        raise InvalidDimensions(f"max_output_width must be positive, got {max_output_width}")
    return CropDescriptor(rect=rect, output_width=min(rect.width, max_output_width))


def looks_normalized(box: BoundingBox) -> bool:
    """
    Magnitude heuristic: every component ≤ 1 means "normalized".

    Ambiguous by construction (a 1px crop on a tiny image looks normalized),
    so it only runs when the caller explicitly asks for CoordinateSpace.LEGACY_AUTO.
    """
    return box.x <= 1 and box.y <= 1 and box.width <= 1 and box.height <= 1


@dataclass(frozen=True)
class CropChain:
    """A box plus the crop (if any) that the image reference already represents."""
    box: BoundingBox
    existing: Optional[PixelRect] = None

    def resolve(self, dims: Optional[ImageDimensions] = None) -> PixelRect:
        if self.existing is not None:
            return compose_nested(self.existing, self.box)
        if dims is None:
            raise InvalidDimensions("no existing crop and no image dimensions to resolve box against")
        return to_pixel_rect(self.box, dims)


def box_to_rect(
    box: BoundingBox,
    space: CoordinateSpace = CoordinateSpace.NORMALIZED,
    dims: Optional[ImageDimensions] = None,
    existing: Optional[PixelRect] = None,
) -> PixelRect:
    """Resolve `box` in the caller-stated coordinate space to an absolute rect."""
    if space == CoordinateSpace.LEGACY_AUTO:
        space = CoordinateSpace.NORMALIZED if looks_normalized(box) else CoordinateSpace.PIXELS
        logger.warning("Guessed coordinate space %s for box %s", space.value, box.to_dict())

    if space == CoordinateSpace.PIXELS:
        ox, oy = (existing.x, existing.y) if existing is not None else (0, 0)
        return PixelRect(
            ox + _round(box.x), oy + _round(box.y), _round(box.width), _round(box.height)
        )

    return CropChain(box=box, existing=existing).resolve(dims)
