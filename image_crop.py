"""
image_crop.py — image-serving crop provider contract + imgix implementation.

Given (image_ref, PixelRect, max_output_width) a crop provider returns a new
image reference that encodes that crop. For imgix this is pure URL rewriting:

    https://x.imgix.net/a.jpg?w=1000&dpr=2&fit=crop
  → https://x.imgix.net/a.jpg?rect=2642,4376,550,908&w=500

Any resize / device-pixel-ratio params are removed because they are
meaningless once an explicit pixel rect is set.
"""
from __future__ import annotations

import ipaddress
import logging
from abc import ABC, abstractmethod
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from geometry import PixelRect, serialize_crop_param

logger = logging.getLogger(__name__)

_LOCAL_HOSTS = {"localhost", "localhost.localdomain", "0.0.0.0"}


def is_network_reachable(image_ref: object) -> bool:
    """
    True when an external provider could fetch `image_ref` itself.

    In-memory blobs, data:/blob: URIs, localhost and private-network
    addresses are all invisible to a hosted search API.
    """
    if not isinstance(image_ref, str):
        return False
    parts = urlsplit(image_ref.strip())
    if parts.scheme not in ("http", "https"):
        return False
    host = (parts.hostname or "").lower()
    if not host or host in _LOCAL_HOSTS or host.endswith(".localhost"):
        return False
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return True     # a DNS name
    return not (ip.is_loopback or ip.is_private or ip.is_link_local or ip.is_unspecified)


class ImageCropProvider(ABC):
    """Anything that can turn (image_ref, rect) into a cropped image reference."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    def supports(self, image_ref: str) -> bool:
        ...

    @abstractmethod
    def existing_rect(self, image_ref: str) -> Optional[PixelRect]:
        """The crop `image_ref` already encodes, or None for an uncropped image."""
        ...

    @abstractmethod
    def crop(self, image_ref: str, rect: PixelRect, max_output_width: int) -> str:
        ...


class ImgixCropProvider(ImageCropProvider):

    def __init__(self, extra_domains: tuple[str, ...] = ()) -> None:
        self._domains = ("imgix.net",) + tuple(d.lower() for d in extra_domains)

    @property
    def name(self) -> str:
        return "imgix"

    def supports(self, image_ref: str) -> bool:
        host = (urlsplit(image_ref).hostname or "").lower()
        return any(host == d or host.endswith("." + d) for d in self._domains)

    def existing_rect(self, image_ref: str) -> Optional[PixelRect]:
        params = dict(parse_qsl(urlsplit(image_ref).query, keep_blank_values=True))
        raw = params.get("rect")
        if not raw:
            return None
        return PixelRect.parse(raw)

    def crop(self, image_ref: str, rect: PixelRect, max_output_width: int) -> str:
        descriptor = serialize_crop_param(rect, max_output_width)
        parts = urlsplit(image_ref)

        kept = [
            (k, v)
            for k, v in parse_qsl(parts.query, keep_blank_values=True)
            if k not in descriptor.strip and k not in ("rect", "w")
        ]
        kept.extend(descriptor.as_params().items())

        cropped = urlunsplit(parts._replace(query=urlencode(kept, safe=",")))
        logger.debug("[imgix] %s → rect=%s w=%d", image_ref[:80], rect.to_param(), descriptor.output_width)
        return cropped
