"""Alpha-matte postprocessing and RGBA compositing."""

from __future__ import annotations

from enum import Enum
import logging

import cv2
import numpy as np

from .codec import RasterImage
from .errors import CompositeFailed, UnsupportedImageFormat

logger = logging.getLogger(__name__)


class PixelLayout(Enum):
    RGB = 3
    RGBA = 4

    @classmethod
    def from_channels(cls, channels: int) -> "PixelLayout":
        try:
            return cls(channels)
        except ValueError:
            raise UnsupportedImageFormat(
                f"Unsupported image with {channels} channel(s); expected RGB or RGBA"
            ) from None


def matte_to_bytes(matte: np.ndarray) -> np.ndarray:
    """Scale a [0, 1] float matte to byte range; out-of-range values are clipped."""
    return np.clip(matte.astype(np.float32) * 255.0, 0, 255).astype(np.uint8)


def resize_matte(matte: np.ndarray, width: int, height: int) -> np.ndarray:
    """Bilinearly resize a uint8 matte from network resolution to (width, height)."""
    if matte.shape == (height, width):
        return matte
    return cv2.resize(matte, (width, height), interpolation=cv2.INTER_LINEAR)


def composite(original: RasterImage, mask: np.ndarray) -> np.ndarray:
    """
    Merge the source colour channels with `mask` into a (height, width, 4) RGBA buffer.

    The source's own alpha, if any, is discarded rather than blended.
    """
    layout = PixelLayout.from_channels(original.channels)

    expected = (original.height, original.width)
    if mask.shape != expected or mask.dtype != np.uint8:
        logger.error(
            "composite: alpha mask %s (%s) does not match image %s; upstream resize is broken",
            mask.shape,
            mask.dtype,
            expected,
        )
        raise CompositeFailed(
            f"Alpha mask {mask.shape} ({mask.dtype}) does not match image size {expected}"
        )

    rgba = np.empty((original.height, original.width, 4), dtype=np.uint8)
    if layout is PixelLayout.RGB:
        rgba[..., :3] = original.pixels
    elif layout is PixelLayout.RGBA:
        rgba[..., :3] = original.pixels[..., :3]
    rgba[..., 3] = mask
    return rgba
