"""
Image decoding and PNG encoding on top of Pillow.

Decoding keeps the source's own channel layout where it is meaningful:
palette and alternative colour-space images are expanded to RGB(A), while
grayscale stays single-channel so the compositor can refuse it explicitly.
"""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
from typing import Optional

import numpy as np
from PIL import Image

from .errors import CompositeFailed, DecodeFailed

# Modes whose pixels are colour, just not stored as plain RGB.
_TO_RGB_MODES = {"CMYK", "YCbCr", "LAB", "HSV", "RGBX"}
_TO_RGBA_MODES = {"RGBa", "PA"}
# Grayscale modes Pillow cannot hand to numpy as uint8 directly.
_TO_L_MODES = {"1", "I", "I;16", "I;16B", "I;16L", "I;16N", "F"}


@dataclass
class UploadedBytes:
    data: bytes
    content_type: Optional[str] = None
    filename: Optional[str] = None


@dataclass
class RasterImage:
    """Decoded image; `pixels` is a uint8 array of shape (height, width, channels)."""

    width: int
    height: int
    channels: int
    pixels: np.ndarray

    def __post_init__(self) -> None:
        if self.pixels.dtype != np.uint8:
            raise ValueError(f"pixels must be uint8, got {self.pixels.dtype}")
        if self.pixels.shape != (self.height, self.width, self.channels):
            raise ValueError(
                f"pixels shape {self.pixels.shape} does not match "
                f"{self.height}x{self.width}x{self.channels}"
            )

    @classmethod
    def from_pil(cls, image: Image.Image) -> "RasterImage":
        pixels = np.asarray(image, dtype=np.uint8)
        if pixels.ndim == 2:
            pixels = pixels[..., np.newaxis]
        height, width, channels = pixels.shape
        return cls(width=width, height=height, channels=channels, pixels=np.ascontiguousarray(pixels))


def _normalize_mode(image: Image.Image) -> Image.Image:
    mode = image.mode
    if mode == "P":
        return image.convert("RGBA" if "transparency" in image.info else "RGB")
    if mode in _TO_RGBA_MODES:
        return image.convert("RGBA")
    if mode in _TO_RGB_MODES:
        return image.convert("RGB")
    if mode in _TO_L_MODES:
        return image.convert("L")
    return image


def decode_image(data: bytes) -> RasterImage:
    """Decode raw upload bytes into a `RasterImage`."""
    try:
        with Image.open(BytesIO(data)) as image:
            image.load()
            return RasterImage.from_pil(_normalize_mode(image))
    except Exception as exc:  # noqa: BLE001
        raise DecodeFailed("Invalid image data") from exc


def encode_png(rgba: np.ndarray) -> bytes:
    """Encode a (height, width, 4) uint8 buffer as PNG bytes."""
    if rgba.ndim != 3 or rgba.shape[2] != 4 or rgba.dtype != np.uint8:
        raise CompositeFailed(f"Cannot encode buffer of shape {rgba.shape} ({rgba.dtype}) as RGBA")
    try:
        out = Image.fromarray(rgba)
        buf = BytesIO()
        out.save(buf, format="PNG")
    except Exception as exc:  # noqa: BLE001
        raise CompositeFailed("PNG encoding failed") from exc
    return buf.getvalue()
