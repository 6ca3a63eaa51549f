"""
Image-to-tensor preprocessing for MODNet.

The network takes a fixed 1024x1024 RGB input. The transform is resize ->
rescale -> normalize, configured by a frozen parameter set that mirrors the
Xenova/modnet image processor (bilinear resample, 1/255 rescale, mean 0.5,
std 1, no padding).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import numpy as np
from PIL import Image

from .codec import RasterImage

# Pillow resample code used by the processor config (2 = bilinear).
_RESAMPLE = {2: Image.BILINEAR}


@dataclass(frozen=True)
class PreprocessConfig:
    do_resize: bool
    size: Tuple[int, int]  # (width, height)
    resample: int
    do_rescale: bool
    rescale_factor: float
    do_normalize: bool
    image_mean: Tuple[float, float, float]
    image_std: Tuple[float, float, float]
    do_pad: bool


MODNET_PREPROCESS_CONFIG = PreprocessConfig(
    do_resize=True,
    size=(1024, 1024),
    resample=2,
    do_rescale=True,
    rescale_factor=1 / 255,
    do_normalize=True,
    image_mean=(0.5, 0.5, 0.5),
    image_std=(1.0, 1.0, 1.0),
    do_pad=False,
)


def preprocess(image: RasterImage, config: PreprocessConfig = MODNET_PREPROCESS_CONFIG) -> np.ndarray:
    """
    Convert a decoded image into a float32 NCHW tensor of shape (1, 3, H, W).

    A source alpha channel is dropped before anything else: the network
    expects exactly three input channels in RGB order.
    """
    if image.channels < 3:
        raise ValueError(f"expected an RGB or RGBA image, got {image.channels} channel(s)")
    if config.do_pad:
        raise ValueError("padding is not supported; the network input is a fixed-size resize")
    if config.do_resize and config.resample not in _RESAMPLE:
        raise ValueError(f"unsupported resample code {config.resample}")

    rgb = Image.fromarray(np.ascontiguousarray(image.pixels[..., :3]))
    if config.do_resize and rgb.size != config.size:
        rgb = rgb.resize(config.size, _RESAMPLE[config.resample])

    im_np = np.asarray(rgb).astype(np.float32)
    if config.do_rescale:
        im_np = im_np * np.float32(config.rescale_factor)
    if config.do_normalize:
        mean = np.asarray(config.image_mean, dtype=np.float32)
        std = np.asarray(config.image_std, dtype=np.float32)
        im_np = (im_np - mean) / std

    im_np = np.transpose(im_np, (2, 0, 1))  # HWC -> CHW
    return np.ascontiguousarray(im_np[np.newaxis, ...], dtype=np.float32)
