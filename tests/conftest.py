from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import io
import threading
import time
from typing import Callable, List, Optional, Tuple

import numpy as np
from PIL import Image
import pytest

from bg_removal_service import config
from bg_removal_service.codec import RasterImage
from bg_removal_service.preprocessing import MODNET_PREPROCESS_CONFIG, preprocess


class FakeRuntime:
    """Stands in for the ONNX runtime: real preprocessing, deterministic matte."""

    def __init__(
        self,
        value: float = 1.0,
        matte_size: Optional[Tuple[int, int]] = None,
        delay: float = 0.0,
        error: Optional[Exception] = None,
        output: Optional[np.ndarray] = None,
    ):
        self.value = value
        self.matte_size = matte_size  # (width, height); defaults to the network size
        self.delay = delay
        self.error = error
        self.output = output
        self.preprocess_calls = 0
        self.infer_calls = 0

    def preprocess(self, image: RasterImage) -> np.ndarray:
        self.preprocess_calls += 1
        return preprocess(image, MODNET_PREPROCESS_CONFIG)

    def infer(self, tensor: np.ndarray) -> np.ndarray:
        self.infer_calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.output is not None:
            return self.output
        width, height = self.matte_size or (tensor.shape[3], tensor.shape[2])
        return np.full((1, 1, height, width), self.value, dtype=np.float32)


class CountingFactory:
    """Runtime factory that counts constructions and can fail the first N calls."""

    def __init__(self, runtime, failures: int = 0, delay: float = 0.0):
        self.runtime = runtime
        self.failures = failures
        self.delay = delay
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            self.calls += 1
            call = self.calls
        if self.delay:
            time.sleep(self.delay)
        if call <= self.failures:
            raise RuntimeError("hub unreachable")
        return self.runtime


class RecordingSink:
    def __init__(self, error: Optional[Exception] = None):
        self.records: List[Tuple[int, bytes]] = []
        self.error = error

    def record(self, duration_ms: int, png_bytes: bytes) -> None:
        if self.error is not None:
            raise self.error
        self.records.append((duration_ms, png_bytes))

    def list_durations(self) -> List[float]:
        return sorted(ms / 1000 for ms, _ in self.records)


def encode(image: Image.Image, fmt: str = "PNG") -> bytes:
    buf = io.BytesIO()
    image.save(buf, format=fmt)
    return buf.getvalue()


def decode_rgba(data: bytes) -> np.ndarray:
    with Image.open(io.BytesIO(data)) as image:
        assert image.mode == "RGBA"
        return np.asarray(image)


@pytest.fixture
def executor():
    pool = ThreadPoolExecutor(max_workers=1)
    yield pool
    pool.shutdown(wait=True)


@pytest.fixture
def make_settings(tmp_path) -> Callable[..., config.Settings]:
    def _make(**overrides) -> config.Settings:
        values = {
            "api_key": "secret",
            "diagnostics_backend": "local",
            "diagnostics_dir": tmp_path,
        }
        values.update(overrides)
        return config.Settings(_env_file=None, **values)

    return _make


@pytest.fixture
def red_rgb_png() -> bytes:
    return encode(Image.new("RGB", (4, 4), (255, 0, 0)))
