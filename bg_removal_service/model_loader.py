"""
Model runtime and lazy provisioning for MODNet.

The loader:
 - resolves the ONNX export of `Xenova/modnet` from the Hugging Face Hub,
 - builds an ONNX Runtime session on the best available provider,
 - pairs it with the fixed preprocessing configuration,
 - keeps a single shared runtime per `ModelSession`, constructed on first use.

`ModelSession.ensure_ready()` is single-flight: every caller that arrives
while construction is in progress awaits the same future, so the runtime is
never built twice concurrently. A failed construction is not cached; the
next request tries again.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional, Protocol

import numpy as np
import onnxruntime as ort
from huggingface_hub import hf_hub_download

from . import config
from .codec import RasterImage
from .errors import ModelUnavailable
from .preprocessing import MODNET_PREPROCESS_CONFIG, PreprocessConfig, preprocess

logger = logging.getLogger(__name__)

# Prefer CUDA -> Apple CoreML -> CPU to support both GPU servers and local macOS dev.
_PROVIDER_PREFERENCE = (
    "CUDAExecutionProvider",
    "CoreMLExecutionProvider",
    "CPUExecutionProvider",
)


class ModelRuntime(Protocol):
    """Narrow interface the pipeline needs from a matting model."""

    def preprocess(self, image: RasterImage) -> np.ndarray:
        ...

    def infer(self, tensor: np.ndarray) -> np.ndarray:
        ...


def select_providers(available: Optional[List[str]] = None) -> List[str]:
    """Return the preferred execution providers present in this ONNX Runtime build."""
    available = available if available is not None else ort.get_available_providers()
    chosen = [p for p in _PROVIDER_PREFERENCE if p in available]
    return chosen or ["CPUExecutionProvider"]


class OnnxModelRuntime:
    """MODNet exported to ONNX: one `input` tensor in, one matte `output` out."""

    def __init__(self, session: ort.InferenceSession, preprocess_config: PreprocessConfig):
        self._session = session
        self._input_name: str = session.get_inputs()[0].name
        self.preprocess_config = preprocess_config

    def preprocess(self, image: RasterImage) -> np.ndarray:
        return preprocess(image, self.preprocess_config)

    def infer(self, tensor: np.ndarray) -> np.ndarray:
        outputs = self._session.run(None, {self._input_name: tensor})
        return outputs[0]


def load_modnet_runtime() -> OnnxModelRuntime:
    """
    Download (or reuse the hub cache for) the fp32 MODNet export and build a runtime.

    Weights are always resolved by repo id; no local model directory is consulted.
    """
    filename = config.MODEL_FILENAME
    logger.info("Fetching %s/%s (%s)", config.MODEL_ID, filename, config.MODEL_DTYPE)
    model_path = hf_hub_download(repo_id=config.MODEL_ID, filename=filename)

    providers = select_providers()
    session = ort.InferenceSession(model_path, providers=providers)
    logger.info("MODNet session created with providers: %s", session.get_providers())
    return OnnxModelRuntime(session, MODNET_PREPROCESS_CONFIG)


class ModelSession:
    """Process-wide holder for the lazily constructed model runtime."""

    def __init__(self, factory: Callable[[], ModelRuntime] = load_modnet_runtime):
        self._factory = factory
        self._runtime: Optional[ModelRuntime] = None
        self._inflight: Optional[asyncio.Future] = None

    @property
    def ready(self) -> bool:
        return self._runtime is not None

    @property
    def runtime(self) -> Optional[ModelRuntime]:
        return self._runtime

    async def ensure_ready(self) -> ModelRuntime:
        """Return the shared runtime, constructing it on first use."""
        if self._runtime is not None:
            return self._runtime
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.ensure_future(self._provision())
        # Shielded so a cancelled caller does not abort construction for the others.
        return await asyncio.shield(self._inflight)

    async def _provision(self) -> ModelRuntime:
        logger.info("Provisioning model runtime")
        try:
            runtime = await asyncio.to_thread(self._factory)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Model provisioning failed: %s", exc)
            if isinstance(exc, ModelUnavailable):
                raise
            raise ModelUnavailable("Model runtime could not be initialized") from exc
        else:
            self._runtime = runtime
            logger.info("Model runtime ready")
            return runtime
        finally:
            # Cleared on success, failure and cancellation alike so the next call can retry.
            self._inflight = None
