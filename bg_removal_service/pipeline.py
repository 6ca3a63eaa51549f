"""
High-level background-removal pipeline.

`RemovalPipeline.run` is the entry point used by both the HTTP API and the
local test script. It keeps orchestration simple:
upload bytes -> validation -> model session -> decode -> preprocessing ->
MODNet -> matte resize + compositing -> RGBA PNG bytes out.

The CPU-bound stages run on a bounded executor so one large image does not
stall the event loop, and they are subject to a per-request timeout.
"""

from __future__ import annotations

import asyncio
from concurrent.futures import Executor, Future
import logging
import time
from typing import Optional

import numpy as np

from .codec import RasterImage, UploadedBytes, decode_image, encode_png
from .diagnostics import DiagnosticsSink, DisabledSink
from .errors import InferenceFailed, InvalidUpload, ProcessingTimeout
from .model_loader import ModelRuntime, ModelSession
from .postprocessing import PixelLayout, composite, matte_to_bytes, resize_matte

logger = logging.getLogger(__name__)

DEFAULT_MAX_UPLOAD_BYTES = 10 * 1024 * 1024


def validate_upload(upload: UploadedBytes, max_bytes: int = DEFAULT_MAX_UPLOAD_BYTES) -> None:
    """Reject non-image or oversized uploads before any decoding happens."""
    content_type = (upload.content_type or "").lower()
    if not content_type.startswith("image/"):
        raise InvalidUpload("Only image files are allowed", status_code=415)
    if len(upload.data) > max_bytes:
        raise InvalidUpload(f"File exceeds the {max_bytes} byte limit", status_code=413)
    if not upload.data:
        raise InvalidUpload("Uploaded file is empty")


def run_inference(runtime: ModelRuntime, tensor: np.ndarray) -> np.ndarray:
    """Run the model once and return the batch-0 matte as a uint8 (H, W) array."""
    try:
        output = runtime.infer(tensor)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Model inference failed: %s", exc)
        raise InferenceFailed("Model inference failed") from exc

    if not isinstance(output, np.ndarray) or output.ndim < 3 or output.shape[0] < 1:
        raise InferenceFailed(f"Unexpected model output: {getattr(output, 'shape', type(output))}")
    matte = output[0]
    if matte.ndim == 3 and matte.shape[0] == 1:
        matte = matte[0]
    if matte.ndim != 2 or matte.size == 0:
        raise InferenceFailed(f"Expected a single-channel matte, got shape {output.shape}")
    if not np.issubdtype(matte.dtype, np.number):
        raise InferenceFailed(f"Expected a numeric matte, got dtype {matte.dtype}")
    if not np.all(np.isfinite(matte)):
        raise InferenceFailed("Model returned non-finite matte values")
    return matte_to_bytes(matte)


def process_raster(runtime: ModelRuntime, image: RasterImage) -> np.ndarray:
    """Preprocess, infer and composite one decoded image. Blocking; run off the event loop."""
    PixelLayout.from_channels(image.channels)

    try:
        tensor = runtime.preprocess(image)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Preprocessing failed: %s", exc)
        raise InferenceFailed("Could not build the model input tensor") from exc

    matte = run_inference(runtime, tensor)
    mask = resize_matte(matte, image.width, image.height)
    return composite(image, mask)


class RemovalPipeline:
    def __init__(
        self,
        session: ModelSession,
        executor: Executor,
        sink: Optional[DiagnosticsSink] = None,
        max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
        timeout_seconds: Optional[float] = 30.0,
        workers: int = 1,
    ):
        self.session = session
        self.executor = executor
        self.sink = sink or DisabledSink()
        self.max_upload_bytes = max_upload_bytes
        self.timeout_seconds = timeout_seconds
        # One slot per executor worker; held until the worker is actually free again.
        self._slots = asyncio.Semaphore(workers)

    async def run(self, upload: UploadedBytes) -> bytes:
        """
        Full pipeline from an upload to RGBA PNG bytes.

        Requests queue for a free worker first, so the timeout and the
        recorded duration cover only the request's own processing.

        Raises:
            BackgroundRemovalError: the subclass matching the failing stage.
        """
        validate_upload(upload, self.max_upload_bytes)
        runtime = await self.session.ensure_ready()

        image = await asyncio.to_thread(decode_image, upload.data)

        await self._slots.acquire()
        start = time.perf_counter()
        future = self._submit(process_raster, runtime, image)
        try:
            rgba = await asyncio.wait_for(asyncio.wrap_future(future), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            logger.warning(
                "Processing %dx%d image exceeded %.1fs; aborting request",
                image.width,
                image.height,
                self.timeout_seconds,
            )
            raise ProcessingTimeout(
                f"Processing exceeded {self.timeout_seconds:g} seconds"
            ) from exc
        duration_ms = int(round((time.perf_counter() - start) * 1000))
        logger.info("Processed %dx%d image in %d ms", image.width, image.height, duration_ms)

        png_bytes = await asyncio.to_thread(encode_png, rgba)
        await self._record(duration_ms, png_bytes)
        return png_bytes

    def _submit(self, fn, *args) -> Future:
        """Submit to the executor; the slot is released when the worker finishes, even after a timeout."""
        loop = asyncio.get_running_loop()

        def release(_: Future) -> None:
            if not loop.is_closed():
                loop.call_soon_threadsafe(self._slots.release)

        try:
            future = self.executor.submit(fn, *args)
        except BaseException:
            self._slots.release()
            raise
        future.add_done_callback(release)
        return future

    async def _record(self, duration_ms: int, png_bytes: bytes) -> None:
        try:
            await asyncio.to_thread(self.sink.record, duration_ms, png_bytes)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to record diagnostics for %d ms run: %s", duration_ms, exc)
