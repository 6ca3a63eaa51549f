"""
FastAPI layer exposing MODNet background removal.

Endpoints:
 - GET /            recorded processing durations (seconds)
 - GET /health
 - POST /bg-removal multipart `file` upload, bearer-token protected
"""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
import logging
import secrets
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from starlette.datastructures import UploadFile

from . import config
from .codec import UploadedBytes
from .diagnostics import DiagnosticsSink, build_sink
from .errors import BackgroundRemovalError, InvalidUpload, ModelUnavailable, Unauthorized
from .model_loader import ModelSession
from .pipeline import RemovalPipeline

logger = logging.getLogger(__name__)

UPLOAD_FIELD = "file"
# Room for boundaries and part headers on top of the file itself.
MULTIPART_OVERHEAD_BYTES = 64 * 1024


def _check_bearer(request: Request, api_key: Optional[str]) -> None:
    if not api_key:
        logger.warning("API_KEY is not configured; rejecting request")
        raise Unauthorized("Unauthorized")
    header = request.headers.get("Authorization", "")
    expected = f"Bearer {api_key}"
    if not secrets.compare_digest(header.encode("utf-8"), expected.encode("utf-8")):
        raise Unauthorized("Unauthorized")


def _check_content_length(request: Request, max_bytes: int) -> None:
    """Refuse bodies that are certainly too large before the multipart parser spools them."""
    raw = request.headers.get("content-length")
    if raw is None:
        return
    try:
        length = int(raw)
    except ValueError:
        raise InvalidUpload("Invalid Content-Length header") from None
    if length > max_bytes + MULTIPART_OVERHEAD_BYTES:
        raise InvalidUpload(f"Request body exceeds the {max_bytes} byte upload limit", status_code=413)


async def _read_upload(request: Request, max_bytes: int) -> UploadedBytes:
    content_type = request.headers.get("content-type", "")
    if not content_type.startswith("multipart/form-data"):
        raise InvalidUpload(f"Expected a multipart/form-data body with a '{UPLOAD_FIELD}' field")
    _check_content_length(request, max_bytes)

    form = await request.form()
    try:
        files = [f for f in form.getlist(UPLOAD_FIELD) if isinstance(f, UploadFile)]
        if not files:
            raise InvalidUpload(f"Missing '{UPLOAD_FIELD}' file field")
        if len(files) > 1:
            raise InvalidUpload(f"Expected exactly one '{UPLOAD_FIELD}' file, got {len(files)}")
        item = files[0]
        # One byte past the limit is enough to tell the upload is too large.
        data = await item.read(max_bytes + 1)
        return UploadedBytes(data=data, content_type=item.content_type, filename=item.filename)
    finally:
        await form.close()


async def _preload(session: ModelSession) -> None:
    try:
        await session.ensure_ready()
    except ModelUnavailable as exc:
        logger.warning("Model preload failed, will retry on first request: %s", exc)


def create_app(
    settings: Optional[config.Settings] = None,
    session: Optional[ModelSession] = None,
    sink: Optional[DiagnosticsSink] = None,
) -> FastAPI:
    settings = settings or config.get_settings()
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))

    session = session or ModelSession()
    sink = sink or build_sink(settings)
    executor = ThreadPoolExecutor(
        max_workers=settings.inference_workers, thread_name_prefix="bg-removal"
    )
    pipeline = RemovalPipeline(
        session=session,
        executor=executor,
        sink=sink,
        max_upload_bytes=settings.max_upload_bytes,
        timeout_seconds=settings.request_timeout_seconds,
        workers=settings.inference_workers,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        preload = None
        if settings.preload_model:
            logger.info("Preloading model runtime")
            preload = asyncio.ensure_future(_preload(session))
        yield
        if preload is not None and not preload.done():
            preload.cancel()
        executor.shutdown(wait=False, cancel_futures=True)

    app = FastAPI(title="MODNet Background Removal Service", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.session = session
    app.state.sink = sink
    app.state.pipeline = pipeline

    @app.exception_handler(BackgroundRemovalError)
    async def handle_background_removal_error(request: Request, exc: BackgroundRemovalError):
        if exc.status_code >= 500:
            logger.error("%s %s failed with %s: %s", request.method, request.url.path, exc.code, exc)
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": {"code": exc.code, "message": exc.message}},
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.exception("%s %s failed unexpectedly: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=500,
            content={"error": {"code": "internal_error", "message": "Internal server error"}},
        )

    @app.get("/")
    async def durations() -> List[float]:
        return await asyncio.to_thread(sink.list_durations)

    @app.get("/health")
    def health():
        return {"status": "ok", "model_ready": session.ready}

    @app.post("/bg-removal")
    async def bg_removal(request: Request):
        _check_bearer(request, settings.api_key)
        upload = await _read_upload(request, settings.max_upload_bytes)
        png_bytes = await pipeline.run(upload)
        return Response(content=png_bytes, media_type="image/png")

    return app


app = create_app()
