"""Error taxonomy for the background-removal service.

Every failure a request can hit is a subclass of `BackgroundRemovalError`.
Each carries a stable machine-readable `code` and the HTTP status the API
layer renders it with, so the pipeline never has to know about HTTP.
"""

from __future__ import annotations

from typing import Dict, Optional


class BackgroundRemovalError(Exception):
    """Base exception for all request-scoped failures."""

    code = "background_removal_error"
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    @property
    def headers(self) -> Optional[Dict[str, str]]:
        return None


class Unauthorized(BackgroundRemovalError):
    """Missing or incorrect bearer token."""

    code = "unauthorized"
    status_code = 401

    @property
    def headers(self) -> Optional[Dict[str, str]]:
        return {"WWW-Authenticate": "Bearer"}


class InvalidUpload(BackgroundRemovalError):
    """Upload rejected before decoding: missing file, wrong type or too large."""

    code = "invalid_upload"
    status_code = 400


class ModelUnavailable(BackgroundRemovalError):
    """The model runtime could not be provisioned. Retried on the next request."""

    code = "model_unavailable"
    status_code = 503


class DecodeFailed(BackgroundRemovalError):
    """The uploaded bytes are not a decodable image."""

    code = "decode_failed"
    status_code = 422


class UnsupportedImageFormat(BackgroundRemovalError):
    """Decoded image has a channel count other than 3 or 4."""

    code = "unsupported_image_format"
    status_code = 422


class InferenceFailed(BackgroundRemovalError):
    """The runtime raised or returned a malformed matte."""

    code = "inference_failed"
    status_code = 500


class CompositeFailed(BackgroundRemovalError):
    """Internal invariant violation while building or encoding the output."""

    code = "composite_failed"
    status_code = 500


class ProcessingTimeout(BackgroundRemovalError):
    code = "processing_timeout"
    status_code = 504


class DiagnosticsUnavailable(BackgroundRemovalError):
    code = "diagnostics_unavailable"
    status_code = 503
