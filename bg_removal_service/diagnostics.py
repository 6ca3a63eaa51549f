"""
Diagnostics sink for processed images.

Each completed request stores its PNG under a name derived from the
processing duration in milliseconds (`<ms>.png`). `GET /` turns those names
back into a list of durations in seconds. Backends:
 - local: a directory on disk, created out of band,
 - r2: a Cloudflare R2 / S3-compatible bucket,
 - disabled: nothing is stored.
"""

from __future__ import annotations

import logging
from pathlib import Path
import re
from typing import Iterable, List, Optional, Protocol

import boto3
from botocore.client import Config as BotoConfig

from . import config
from .errors import DiagnosticsUnavailable

logger = logging.getLogger(__name__)

_LEADING_DIGITS = re.compile(r"^(\d+)")


class DiagnosticsSink(Protocol):
    def record(self, duration_ms: int, png_bytes: bytes) -> None:
        ...

    def list_durations(self) -> List[float]:
        ...


def durations_from_names(names: Iterable[str]) -> List[float]:
    """Parse `<ms>...` names into ascending durations in seconds, skipping others."""
    durations = []
    for name in names:
        match = _LEADING_DIGITS.match(name)
        if match:
            durations.append(int(match.group(1)) / 1000)
    return sorted(durations)


class LocalDirectorySink:
    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def record(self, duration_ms: int, png_bytes: bytes) -> None:
        (self.directory / f"{duration_ms}.png").write_bytes(png_bytes)

    def list_durations(self) -> List[float]:
        if not self.directory.is_dir():
            raise DiagnosticsUnavailable(f"Diagnostics directory {self.directory} does not exist")
        return durations_from_names(p.name for p in self.directory.iterdir() if p.is_file())


class R2Sink:
    def __init__(self, client, bucket: str, prefix: str = ""):
        self._client = client
        self.bucket = bucket
        self.prefix = prefix

    def record(self, duration_ms: int, png_bytes: bytes) -> None:
        self._client.put_object(
            Bucket=self.bucket,
            Key=f"{self.prefix}{duration_ms}.png",
            Body=png_bytes,
            ContentType="image/png",
        )

    def list_durations(self) -> List[float]:
        names = []
        try:
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=self.prefix):
                for obj in page.get("Contents", []):
                    names.append(obj["Key"][len(self.prefix):])
        except Exception as exc:  # noqa: BLE001
            logger.exception("Failed to list diagnostics bucket: %s", exc)
            raise DiagnosticsUnavailable("Diagnostics bucket could not be listed") from exc
        return durations_from_names(names)


class DisabledSink:
    def record(self, duration_ms: int, png_bytes: bytes) -> None:
        return None

    def list_durations(self) -> List[float]:
        return []


def _get_s3_client(settings: config.Settings):
    required = [
        settings.r2_endpoint,
        settings.r2_access_key_id,
        settings.r2_secret_access_key,
        settings.r2_bucket_name,
    ]
    if any(v is None for v in required):
        raise RuntimeError("R2 configuration is incomplete; check env vars.")
    session = boto3.session.Session()
    return session.client(
        service_name="s3",
        aws_access_key_id=settings.r2_access_key_id,
        aws_secret_access_key=settings.r2_secret_access_key,
        endpoint_url=settings.r2_endpoint,
        config=BotoConfig(signature_version="s3v4"),
    )


def build_sink(settings: Optional[config.Settings] = None) -> DiagnosticsSink:
    settings = settings or config.get_settings()
    backend = settings.diagnostics_backend
    if backend == "local":
        return LocalDirectorySink(settings.diagnostics_dir)
    if backend == "r2":
        return R2Sink(_get_s3_client(settings), settings.r2_bucket_name, settings.r2_prefix)
    return DisabledSink()
