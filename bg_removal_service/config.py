"""
Configuration loader for the background-removal service.

Environment variables are centralized here to keep the rest of the code
focused on business logic and to make operational tuning clear. The model
source and its precision are constants, not settings: the service always
pulls the same MODNet export from the Hugging Face Hub.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MODEL_ID = "Xenova/modnet"
MODEL_DTYPE = "fp32"
# fp32 weights in the Xenova ONNX layout.
MODEL_FILENAME = "onnx/model.onnx"

DIAGNOSTICS_BACKENDS = {"local", "r2", "disabled"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # API
    api_key: Optional[str] = Field(None)
    host: str = Field("0.0.0.0")
    port: int = Field(3001)
    max_upload_bytes: int = Field(10 * 1024 * 1024)
    log_level: str = Field("INFO")

    # Processing
    request_timeout_seconds: float = Field(30.0)
    inference_workers: int = Field(1)
    preload_model: bool = Field(False)

    # Diagnostics sink
    diagnostics_backend: str = Field("local")
    diagnostics_dir: Path = Field(Path("./files"))

    # Cloudflare R2 / S3-compatible storage for the "r2" diagnostics backend
    r2_endpoint: Optional[str] = Field(None)
    r2_access_key_id: Optional[str] = Field(None)
    r2_secret_access_key: Optional[str] = Field(None)
    r2_bucket_name: Optional[str] = Field(None)
    r2_prefix: str = Field("diagnostics/")

    @field_validator("diagnostics_backend")
    @classmethod
    def validate_diagnostics_backend(cls, v: str) -> str:
        v = v.lower()
        if v not in DIAGNOSTICS_BACKENDS:
            raise ValueError("DIAGNOSTICS_BACKEND must be one of local|r2|disabled")
        return v

    @field_validator("max_upload_bytes", "inference_workers", "request_timeout_seconds")
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()
