"""
Configuration loader for the background-removal service.

Environment variables (prefixed with ``REMBG_``) are centralized here to keep
the rest of the code focused on provisioning and inference, and to make
operational tuning clear.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, validator
from pydantic_settings import BaseSettings


def _default_cache_dir() -> Path:
    return Path.home() / ".cache" / "rembg-service"


class Settings(BaseSettings):
    # Cache + models
    cache_dir: Path = Field(default_factory=_default_cache_dir)
    default_model: str = "u2netp"
    allow_download: bool = True
    verify_checksums: bool = True

    # Downloads
    download_timeout_seconds: float = 30.0
    download_connect_timeout_seconds: float = 10.0
    download_deadline_seconds: Optional[float] = 1800.0
    download_chunk_size: int = 64 * 1024
    progress_interval_seconds: float = 0.25
    pypi_base_url: str = "https://pypi.org/pypi"

    # ONNX Runtime
    runtime_source: str = "cache"
    runtime_version: Optional[str] = None
    prefer_gpu_build_for_cpu: bool = True

    # Execution
    max_workers: int = 2
    log_level: str = "INFO"

    # Debugging
    debug: bool = False
    debug_output_dir: Path = Path("/tmp/rembg_debug")

    class Config:
        env_prefix = "REMBG_"
        env_file = ".env"
        case_sensitive = False

    @validator("runtime_source")
    def validate_runtime_source(cls, v: str) -> str:  # noqa: B902
        if v not in {"cache", "system"}:
            raise ValueError("REMBG_RUNTIME_SOURCE must be one of cache|system")
        return v

    @validator("default_model")
    def validate_default_model(cls, v: str) -> str:  # noqa: B902
        from .registry import supported_models

        v = v.strip().lower()
        if v not in supported_models():
            raise ValueError(f"REMBG_DEFAULT_MODEL must be one of {', '.join(supported_models())}")
        return v

    @validator("max_workers")
    def validate_max_workers(cls, v: int) -> int:  # noqa: B902
        return max(1, v)

    @property
    def models_dir(self) -> Path:
        return self.cache_dir / "models"

    @property
    def runtime_dir(self) -> Path:
        return self.cache_dir / "runtime"


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()


def download_timeout(settings: Optional[Settings] = None) -> tuple:
    """
    Translate settings into the ``(connect, read)`` timeout pair used by requests.

    The read timeout bounds every socket read, not the whole transfer; the
    overall bound is ``download_deadline_seconds``.
    """
    settings = settings or get_settings()
    return (settings.download_connect_timeout_seconds, settings.download_timeout_seconds)
