"""Environment-based configuration for pixelupload."""

from __future__ import annotations

from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from pixelupload.pipeline.models import UploadConfiguration

_MB = 1024 * 1024


def parse_accept(accept: str) -> frozenset[str]:
    """Split an HTML-style ``accept`` list (``image/png,image/jpeg``)."""
    return frozenset(part.strip().lower() for part in accept.split(",") if part.strip())


class Settings(BaseSettings):
    """Application settings loaded from PIXELUPLOAD_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PIXELUPLOAD_",
        case_sensitive=False,
    )

    # Authentication (None = disabled)
    api_key: str | None = None

    # Storage
    supabase_url: str | None = None
    supabase_key: str | None = None
    storage_bucket: str = "blog-images"
    storage_cache_control: str = "3600"
    storage_timeout: float = Field(default=30.0, gt=0)

    # Upload constraints
    max_size_mb: float = Field(default=5, gt=0)
    max_width: int = Field(default=2048, ge=1)
    max_height: int = Field(default=2048, ge=1)
    compression_quality: float = Field(default=0.85, gt=0, le=1)
    accepted_mime_types: str = "image/jpeg,image/png,image/webp,image/gif"
    crop_aspect_ratio: float | None = Field(default=None, gt=0)
    destination_prefix: str = "posts"
    allow_retry: bool = True

    # Synthetic upload progress
    progress_step: int = Field(default=10, ge=1, le=90)
    progress_interval: float = Field(default=0.2, gt=0)

    # Concurrency
    max_concurrent_transforms: int = Field(default=2, ge=1)
    max_sessions: int = Field(default=100, ge=1)

    def upload_configuration(self, **overrides: Any) -> UploadConfiguration:
        """Build the immutable per-pipeline configuration.

        ``overrides`` may replace ``max_size_mb``, ``accepted_mime_types``
        (comma separated), ``crop_aspect_ratio``, ``destination_prefix`` and
        ``allow_retry``; ``None`` values are ignored.

        Raises:
            ValueError: If the resulting configuration is invalid.
        """
        values: dict[str, Any] = {
            "max_size_mb": self.max_size_mb,
            "accepted_mime_types": self.accepted_mime_types,
            "crop_aspect_ratio": self.crop_aspect_ratio,
            "destination_prefix": self.destination_prefix,
            "allow_retry": self.allow_retry,
        }
        unknown = set(overrides) - set(values)
        if unknown:
            raise ValueError(f"Unknown configuration override(s): {', '.join(sorted(unknown))}")
        values.update({key: value for key, value in overrides.items() if value is not None})

        return UploadConfiguration(
            max_size_bytes=int(values["max_size_mb"] * _MB),
            max_width=self.max_width,
            max_height=self.max_height,
            compression_quality=self.compression_quality,
            accepted_mime_types=parse_accept(values["accepted_mime_types"]),
            crop_aspect_ratio=values["crop_aspect_ratio"],
            destination_prefix=values["destination_prefix"],
            allow_retry=values["allow_retry"],
        )


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
