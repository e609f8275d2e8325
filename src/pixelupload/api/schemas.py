"""Pydantic request/response schemas for the pixelupload API."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from pixelupload.pipeline.errors import ErrorInfo
    from pixelupload.pipeline.models import PipelineState, SourceFile


class ErrorDetail(BaseModel):
    """A pipeline failure, with the values needed to explain it."""

    category: str = Field(description="'validation', 'transform' or 'upload'")
    kind: str = Field(description="e.g. 'size_exceeded', 'decode_failed', 'network_failure'")
    message: str
    retryable: bool
    details: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_info(cls, info: ErrorInfo) -> ErrorDetail:
        return cls(
            category=info.category,
            kind=info.kind,
            message=info.message,
            retryable=info.retryable,
            details=info.details,
        )


class RetainedFile(BaseModel):
    """A file kept for retry. The bytes stay on the server."""

    filename: str
    content_type: str
    byte_size: int

    @classmethod
    def from_source(cls, source: SourceFile) -> RetainedFile:
        return cls(filename=source.filename, content_type=source.content_type, byte_size=source.byte_length)


class PipelineStateResponse(BaseModel):
    """Snapshot of one session's pipeline."""

    phase: str = Field(description="idle, validating, transforming, cropping, uploading, succeeded, failed, cancelled")
    progress_percent: int = Field(ge=0, le=100)
    last_error: ErrorDetail | None = None
    compressed_byte_size: int | None = None
    retained_file: RetainedFile | None = None
    public_url: str | None = None
    source_name: str | None = None
    generation: int

    @classmethod
    def from_state(cls, state: PipelineState) -> PipelineStateResponse:
        return cls(
            phase=state.phase,
            progress_percent=state.progress_percent,
            last_error=ErrorDetail.from_info(state.last_error) if state.last_error else None,
            compressed_byte_size=state.compressed_byte_size,
            retained_file=RetainedFile.from_source(state.retained_source_file) if state.retained_source_file else None,
            public_url=state.public_url,
            source_name=state.source_name,
            generation=state.generation,
        )


class CreateSessionRequest(BaseModel):
    """Per-session overrides of the server defaults."""

    destination_prefix: str | None = Field(default=None, description="Storage folder, e.g. 'posts' or 'avatars'")
    crop_aspect_ratio: float | None = Field(default=None, gt=0, description="Width / height; enables the crop step")
    max_size_mb: float | None = Field(default=None, gt=0)
    accepted_mime_types: str | None = Field(default=None, description="Comma-separated MIME types, 'image/*' allowed")
    allow_retry: bool | None = None


class SessionResponse(BaseModel):
    id: str
    state: PipelineStateResponse


class PasteRequest(BaseModel):
    """An image pasted from the clipboard."""

    data_url: str = Field(description="data:<mime>;base64,<payload>")
    filename: str | None = None


class CropRequest(BaseModel):
    """Crop rectangle in source pixels, relative to the unrotated image."""

    x: float
    y: float
    width: float = Field(gt=0)
    height: float = Field(gt=0)
    rotation: float = Field(default=0, ge=0, le=360, description="Clockwise degrees")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    sessions: int
    active_transforms: int
    queue_depth: int
    storage_bucket: str


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
