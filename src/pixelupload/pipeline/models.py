"""Value types shared by every pipeline stage."""

from __future__ import annotations

import base64
import binascii
import mimetypes
import re
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pixelupload.pipeline.errors import ErrorInfo

_DATA_URL_RE = re.compile(
    r"^data:(?P<type>[\w.+-]+/[\w.+-]+)?(?P<params>(;[^;,]*)*?);base64,(?P<payload>.*)$",
    re.DOTALL,
)

WILDCARD_IMAGE_TYPE = "image/*"

# Image classes that are uploaded byte-for-byte, never re-encoded.
PASSTHROUGH_TYPES = frozenset({"image/gif", "image/svg+xml"})


def normalize_content_type(content_type: str | None) -> str:
    """Lowercase a declared MIME type and drop any parameters."""
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


class ImageFormat(StrEnum):
    """Encoding of a blob handed to storage."""

    PNG = "png"
    JPEG = "jpeg"
    ORIGINAL = "original"


class PipelinePhase(StrEnum):
    IDLE = "idle"
    VALIDATING = "validating"
    TRANSFORMING = "transforming"
    CROPPING = "cropping"
    UPLOADING = "uploading"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_PHASES = frozenset(
    {PipelinePhase.VALIDATING, PipelinePhase.TRANSFORMING, PipelinePhase.CROPPING, PipelinePhase.UPLOADING}
)
SETTLED_PHASES = frozenset(
    {
        PipelinePhase.IDLE,
        PipelinePhase.CROPPING,
        PipelinePhase.SUCCEEDED,
        PipelinePhase.FAILED,
        PipelinePhase.CANCELLED,
    }
)


@dataclass(frozen=True)
class UploadConfiguration:
    """Per-pipeline upload constraints. Immutable once the pipeline exists."""

    max_size_bytes: int
    max_width: int
    max_height: int
    compression_quality: float
    accepted_mime_types: frozenset[str]
    crop_aspect_ratio: float | None = None
    destination_prefix: str = "posts"
    allow_retry: bool = True

    def __post_init__(self) -> None:
        if self.max_size_bytes <= 0:
            raise ValueError(f"max_size_bytes must be positive, got {self.max_size_bytes}")
        if not 0 < self.compression_quality <= 1:
            raise ValueError(f"compression_quality must be in (0, 1], got {self.compression_quality}")
        if self.max_width <= 0 or self.max_height <= 0:
            raise ValueError(f"max dimensions must be positive, got {self.max_width}x{self.max_height}")
        if self.crop_aspect_ratio is not None and self.crop_aspect_ratio <= 0:
            raise ValueError(f"crop_aspect_ratio must be positive, got {self.crop_aspect_ratio}")
        object.__setattr__(
            self,
            "accepted_mime_types",
            frozenset(normalize_content_type(t) for t in self.accepted_mime_types if t.strip()),
        )

    @property
    def crop_enabled(self) -> bool:
        return self.crop_aspect_ratio is not None


@dataclass(frozen=True)
class SourceFile:
    """A user-selected (or pasted) file, exactly as received."""

    data: bytes = field(repr=False)
    content_type: str
    filename: str = ""
    # Size as received, for files rejected before their bytes were kept.
    declared_size: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "content_type", normalize_content_type(self.content_type))
        if self.declared_size is not None and self.declared_size < len(self.data):
            raise ValueError(f"declared_size {self.declared_size} is smaller than the data ({len(self.data)} bytes)")

    @property
    def byte_length(self) -> int:
        if self.declared_size is not None:
            return self.declared_size
        return len(self.data)

    @property
    def extension(self) -> str:
        return Path(self.filename).suffix.lstrip(".").lower()

    @classmethod
    def from_path(cls, path: str | Path, content_type: str | None = None) -> SourceFile:
        path = Path(path)
        if content_type is None:
            content_type, _ = mimetypes.guess_type(path.name)
        return cls(data=path.read_bytes(), content_type=content_type or "", filename=path.name)

    @classmethod
    def from_data_url(cls, data_url: str, filename: str | None = None) -> SourceFile:
        """Build a source file from a pasted ``data:<type>;base64,...`` URL.

        Raises:
            ValueError: If the URL is not a base64 data URL or the payload is corrupt.
        """
        match = _DATA_URL_RE.match(data_url.strip())
        if match is None:
            raise ValueError("Expected a base64 data URL")
        content_type = normalize_content_type(match.group("type"))
        try:
            data = base64.b64decode("".join(match.group("payload").split()), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError(f"Invalid base64 payload: {exc}") from None
        if filename is None:
            subtype = content_type.partition("/")[2] or "bin"
            filename = f"pasted-image.{extension_for_subtype(subtype)}"
        return cls(data=data, content_type=content_type, filename=filename)


def extension_for_subtype(subtype: str) -> str:
    if subtype == "svg+xml":
        return "svg"
    return subtype


@dataclass(frozen=True)
class TransformResult:
    """Blob produced by the transform (or crop) stage."""

    data: bytes = field(repr=False)
    content_type: str
    width: int | None
    height: int | None
    format: ImageFormat
    compressed: bool = False

    @property
    def byte_length(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class TrackedReference:
    """A handle to in-memory bytes that must be explicitly released."""

    handle: str
    buffer: memoryview = field(repr=False, compare=False)

    @property
    def byte_length(self) -> int:
        return self.buffer.nbytes


@dataclass(frozen=True)
class UploadSucceeded:
    public_url: str
    byte_size: int
    stored_path: str


@dataclass(frozen=True)
class UploadFailed:
    error: ErrorInfo

    @property
    def retryable(self) -> bool:
        return self.error.retryable


@dataclass(frozen=True)
class UploadCancelled:
    pass


UploadOutcome = UploadSucceeded | UploadFailed | UploadCancelled


@dataclass(frozen=True)
class PipelineState:
    """Snapshot pushed to the host on every transition."""

    phase: PipelinePhase = PipelinePhase.IDLE
    progress_percent: int = 0
    last_error: ErrorInfo | None = None
    compressed_byte_size: int | None = None
    retained_source_file: SourceFile | None = None
    public_url: str | None = None
    source_name: str | None = None
    generation: int = 0

    @property
    def active(self) -> bool:
        return self.phase in ACTIVE_PHASES
