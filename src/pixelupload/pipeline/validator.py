"""Pre-flight checks on a selected file. Pure; never looks at pixels."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from pixelupload.pipeline.errors import ErrorInfo, ErrorKind
from pixelupload.pipeline.models import WILDCARD_IMAGE_TYPE

if TYPE_CHECKING:
    from pixelupload.pipeline.models import SourceFile, UploadConfiguration

_MB = 1024 * 1024


@dataclass(frozen=True)
class ValidationResult:
    error: ErrorInfo | None = None

    @property
    def valid(self) -> bool:
        return self.error is None


def _format_mb(size: int) -> str:
    return f"{size / _MB:.1f}MB"


def validate(file: SourceFile, config: UploadConfiguration) -> ValidationResult:
    """Check size, then image class, then the accepted-type whitelist.

    Stops at the first failing check.
    """
    if file.byte_length > config.max_size_bytes:
        return ValidationResult(
            ErrorInfo.of(
                ErrorKind.SIZE_EXCEEDED,
                f"Image size should be less than {_format_mb(config.max_size_bytes)} "
                f"(got {_format_mb(file.byte_length)})",
                actual_bytes=file.byte_length,
                limit_bytes=config.max_size_bytes,
            )
        )

    if not file.content_type.startswith("image/"):
        return ValidationResult(
            ErrorInfo.of(
                ErrorKind.NOT_AN_IMAGE,
                "Please upload an image file",
                content_type=file.content_type,
            )
        )

    accepted = config.accepted_mime_types
    if WILDCARD_IMAGE_TYPE not in accepted and file.content_type not in accepted:
        return ValidationResult(
            ErrorInfo.of(
                ErrorKind.UNSUPPORTED_TYPE,
                f"Unsupported image type {file.content_type}",
                content_type=file.content_type,
                accepted=sorted(accepted),
            )
        )

    return ValidationResult()
