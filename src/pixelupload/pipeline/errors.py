"""Pipeline error taxonomy.

Errors are carried as ``ErrorInfo`` values inside ``PipelineState``; the
exception classes below only travel between a stage and the controller.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class ErrorCategory(StrEnum):
    VALIDATION = "validation"
    TRANSFORM = "transform"
    UPLOAD = "upload"
    INTERNAL = "internal"


class ErrorKind(StrEnum):
    SIZE_EXCEEDED = "size_exceeded"
    NOT_AN_IMAGE = "not_an_image"
    UNSUPPORTED_TYPE = "unsupported_type"
    DECODE_FAILED = "decode_failed"
    ENCODE_FAILED = "encode_failed"
    CROP_FAILED = "crop_failed"
    NETWORK_FAILURE = "network_failure"
    STORAGE_REJECTED = "storage_rejected"
    INTERNAL_ERROR = "internal_error"


_CATEGORY_BY_KIND: dict[ErrorKind, ErrorCategory] = {
    ErrorKind.SIZE_EXCEEDED: ErrorCategory.VALIDATION,
    ErrorKind.NOT_AN_IMAGE: ErrorCategory.VALIDATION,
    ErrorKind.UNSUPPORTED_TYPE: ErrorCategory.VALIDATION,
    ErrorKind.DECODE_FAILED: ErrorCategory.TRANSFORM,
    ErrorKind.ENCODE_FAILED: ErrorCategory.TRANSFORM,
    ErrorKind.CROP_FAILED: ErrorCategory.TRANSFORM,
    ErrorKind.NETWORK_FAILURE: ErrorCategory.UPLOAD,
    ErrorKind.STORAGE_REJECTED: ErrorCategory.UPLOAD,
    ErrorKind.INTERNAL_ERROR: ErrorCategory.INTERNAL,
}


@dataclass(frozen=True)
class ErrorInfo:
    """Everything the host needs to explain a failure to the user."""

    category: ErrorCategory
    kind: ErrorKind
    message: str
    retryable: bool
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def of(cls, kind: ErrorKind, message: str, *, retryable: bool | None = None, **details: Any) -> ErrorInfo:
        category = _CATEGORY_BY_KIND[kind]
        if retryable is None:
            retryable = category not in (ErrorCategory.VALIDATION, ErrorCategory.INTERNAL)
        return cls(category=category, kind=kind, message=message, retryable=retryable, details=details)


class PipelineError(Exception):
    """Base class for stage failures that end a pipeline run."""

    def __init__(self, info: ErrorInfo) -> None:
        super().__init__(info.message)
        self.info = info

    @property
    def kind(self) -> ErrorKind:
        return self.info.kind

    @property
    def retryable(self) -> bool:
        return self.info.retryable


class TransformError(PipelineError):
    @classmethod
    def decode_failed(cls, message: str) -> TransformError:
        return cls(ErrorInfo.of(ErrorKind.DECODE_FAILED, f"Could not decode image: {message}"))

    @classmethod
    def encode_failed(cls, message: str) -> TransformError:
        return cls(ErrorInfo.of(ErrorKind.ENCODE_FAILED, f"Could not encode image: {message}"))


class StorageError(PipelineError):
    """Raised by storage backends. ``status_code`` is None for transport failures."""

    def __init__(self, info: ErrorInfo, status_code: int | None = None) -> None:
        super().__init__(info)
        self.status_code = status_code

    @classmethod
    def network(cls, message: str) -> StorageError:
        return cls(ErrorInfo.of(ErrorKind.NETWORK_FAILURE, message))

    @classmethod
    def rejected(cls, message: str, status_code: int, *, retryable: bool = True) -> StorageError:
        info = ErrorInfo.of(ErrorKind.STORAGE_REJECTED, message, retryable=retryable, status_code=status_code)
        return cls(info, status_code=status_code)


class OperationCancelled(Exception):  # noqa: N818
    """A cancellation token fired while a stage was suspended."""


class CropCancelled(Exception):  # noqa: N818
    """The crop collaborator abandoned the crop."""
