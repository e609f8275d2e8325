"""Upload stage: key generation, transfer and synthetic progress.

The storage backend reports no progress, so the executor ticks progress
up in fixed steps to ``PROGRESS_CEILING`` while the transfer is pending and
reports 100 only after the transfer and URL lookup both succeed.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import string
import time
from typing import TYPE_CHECKING, Protocol

from pixelupload.pipeline.errors import ErrorInfo, ErrorKind, OperationCancelled, StorageError
from pixelupload.pipeline.models import (
    ImageFormat,
    UploadCancelled,
    UploadFailed,
    UploadSucceeded,
    extension_for_subtype,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from pixelupload.pipeline.cancellation import CancelToken
    from pixelupload.pipeline.models import TransformResult, UploadConfiguration, UploadOutcome
    from pixelupload.pipeline.storage import StorageBackend, StoredObject

logger = logging.getLogger(__name__)

PROGRESS_CEILING: int = 90
_BASE36 = string.digits + string.ascii_lowercase


class Clock(Protocol):
    def now(self) -> float:
        """Seconds since the epoch."""
        ...

    async def sleep(self, seconds: float) -> None: ...


class RandomSource(Protocol):
    def token(self, length: int) -> str:
        """Return ``length`` random base-36 characters."""
        ...


class SystemClock:
    def now(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class SystemRandomSource:
    def token(self, length: int) -> str:
        return "".join(secrets.choice(_BASE36) for _ in range(length))


def extension_for(blob: TransformResult, fallback: str = "") -> str:
    """File extension for a blob: its MIME subtype, else ``fallback``, else ``jpg``."""
    subtype = blob.content_type.partition("/")[2]
    if subtype:
        return extension_for_subtype(subtype)
    if blob.format is not ImageFormat.ORIGINAL:
        return str(blob.format)
    return fallback or "jpg"


class UploadExecutor:
    """Sends one blob to storage under a fresh, collision-resistant key."""

    def __init__(
        self,
        storage: StorageBackend,
        clock: Clock | None = None,
        random_source: RandomSource | None = None,
        progress_step: int = 10,
        progress_interval: float = 0.2,
    ) -> None:
        if not 0 < progress_step <= PROGRESS_CEILING:
            raise ValueError(f"progress_step must be in (0, {PROGRESS_CEILING}], got {progress_step}")
        self._storage = storage
        self._clock = clock or SystemClock()
        self._random = random_source or SystemRandomSource()
        self._progress_step = progress_step
        self._progress_interval = progress_interval

    def make_key(self, blob: TransformResult, config: UploadConfiguration, fallback_extension: str = "") -> str:
        millis = int(self._clock.now() * 1000)
        suffix = self._random.token(6)
        name = f"{millis}-{suffix}.{extension_for(blob, fallback_extension)}"
        prefix = config.destination_prefix.strip("/")
        return f"{prefix}/{name}" if prefix else name

    async def upload(
        self,
        blob: TransformResult,
        config: UploadConfiguration,
        token: CancelToken,
        on_progress: Callable[[int], None] | None = None,
        fallback_extension: str = "",
    ) -> UploadOutcome:
        """Upload ``blob``; never raises for storage failures or cancellation.

        An object that reached storage before a cancellation won is deleted
        again, best effort.
        """
        report = on_progress or (lambda _percent: None)
        key = self.make_key(blob, config, fallback_extension)
        landed: list[StoredObject] = []
        ticker = asyncio.ensure_future(self._tick(report))
        try:
            stored = await token.guard(self._put(key, blob, landed))
            public_url = self._storage.public_url_for(stored.stored_path)
        except OperationCancelled:
            logger.info("Upload of %s cancelled", key)
            await self._discard(landed)
            return UploadCancelled()
        except StorageError as exc:
            if token.cancelled:
                return UploadCancelled()
            logger.warning("Upload of %s failed: %s", key, exc.info.message)
            return UploadFailed(exc.info)
        except Exception as exc:
            if token.cancelled:
                await self._discard(landed)
                return UploadCancelled()
            logger.exception("Storage backend raised unexpectedly for %s", key)
            return UploadFailed(ErrorInfo.of(ErrorKind.NETWORK_FAILURE, str(exc) or type(exc).__name__))
        finally:
            ticker.cancel()
            await asyncio.wait({ticker})

        if token.cancelled:
            logger.info("Upload of %s cancelled after it was stored", key)
            await self._discard(landed)
            return UploadCancelled()
        report(100)
        return UploadSucceeded(public_url=public_url, byte_size=blob.byte_length, stored_path=stored.stored_path)

    async def _put(self, key: str, blob: TransformResult, landed: list[StoredObject]) -> StoredObject:
        stored = await self._storage.put(key, blob.data, blob.content_type)
        landed.append(stored)
        return stored

    async def _discard(self, landed: list[StoredObject]) -> None:
        for stored in landed:
            try:
                await self._storage.delete(stored.stored_path)
            except Exception:
                logger.warning(
                    "Could not delete %s after cancellation; it stays orphaned", stored.stored_path, exc_info=True
                )
            else:
                logger.info("Deleted %s stored before cancellation", stored.stored_path)

    async def _tick(self, report: Callable[[int], None]) -> None:
        percent = 0
        while percent < PROGRESS_CEILING:
            await self._clock.sleep(self._progress_interval)
            percent = min(percent + self._progress_step, PROGRESS_CEILING)
            report(percent)
