"""Registry of ephemeral in-memory buffers handed between stages."""

from __future__ import annotations

import itertools
import logging
import threading

from pixelupload.pipeline.models import TrackedReference

logger = logging.getLogger(__name__)


class ResourceTracker:
    """Owns every tracked buffer of one pipeline and releases each exactly once.

    ``release`` tolerates unknown or already-released handles so that
    overlapping cleanup paths (cancel plus teardown) never fail.
    """

    def __init__(self, prefix: str = "ref") -> None:
        self._prefix = prefix
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._refs: dict[str, TrackedReference] = {}
        self._tracked_total = 0
        self._released_total = 0

    def track(self, data: bytes) -> str:
        """Register ``data`` and return its handle."""
        handle = f"{self._prefix}-{next(self._ids)}"
        ref = TrackedReference(handle=handle, buffer=memoryview(data))
        with self._lock:
            self._refs[handle] = ref
            self._tracked_total += 1
        logger.debug("Tracked %s (%d bytes)", handle, ref.byte_length)
        return handle

    def get(self, handle: str) -> TrackedReference | None:
        with self._lock:
            return self._refs.get(handle)

    def release(self, handle: str) -> bool:
        """Release a handle. Returns False if it was unknown or already released."""
        with self._lock:
            ref = self._refs.pop(handle, None)
            if ref is None:
                return False
            self._released_total += 1
        ref.buffer.release()
        logger.debug("Released %s", handle)
        return True

    def release_all(self) -> int:
        """Release every outstanding handle and return how many there were."""
        with self._lock:
            refs = list(self._refs.values())
            self._refs.clear()
            self._released_total += len(refs)
        for ref in refs:
            ref.buffer.release()
        if refs:
            logger.debug("Released %d outstanding handle(s)", len(refs))
        return len(refs)

    @property
    def outstanding(self) -> list[str]:
        with self._lock:
            return list(self._refs)

    @property
    def tracked_total(self) -> int:
        with self._lock:
            return self._tracked_total

    @property
    def released_total(self) -> int:
        with self._lock:
            return self._released_total
