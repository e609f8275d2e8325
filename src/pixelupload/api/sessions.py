"""Upload sessions: one pipeline controller per connected host."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from pixelupload.pipeline.controller import PipelineController
from pixelupload.pipeline.cropper import InteractiveCropper
from pixelupload.pipeline.models import SETTLED_PHASES, PipelinePhase
from pixelupload.pipeline.transformer import ImageTransformer
from pixelupload.pipeline.uploader import UploadExecutor

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from pixelupload.config import Settings
    from pixelupload.pipeline.models import PipelineState, UploadConfiguration
    from pixelupload.pipeline.storage import StorageBackend
    from pixelupload.pipeline.uploader import Clock, RandomSource
    from pixelupload.pipeline.workers import WorkerPool

logger = logging.getLogger(__name__)

_TERMINAL_PHASES = frozenset({PipelinePhase.SUCCEEDED, PipelinePhase.FAILED, PipelinePhase.CANCELLED})

EVENT_QUEUE_SIZE = 32


class SessionLimitError(RuntimeError):
    pass


def _offer(queue: asyncio.Queue[PipelineState | None], item: PipelineState | None) -> None:
    # A subscriber that falls behind loses its oldest undelivered states.
    if queue.full():
        queue.get_nowait()
    queue.put_nowait(item)


@dataclass
class UploadSession:
    id: str
    controller: PipelineController
    cropper: InteractiveCropper
    _queues: set[asyncio.Queue[PipelineState | None]] = field(default_factory=set, repr=False)

    def __post_init__(self) -> None:
        self.controller.subscribe(self._fan_out)

    def _fan_out(self, state: PipelineState) -> None:
        for queue in self._queues:
            _offer(queue, state)

    async def events(self, until_terminal: bool = False) -> AsyncIterator[PipelineState]:
        """Yield the current state, then every transition until the session closes."""
        queue: asyncio.Queue[PipelineState | None] = asyncio.Queue(maxsize=EVENT_QUEUE_SIZE)
        self._queues.add(queue)
        try:
            state: PipelineState | None = self.controller.state
            while state is not None:
                yield state
                if until_terminal and state.phase in _TERMINAL_PHASES:
                    return
                state = await queue.get()
        finally:
            self._queues.discard(queue)

    async def wait_past_crop(self) -> PipelineState:
        """Wait until the run has left ``Cropping`` and settled again.

        Must be called right after the crop was applied or abandoned, before
        yielding to the event loop, so no transition is missed.
        """
        async with contextlib.aclosing(self.events()) as states:
            async for state in states:
                if state.phase is not PipelinePhase.CROPPING and state.phase in SETTLED_PHASES:
                    return state
        return self.controller.state

    async def close(self) -> None:
        await self.controller.close()
        for queue in self._queues:
            _offer(queue, None)


class SessionRegistry:
    """Creates, looks up and tears down upload sessions."""

    def __init__(
        self,
        settings: Settings,
        storage: StorageBackend,
        pool: WorkerPool,
        clock: Clock | None = None,
        random_source: RandomSource | None = None,
    ) -> None:
        self._settings = settings
        self._pool = pool
        self._transformer = ImageTransformer(pool)
        self._uploader = UploadExecutor(
            storage,
            clock=clock,
            random_source=random_source,
            progress_step=settings.progress_step,
            progress_interval=settings.progress_interval,
        )
        self._sessions: dict[str, UploadSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def create(self, config: UploadConfiguration | None = None) -> UploadSession:
        """Open a session.

        Raises:
            SessionLimitError: If ``max_sessions`` sessions are already open.
        """
        if len(self._sessions) >= self._settings.max_sessions:
            raise SessionLimitError(f"Session limit of {self._settings.max_sessions} reached")
        config = config or self._settings.upload_configuration()
        cropper = InteractiveCropper(self._pool)
        session_id = uuid.uuid4().hex
        controller = PipelineController(config, self._transformer, self._uploader, cropper=cropper)
        session = UploadSession(id=session_id, controller=controller, cropper=cropper)
        self._sessions[session_id] = session
        logger.info(
            "Opened upload session %s (prefix=%s, crop=%s)",
            session_id,
            config.destination_prefix,
            config.crop_aspect_ratio,
        )
        return session

    def get(self, session_id: str) -> UploadSession:
        """Raises KeyError for unknown sessions."""
        try:
            return self._sessions[session_id]
        except KeyError:
            raise KeyError(f"Unknown session: {session_id}") from None

    async def close(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            raise KeyError(f"Unknown session: {session_id}")
        await session.close()
        logger.info("Closed upload session %s", session_id)

    async def close_all(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            await session.close()
        if sessions:
            logger.info("Closed %d upload session(s)", len(sessions))
