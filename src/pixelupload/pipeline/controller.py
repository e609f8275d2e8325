"""Pipeline state machine.

    Idle -> Validating -> Transforming -> (Cropping) -> Uploading -> Succeeded | Failed | Cancelled

The controller is the only object a host talks to. At most one run is in
flight: a new submission supersedes the current run (its token fires and
every tracked buffer is released before the new run starts). Each run is
identified by object identity plus a generation number; transitions
requested by a run that is no longer current are dropped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from functools import partial
from typing import TYPE_CHECKING

from pixelupload.pipeline.cancellation import CancelToken
from pixelupload.pipeline.errors import CropCancelled, ErrorInfo, ErrorKind, OperationCancelled, TransformError
from pixelupload.pipeline.models import (
    SETTLED_PHASES,
    PipelinePhase,
    PipelineState,
    UploadCancelled,
    UploadFailed,
)
from pixelupload.pipeline.resources import ResourceTracker
from pixelupload.pipeline.validator import validate

if TYPE_CHECKING:
    from collections.abc import Callable

    from pixelupload.pipeline.cropper import CropCoordinator
    from pixelupload.pipeline.models import SourceFile, TransformResult, UploadConfiguration
    from pixelupload.pipeline.transformer import Transformer
    from pixelupload.pipeline.uploader import UploadExecutor

logger = logging.getLogger(__name__)

# Error kind reported when a stage raises something other than a pipeline error.
_CRASH_KINDS: dict[PipelinePhase, ErrorKind] = {
    PipelinePhase.VALIDATING: ErrorKind.INTERNAL_ERROR,
    PipelinePhase.TRANSFORMING: ErrorKind.ENCODE_FAILED,
    PipelinePhase.CROPPING: ErrorKind.CROP_FAILED,
    PipelinePhase.UPLOADING: ErrorKind.NETWORK_FAILURE,
}


@dataclass
class _Run:
    generation: int
    source: SourceFile
    transformed: TransformResult | None = None
    token: CancelToken = field(default_factory=CancelToken)
    handles: list[str] = field(default_factory=list)
    stage: PipelinePhase = PipelinePhase.VALIDATING


@dataclass(frozen=True)
class _Retained:
    """What a retry needs. ``transformed`` is set only when the upload stage failed."""

    source: SourceFile
    transformed: TransformResult | None = None


class PipelineController:
    """Sequences validation, transform, crop and upload for one host."""

    def __init__(
        self,
        config: UploadConfiguration,
        transformer: Transformer,
        uploader: UploadExecutor,
        cropper: CropCoordinator | None = None,
        tracker: ResourceTracker | None = None,
    ) -> None:
        if config.crop_enabled and cropper is None:
            raise ValueError("A crop collaborator is required when crop_aspect_ratio is set")
        self._config = config
        self._transformer = transformer
        self._uploader = uploader
        self._cropper = cropper
        self._tracker = tracker or ResourceTracker()

        self._state = PipelineState()
        self._generation = 0
        self._run: _Run | None = None
        self._retained: _Retained | None = None
        self._listeners: list[Callable[[PipelineState], None]] = []
        self._tasks: set[asyncio.Task[PipelineState]] = set()
        self._settled = asyncio.Event()
        self._settled.set()
        self._closed = False

    # -- Public API ---------------------------------------------------------

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def config(self) -> UploadConfiguration:
        return self._config

    @property
    def tracker(self) -> ResourceTracker:
        return self._tracker

    def subscribe(self, listener: Callable[[PipelineState], None]) -> Callable[[], None]:
        """Call ``listener`` with every new state. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def submit_file(self, file: SourceFile) -> asyncio.Task[PipelineState]:
        """Start a run for ``file``, superseding any run in flight."""
        self._ensure_open()
        self._supersede("superseded by a new file")
        self._retained = None
        return self._start(file, transformed=None, validate_first=True)

    def retry(self) -> asyncio.Task[PipelineState] | None:
        """Re-run the retained file from the stage that failed.

        Returns None when retry is disabled, a run is in flight, or nothing
        is retained.
        """
        self._ensure_open()
        if not self._config.allow_retry or self._run is not None or self._retained is None:
            logger.info("Nothing to retry (phase=%s)", self._state.phase)
            return None
        retained, self._retained = self._retained, None
        return self._start(retained.source, transformed=retained.transformed, validate_first=False)

    def cancel(self) -> bool:
        """Cancel the run in flight. It lands in ``Cancelled``."""
        run = self._run
        if run is None or run.token.cancelled:
            return False
        run.token.cancel("cancelled by host")
        logger.info("Run %d cancel requested during %s", run.generation, run.stage)
        return True

    def acknowledge(self) -> PipelineState:
        """Return a finished pipeline to ``Idle``, keeping any file retained for retry."""
        if self._run is None and self._state.phase is not PipelinePhase.IDLE:
            self._publish(
                PipelineState(
                    generation=self._generation,
                    retained_source_file=self._retained.source if self._retained else None,
                )
            )
        return self._state

    def reset(self) -> PipelineState:
        """Abandon everything, including a file retained for retry."""
        self._supersede("reset")
        self._retained = None
        self._publish(PipelineState(generation=self._generation))
        return self._state

    async def wait_settled(self) -> PipelineState:
        """Wait until the pipeline is idle, finished, or waiting on a crop."""
        await self._settled.wait()
        return self._state

    async def close(self) -> None:
        """Host teardown: cancel the run, release every buffer, wait for the run to unwind."""
        if self._closed:
            return
        self._closed = True
        self._supersede("teardown")
        self._retained = None
        self._listeners.clear()
        pending = set(self._tasks)
        if pending:
            await asyncio.wait(pending)
        self._settled.set()

    # -- Run lifecycle --------------------------------------------------------

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("Pipeline is closed")

    def _supersede(self, reason: str) -> None:
        run = self._run
        if run is not None:
            run.token.cancel(reason)
            self._run = None
            logger.info("Run %d %s", run.generation, reason)
        self._tracker.release_all()

    def _start(
        self,
        source: SourceFile,
        transformed: TransformResult | None,
        validate_first: bool,
    ) -> asyncio.Task[PipelineState]:
        self._generation += 1
        run = _Run(generation=self._generation, source=source, transformed=transformed)
        if validate_first:
            run.stage = PipelinePhase.VALIDATING
        elif transformed is None:
            run.stage = PipelinePhase.TRANSFORMING
        else:
            run.stage = PipelinePhase.UPLOADING
        self._run = run
        self._publish(
            PipelineState(
                phase=run.stage,
                generation=run.generation,
                source_name=source.filename or None,
                compressed_byte_size=transformed.byte_length if transformed else None,
            )
        )

        task = asyncio.get_running_loop().create_task(
            self._execute(run, validate_first),
            name=f"upload-pipeline-{run.generation}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _execute(self, run: _Run, validate_first: bool) -> PipelineState:
        try:
            return await self._drive(run, validate_first)
        except OperationCancelled:
            return self._finish(run, phase=PipelinePhase.CANCELLED)
        except CropCancelled:
            logger.info("Run %d: crop abandoned", run.generation)
            return self._finish(
                run,
                phase=PipelinePhase.IDLE,
                progress_percent=0,
                compressed_byte_size=None,
                source_name=None,
            )
        except TransformError as exc:
            logger.warning("Run %d: transform failed: %s", run.generation, exc.info.message)
            return self._fail(run, exc.info, _Retained(run.source))
        except Exception as exc:
            logger.exception("Run %d crashed during %s", run.generation, run.stage)
            info = ErrorInfo.of(_CRASH_KINDS[run.stage], f"Unexpected error during {run.stage}: {exc}")
            if run.stage is PipelinePhase.VALIDATING:
                return self._fail(run, info, None)
            return self._fail(run, info, _Retained(run.source, run.transformed))

    async def _drive(self, run: _Run, validate_first: bool) -> PipelineState:
        config = self._config

        if validate_first:
            result = validate(run.source, config)
            run.token.raise_if_cancelled()
            if result.error is not None:
                logger.info("Run %d: %s rejected: %s", run.generation, run.source.filename, result.error.message)
                return self._fail(run, result.error, None)

        blob = run.transformed
        if blob is None:
            self._enter(run, PipelinePhase.TRANSFORMING)
            blob = await run.token.guard(self._transformer.transform(run.source, config))
            handle = self._track(run, blob)
            self._transition(run, compressed_byte_size=blob.byte_length)

            if config.crop_aspect_ratio is not None and self._cropper is not None:
                run.token.raise_if_cancelled()
                run.stage = PipelinePhase.CROPPING
                # Registered before Cropping is published so the host can act on it.
                decision = self._cropper.present(blob, config.crop_aspect_ratio)
                self._enter(run, PipelinePhase.CROPPING)
                cropped = await run.token.guard(decision)
                self._track(run, cropped)
                self._tracker.release(handle)
                blob = cropped
                self._transition(run, compressed_byte_size=blob.byte_length)
            run.transformed = blob
        else:
            self._track(run, blob)

        self._enter(run, PipelinePhase.UPLOADING, progress_percent=0)
        outcome = await self._uploader.upload(
            blob,
            config,
            run.token,
            on_progress=partial(self._on_progress, run),
            fallback_extension=run.source.extension,
        )
        if isinstance(outcome, UploadCancelled):
            raise OperationCancelled(run.token.reason)
        if isinstance(outcome, UploadFailed):
            return self._fail(run, outcome.error, _Retained(run.source, blob))

        logger.info("Run %d uploaded %s (%d bytes)", run.generation, outcome.public_url, outcome.byte_size)
        return self._finish(
            run,
            phase=PipelinePhase.SUCCEEDED,
            progress_percent=100,
            public_url=outcome.public_url,
        )

    def _track(self, run: _Run, blob: TransformResult) -> str:
        if run is not self._run:
            raise OperationCancelled("superseded")
        run.token.raise_if_cancelled()
        handle = self._tracker.track(blob.data)
        run.handles.append(handle)
        return handle

    def _fail(self, run: _Run, error: ErrorInfo, retained: _Retained | None) -> PipelineState:
        keep = retained is not None and error.retryable and self._config.allow_retry
        if keep and run is self._run:
            self._retained = retained
        return self._finish(
            run,
            phase=PipelinePhase.FAILED,
            last_error=error,
            retained_source_file=retained.source if keep and retained else None,
        )

    def _finish(self, run: _Run, **changes: object) -> PipelineState:
        for handle in run.handles:
            self._tracker.release(handle)
        final = replace(self._state, **changes)  # type: ignore[arg-type]
        if run is not self._run:
            logger.debug("Dropping %s from superseded run %d", changes.get("phase"), run.generation)
            return final
        self._run = None
        self._publish(final)
        return final

    # -- State publication ----------------------------------------------------

    def _enter(self, run: _Run, phase: PipelinePhase, **changes: object) -> None:
        run.token.raise_if_cancelled()
        run.stage = phase
        self._transition(run, phase=phase, **changes)

    def _transition(self, run: _Run, **changes: object) -> None:
        if run is not self._run:
            return
        state = replace(self._state, **changes)  # type: ignore[arg-type]
        if state != self._state:
            self._publish(state)

    def _on_progress(self, run: _Run, percent: int) -> None:
        if run is not self._run or self._state.phase is not PipelinePhase.UPLOADING:
            return
        if percent > self._state.progress_percent:
            self._transition(run, progress_percent=percent)

    def _publish(self, state: PipelineState) -> None:
        self._state = state
        if state.phase in SETTLED_PHASES:
            self._settled.set()
        else:
            self._settled.clear()
        logger.debug("Pipeline state -> %s (%d%%, gen %d)", state.phase, state.progress_percent, state.generation)
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("State listener %r failed", listener)
