"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Request, Response, UploadFile, status
from fastapi.responses import StreamingResponse

from pixelupload.api.middleware import require_api_key
from pixelupload.api.schemas import (
    CreateSessionRequest,
    CropRequest,
    ErrorResponse,
    HealthResponse,
    PasteRequest,
    PipelineStateResponse,
    SessionResponse,
)
from pixelupload.api.sessions import SessionLimitError
from pixelupload.pipeline.cropper import CropRegion
from pixelupload.pipeline.errors import TransformError
from pixelupload.pipeline.models import PipelinePhase, SourceFile

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from pixelupload.api.sessions import SessionRegistry, UploadSession
    from pixelupload.config import Settings
    from pixelupload.pipeline.workers import WorkerPool

router = APIRouter(prefix="/api/v1", dependencies=[Depends(require_api_key)])

_NOT_FOUND = {status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}}

_READ_CHUNK_BYTES = 1024 * 1024


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_registry(request: Request) -> SessionRegistry:
    registry: SessionRegistry = request.app.state.sessions
    return registry


def _get_session(request: Request, session_id: str) -> UploadSession:
    try:
        return _get_registry(request).get(session_id)
    except KeyError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found") from None


async def _state_response(session: UploadSession, wait: bool, leaving_crop: bool = False) -> PipelineStateResponse:
    if wait and leaving_crop:
        state = await session.wait_past_crop()
    elif wait:
        state = await session.controller.wait_settled()
    else:
        state = session.controller.state
    return PipelineStateResponse.from_state(state)


async def _read_upload(file: UploadFile, limit: int) -> SourceFile:
    """Read an uploaded file, keeping no bytes once it is known to exceed ``limit``."""
    content_type = file.content_type or ""
    filename = file.filename or ""
    if file.size is not None and file.size > limit:
        return SourceFile(data=b"", content_type=content_type, filename=filename, declared_size=file.size)

    data = await file.read(limit + 1)
    if len(data) <= limit:
        return SourceFile(data=data, content_type=content_type, filename=filename)

    size = len(data)
    while True:
        chunk = await file.read(_READ_CHUNK_BYTES)
        if not chunk:
            break
        size += len(chunk)
    return SourceFile(data=b"", content_type=content_type, filename=filename, declared_size=size)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool: WorkerPool = request.app.state.worker_pool
    return HealthResponse(
        status="ok",
        sessions=len(_get_registry(request)),
        active_transforms=pool.active_count,
        queue_depth=pool.queue_depth,
        storage_bucket=settings.storage_bucket,
    )


@router.post(
    "/sessions",
    response_model=SessionResponse,
    status_code=status.HTTP_201_CREATED,
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse}},
    summary="Open an upload session",
)
async def create_session(request: Request, body: CreateSessionRequest | None = None) -> SessionResponse:
    """Create a pipeline with the server defaults, optionally overridden per session."""
    settings = _get_settings(request)
    overrides = body.model_dump() if body is not None else {}
    try:
        config = settings.upload_configuration(**overrides)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from None
    try:
        session = _get_registry(request).create(config)
    except SessionLimitError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from None
    return SessionResponse(id=session.id, state=PipelineStateResponse.from_state(session.controller.state))


@router.get("/sessions/{session_id}", response_model=PipelineStateResponse, responses=_NOT_FOUND)
async def get_session_state(request: Request, session_id: str) -> PipelineStateResponse:
    session = _get_session(request, session_id)
    return PipelineStateResponse.from_state(session.controller.state)


@router.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT, responses=_NOT_FOUND)
async def close_session(request: Request, session_id: str) -> Response:
    """Tear the session down, cancelling any upload in flight."""
    try:
        await _get_registry(request).close(session_id)
    except KeyError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found") from None
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/sessions/{session_id}/file",
    response_model=PipelineStateResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses=_NOT_FOUND,
    summary="Submit a selected or dropped file",
)
async def submit_file(request: Request, session_id: str, file: UploadFile, wait: bool = False) -> PipelineStateResponse:
    """Start the pipeline for an uploaded file, replacing any run in progress."""
    session = _get_session(request, session_id)
    source = await _read_upload(file, session.controller.config.max_size_bytes)
    session.controller.submit_file(source)
    return await _state_response(session, wait)


@router.post(
    "/sessions/{session_id}/paste",
    response_model=PipelineStateResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={**_NOT_FOUND, status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse}},
    summary="Submit an image pasted from the clipboard",
)
async def paste_file(
    request: Request, session_id: str, body: PasteRequest, wait: bool = False
) -> PipelineStateResponse:
    session = _get_session(request, session_id)
    try:
        source = SourceFile.from_data_url(body.data_url, body.filename)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from None
    session.controller.submit_file(source)
    return await _state_response(session, wait)


@router.post("/sessions/{session_id}/cancel", response_model=PipelineStateResponse, responses=_NOT_FOUND)
async def cancel(request: Request, session_id: str, wait: bool = False) -> PipelineStateResponse:
    session = _get_session(request, session_id)
    cropping = session.controller.state.phase is PipelinePhase.CROPPING
    session.controller.cancel()
    return await _state_response(session, wait, leaving_crop=cropping)


@router.post(
    "/sessions/{session_id}/retry",
    response_model=PipelineStateResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={**_NOT_FOUND, status.HTTP_409_CONFLICT: {"model": ErrorResponse}},
)
async def retry(request: Request, session_id: str, wait: bool = False) -> PipelineStateResponse:
    """Retry the last failed file without re-validating it."""
    session = _get_session(request, session_id)
    if session.controller.retry() is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Nothing to retry")
    return await _state_response(session, wait)


@router.post("/sessions/{session_id}/reset", response_model=PipelineStateResponse, responses=_NOT_FOUND)
async def reset(request: Request, session_id: str) -> PipelineStateResponse:
    session = _get_session(request, session_id)
    return PipelineStateResponse.from_state(session.controller.reset())


@router.post("/sessions/{session_id}/acknowledge", response_model=PipelineStateResponse, responses=_NOT_FOUND)
async def acknowledge(request: Request, session_id: str) -> PipelineStateResponse:
    session = _get_session(request, session_id)
    return PipelineStateResponse.from_state(session.controller.acknowledge())


@router.get(
    "/sessions/{session_id}/crop/source",
    responses={status.HTTP_200_OK: {"content": {"image/*": {}}}, **_NOT_FOUND},
    summary="Download the image waiting to be cropped",
)
async def crop_source(request: Request, session_id: str) -> Response:
    session = _get_session(request, session_id)
    pending = session.cropper.pending
    if pending is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No crop pending")
    return Response(
        content=pending.image.data,
        media_type=pending.image.content_type,
        headers={"X-Crop-Aspect-Ratio": str(pending.aspect_ratio)},
    )


@router.post(
    "/sessions/{session_id}/crop",
    response_model=PipelineStateResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={**_NOT_FOUND, status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse}},
)
async def apply_crop(request: Request, session_id: str, body: CropRequest, wait: bool = False) -> PipelineStateResponse:
    """Crop the pending image and continue to upload."""
    session = _get_session(request, session_id)
    region = CropRegion(x=body.x, y=body.y, width=body.width, height=body.height)
    try:
        applied = await session.cropper.apply(region, body.rotation)
    except TransformError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.info.message) from None
    if not applied:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No crop pending")
    return await _state_response(session, wait, leaving_crop=True)


@router.post("/sessions/{session_id}/crop/cancel", response_model=PipelineStateResponse, responses=_NOT_FOUND)
async def cancel_crop(request: Request, session_id: str, wait: bool = False) -> PipelineStateResponse:
    """Abandon the crop; the pipeline returns to idle without an error."""
    session = _get_session(request, session_id)
    if not session.cropper.abandon():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No crop pending")
    return await _state_response(session, wait, leaving_crop=True)


@router.get("/sessions/{session_id}/events", responses=_NOT_FOUND, summary="Stream state changes (SSE)")
async def stream_events(request: Request, session_id: str, until_terminal: bool = False) -> StreamingResponse:
    session = _get_session(request, session_id)

    async def _encode() -> AsyncIterator[str]:
        async for state in session.events(until_terminal=until_terminal):
            yield f"data: {PipelineStateResponse.from_state(state).model_dump_json()}\n\n"

    return StreamingResponse(_encode(), media_type="text/event-stream")
