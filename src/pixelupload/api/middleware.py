"""Middleware: optional API key check for the upload API.

Browsers cannot attach headers to an ``EventSource``, so the state stream
also accepts the key as an ``access_token`` query parameter. Every other
route takes it only as ``Authorization: Bearer <key>``.
"""

from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

if TYPE_CHECKING:
    from pixelupload.config import Settings

logger = logging.getLogger(__name__)

STREAM_TOKEN_PARAM = "access_token"

_bearer_scheme = HTTPBearer(auto_error=False)


def _is_state_stream(request: Request) -> bool:
    return request.method == "GET" and request.url.path.endswith("/events")


def _presented_key(request: Request, credentials: HTTPAuthorizationCredentials | None) -> str | None:
    if credentials is not None:
        return credentials.credentials
    if _is_state_stream(request):
        return request.query_params.get(STREAM_TOKEN_PARAM)
    return None


async def require_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Reject the request unless it carries PIXELUPLOAD_API_KEY.

    Without a configured key every request is accepted.
    """
    settings: Settings = request.app.state.settings
    if settings.api_key is None:
        return

    presented = _presented_key(request, credentials)
    if presented is not None and secrets.compare_digest(presented.encode(), settings.api_key.encode()):
        return

    logger.warning(
        "Rejected %s %s: %s API key",
        request.method,
        request.url.path,
        "missing" if presented is None else "wrong",
    )
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or missing API key",
        headers={"WWW-Authenticate": "Bearer"},
    )
