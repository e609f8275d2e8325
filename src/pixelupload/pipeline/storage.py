"""Object storage collaborator.

``SupabaseStorage`` talks to the Supabase Storage REST API directly through
``httpx.AsyncClient`` so that cancelling the awaiting task aborts the
request on the wire.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol
from urllib.parse import quote

import httpx

from pixelupload.pipeline.errors import StorageError

if TYPE_CHECKING:
    from pixelupload.config import Settings

logger = logging.getLogger(__name__)

# Rejections caused by the payload itself; resending it cannot succeed.
NON_RETRYABLE_STATUSES = frozenset({400, 413, 415, 422})


@dataclass(frozen=True)
class StoredObject:
    stored_path: str


class StorageBackend(Protocol):
    """Protocol for remote object storage."""

    async def put(self, key: str, body: bytes, content_type: str) -> StoredObject:
        """Store ``body`` under ``key``.

        Raises:
            StorageError: ``NetworkFailure`` or ``StorageRejected``.
        """
        ...

    async def delete(self, stored_path: str) -> None:
        """Remove a stored object.

        Raises:
            StorageError: ``NetworkFailure`` or ``StorageRejected``.
        """
        ...

    def public_url_for(self, stored_path: str) -> str:
        """Return the durable public address of a stored object."""
        ...


class SupabaseStorage:
    """Uploads into one Supabase Storage bucket."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        api_key: str,
        bucket: str,
        cache_control: str = "3600",
    ) -> None:
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._bucket = bucket
        self._cache_control = cache_control

    @classmethod
    def from_settings(cls, settings: Settings, client: httpx.AsyncClient) -> SupabaseStorage:
        """Build the backend from settings.

        Raises:
            ValueError: If the Supabase URL or key is missing.
        """
        if not settings.supabase_url or not settings.supabase_key:
            raise ValueError(
                "Missing Supabase credentials. Please set PIXELUPLOAD_SUPABASE_URL and "
                "PIXELUPLOAD_SUPABASE_KEY environment variables."
            )
        return cls(
            client,
            base_url=settings.supabase_url,
            api_key=settings.supabase_key,
            bucket=settings.storage_bucket,
            cache_control=settings.storage_cache_control,
        )

    @property
    def bucket(self) -> str:
        return self._bucket

    async def put(self, key: str, body: bytes, content_type: str) -> StoredObject:
        url = f"{self._base_url}/storage/v1/object/{self._bucket}/{quote(key)}"
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "apikey": self._api_key,
            "Content-Type": content_type,
            "cache-control": f"max-age={self._cache_control}",
            "x-upsert": "false",
        }
        try:
            response = await self._client.post(url, content=body, headers=headers)
        except httpx.TransportError as exc:
            logger.error("Upload of %s/%s failed: %s", self._bucket, key, exc)
            raise StorageError.network(str(exc) or type(exc).__name__) from exc

        if response.is_error:
            message = _error_message(response)
            logger.error("Storage rejected %s/%s (%d): %s", self._bucket, key, response.status_code, message)
            raise StorageError.rejected(
                message,
                response.status_code,
                retryable=response.status_code not in NON_RETRYABLE_STATUSES,
            )

        logger.info("Uploaded file to %s/%s", self._bucket, key)
        return StoredObject(stored_path=key)

    async def delete(self, stored_path: str) -> None:
        url = f"{self._base_url}/storage/v1/object/{self._bucket}/{quote(stored_path)}"
        headers = {"Authorization": f"Bearer {self._api_key}", "apikey": self._api_key}
        try:
            response = await self._client.delete(url, headers=headers)
        except httpx.TransportError as exc:
            logger.error("Delete of %s/%s failed: %s", self._bucket, stored_path, exc)
            raise StorageError.network(str(exc) or type(exc).__name__) from exc

        if response.is_error:
            message = _error_message(response)
            logger.error(
                "Storage refused to delete %s/%s (%d): %s", self._bucket, stored_path, response.status_code, message
            )
            raise StorageError.rejected(message, response.status_code)

        logger.info("Deleted %s/%s", self._bucket, stored_path)

    def public_url_for(self, stored_path: str) -> str:
        return f"{self._base_url}/storage/v1/object/public/{self._bucket}/{quote(stored_path)}"


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(payload, dict):
        for key in ("message", "error", "msg"):
            value = payload.get(key)
            if value:
                return str(value)
    return response.reason_phrase
