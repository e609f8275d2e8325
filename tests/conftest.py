"""Shared fakes and fixtures for the pipeline tests."""

from __future__ import annotations

import asyncio
import io
from typing import TYPE_CHECKING, Any

import pytest
from PIL import Image

from pixelupload.pipeline.models import SourceFile, UploadConfiguration
from pixelupload.pipeline.storage import StoredObject
from pixelupload.pipeline.workers import WorkerPool

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from pixelupload.pipeline.errors import StorageError


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Deterministic clock; ``sleep`` only yields to the event loop."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.current = start
        self.sleeps = 0

    def now(self) -> float:
        return self.current

    async def sleep(self, seconds: float) -> None:
        self.sleeps += 1
        self.current += seconds
        await asyncio.sleep(0)


class FakeRandom:
    def token(self, length: int) -> str:
        return "k3y9zq"[:length]


class FakeStorage:
    """In-memory storage with scripted failures and an optional gate."""

    def __init__(self) -> None:
        self.attempts: list[tuple[str, bytes, str]] = []
        self.stored: dict[str, bytes] = {}
        self.failures: list[Exception] = []
        self.gate: asyncio.Event | None = None
        self.aborted = 0
        self.deleted: list[str] = []
        self.delete_failures: list[Exception] = []

    def fail_next(self, error: StorageError | Exception) -> None:
        self.failures.append(error)

    async def put(self, key: str, body: bytes, content_type: str) -> StoredObject:
        self.attempts.append((key, body, content_type))
        if self.gate is not None:
            try:
                await self.gate.wait()
            except asyncio.CancelledError:
                self.aborted += 1
                raise
        if self.failures:
            raise self.failures.pop(0)
        self.stored[key] = body
        return StoredObject(stored_path=key)

    async def delete(self, stored_path: str) -> None:
        self.deleted.append(stored_path)
        if self.delete_failures:
            raise self.delete_failures.pop(0)
        self.stored.pop(stored_path, None)

    def public_url_for(self, stored_path: str) -> str:
        return f"https://cdn.example.test/blog-images/{stored_path}"


# ---------------------------------------------------------------------------
# Image helpers
# ---------------------------------------------------------------------------


def encode_image(
    width: int,
    height: int,
    image_format: str = "JPEG",
    mode: str = "RGB",
    quality: int = 90,
    noise: bool = False,
) -> bytes:
    if noise:
        image = Image.effect_noise((width, height), 60).convert(mode)
    else:
        image = Image.linear_gradient("L").resize((width, height)).convert(mode)
    buffer = io.BytesIO()
    if image_format == "JPEG":
        image.save(buffer, format="JPEG", quality=quality)
    else:
        image.save(buffer, format=image_format)
    return buffer.getvalue()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def pool() -> Iterator[WorkerPool]:
    worker_pool = WorkerPool(max_workers=1)
    yield worker_pool
    worker_pool.shutdown()


@pytest.fixture()
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def random_source() -> FakeRandom:
    return FakeRandom()


@pytest.fixture()
def make_config() -> Callable[..., UploadConfiguration]:
    def _make(**overrides: Any) -> UploadConfiguration:
        defaults: dict[str, Any] = {
            "max_size_bytes": 5 * 1024 * 1024,
            "max_width": 2048,
            "max_height": 2048,
            "compression_quality": 0.85,
            "accepted_mime_types": frozenset({"image/jpeg", "image/png", "image/webp", "image/gif"}),
            "crop_aspect_ratio": None,
            "destination_prefix": "posts",
            "allow_retry": True,
        }
        defaults.update(overrides)
        return UploadConfiguration(**defaults)

    return _make


@pytest.fixture()
def make_image() -> Callable[..., bytes]:
    return encode_image


@pytest.fixture()
def jpeg_source() -> SourceFile:
    return SourceFile(data=encode_image(640, 480, noise=True), content_type="image/jpeg", filename="photo.jpg")
