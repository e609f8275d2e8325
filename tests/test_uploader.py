"""Tests for the upload stage."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest

from pixelupload.pipeline.cancellation import CancelToken
from pixelupload.pipeline.errors import ErrorKind, StorageError
from pixelupload.pipeline.models import (
    ImageFormat,
    TransformResult,
    UploadCancelled,
    UploadFailed,
    UploadSucceeded,
)
from pixelupload.pipeline.uploader import PROGRESS_CEILING, SystemRandomSource, UploadExecutor, extension_for

if TYPE_CHECKING:
    from collections.abc import Callable

    from conftest import FakeClock, FakeRandom, FakeStorage

    from pixelupload.pipeline.models import UploadConfiguration


JPEG_BLOB = TransformResult(
    data=b"\xff\xd8jpeg",
    content_type="image/jpeg",
    width=10,
    height=10,
    format=ImageFormat.JPEG,
    compressed=True,
)


def _executor(storage: FakeStorage, clock: FakeClock, random_source: FakeRandom) -> UploadExecutor:
    return UploadExecutor(storage, clock=clock, random_source=random_source)


async def _until(predicate: Callable[[], bool]) -> None:
    for _ in range(200):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


class TestKeys:
    def test_key_format(
        self,
        storage: FakeStorage,
        clock: FakeClock,
        random_source: FakeRandom,
        make_config: Callable[..., UploadConfiguration],
    ) -> None:
        key = _executor(storage, clock, random_source).make_key(JPEG_BLOB, make_config())
        assert key == "posts/1700000000000-k3y9zq.jpeg"

    def test_empty_prefix(
        self,
        storage: FakeStorage,
        clock: FakeClock,
        random_source: FakeRandom,
        make_config: Callable[..., UploadConfiguration],
    ) -> None:
        key = _executor(storage, clock, random_source).make_key(JPEG_BLOB, make_config(destination_prefix="/"))
        assert key == "1700000000000-k3y9zq.jpeg"

    def test_extension_for(self) -> None:
        original = {"width": None, "height": None, "format": ImageFormat.ORIGINAL}
        svg = TransformResult(data=b"", content_type="image/svg+xml", **original)  # type: ignore[arg-type]
        unknown = TransformResult(data=b"", content_type="", **original)  # type: ignore[arg-type]
        assert extension_for(svg) == "svg"
        assert extension_for(JPEG_BLOB) == "jpeg"
        assert extension_for(unknown, "heic") == "heic"
        assert extension_for(unknown) == "jpg"

    def test_system_random_token(self) -> None:
        token = SystemRandomSource().token(6)
        assert len(token) == 6
        assert token.isalnum()
        assert token == token.lower()

    def test_progress_step_bounds(self, storage: FakeStorage) -> None:
        with pytest.raises(ValueError):
            UploadExecutor(storage, progress_step=0)


class TestUpload:
    async def test_success(
        self,
        storage: FakeStorage,
        clock: FakeClock,
        random_source: FakeRandom,
        make_config: Callable[..., UploadConfiguration],
    ) -> None:
        progress: list[int] = []
        outcome = await _executor(storage, clock, random_source).upload(
            JPEG_BLOB, make_config(), CancelToken(), on_progress=progress.append
        )

        assert isinstance(outcome, UploadSucceeded)
        assert outcome.stored_path == "posts/1700000000000-k3y9zq.jpeg"
        assert outcome.public_url == "https://cdn.example.test/blog-images/posts/1700000000000-k3y9zq.jpeg"
        assert outcome.byte_size == JPEG_BLOB.byte_length
        assert storage.stored == {outcome.stored_path: JPEG_BLOB.data}
        assert storage.attempts[0][2] == "image/jpeg"
        assert progress[-1] == 100

    async def test_progress_capped_until_transfer_resolves(
        self,
        storage: FakeStorage,
        clock: FakeClock,
        random_source: FakeRandom,
        make_config: Callable[..., UploadConfiguration],
    ) -> None:
        storage.gate = asyncio.Event()
        progress: list[int] = []
        task = asyncio.ensure_future(
            _executor(storage, clock, random_source).upload(
                JPEG_BLOB, make_config(), CancelToken(), on_progress=progress.append
            )
        )

        await _until(lambda: bool(progress) and progress[-1] == PROGRESS_CEILING)
        for _ in range(10):
            await asyncio.sleep(0)
        assert max(progress) == PROGRESS_CEILING
        assert progress == sorted(progress)

        storage.gate.set()
        outcome = await task
        assert isinstance(outcome, UploadSucceeded)
        assert progress[-1] == 100

    async def test_failure_reported_without_completion(
        self,
        storage: FakeStorage,
        clock: FakeClock,
        random_source: FakeRandom,
        make_config: Callable[..., UploadConfiguration],
    ) -> None:
        storage.fail_next(StorageError.network("connection reset"))
        progress: list[int] = []
        outcome = await _executor(storage, clock, random_source).upload(
            JPEG_BLOB, make_config(), CancelToken(), on_progress=progress.append
        )

        assert isinstance(outcome, UploadFailed)
        assert outcome.error.kind is ErrorKind.NETWORK_FAILURE
        assert outcome.retryable is True
        assert 100 not in progress
        assert storage.stored == {}

    async def test_unexpected_backend_error(
        self,
        storage: FakeStorage,
        clock: FakeClock,
        random_source: FakeRandom,
        make_config: Callable[..., UploadConfiguration],
    ) -> None:
        storage.fail_next(RuntimeError("boom"))
        outcome = await _executor(storage, clock, random_source).upload(JPEG_BLOB, make_config(), CancelToken())

        assert isinstance(outcome, UploadFailed)
        assert outcome.error.kind is ErrorKind.NETWORK_FAILURE
        assert outcome.error.message == "boom"

    async def test_cancel_aborts_transfer(
        self,
        storage: FakeStorage,
        clock: FakeClock,
        random_source: FakeRandom,
        make_config: Callable[..., UploadConfiguration],
    ) -> None:
        storage.gate = asyncio.Event()
        token = CancelToken()
        progress: list[int] = []
        task = asyncio.ensure_future(
            _executor(storage, clock, random_source).upload(
                JPEG_BLOB, make_config(), token, on_progress=progress.append
            )
        )
        await _until(lambda: bool(storage.attempts))

        token.cancel("user cancelled")
        outcome = await task

        assert isinstance(outcome, UploadCancelled)
        assert storage.aborted == 1
        assert storage.stored == {}
        assert 100 not in progress

    async def test_cancel_wins_over_simultaneous_failure(
        self,
        storage: FakeStorage,
        clock: FakeClock,
        random_source: FakeRandom,
        make_config: Callable[..., UploadConfiguration],
    ) -> None:
        storage.gate = asyncio.Event()
        storage.fail_next(StorageError.network("connection reset"))
        token = CancelToken()
        task = asyncio.ensure_future(_executor(storage, clock, random_source).upload(JPEG_BLOB, make_config(), token))
        await _until(lambda: bool(storage.attempts))

        storage.gate.set()
        token.cancel("user cancelled")

        assert isinstance(await task, UploadCancelled)

    async def test_already_cancelled_token(
        self,
        storage: FakeStorage,
        clock: FakeClock,
        random_source: FakeRandom,
        make_config: Callable[..., UploadConfiguration],
    ) -> None:
        token = CancelToken()
        token.cancel()
        outcome = await _executor(storage, clock, random_source).upload(JPEG_BLOB, make_config(), token)

        assert isinstance(outcome, UploadCancelled)
        assert storage.attempts == []

    async def test_object_stored_as_cancel_lands_is_deleted(
        self,
        storage: FakeStorage,
        clock: FakeClock,
        random_source: FakeRandom,
        make_config: Callable[..., UploadConfiguration],
    ) -> None:
        storage.gate = asyncio.Event()
        token = CancelToken()
        task = asyncio.ensure_future(_executor(storage, clock, random_source).upload(JPEG_BLOB, make_config(), token))
        await _until(lambda: bool(storage.attempts))

        storage.gate.set()
        token.cancel("user cancelled")

        assert isinstance(await task, UploadCancelled)
        assert storage.deleted == ["posts/1700000000000-k3y9zq.jpeg"]
        assert storage.stored == {}

    async def test_failed_cleanup_still_reports_cancelled(
        self,
        storage: FakeStorage,
        clock: FakeClock,
        random_source: FakeRandom,
        make_config: Callable[..., UploadConfiguration],
    ) -> None:
        storage.gate = asyncio.Event()
        storage.delete_failures.append(StorageError.network("connection reset"))
        token = CancelToken()
        task = asyncio.ensure_future(_executor(storage, clock, random_source).upload(JPEG_BLOB, make_config(), token))
        await _until(lambda: bool(storage.attempts))

        storage.gate.set()
        token.cancel("user cancelled")

        assert isinstance(await task, UploadCancelled)
        assert storage.deleted == ["posts/1700000000000-k3y9zq.jpeg"]
        assert list(storage.stored) == ["posts/1700000000000-k3y9zq.jpeg"]

    async def test_aborted_transfer_needs_no_cleanup(
        self,
        storage: FakeStorage,
        clock: FakeClock,
        random_source: FakeRandom,
        make_config: Callable[..., UploadConfiguration],
    ) -> None:
        storage.gate = asyncio.Event()
        token = CancelToken()
        task = asyncio.ensure_future(_executor(storage, clock, random_source).upload(JPEG_BLOB, make_config(), token))
        await _until(lambda: bool(storage.attempts))

        token.cancel("user cancelled")

        assert isinstance(await task, UploadCancelled)
        assert storage.deleted == []
