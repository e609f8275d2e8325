"""Tests for the crop stage."""

from __future__ import annotations

import asyncio
import io
from typing import TYPE_CHECKING

import pytest
from PIL import Image

from pixelupload.pipeline.cropper import CropRegion, InteractiveCropper, crop_image
from pixelupload.pipeline.errors import CropCancelled, TransformError
from pixelupload.pipeline.models import ImageFormat, TransformResult

if TYPE_CHECKING:
    from pixelupload.pipeline.workers import WorkerPool


def _two_tone(width: int = 200, height: int = 100) -> bytes:
    """Left half red, right half blue."""
    image = Image.new("RGB", (width, height), (255, 0, 0))
    image.paste((0, 0, 255), (width // 2, 0, width, height))
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def _blob(data: bytes) -> TransformResult:
    return TransformResult(data=data, content_type="image/png", width=200, height=100, format=ImageFormat.PNG)


def _open(data: bytes) -> Image.Image:
    image = Image.open(io.BytesIO(data))
    image.load()
    return image


class TestCropImage:
    def test_output_matches_region(self) -> None:
        cropped = _open(crop_image(_two_tone(), CropRegion(x=20, y=10, width=120, height=60)))
        assert cropped.format == "JPEG"
        assert cropped.size == (120, 60)

    def test_region_offset(self) -> None:
        cropped = _open(crop_image(_two_tone(), CropRegion(x=100, y=0, width=100, height=100)))
        red, green, blue = cropped.getpixel((50, 50))
        assert blue > 200
        assert red < 60
        assert green < 60

    def test_rotation_keeps_region_size(self) -> None:
        cropped = _open(crop_image(_two_tone(), CropRegion(x=0, y=0, width=80, height=80), rotation=90))
        assert cropped.size == (80, 80)

    def test_half_turn_swaps_halves(self) -> None:
        cropped = _open(crop_image(_two_tone(), CropRegion(x=100, y=0, width=100, height=100), rotation=180))
        red, _, blue = cropped.getpixel((50, 50))
        assert red > 200
        assert blue < 60

    def test_corrupt_input(self) -> None:
        with pytest.raises(TransformError):
            crop_image(b"nope", CropRegion(x=0, y=0, width=1, height=1))

    def test_region_needs_positive_size(self) -> None:
        with pytest.raises(ValueError):
            CropRegion(x=0, y=0, width=0, height=10)


class TestInteractiveCropper:
    async def test_present_registers_immediately(self, pool: WorkerPool) -> None:
        cropper = InteractiveCropper(pool)
        decision = cropper.present(_blob(_two_tone()), 1.0)

        pending = cropper.pending
        assert pending is not None
        assert pending.aspect_ratio == 1.0
        assert not decision.done()

        assert await cropper.apply(CropRegion(x=50, y=0, width=100, height=100)) is True
        result = await asyncio.wait_for(decision, timeout=10)

        assert result.format is ImageFormat.JPEG
        assert result.content_type == "image/jpeg"
        assert (result.width, result.height) == (100, 100)
        assert _open(result.data).size == (100, 100)
        assert cropper.pending is None

    async def test_abandon_raises_crop_cancelled(self, pool: WorkerPool) -> None:
        cropper = InteractiveCropper(pool)
        decision = cropper.present(_blob(_two_tone()), 1.0)

        assert cropper.abandon() is True
        assert cropper.pending is None
        with pytest.raises(CropCancelled):
            await decision

    async def test_nothing_pending(self, pool: WorkerPool) -> None:
        cropper = InteractiveCropper(pool)
        assert cropper.abandon() is False
        assert await cropper.apply(CropRegion(x=0, y=0, width=1, height=1)) is False

    async def test_new_crop_abandons_previous(self, pool: WorkerPool) -> None:
        cropper = InteractiveCropper(pool)
        first = cropper.present(_blob(_two_tone()), 1.0)
        second = cropper.present(_blob(_two_tone()), 2.0)

        with pytest.raises(CropCancelled):
            await first
        pending = cropper.pending
        assert pending is not None
        assert pending.aspect_ratio == 2.0

        cropper.abandon()
        with pytest.raises(CropCancelled):
            await second

    async def test_cancelled_decision_clears_pending(self, pool: WorkerPool) -> None:
        cropper = InteractiveCropper(pool)
        decision = cropper.present(_blob(_two_tone()), 1.0)

        decision.cancel()
        await asyncio.sleep(0)
        assert cropper.pending is None
        assert await cropper.apply(CropRegion(x=0, y=0, width=1, height=1)) is False
