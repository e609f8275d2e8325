"""Crop stage: the collaborator contract plus the interactive implementation.

The pipeline presents a transformed blob to a ``CropCoordinator`` and waits.
The coordinator answers with a cropped blob or raises ``CropCancelled``.
"""

from __future__ import annotations

import asyncio
import io
import logging
import math
from dataclasses import dataclass, field
from functools import partial
from typing import TYPE_CHECKING, Protocol

from PIL import Image

from pixelupload.pipeline.errors import CropCancelled, TransformError
from pixelupload.pipeline.models import ImageFormat, TransformResult
from pixelupload.pipeline.transformer import decode_image, flatten_alpha

if TYPE_CHECKING:
    from collections.abc import Awaitable

    from pixelupload.pipeline.workers import WorkerPool

logger = logging.getLogger(__name__)

DEFAULT_CROP_QUALITY: float = 0.92


class CropCoordinator(Protocol):
    """Protocol for the crop collaborator."""

    def present(self, image: TransformResult, aspect_ratio: float) -> Awaitable[TransformResult]:
        """Present ``image`` for cropping at ``aspect_ratio`` (width / height).

        The crop must be registered by the time this returns. The returned
        awaitable resolves to the cropped replacement blob, or raises
        ``CropCancelled`` if the crop was abandoned.
        """
        ...


@dataclass(frozen=True)
class CropRegion:
    """Crop rectangle in pixels, relative to the unrotated image's top-left corner."""

    x: float
    y: float
    width: float
    height: float

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Crop region must have a positive size, got {self.width}x{self.height}")


def crop_image(data: bytes, region: CropRegion, rotation: float = 0, quality: float = DEFAULT_CROP_QUALITY) -> bytes:
    """Rotate and crop an encoded image, returning JPEG bytes.

    The image is centred on a square safe area large enough to hold it at
    any rotation, rotated clockwise by ``rotation`` degrees about the centre,
    and ``region`` is cut out of the result.

    Raises:
        TransformError: If the image cannot be decoded or encoded.
    """
    image, _ = decode_image(data)
    image = flatten_alpha(image)
    width, height = image.size

    safe_area = int(2 * ((max(width, height) / 2) * math.sqrt(2)))
    origin = (safe_area // 2 - width // 2, safe_area // 2 - height // 2)
    canvas = Image.new("RGB", (safe_area, safe_area))
    canvas.paste(image, origin)
    if rotation % 360:
        canvas = canvas.rotate(-rotation, resample=Image.Resampling.BICUBIC)

    left = origin[0] + round(region.x)
    top = origin[1] + round(region.y)
    box = (left, top, left + round(region.width), top + round(region.height))
    cropped = canvas.crop(box)

    buffer = io.BytesIO()
    try:
        cropped.save(buffer, format="JPEG", quality=max(1, round(quality * 100)))
    except (OSError, ValueError) as exc:
        raise TransformError.encode_failed(str(exc)) from exc
    return buffer.getvalue()


def _as_result(data: bytes, region: CropRegion) -> TransformResult:
    return TransformResult(
        data=data,
        content_type="image/jpeg",
        width=round(region.width),
        height=round(region.height),
        format=ImageFormat.JPEG,
        compressed=True,
    )


@dataclass
class PendingCrop:
    image: TransformResult
    aspect_ratio: float
    future: asyncio.Future[TransformResult] = field(repr=False)


class InteractiveCropper:
    """Parks a blob until the host applies or abandons a crop.

    At most one crop is pending; presenting a new image abandons the
    previous one. The crop is registered as soon as ``present`` returns,
    so a host reacting to the Cropping state always finds it.
    """

    def __init__(self, pool: WorkerPool, quality: float = DEFAULT_CROP_QUALITY) -> None:
        self._pool = pool
        self._quality = quality
        self._pending: PendingCrop | None = None

    @property
    def pending(self) -> PendingCrop | None:
        return self._pending

    def present(self, image: TransformResult, aspect_ratio: float) -> asyncio.Future[TransformResult]:
        if self._pending is not None:
            self.abandon()
        future: asyncio.Future[TransformResult] = asyncio.get_running_loop().create_future()
        pending = PendingCrop(image=image, aspect_ratio=aspect_ratio, future=future)
        self._pending = pending
        future.add_done_callback(partial(self._discard, pending))
        logger.debug("Crop pending (%d bytes, aspect %.3f)", image.byte_length, aspect_ratio)
        return future

    async def apply(self, region: CropRegion, rotation: float = 0) -> bool:
        """Crop the pending image. Returns False if nothing was pending.

        Raises:
            TransformError: If the pending blob cannot be cropped.
        """
        pending = self._pending
        if pending is None:
            return False
        data = await self._pool.run(crop_image, pending.image.data, region, rotation, self._quality)
        if pending.future.done():
            return False
        pending.future.set_result(_as_result(data, region))
        self._discard(pending)
        return True

    def abandon(self) -> bool:
        """Cancel the pending crop. Returns False if nothing was pending."""
        pending = self._pending
        if pending is None or pending.future.done():
            return False
        pending.future.set_exception(CropCancelled())
        self._discard(pending)
        logger.debug("Crop abandoned")
        return True

    def _discard(self, pending: PendingCrop, _future: object = None) -> None:
        # Also runs as the future's done callback, after a newer crop may be pending.
        if self._pending is pending:
            self._pending = None
