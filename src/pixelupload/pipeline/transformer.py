"""Decode, downscale and re-encode a source image.

The transform never upscales and never returns a payload larger than the
source: if re-encoding does not shrink the file, the original bytes are
kept. GIF, SVG and animated rasters are passed through untouched.
"""

from __future__ import annotations

import io
import logging
from typing import TYPE_CHECKING, Protocol

from PIL import Image, ImageOps

from pixelupload.pipeline.errors import TransformError
from pixelupload.pipeline.models import PASSTHROUGH_TYPES, ImageFormat, TransformResult

if TYPE_CHECKING:
    from pixelupload.pipeline.models import SourceFile, UploadConfiguration
    from pixelupload.pipeline.workers import WorkerPool

logger = logging.getLogger(__name__)

_DECODE_ERRORS = (OSError, ValueError, SyntaxError, Image.DecompressionBombError)


# ---------------------------------------------------------------------------
# Rendering surface protocol
# ---------------------------------------------------------------------------


class RasterSurface(Protocol):
    """An in-memory drawing target of fixed size."""

    def draw(self, image: Image.Image) -> None:
        """Draw ``image`` scaled to fill the whole surface."""
        ...

    def encode(self, image_format: ImageFormat, quality: float) -> bytes:
        """Encode the surface.

        Args:
            image_format: ``ImageFormat.PNG`` or ``ImageFormat.JPEG``.
            quality: Lossy quality in (0, 1]; ignored for PNG.

        Raises:
            OSError, ValueError: If the encoder fails.
        """
        ...


class RasterSurfaceFactory(Protocol):
    def create(self, width: int, height: int, mode: str) -> RasterSurface: ...


class Transformer(Protocol):
    """Protocol for the transform stage as seen by the controller."""

    async def transform(self, source: SourceFile, config: UploadConfiguration) -> TransformResult: ...


class PillowSurface:
    def __init__(self, width: int, height: int, mode: str) -> None:
        self._canvas = Image.new(mode, (width, height))

    def draw(self, image: Image.Image) -> None:
        if image.size != self._canvas.size:
            image = image.resize(self._canvas.size, Image.Resampling.LANCZOS)
        self._canvas.paste(image, (0, 0))

    def encode(self, image_format: ImageFormat, quality: float) -> bytes:
        buffer = io.BytesIO()
        if image_format is ImageFormat.PNG:
            self._canvas.save(buffer, format="PNG", optimize=True)
        else:
            self._canvas.save(buffer, format="JPEG", quality=max(1, round(quality * 100)), optimize=True)
        return buffer.getvalue()


class PillowSurfaceFactory:
    def create(self, width: int, height: int, mode: str) -> RasterSurface:
        return PillowSurface(width, height, mode)


# ---------------------------------------------------------------------------
# Geometry and pixel helpers
# ---------------------------------------------------------------------------


def compute_target_size(width: int, height: int, max_width: int, max_height: int) -> tuple[int, int]:
    """Fit ``width`` x ``height`` inside the bounds, preserving aspect ratio.

    Dimensions already within bounds are returned unchanged. Otherwise both
    sides are scaled by ``min(max_width / width, max_height / height)`` and
    floored, using integer arithmetic so the bounding side lands exactly.
    """
    if width <= max_width and height <= max_height:
        return width, height
    if max_width * height <= max_height * width:
        return max_width, max(1, height * max_width // width)
    return max(1, width * max_height // height), max_height


def flatten_alpha(image: Image.Image, background: tuple[int, int, int] = (255, 255, 255)) -> Image.Image:
    """Composite any transparency onto an opaque background and return RGB."""
    if image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info):
        rgba = image.convert("RGBA")
        canvas = Image.new("RGB", rgba.size, background)
        canvas.paste(rgba, mask=rgba.split()[3])
        return canvas
    if image.mode != "RGB":
        return image.convert("RGB")
    return image


def _prepare_for(image: Image.Image, image_format: ImageFormat) -> Image.Image:
    if image_format is ImageFormat.JPEG:
        return flatten_alpha(image)
    if image.mode not in ("L", "LA", "RGB", "RGBA"):
        return image.convert("RGBA")
    return image


def decode_image(data: bytes) -> tuple[Image.Image, bool]:
    """Decode ``data`` into an upright raster.

    Returns:
        The decoded image with EXIF orientation applied, and whether the
        source has more than one frame.

    Raises:
        TransformError: ``DecodeFailed`` if Pillow cannot read the bytes.
    """
    try:
        with Image.open(io.BytesIO(data)) as opened:
            opened.load()
            animated = bool(getattr(opened, "is_animated", False))
            upright = ImageOps.exif_transpose(opened)
            if upright is opened:
                upright = opened.copy()
    except _DECODE_ERRORS as exc:
        raise TransformError.decode_failed(str(exc) or type(exc).__name__) from exc
    return upright, animated


# ---------------------------------------------------------------------------
# Transformer
# ---------------------------------------------------------------------------


class ImageTransformer:
    """Produces the smallest acceptable blob for a validated source file."""

    def __init__(self, pool: WorkerPool, surfaces: RasterSurfaceFactory | None = None) -> None:
        self._pool = pool
        self._surfaces = surfaces or PillowSurfaceFactory()

    async def transform(self, source: SourceFile, config: UploadConfiguration) -> TransformResult:
        """Transform ``source`` on the worker pool.

        Raises:
            TransformError: ``DecodeFailed`` or ``EncodeFailed``.
        """
        result = await self._pool.run(self.transform_sync, source, config)
        logger.debug(
            "Transformed %s: %d -> %d bytes (%s, %sx%s)",
            source.filename or "<unnamed>",
            source.byte_length,
            result.byte_length,
            result.format,
            result.width,
            result.height,
        )
        return result

    def transform_sync(self, source: SourceFile, config: UploadConfiguration) -> TransformResult:
        if source.content_type in PASSTHROUGH_TYPES:
            return _passthrough(source)

        image, animated = decode_image(source.data)
        if animated:
            return _passthrough(source, image.size)

        width, height = image.size
        target_width, target_height = compute_target_size(width, height, config.max_width, config.max_height)
        image_format = ImageFormat.PNG if source.content_type == "image/png" else ImageFormat.JPEG
        prepared = _prepare_for(image, image_format)

        try:
            surface = self._surfaces.create(target_width, target_height, prepared.mode)
            surface.draw(prepared)
            encoded = surface.encode(image_format, config.compression_quality)
        except (OSError, ValueError) as exc:
            raise TransformError.encode_failed(str(exc) or type(exc).__name__) from exc

        if len(encoded) >= source.byte_length:
            logger.debug("Re-encoded %s is not smaller, keeping original", source.filename or "<unnamed>")
            return _passthrough(source, (width, height))

        return TransformResult(
            data=encoded,
            content_type=f"image/{image_format}",
            width=target_width,
            height=target_height,
            format=image_format,
            compressed=True,
        )


def _passthrough(source: SourceFile, size: tuple[int, int] | None = None) -> TransformResult:
    width, height = size if size is not None else (None, None)
    return TransformResult(
        data=source.data,
        content_type=source.content_type,
        width=width,
        height=height,
        format=ImageFormat.ORIGINAL,
        compressed=False,
    )
