"""Transform engine: crop, resize, format conversion and grid merge on top of Pillow."""

from __future__ import annotations

import io
import logging
import math
import struct
from contextlib import ExitStack
from typing import Callable, Optional, Sequence, Tuple

from PIL import Image, UnidentifiedImageError

from .bmp import encode_bmp
from .config import SECURITY_LIMITS, SecurityLimits
from .exceptions import DecodeError, ExportError, InvalidOptionsError, ValidationRejected
from .schemas import CropRegion, OutputFormat, ProcessOptions
from .utils import ensure_rgba, round_half_up
from .validation import check_dimensions, probe_dimensions

logger = logging.getLogger(__name__)

MIN_QUALITY = 0.01
MAX_QUALITY = 1.0
SIZE_SEARCH_ITERATIONS = 5
DEFAULT_MERGE_QUALITY = 90

WHITE = (255, 255, 255, 255)
TRANSPARENT = (0, 0, 0, 0)

_DECODE_ERRORS = (UnidentifiedImageError, OSError, SyntaxError, ValueError, struct.error)
_EXPORT_ERRORS = (OSError, ValueError, KeyError)


def pillow_quality(quality: float) -> int:
    """Map a 0.01-1.00 quality to Pillow's 1-100 scale."""
    return max(1, min(100, round(quality * 100)))


def search_quality(
    encode: Callable[[float], bytes],
    target_size: int,
    iterations: int = SIZE_SEARCH_ITERATIONS,
) -> bytes:
    """Binary-search the encoder quality for the best result under ``target_size``.

    The target is a ceiling, not a contract: if no probe fits, the smallest
    achievable encoding is returned even though it is too big.
    """

    attempt = encode(MAX_QUALITY)
    if len(attempt) <= target_size:
        return attempt

    low, high = MIN_QUALITY, MAX_QUALITY
    best: Optional[bytes] = None
    for _ in range(iterations):
        mid = (low + high) / 2
        attempt = encode(mid)
        if len(attempt) < target_size:
            best = attempt
            low = mid
        else:
            high = mid

    if best is not None:
        return best

    logger.info("Target size %d bytes unreachable, exporting at minimum quality", target_size)
    return encode(MIN_QUALITY)


class TransformEngine:
    """Decode, transform and re-encode a single image (or a grid of images)."""

    def __init__(self, limits: SecurityLimits = SECURITY_LIMITS, merge_quality: int = DEFAULT_MERGE_QUALITY):
        self.limits = limits
        self.merge_quality = merge_quality

    def process(self, source_bytes: bytes, options: ProcessOptions) -> bytes:
        """Apply ``options`` to ``source_bytes`` and return the encoded output."""

        with self._decode(source_bytes) as source:
            source_size = source.size
            box = self._resolve_source_box(source, options.crop_region)
            size = self._clamp_target(options.target_width, options.target_height)
            surface = self._render(source, box, size, options.output_format)

        try:
            output = self._export(surface, options)
        finally:
            surface.close()

        logger.debug(
            "Processed %s region %s -> %dx%d %s (%d bytes)",
            source_size,
            box,
            size[0],
            size[1],
            options.output_format.value,
            len(output),
        )
        return output

    def merge(self, sources: Sequence[bytes]) -> bytes:
        """Lay the sources out on a white grid and export one JPEG."""

        if not sources:
            raise InvalidOptionsError("No images to merge")

        with ExitStack() as stack:
            images = [stack.enter_context(self._decode(data)) for data in sources]

            count = len(images)
            cols = math.ceil(math.sqrt(count))
            rows = math.ceil(count / cols)
            cell_width = max(image.width for image in images)
            cell_height = max(image.height for image in images)
            canvas_width = cell_width * cols
            canvas_height = cell_height * rows

            if canvas_width * canvas_height > self.limits.max_pixels:
                raise ValidationRejected(
                    f"Merged image size ({canvas_width}x{canvas_height}) exceeds safety limits."
                )

            canvas = stack.enter_context(Image.new("RGB", (canvas_width, canvas_height), WHITE[:3]))
            for index, image in enumerate(images):
                row, col = divmod(index, cols)
                x = col * cell_width + (cell_width - image.width) // 2
                y = row * cell_height + (cell_height - image.height) // 2
                rgba = stack.enter_context(ensure_rgba(image))
                canvas.paste(rgba, (x, y), rgba)

            output = self._encode(canvas, OutputFormat.JPEG, self.merge_quality / 100)

        logger.debug("Merged %d images into %dx%d grid (%d bytes)", count, cols, rows, len(output))
        return output

    def get_image_dimensions(self, source_bytes: bytes) -> Tuple[int, int]:
        """Header-only probe of the source dimensions."""

        try:
            return probe_dimensions(source_bytes)
        except ValidationRejected as exc:
            raise DecodeError("Unable to decode image") from exc

    # ---------------------------------------------------------------------
    # Internal helpers
    # ---------------------------------------------------------------------

    def _decode(self, data: bytes) -> Image.Image:
        try:
            image = Image.open(io.BytesIO(data))
        except Image.DecompressionBombError as exc:
            raise ValidationRejected(str(exc)) from exc
        except _DECODE_ERRORS as exc:
            raise DecodeError("Unable to decode image") from exc

        try:
            # header dimensions are known before any pixel data is loaded
            reason = check_dimensions(image.width, image.height, self.limits)
            if reason is not None:
                raise ValidationRejected(reason)
            image.load()
        except _DECODE_ERRORS as exc:
            image.close()
            raise DecodeError("Unable to decode image") from exc
        except BaseException:
            image.close()
            raise
        return image

    @staticmethod
    def _resolve_source_box(image: Image.Image, crop: Optional[CropRegion]) -> Tuple[int, int, int, int]:
        if crop is None:
            return 0, 0, image.width, image.height

        if crop.x + crop.width > image.width or crop.y + crop.height > image.height:
            raise InvalidOptionsError(
                f"Crop region {crop.x:g},{crop.y:g},{crop.width:g}x{crop.height:g} "
                f"is outside the {image.width}x{image.height} source"
            )

        # rounding can push a valid region past the edge by one pixel
        left, top, right, bottom = crop.to_box()
        right = min(right, image.width)
        bottom = min(bottom, image.height)
        if right <= left or bottom <= top:
            raise InvalidOptionsError("Crop region is empty after rounding to whole pixels")
        return left, top, right, bottom

    def _clamp_target(self, width: int, height: int) -> Tuple[int, int]:
        width = max(1, min(round_half_up(width), self.limits.max_width))
        height = max(1, min(round_half_up(height), self.limits.max_height))
        if width * height > self.limits.max_pixels:
            raise ValidationRejected(
                f"Output dimensions exceed safety limit ({self.limits.max_pixels} pixels)."
            )
        return width, height

    @staticmethod
    def _render(
        source: Image.Image,
        box: Tuple[int, int, int, int],
        size: Tuple[int, int],
        output_format: OutputFormat,
    ) -> Image.Image:
        # formats without alpha are flattened onto white
        background = TRANSPARENT if output_format.supports_alpha else WHITE
        surface = Image.new("RGBA", size, background)
        try:
            with ExitStack() as stack:
                region = stack.enter_context(source.crop(box))
                rgba = stack.enter_context(ensure_rgba(region))
                scaled = stack.enter_context(rgba.resize(size, Image.Resampling.LANCZOS))
                surface.alpha_composite(scaled)
        except BaseException:
            surface.close()
            raise
        return surface

    def _export(self, surface: Image.Image, options: ProcessOptions) -> bytes:
        output_format = options.output_format
        if output_format is OutputFormat.BMP:
            return encode_bmp(surface.tobytes(), surface.width, surface.height)

        for problem in options.caller_errors:
            logger.warning("%s", problem)

        target_size = options.effective_target_size
        if target_size is None:
            return self._encode(surface, output_format, options.quality / 100)

        with ExitStack() as stack:
            prepared = self._prepare(surface, output_format)
            if prepared is not surface:
                stack.enter_context(prepared)
            return search_quality(
                lambda quality: self._encode(prepared, output_format, quality),
                target_size,
            )

    @staticmethod
    def _prepare(surface: Image.Image, output_format: OutputFormat) -> Image.Image:
        if output_format is OutputFormat.JPEG and surface.mode != "RGB":
            return surface.convert("RGB")
        return surface

    def _encode(self, surface: Image.Image, output_format: OutputFormat, quality: float) -> bytes:
        image = self._prepare(surface, output_format)
        buffer = io.BytesIO()
        try:
            if output_format.supports_quality:
                image.save(buffer, format=output_format.name, quality=pillow_quality(quality))
            else:
                image.save(buffer, format=output_format.name)
        except _EXPORT_ERRORS as exc:
            raise ExportError(f"Failed to export {output_format.value} image") from exc
        finally:
            if image is not surface:
                image.close()
        return buffer.getvalue()
