"""Dimension helpers used by callers when filling in ``ProcessOptions``."""

from __future__ import annotations

from typing import Literal, Optional, Tuple

from .schemas import CropRegion
from .utils import round_half_up


def calculate_aspect_ratio_dimensions(
    source_width: int,
    source_height: int,
    target_width: int,
    target_height: int,
    keep_aspect: bool,
    changed: Literal["width", "height"] = "width",
) -> Tuple[int, int]:
    """Return target dimensions, recomputing the unchanged side when ``keep_aspect`` is set."""

    if not keep_aspect:
        return target_width, target_height

    aspect_ratio = source_width / source_height
    if changed == "width":
        return target_width, max(1, round_half_up(target_width / aspect_ratio))
    return max(1, round_half_up(target_height * aspect_ratio)), target_height


def create_centered_crop(
    image_width: int,
    image_height: int,
    aspect_ratio: Optional[float] = None,
) -> CropRegion:
    """Largest crop of the given aspect ratio centered on the image.

    Without an aspect ratio the crop covers the full image.
    """

    if not aspect_ratio:
        return CropRegion(x=0, y=0, width=image_width, height=image_height)

    if image_width / image_height > aspect_ratio:
        crop_height = image_height
        crop_width = crop_height * aspect_ratio
    else:
        crop_width = image_width
        crop_height = crop_width / aspect_ratio

    return CropRegion(
        x=(image_width - crop_width) / 2,
        y=(image_height - crop_height) / 2,
        width=crop_width,
        height=crop_height,
    )
