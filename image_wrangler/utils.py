"""Utility helpers shared by the image wrangler core and its collaborators."""

from __future__ import annotations

import math
import re
import uuid
from pathlib import Path
from typing import Iterable

from PIL import Image

MAX_FILENAME_LENGTH = 200

_control_chars_re = re.compile(r"[\x00-\x1f\x80-\x9f]")
_filename_strip_re = re.compile(r"[^A-Za-z0-9._-]")


def sanitize_filename(filename: str) -> str:
    """Return a filename safe for handing to a download or archive layer.

    Control characters and ``..`` sequences are removed, anything outside
    ``[A-Za-z0-9._-]`` becomes an underscore and the result is capped at
    200 characters.
    """

    name = _control_chars_re.sub("", filename)
    name = name.replace("..", "")
    name = _filename_strip_re.sub("_", name)
    name = name[:MAX_FILENAME_LENGTH]
    if not name or name == ".":
        return "image"
    return name


def unique_filename(existing: Iterable[str], desired: str) -> str:
    base = Path(desired)
    stem = base.stem
    suffix = base.suffix
    candidate = desired
    counter = 1
    existing_set = set(existing)
    while candidate in existing_set:
        candidate = f"{stem}_{counter}{suffix}"
        counter += 1
    return candidate


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves going up (``2.5 -> 3``)."""
    return math.floor(value + 0.5)


def ensure_rgba(image: Image.Image) -> Image.Image:
    """Ensure that a Pillow image is in RGBA mode."""

    if image.mode == "RGBA":
        return image
    return image.convert("RGBA")


def format_bytes(size_bytes: int, decimals: int = 2) -> str:
    if size_bytes < 0:
        raise ValueError("size_bytes must be non-negative")
    if size_bytes == 0:
        return "0 Bytes"
    size_name = ("Bytes", "KB", "MB", "GB")
    i = min(int(math.floor(math.log(size_bytes, 1024))), len(size_name) - 1)
    value = round(size_bytes / math.pow(1024, i), max(decimals, 0))
    return f"{value:g} {size_name[i]}"


def generate_id() -> str:
    return uuid.uuid4().hex
