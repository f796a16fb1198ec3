"""Input validation for untrusted image bytes.

Checks run cheapest first: size, declared MIME type, magic bytes, then a
header-only dimension probe that guards against decompression bombs. The
signature table is the allowlist of formats that reach the decoder.
"""

from __future__ import annotations

import io
import logging
import struct
import warnings
from typing import Dict, Optional, Sequence, Tuple

from PIL import Image, UnidentifiedImageError

from .config import SECURITY_LIMITS, SecurityLimits
from .exceptions import ValidationRejected
from .models import ValidationResult

logger = logging.getLogger(__name__)

HEADER_BYTES = 16

FILE_SIGNATURES: Dict[str, Tuple[bytes, ...]] = {
    "image/jpeg": (
        b"\xff\xd8\xff\xe0",  # JFIF
        b"\xff\xd8\xff\xe1",  # Exif
        b"\xff\xd8\xff\xe8",  # SPIFF
        b"\xff\xd8\xff\xdb",  # raw
    ),
    "image/png": (b"\x89PNG\r\n\x1a\n",),
    "image/webp": (b"RIFF",),  # plus "WEBP" at offset 8, see _is_webp
    "image/bmp": (b"BM",),
    # accepted as input only, never produced
    "image/gif": (b"GIF87a", b"GIF89a"),
}

# Errors Pillow raises while parsing a header it does not like.
_PROBE_ERRORS = (
    UnidentifiedImageError,
    Image.DecompressionBombError,
    OSError,
    SyntaxError,
    ValueError,
    struct.error,
)


def _matches_signature(header: bytes, signatures: Sequence[bytes]) -> bool:
    return any(header.startswith(signature) for signature in signatures)


def _is_webp(header: bytes) -> bool:
    return header[0:4] == b"RIFF" and header[8:12] == b"WEBP"


def detect_image_type(header: bytes) -> Optional[str]:
    """Return the MIME type whose signature matches ``header``, if any."""

    header = bytes(header[:HEADER_BYTES])
    for mime_type, signatures in FILE_SIGNATURES.items():
        if mime_type == "image/webp":
            if _is_webp(header):
                return mime_type
            continue
        if _matches_signature(header, signatures):
            return mime_type
    return None


def probe_dimensions(data: bytes) -> Tuple[int, int]:
    """Read width and height from the image header without decoding pixels.

    Raises
    ------
    ValidationRejected
        If the header cannot be parsed.
    """

    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", Image.DecompressionBombWarning)
            with Image.open(io.BytesIO(data)) as probe:
                width, height = probe.size
    except _PROBE_ERRORS as exc:
        logger.debug("Dimension probe failed: %s", exc)
        raise ValidationRejected("Unable to read image dimensions") from exc
    return int(width), int(height)


def check_dimensions(width: int, height: int, limits: SecurityLimits = SECURITY_LIMITS) -> Optional[str]:
    """Return a rejection reason when the dimensions exceed ``limits``."""

    if width > limits.max_width or height > limits.max_height:
        return (
            f"Image dimensions {width}x{height} exceed limit "
            f"{limits.max_width}x{limits.max_height}"
        )
    if width * height > limits.max_pixels:
        return f"Total pixels {width * height} exceed limit {limits.max_pixels}"
    return None


def _check_basic(data: bytes, declared_mime_type: str, limits: SecurityLimits) -> Tuple[Optional[str], Optional[str]]:
    """Run the size, MIME and signature checks.

    Returns ``(detected_type, rejection_reason)``; exactly one is set.
    """

    if len(data) == 0:
        return None, "File is empty (0 bytes)"
    if len(data) > limits.max_file_size_bytes:
        limit_mb = limits.max_file_size_bytes / 1024 / 1024
        return None, f"File size exceeds limit of {limit_mb:g}MB"
    if not (declared_mime_type or "").startswith("image/"):
        return None, f"Invalid MIME type: {declared_mime_type or 'unknown'}"

    detected_type = detect_image_type(data[:HEADER_BYTES])
    if detected_type is None:
        return None, "File header does not match any supported image format (JPG, PNG, WebP, BMP, GIF)"
    return detected_type, None


def validate_image(
    data: bytes,
    declared_mime_type: str,
    limits: SecurityLimits = SECURITY_LIMITS,
) -> ValidationResult:
    """Fully validate ``data`` including the decompression bomb guard."""

    detected_type, reason = _check_basic(data, declared_mime_type, limits)
    if reason is not None:
        return ValidationResult.rejected(reason)

    try:
        width, height = probe_dimensions(data)
    except ValidationRejected:
        # cannot prove the image is safe, so it is not
        return ValidationResult.rejected(
            "Image exceeds maximum safe dimensions (Decompression Bomb protection)"
        )

    reason = check_dimensions(width, height, limits)
    if reason is not None:
        logger.warning("Rejected %s: %s", detected_type, reason)
        return ValidationResult.rejected(
            "Image exceeds maximum safe dimensions (Decompression Bomb protection)"
        )

    return ValidationResult.ok(detected_type)


def quick_validate_image(
    data: bytes,
    declared_mime_type: str,
    limits: SecurityLimits = SECURITY_LIMITS,
) -> bool:
    """Size, MIME and signature checks only; no dimension probe."""

    _, reason = _check_basic(data, declared_mime_type, limits)
    return reason is None


def validate_or_raise(
    data: bytes,
    declared_mime_type: str,
    limits: SecurityLimits = SECURITY_LIMITS,
) -> str:
    """Validate ``data`` and return the detected MIME type.

    Raises
    ------
    ValidationRejected
        With the rejection reason when any check fails.
    """

    result = validate_image(data, declared_mime_type, limits)
    if not result.is_valid:
        raise ValidationRejected(result.error or "Validation failed")
    return result.detected_type
