"""Custom exceptions for the image wrangler core."""

from __future__ import annotations


class ImageWranglerError(Exception):
    """Base exception for all image wrangler related errors."""


class ValidationRejected(ImageWranglerError):
    """Raised when an input file or requested output fails a safety check."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class DecodeError(ImageWranglerError):
    """Raised when source bytes cannot be parsed into a bitmap."""


class ExportError(ImageWranglerError):
    """Raised when encoding the transformed surface fails."""


class InvalidOptionsError(ImageWranglerError):
    """Raised for caller errors such as an out-of-bounds crop region."""


class SchedulerFatal(ImageWranglerError):
    """Raised on every in-flight request when the execution context is lost."""


ERRORS_BY_NAME: dict[str, type[ImageWranglerError]] = {
    cls.__name__: cls
    for cls in (
        ImageWranglerError,
        ValidationRejected,
        DecodeError,
        ExportError,
        InvalidOptionsError,
        SchedulerFatal,
    )
}
