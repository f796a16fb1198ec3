"""Public API for the image wrangler core."""

from .bmp import encode_bmp
from .config import SECURITY_LIMITS, SecurityLimits, Settings, configure_logging, get_settings
from .engine import TransformEngine, search_quality
from .exceptions import (
    DecodeError,
    ExportError,
    ImageWranglerError,
    InvalidOptionsError,
    SchedulerFatal,
    ValidationRejected,
)
from .models import ProcessRequest, ValidationResult
from .scheduler import JobScheduler
from .schemas import CropRegion, OutputFormat, ProcessOptions
from .service import BatchItem, BatchResult, ImageRecord, ImageWranglerService
from .validation import quick_validate_image, validate_image
from . import utils

__all__ = [
    "BatchItem",
    "BatchResult",
    "CropRegion",
    "DecodeError",
    "ExportError",
    "ImageRecord",
    "ImageWranglerError",
    "ImageWranglerService",
    "InvalidOptionsError",
    "JobScheduler",
    "OutputFormat",
    "ProcessOptions",
    "ProcessRequest",
    "SECURITY_LIMITS",
    "SchedulerFatal",
    "SecurityLimits",
    "Settings",
    "TransformEngine",
    "ValidationRejected",
    "ValidationResult",
    "configure_logging",
    "encode_bmp",
    "get_settings",
    "quick_validate_image",
    "search_quality",
    "utils",
    "validate_image",
]
