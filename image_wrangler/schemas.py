from __future__ import annotations

from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .config import get_settings
from .utils import round_half_up


class OutputFormat(str, Enum):
    JPEG = "jpeg"
    PNG = "png"
    WEBP = "webp"
    BMP = "bmp"

    @property
    def mime_type(self) -> str:
        return f"image/{self.value}"

    @property
    def extension(self) -> str:
        return ".jpg" if self is OutputFormat.JPEG else f".{self.value}"

    @property
    def supports_quality(self) -> bool:
        return self in (OutputFormat.JPEG, OutputFormat.WEBP)

    @property
    def supports_alpha(self) -> bool:
        return self in (OutputFormat.PNG, OutputFormat.WEBP)


class CropRegion(BaseModel):
    """Rectangle in source-image pixel coordinates."""

    model_config = ConfigDict(frozen=True)

    x: float = Field(ge=0)
    y: float = Field(ge=0)
    width: float = Field(gt=0)
    height: float = Field(gt=0)

    def to_box(self) -> Tuple[int, int, int, int]:
        """Round to whole pixels and return a Pillow ``(left, top, right, bottom)`` box."""
        left = round_half_up(self.x)
        top = round_half_up(self.y)
        return left, top, left + round_half_up(self.width), top + round_half_up(self.height)


class ProcessOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    output_format: OutputFormat = OutputFormat.JPEG
    quality: int = Field(default_factory=lambda: get_settings().default_quality, ge=1, le=100)
    target_width: int = Field(ge=1)
    target_height: int = Field(ge=1)
    keep_aspect: bool = True
    crop_region: Optional[CropRegion] = None
    target_size_bytes: Optional[int] = Field(default=None, gt=0)

    @property
    def caller_errors(self) -> Tuple[str, ...]:
        """Option combinations that are accepted but cannot be honoured."""
        errors = []
        if self.target_size_bytes is not None and not self.output_format.supports_quality:
            errors.append(
                f"target_size_bytes is ignored for lossless format '{self.output_format.value}'"
            )
        return tuple(errors)

    @property
    def effective_target_size(self) -> Optional[int]:
        if self.target_size_bytes is None or not self.output_format.supports_quality:
            return None
        return self.target_size_bytes
