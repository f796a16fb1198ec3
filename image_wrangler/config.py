from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PACKAGE_LOGGER_NAME = "image_wrangler"


@dataclass(frozen=True, slots=True)
class SecurityLimits:
    """Hard ceilings applied to every decoded or requested dimension."""

    max_width: int = 15000
    max_height: int = 15000
    max_pixels: int = 50_000_000
    max_file_size_bytes: int = 100 * 1024 * 1024


# Process-wide constant; not read from the environment.
SECURITY_LIMITS = SecurityLimits()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="IMAGE_WRANGLER_", env_file=".env", extra="ignore")

    app_name: str = "Image Wrangler"
    max_concurrency: int = Field(default=2, ge=1)
    worker_backend: Literal["process", "thread"] = "process"
    default_quality: int = Field(default=80, ge=1, le=100)
    merge_quality: int = Field(default=90, ge=1, le=100)
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: int | str | None = None) -> logging.Logger:
    """Attach a single stderr handler to the package logger.

    Safe to call repeatedly; the existing handler is reused and only its level
    is updated.
    """

    if level is None:
        level = get_settings().log_level
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logger = logging.getLogger(PACKAGE_LOGGER_NAME)
    logger.setLevel(level)

    handler = next(
        (h for h in logger.handlers if isinstance(h, logging.StreamHandler) and h.stream is sys.stderr),
        None,
    )
    if handler is None:
        handler = logging.StreamHandler(stream=sys.stderr)
        logger.addHandler(handler)
    handler.setFormatter(
        logging.Formatter(fmt="[%(asctime)s] %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S")
    )
    return logger
