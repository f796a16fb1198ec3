"""Batch facade over the scheduler used by the UI and download layers."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from .config import Settings, get_settings
from .engine import TransformEngine
from .models import ProcessRequest
from .scheduler import JobScheduler
from .schemas import ProcessOptions
from .utils import sanitize_filename, unique_filename

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BatchItem:
    filename: str
    source_bytes: bytes
    options: Optional[ProcessOptions] = None
    declared_mime_type: Optional[str] = None


@dataclass(slots=True)
class ImageRecord:
    """Represents the processing state for a single image within a batch."""

    image_id: str
    source_name: str
    output_name: str
    status: str = "pending"
    output: Optional[bytes] = None
    error: Optional[str] = None

    @property
    def output_size(self) -> Optional[int]:
        return len(self.output) if self.output is not None else None

    def to_dict(self) -> dict:
        return {
            "image_id": self.image_id,
            "source_name": self.source_name,
            "output_name": self.output_name,
            "status": self.status,
            "output_size": self.output_size,
            "error": self.error,
        }


@dataclass(slots=True)
class BatchResult:
    """Represents the result for a batch of transforms."""

    batch_id: str
    status: str
    images: List[ImageRecord] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "status": self.status,
            "images": [image.to_dict() for image in self.images],
        }


class ImageWranglerService:
    """High-level service coordinating batch transforms through the scheduler."""

    def __init__(self, scheduler: Optional[JobScheduler] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.scheduler = scheduler or JobScheduler(settings=self.settings)
        self._engine = TransformEngine(merge_quality=self.settings.merge_quality)

    async def process_batch(self, items: Sequence[BatchItem]) -> BatchResult:
        """Transform every item; a failed image never blocks the rest of the batch."""

        batch_id = uuid.uuid4().hex
        used_names: set[str] = set()
        records = [self._build_record(item, used_names) for item in items]

        futures = []
        submitted = []
        for item, record in zip(items, records):
            if item.options is None:
                record.status = "error"
                record.error = "Missing options for PROCESS operation"
                continue
            request = ProcessRequest(
                request_id=record.image_id,
                source_bytes=item.source_bytes,
                options=item.options,
                declared_mime_type=item.declared_mime_type,
            )
            record.status = "processing"
            futures.append(self.scheduler.submit(request))
            submitted.append(record)

        outcomes = await asyncio.gather(*futures, return_exceptions=True)
        for record, outcome in zip(submitted, outcomes):
            self._apply_outcome(record, outcome)

        result = BatchResult(batch_id=batch_id, status=self._derive_batch_status(records), images=records)
        logger.info("Batch %s finished with status %s (%d images)", batch_id, result.status, len(records))
        return result

    async def validate_batch(self, items: Sequence[BatchItem]) -> Tuple[List[BatchItem], List[ImageRecord]]:
        """Split uploads into accepted items and skipped (rejected) records."""

        futures = [
            self.scheduler.submit_validation(item.source_bytes, item.declared_mime_type or "")
            for item in items
        ]
        outcomes = await asyncio.gather(*futures, return_exceptions=True)

        accepted: List[BatchItem] = []
        rejected: List[ImageRecord] = []
        used_names: set[str] = set()
        for item, outcome in zip(items, outcomes):
            if not isinstance(outcome, BaseException) and outcome.is_valid:
                accepted.append(item)
                continue
            record = self._build_record(item, used_names)
            record.status = "error"
            record.error = str(outcome) if isinstance(outcome, BaseException) else outcome.error
            logger.info("Skipping %s: %s", item.filename, record.error)
            rejected.append(record)
        return accepted, rejected

    async def merge(self, sources: Sequence[bytes]) -> bytes:
        """Merge images into one grid JPEG without blocking the event loop."""

        return await asyncio.to_thread(self._engine.merge, list(sources))

    # ---------------------------------------------------------------------
    # Internal helpers
    # ---------------------------------------------------------------------

    @staticmethod
    def _build_record(item: BatchItem, used_names: set[str]) -> ImageRecord:
        stem = sanitize_filename(Path(item.filename).stem)
        suffix = item.options.output_format.extension if item.options else Path(item.filename).suffix.lower()
        desired = f"{stem}{suffix}"
        output_name = unique_filename(used_names, desired)
        used_names.add(output_name)
        return ImageRecord(image_id=uuid.uuid4().hex, source_name=item.filename, output_name=output_name)

    @staticmethod
    def _apply_outcome(record: ImageRecord, outcome: object) -> None:
        if isinstance(outcome, asyncio.CancelledError):
            record.status = "error"
            record.error = "Processing was cancelled"
        elif isinstance(outcome, BaseException):
            record.status = "error"
            record.error = str(outcome) or type(outcome).__name__
        else:
            record.status = "done"
            record.output = outcome

    @staticmethod
    def _derive_batch_status(images: Iterable[ImageRecord]) -> str:
        statuses = [record.status for record in images]
        if not statuses:
            return "completed"
        if all(status == "done" for status in statuses):
            return "completed"
        if any(status == "done" for status in statuses):
            return "partial"
        return "failed"
