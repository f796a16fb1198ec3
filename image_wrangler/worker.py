"""Request handler executed inside an isolated worker.

``handle_message`` is a module-level function so it can be pickled into a
process pool. It never raises for per-request problems: every failure is
reported as a ``PROCESS_ERROR`` envelope carrying the original ``id``.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from .engine import TransformEngine
from .exceptions import ImageWranglerError
from .models import MessageKind, ProcessPayload, ResponseKind, ValidatePayload, WorkerMessage, WorkerResponse
from .validation import validate_image, validate_or_raise

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def _get_engine() -> TransformEngine:
    return TransformEngine()


def _error_response(message_id: str, exc: BaseException) -> WorkerResponse:
    error_type = type(exc).__name__ if isinstance(exc, ImageWranglerError) else None
    return WorkerResponse(
        id=message_id,
        kind=ResponseKind.PROCESS_ERROR,
        error=str(exc) or "Unknown processing error",
        error_type=error_type,
    )


def _handle_process(message_id: str, payload: ProcessPayload) -> WorkerResponse:
    engine = _get_engine()
    if payload.declared_mime_type is not None:
        validate_or_raise(payload.source_bytes, payload.declared_mime_type, engine.limits)
    result = engine.process(payload.source_bytes, payload.options)
    return WorkerResponse(id=message_id, kind=ResponseKind.PROCESS_COMPLETE, result=result)


def _handle_validate(message_id: str, payload: ValidatePayload) -> WorkerResponse:
    validation = validate_image(payload.source_bytes, payload.declared_mime_type, _get_engine().limits)
    return WorkerResponse(
        id=message_id,
        kind=ResponseKind.VALIDATE_RESULT,
        is_valid=validation.is_valid,
        detected_type=validation.detected_type,
        error=validation.error,
    )


def handle_message(message: WorkerMessage) -> WorkerResponse:
    try:
        if message.kind is MessageKind.PROCESS:
            if not isinstance(message.payload, ProcessPayload):
                raise ValueError("Missing file or options for PROCESS operation")
            return _handle_process(message.id, message.payload)
        if message.kind is MessageKind.VALIDATE:
            if not isinstance(message.payload, ValidatePayload):
                raise ValueError("Missing file for VALIDATE operation")
            return _handle_validate(message.id, message.payload)
        raise ValueError(f"Unknown operation type: {message.kind}")
    except ImageWranglerError as exc:
        logger.info("Request %s failed: %s", message.id, exc)
        return _error_response(message.id, exc)
    except Exception as exc:
        logger.exception("Unexpected error while handling request %s", message.id)
        return _error_response(message.id, exc)
