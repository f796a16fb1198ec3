from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from .schemas import ProcessOptions


@dataclass(frozen=True)
class ProcessRequest:
    request_id: str
    source_bytes: bytes
    options: ProcessOptions
    declared_mime_type: Optional[str] = None


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    detected_type: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, detected_type: str) -> "ValidationResult":
        return cls(is_valid=True, detected_type=detected_type)

    @classmethod
    def rejected(cls, reason: str) -> "ValidationResult":
        return cls(is_valid=False, error=reason)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "detected_type": self.detected_type,
            "error": self.error,
        }


class MessageKind(str, Enum):
    PROCESS = "PROCESS"
    VALIDATE = "VALIDATE"


class ResponseKind(str, Enum):
    PROCESS_COMPLETE = "PROCESS_COMPLETE"
    PROCESS_ERROR = "PROCESS_ERROR"
    VALIDATE_RESULT = "VALIDATE_RESULT"


@dataclass(frozen=True)
class ProcessPayload:
    source_bytes: bytes
    options: ProcessOptions
    declared_mime_type: Optional[str] = None


@dataclass(frozen=True)
class ValidatePayload:
    source_bytes: bytes
    declared_mime_type: str


@dataclass(frozen=True)
class WorkerMessage:
    """Envelope handed across the isolation boundary to a worker."""

    id: str
    kind: MessageKind
    payload: Union[ProcessPayload, ValidatePayload, None] = None


@dataclass(frozen=True)
class WorkerResponse:
    """Envelope returned by a worker; ``id`` always echoes the request."""

    id: str
    kind: ResponseKind
    result: Optional[bytes] = None
    is_valid: Optional[bool] = None
    detected_type: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    def to_validation_result(self) -> ValidationResult:
        return ValidationResult(
            is_valid=bool(self.is_valid),
            detected_type=self.detected_type,
            error=self.error,
        )
