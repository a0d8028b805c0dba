"""
Explicit outcome values threaded through the job state machine.

Handlers never signal retry decisions by raising. They return a JobOutcome,
and any exception that escapes a collaborator is translated exactly once by
Failure.from_exception into a TRANSIENT or PERMANENT failure.
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, Any
import enum

import httpx
from pydantic import ValidationError
from sqlalchemy.exc import OperationalError, InterfaceError

from core.exceptions import QueueException, RetryableError, NonRetryableError

LAST_ERROR_MAX_CHARS = 4000


def cap_string(value: Optional[str], limit: int = LAST_ERROR_MAX_CHARS) -> Optional[str]:
    """Truncate free text stored in error columns"""
    if value is None:
        return None
    if len(value) <= limit:
        return value
    return value[: limit - 3] + "..."


class ErrorKind(str, enum.Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


@dataclass(frozen=True)
class Failure:
    """
    A classified failure.

    Attributes:
        kind: TRANSIENT (retry with backoff) or PERMANENT (fail now)
        code: Stable machine-readable code, stored in last_error_code
        message: Human-readable text
        retry_after: Seconds; overrides the computed backoff when set
    """

    kind: ErrorKind
    code: str
    message: str
    retry_after: Optional[float] = None

    @property
    def is_transient(self) -> bool:
        return self.kind == ErrorKind.TRANSIENT

    def as_last_error(self) -> str:
        return cap_string(f"{self.code}: {self.message}")

    @classmethod
    def transient(cls, code: str, message: str, retry_after: Optional[float] = None) -> "Failure":
        return cls(ErrorKind.TRANSIENT, code, message, retry_after)

    @classmethod
    def permanent(cls, code: str, message: str) -> "Failure":
        return cls(ErrorKind.PERMANENT, code, message)

    @classmethod
    def from_exception(cls, exc: BaseException) -> "Failure":
        """Single translation point from exceptions to error kinds"""
        if isinstance(exc, RetryableError):
            return cls.transient(exc.code, exc.message, exc.retry_after)
        if isinstance(exc, NonRetryableError):
            return cls.permanent(exc.code, exc.message)
        if isinstance(exc, ValidationError):
            return cls.permanent("invalid_payload", str(exc))
        if isinstance(exc, QueueException):
            return cls.transient(exc.code, exc.message)
        if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
            return cls.transient("network_error", f"{type(exc).__name__}: {exc}")
        if isinstance(exc, (OperationalError, InterfaceError)):
            return cls.transient("store_unavailable", str(exc))
        return cls.transient("unexpected_error", f"{type(exc).__name__}: {exc}")


# ============================================================================
# Collaborator results
# ============================================================================

@dataclass(frozen=True)
class SendResult:
    """Result of one Notifier.send call"""

    ok: bool
    provider_message_id: Optional[str] = None
    failure: Optional[Failure] = None

    @classmethod
    def sent(cls, provider_message_id: Optional[str] = None) -> "SendResult":
        return cls(ok=True, provider_message_id=provider_message_id)

    @classmethod
    def failed(cls, failure: Failure) -> "SendResult":
        return cls(ok=False, failure=failure)


@dataclass(frozen=True)
class ExtractionResult:
    """Result of one Extractor.extract call"""

    ok: bool
    data: Optional[Dict[str, Any]] = None
    failure: Optional[Failure] = None

    @classmethod
    def parsed(cls, data: Dict[str, Any]) -> "ExtractionResult":
        return cls(ok=True, data=data)

    @classmethod
    def failed(cls, failure: Failure) -> "ExtractionResult":
        return cls(ok=False, failure=failure)


# ============================================================================
# Job outcome
# ============================================================================

class OutcomeKind(str, enum.Enum):
    SUCCEEDED = "succeeded"
    RETRY = "retry"
    FAILED = "failed"
    DEFERRED = "deferred"


@dataclass(frozen=True)
class JobOutcome:
    """
    What a handler reports for one PROCESSING pass.

    SUCCEEDED moves the job to DONE. RETRY (transient) and FAILED (permanent)
    carry a Failure. DEFERRED means the job made progress but still owns
    outstanding deliveries with retry budget of their own.
    """

    kind: OutcomeKind
    failure: Optional[Failure] = None
    result: Optional[Dict[str, Any]] = None
    stats: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def succeeded(cls, result: Optional[Dict[str, Any]] = None, **stats: int) -> "JobOutcome":
        return cls(OutcomeKind.SUCCEEDED, result=result, stats=stats)

    @classmethod
    def deferred(cls, failure: Failure, **stats: int) -> "JobOutcome":
        return cls(OutcomeKind.DEFERRED, failure=failure, stats=stats)

    @classmethod
    def from_failure(cls, failure: Failure, **stats: int) -> "JobOutcome":
        kind = OutcomeKind.RETRY if failure.is_transient else OutcomeKind.FAILED
        return cls(kind, failure=failure, stats=stats)
