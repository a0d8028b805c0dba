"""
Tests for exception → failure translation
"""

import httpx
import pytest
from pydantic import ValidationError
from sqlalchemy.exc import OperationalError
from jobs.outcomes import Failure, ErrorKind, JobOutcome, OutcomeKind, LAST_ERROR_MAX_CHARS, cap_string
from schemas.events import ChangeEvent
from models.source_record import SourceRecord
from models.base import JobKind
from jobs.handlers.base import validate_payload
from core.exceptions import (
    InvalidPayloadError,
    RateLimitError,
    InvalidRecipientError,
    MalformedDocumentError,
    DatabaseConnectionError,
    QueueException,
)


def test_retryable_error_is_transient_with_retry_after():
    failure = Failure.from_exception(RateLimitError("slow down", retry_after=120))
    assert failure.kind == ErrorKind.TRANSIENT
    assert failure.code == "rate_limited"
    assert failure.retry_after == 120


@pytest.mark.parametrize("exc,code", [
    (InvalidRecipientError("bad address"), "invalid_recipient"),
    (MalformedDocumentError("unreadable"), "malformed_document"),
])
def test_non_retryable_errors_are_permanent(exc, code):
    failure = Failure.from_exception(exc)
    assert failure.kind == ErrorKind.PERMANENT
    assert failure.code == code


def test_validation_error_is_permanent_invalid_payload():
    with pytest.raises(ValidationError) as exc_info:
        ChangeEvent.model_validate({"event_type": "not_a_type"})
    failure = Failure.from_exception(exc_info.value)
    assert failure.kind == ErrorKind.PERMANENT
    assert failure.code == "invalid_payload"


def test_invalid_payload_is_raised_with_record_context():
    record = SourceRecord(id=41, kind=JobKind.CHANGE_EVENT, payload={"event_type": "not_a_type"})

    with pytest.raises(InvalidPayloadError) as exc_info:
        validate_payload(ChangeEvent, record)

    error = exc_info.value
    assert error.context["record_id"] == 41
    assert error.context["kind"] == "change_event"
    assert isinstance(error.original_exception, ValidationError)

    failure = Failure.from_exception(error)
    assert failure.kind == ErrorKind.PERMANENT
    assert failure.code == "invalid_payload"


def test_transport_and_store_errors_are_transient():
    assert Failure.from_exception(httpx.ConnectError("refused")).code == "network_error"
    assert Failure.from_exception(httpx.ReadTimeout("slow")).is_transient
    store = Failure.from_exception(OperationalError("SELECT 1", {}, Exception("gone")))
    assert store.code == "store_unavailable"
    assert store.is_transient
    assert Failure.from_exception(DatabaseConnectionError("down")).code == "store_unavailable"


def test_unknown_errors_are_transient_unexpected():
    failure = Failure.from_exception(RuntimeError("boom"))
    assert failure.is_transient
    assert failure.code == "unexpected_error"
    assert "RuntimeError" in failure.message

    plain = Failure.from_exception(QueueException("generic"))
    assert plain.is_transient
    assert plain.code == "queue_error"


def test_last_error_is_code_prefixed_and_capped():
    failure = Failure.permanent("invalid_recipient", "x" * 10_000)
    last_error = failure.as_last_error()
    assert last_error.startswith("invalid_recipient: ")
    assert len(last_error) == LAST_ERROR_MAX_CHARS
    assert cap_string(None) is None


def test_outcome_from_failure_kind():
    assert JobOutcome.from_failure(Failure.transient("a", "b")).kind == OutcomeKind.RETRY
    assert JobOutcome.from_failure(Failure.permanent("a", "b")).kind == OutcomeKind.FAILED
    outcome = JobOutcome.succeeded(result={"ok": 1}, sent=2)
    assert outcome.kind == OutcomeKind.SUCCEEDED
    assert outcome.stats == {"sent": 2}
