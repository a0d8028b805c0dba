"""
Custom exceptions for the job queue with structured error context.

This module provides the exception hierarchy used by the queue substrate
and its collaborators (notifiers, the vote-sheet extractor). Every class
carries a stable machine-readable ``code`` which ends up in a job's
``last_error_code`` column when the error is translated into a job outcome.

Exception Hierarchy:
    QueueException (base)
    ├── StoreError
    │   ├── DatabaseConnectionError
    │   └── DeadlockError
    ├── JobError
    │   ├── InvalidTransitionError
    │   ├── RecordNotFoundError
    │   └── InvalidPayloadError
    ├── DeliveryError
    │   ├── InvalidRecipientError
    │   └── UnsupportedChannelError
    ├── ExtractionError
    │   └── MalformedDocumentError
    ├── NetworkError / RateLimitError / QuotaExceededError
    ├── AuthenticationError / ResourceNotFoundError / ProviderRejectedError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


class QueueException(Exception):
    """
    Base exception for all queue-related errors.

    Attributes:
        code: Stable machine-readable error code
        message: Human-readable error message
        context: Additional context information (record id, url, etc.)
        original_exception: The original exception that was caught (if any)
    """

    code = "queue_error"

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)

        # Add timestamp to context
        self.context["error_timestamp"] = self.timestamp.isoformat()

        # Chain original exception if provided
        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(QueueException):
    """
    Mixin for errors that should send a job back to PENDING with backoff.

    Use this for transient errors like:
    - Network timeouts
    - Rate limiting (HTTP 429)
    - Temporary database connection issues
    - Service unavailable (HTTP 503)

    ``retry_after`` (seconds), when set, overrides the computed backoff.
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[float] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after
        if retry_after is not None:
            self.context["retry_after"] = retry_after


class NonRetryableError(QueueException):
    """
    Mixin for errors that should fail a job immediately.

    Use this for permanent errors like:
    - Authentication failures (HTTP 401, 403)
    - Invalid recipient addresses
    - Malformed documents
    - Payloads that fail schema validation
    """
    pass


# ============================================================================
# Store Errors
# ============================================================================

class StoreError(QueueException):
    """
    Base exception for relational store failures.

    Context should include:
        - operation: Queue operation that failed (claim, report, reap, ...)
        - table_name: Name of the table
    """
    code = "store_error"


class DatabaseConnectionError(RetryableError, StoreError):
    """Store connectivity errors; propagated to the worker's outer loop."""
    code = "store_unavailable"


class DeadlockError(RetryableError, StoreError):
    """Database deadlock / serialization errors that should be retried."""
    code = "store_deadlock"


# ============================================================================
# Job Errors
# ============================================================================

class JobError(QueueException):
    """Base exception for job lifecycle errors."""
    code = "job_error"


class InvalidTransitionError(NonRetryableError, JobError):
    """
    Raised when a state transition is not permitted from the current status.

    Context should include:
        - record_id: ID of the source record
        - status: Current status
        - requested: Requested transition
    """
    code = "invalid_transition"


class RecordNotFoundError(NonRetryableError, JobError):
    """Raised when a source record does not exist."""
    code = "not_found"


class InvalidPayloadError(NonRetryableError, JobError):
    """
    Raised when a source record payload fails validation.

    Context should include:
        - record_id: ID of the source record
        - kind: Job kind
        - field_errors: Number of validation errors
    """
    code = "invalid_payload"


# ============================================================================
# Collaborator Errors
# ============================================================================

class DeliveryError(QueueException):
    """Base exception for notification delivery failures."""
    code = "delivery_error"


class ExtractionError(QueueException):
    """Base exception for document extraction failures."""
    code = "extraction_error"


# ============================================================================
# Specific Retryable Errors
# ============================================================================

class NetworkError(RetryableError):
    """Network-related errors (timeouts, 5xx, transport) that should be retried."""
    code = "network_error"


class RateLimitError(RetryableError):
    """Rate limiting errors (HTTP 429) that should be retried after a delay."""
    code = "rate_limited"


class QuotaExceededError(RateLimitError):
    """Provider quota exhausted; retried after a long delay."""
    code = "quota_exceeded"


# ============================================================================
# Specific Non-Retryable Errors
# ============================================================================

class AuthenticationError(NonRetryableError):
    """Authentication failures (HTTP 401, 403) that should not be retried."""
    code = "auth_failed"


class ResourceNotFoundError(NonRetryableError):
    """Resource not found errors (HTTP 404) that should not be retried."""
    code = "resource_not_found"


class ProviderRejectedError(NonRetryableError):
    """Provider rejected the request as invalid (HTTP 400, 422)."""
    code = "provider_rejected"


class InvalidRecipientError(NonRetryableError, DeliveryError):
    """
    Recipient address or number is invalid.

    Context should include:
        - channel: Delivery channel
        - target: The rejected target
    """
    code = "invalid_recipient"


class UnsupportedChannelError(NonRetryableError, DeliveryError):
    """No notifier is configured for the subscription's delivery channel."""
    code = "unsupported_channel"


class MalformedDocumentError(NonRetryableError, ExtractionError):
    """
    Document could not be parsed into a vote tally.

    Context should include:
        - document_url: URL of the vote sheet
        - reason: Why parsing failed
    """
    code = "malformed_document"
