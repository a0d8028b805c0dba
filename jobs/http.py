"""
HTTP status classification shared by notifiers and the extractor.

Maps provider responses onto the queue's exception hierarchy:

    401, 403          AuthenticationError      (permanent)
    404               ResourceNotFoundError    (permanent)
    400, 422          InvalidRecipientError if the body blames the recipient,
                      ProviderRejectedError otherwise (permanent)
    429               QuotaExceededError if the body mentions quota/billing,
                      RateLimitError otherwise (transient, with retry_after)
    5xx               NetworkError             (transient)
    timeouts/transport NetworkError            (transient)
"""

from typing import Optional, Iterable
import httpx
from core.config import settings
from core.exceptions import (
    QueueException,
    NetworkError,
    RateLimitError,
    QuotaExceededError,
    AuthenticationError,
    ResourceNotFoundError,
    ProviderRejectedError,
    InvalidRecipientError,
)

QUOTA_MARKERS = ("quota", "billing", "insufficient_quota", "credit")
RECIPIENT_MARKERS = ("recipient", "invalid 'to'", "invalid `to`", "\"to\"", "phone number", "email address")

# Response bodies are truncated in error context
_BODY_PREVIEW_CHARS = 500


def parse_retry_after(value: Optional[str], default: float) -> float:
    """Seconds from a Retry-After header; HTTP-date values fall back to default"""
    if not value:
        return default
    try:
        seconds = float(value)
    except ValueError:
        return default
    return max(seconds, 0.0)


def _body_mentions(body: str, markers: Iterable[str]) -> bool:
    lowered = body.lower()
    return any(marker in lowered for marker in markers)


def classify_response(
    response: httpx.Response,
    provider: str,
    url: str,
    recipient_markers: Iterable[str] = RECIPIENT_MARKERS
) -> Optional[QueueException]:
    """
    Classify a provider response.

    Returns:
        None for 2xx/3xx, otherwise the exception describing the failure
        (returned, not raised)
    """
    status_code = response.status_code
    if status_code < 400:
        return None

    body = response.text or ""
    context = {
        "provider": provider,
        "status_code": status_code,
        "url": url,
        "response_body": body[:_BODY_PREVIEW_CHARS]
    }

    if status_code in (401, 403):
        return AuthenticationError(f"{provider} rejected credentials ({status_code})", context=context)

    if status_code == 404:
        return ResourceNotFoundError(f"{provider} resource not found", context=context)

    if status_code == 429:
        if _body_mentions(body, QUOTA_MARKERS):
            return QuotaExceededError(
                f"{provider} quota exceeded",
                context=context,
                retry_after=settings.QUOTA_BACKOFF_SECONDS
            )
        retry_after = parse_retry_after(
            response.headers.get("Retry-After"),
            settings.RATE_LIMIT_DELAY_SECONDS
        )
        return RateLimitError(f"{provider} rate limit hit", context=context, retry_after=retry_after)

    if status_code >= 500:
        return NetworkError(f"{provider} server error {status_code}", context=context)

    if status_code in (400, 422) and _body_mentions(body, recipient_markers):
        return InvalidRecipientError(f"{provider} rejected the recipient", context=context)

    return ProviderRejectedError(f"{provider} rejected the request ({status_code})", context=context)


def classify_transport_error(exc: httpx.HTTPError, provider: str, url: str) -> NetworkError:
    """Timeouts and connection failures are always transient"""
    kind = "timeout" if isinstance(exc, httpx.TimeoutException) else "transport error"
    return NetworkError(
        f"{provider} {kind}: {type(exc).__name__}",
        context={"provider": provider, "url": url},
        original_exception=exc
    )
