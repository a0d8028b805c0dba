"""
Pydantic schemas for data validation and serialization.

Schemas:
    events: Source record payloads (ChangeEvent, ExtractionRequest) and the
        VoteTally extraction result
    api: API endpoint request/response schemas

Usage:
    from schemas.events import ChangeEvent, ExtractionRequest, VoteTally
    from schemas.api import JobResponse, HealthCheckResponse

Example:
    # Validate a change-event payload before matching
    event = ChangeEvent.model_validate(record.payload)
    assert event.bill_number == "HB0001"

Validation:
    A payload that fails validation is a permanent job failure
    (last_error_code "invalid_payload"); it is never retried.
"""

from schemas.events import ChangeEvent, ExtractionRequest, VoteTally
from schemas.api import JobResponse, JobDetailResponse, HealthCheckResponse, StatsResponse

__all__ = [
    "ChangeEvent",
    "ExtractionRequest",
    "VoteTally",
    "JobResponse",
    "JobDetailResponse",
    "HealthCheckResponse",
    "StatsResponse",
]
