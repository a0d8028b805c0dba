"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from models.base import JobKind, JobStatus, DeliveryStatus, SendMode, RunType, RunStatus
from core.clock import utcnow


# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    timestamp: datetime = Field(default_factory=utcnow)
    database_connected: bool
    jobs_by_status: Dict[str, int] = Field(default_factory=dict)
    stale_leases: int = 0
    last_worker_run_at: Optional[datetime] = None
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")

    @validator("status", pre=True, always=True)
    def determine_status(cls, v, values):
        """Unreachable store is unhealthy; leases nobody reclaimed are degraded"""
        if not values.get("database_connected", False):
            return "unhealthy"
        if values.get("stale_leases", 0) > 0:
            return "degraded"
        return "healthy"

    class Config:
        json_schema_extra = {
            "example": {
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "jobs_by_status": {"pending": 4, "processing": 2, "done": 1530, "failed": 3},
                "stale_leases": 0,
                "last_worker_run_at": "2024-01-15T10:29:55Z",
                "status": "healthy"
            }
        }


# ============================================================================
# Job Schemas
# ============================================================================

class DeliveryResponse(BaseModel):
    """Delivery ledger row"""
    id: int
    subscription_id: int
    status: DeliveryStatus
    send_mode: SendMode
    attempts: int
    retryable: bool
    error: Optional[str] = None
    error_code: Optional[str] = None
    sent_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True
        use_enum_values = True


class JobResponse(BaseModel):
    """Source record with its job-control fields"""
    id: int
    kind: JobKind
    payload_ref: str
    status: JobStatus
    attempts: int
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    next_attempt_at: datetime
    last_error: Optional[str] = None
    last_error_code: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
        use_enum_values = True


class JobDetailResponse(JobResponse):
    """Source record with payload, result and deliveries"""
    payload: Optional[Dict[str, Any]] = None
    result: Optional[Dict[str, Any]] = None
    deliveries: List[DeliveryResponse] = Field(default_factory=list)


class PaginationMetadata(BaseModel):
    """Pagination metadata"""
    total_items: int
    total_pages: int
    current_page: int
    page_size: int
    has_next: bool
    has_previous: bool


class JobListResponse(BaseModel):
    """Paginated job listing"""
    items: List[JobResponse]
    pagination: PaginationMetadata
    filters_applied: Dict[str, Any] = Field(default_factory=dict)


class RequeueRequest(BaseModel):
    """Operator requeue body"""
    reset_attempts: bool = Field(False, description="Reset attempts and restore delivery retry budgets")


# ============================================================================
# Statistics Schemas
# ============================================================================

class WorkerRunSummary(BaseModel):
    run_id: str
    run_type: RunType
    worker_id: Optional[str] = None
    status: RunStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    records_claimed: int = 0
    records_succeeded: int = 0
    records_retried: int = 0
    records_failed: int = 0
    records_reclaimed: int = 0
    messages_sent: int = 0
    error_message: Optional[str] = None

    class Config:
        use_enum_values = True


class StatsResponse(BaseModel):
    """Statistics response model"""
    timestamp: datetime = Field(default_factory=utcnow)

    total_jobs: int
    jobs_by_kind_and_status: Dict[str, Dict[str, int]]
    deliveries_by_status: Dict[str, int]
    recent_runs: List[WorkerRunSummary] = Field(default_factory=list)
    avg_worker_run_seconds: Optional[float] = None

    class Config:
        json_schema_extra = {
            "example": {
                "timestamp": "2024-01-15T10:30:00Z",
                "total_jobs": 1539,
                "jobs_by_kind_and_status": {
                    "change_event": {"pending": 3, "done": 1500, "failed": 2},
                    "extraction_request": {"pending": 1, "done": 30, "failed": 1}
                },
                "deliveries_by_status": {"queued": 12, "sent": 4210, "failed": 9},
                "avg_worker_run_seconds": 1.8
            }
        }


# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    code: Optional[str] = None
    detail: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)

    class Config:
        json_schema_extra = {
            "example": {
                "error": "InvalidTransitionError",
                "code": "invalid_transition",
                "detail": "Cannot requeue record 42 from status PROCESSING",
                "timestamp": "2024-01-15T10:30:00Z"
            }
        }
