"""
Job inspection and operator requeue endpoints
"""

from fastapi import APIRouter, Depends, Query, Request, Body
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, and_
from sqlalchemy.orm import selectinload
from api.dependencies import get_db, require_api_key
from schemas.api import JobListResponse, JobResponse, JobDetailResponse, PaginationMetadata, RequeueRequest
from models.source_record import SourceRecord
from models.base import JobKind, JobStatus
from jobs.state_machine import JobStateMachine
from core.exceptions import RecordNotFoundError
from typing import Optional
import uuid
import math
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Jobs"])


async def _load_detail(db: AsyncSession, job_id: int) -> SourceRecord:
    result = await db.execute(
        select(SourceRecord)
        .where(SourceRecord.id == job_id)
        .options(selectinload(SourceRecord.deliveries))
        .execution_options(populate_existing=True)
    )
    record = result.scalar_one_or_none()
    if record is None:
        raise RecordNotFoundError(f"Source record {job_id} not found", context={"record_id": job_id})
    return record


@router.get("/jobs", response_model=JobListResponse)
async def list_jobs(
    request: Request,
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=500, description="Items per page"),
    status: Optional[JobStatus] = Query(None, description="Filter by job status"),
    kind: Optional[JobKind] = Query(None, description="Filter by job kind"),
    db: AsyncSession = Depends(get_db)
):
    """
    Paginated source records, newest first.

    FAILED rows carry last_error / last_error_code for operators.
    """
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")
    logger.info(f"[{request_id}] GET /jobs - page={page}, page_size={page_size}, status={status}, kind={kind}")

    filters = []
    if status:
        filters.append(SourceRecord.status == status)
    if kind:
        filters.append(SourceRecord.kind == kind)

    count_query = select(func.count()).select_from(SourceRecord)
    query = select(SourceRecord)
    if filters:
        count_query = count_query.where(and_(*filters))
        query = query.where(and_(*filters))

    total_items = (await db.execute(count_query)).scalar()
    total_pages = math.ceil(total_items / page_size) if total_items > 0 else 0
    offset = (page - 1) * page_size

    query = query.order_by(SourceRecord.created_at.desc(), SourceRecord.id.desc()).offset(offset).limit(page_size)
    result = await db.execute(query)
    items = [JobResponse.model_validate(r) for r in result.scalars().all()]

    logger.info(f"[{request_id}] Returned {len(items)} of {total_items} job(s)")

    return JobListResponse(
        items=items,
        pagination=PaginationMetadata(
            current_page=page,
            page_size=page_size,
            total_items=total_items,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_previous=page > 1
        ),
        filters_applied={k: v.value for k, v in {"status": status, "kind": kind}.items() if v is not None}
    )


@router.get("/jobs/{job_id}", response_model=JobDetailResponse)
async def get_job(job_id: int, request: Request, db: AsyncSession = Depends(get_db)):
    """One source record with its payload, result and delivery ledger rows"""
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")
    logger.info(f"[{request_id}] GET /jobs/{job_id}")

    record = await _load_detail(db, job_id)
    return JobDetailResponse.model_validate(record)


@router.post(
    "/jobs/{job_id}/requeue",
    response_model=JobDetailResponse,
    dependencies=[Depends(require_api_key)]
)
async def requeue_job(
    job_id: int,
    request: Request,
    body: Optional[RequeueRequest] = Body(None),
    db: AsyncSession = Depends(get_db)
):
    """
    Operator requeue of a DONE or FAILED job.

    Responds 404 for an unknown job and 409 when the job is PENDING or
    PROCESSING.
    """
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")
    reset_attempts = body.reset_attempts if body else False
    logger.info(f"[{request_id}] POST /jobs/{job_id}/requeue - reset_attempts={reset_attempts}")

    await JobStateMachine(db).requeue(job_id, reset_attempts=reset_attempts)
    record = await _load_detail(db, job_id)
    return JobDetailResponse.model_validate(record)
