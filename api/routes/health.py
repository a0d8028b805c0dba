"""
Health check endpoint with database and queue status
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, text, and_
from sqlalchemy.exc import SQLAlchemyError
from api.dependencies import get_db
from schemas.api import HealthCheckResponse
from models.source_record import SourceRecord
from models.worker_run import WorkerRun
from models.base import JobStatus, RunType
from core.clock import utcnow
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(request: Request, db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Job counts by status
    - Leases past their expiry that the reaper has not reclaimed yet
    - Last worker cycle timestamp
    """
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")

    db_connected = False
    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except (SQLAlchemyError, OSError) as e:
        logger.error(f"[{request_id}] Database connection failed: {str(e)}")

    if not db_connected:
        return HealthCheckResponse(database_connected=False)

    jobs_by_status = {s.value: 0 for s in JobStatus}
    stale_leases = 0
    last_worker_run_at = None

    try:
        counts = await db.execute(
            select(SourceRecord.status, func.count()).group_by(SourceRecord.status)
        )
        for status_val, count in counts.all():
            jobs_by_status[status_val.value] = count

        stale_result = await db.execute(
            select(func.count()).select_from(SourceRecord).where(
                and_(
                    SourceRecord.status == JobStatus.PROCESSING,
                    SourceRecord.lease_expires_at < utcnow()
                )
            )
        )
        stale_leases = stale_result.scalar() or 0

        last_run_result = await db.execute(
            select(func.max(WorkerRun.started_at)).where(WorkerRun.run_type == RunType.WORKER)
        )
        last_worker_run_at = last_run_result.scalar()
    except SQLAlchemyError as e:
        logger.error(f"[{request_id}] Failed to fetch queue status: {str(e)}")

    if stale_leases:
        logger.warning(f"[{request_id}] {stale_leases} expired lease(s) awaiting reclamation")

    # Status is derived by the HealthCheckResponse validator
    return HealthCheckResponse(
        database_connected=db_connected,
        jobs_by_status=jobs_by_status,
        stale_leases=stale_leases,
        last_worker_run_at=last_worker_run_at
    )
