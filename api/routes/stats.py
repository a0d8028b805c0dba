"""
Queue statistics and metrics endpoint
"""
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, and_
from api.dependencies import get_db
from schemas.api import StatsResponse, WorkerRunSummary
from models.source_record import SourceRecord
from models.delivery import DeliveryRecord
from models.worker_run import WorkerRun
from models.base import RunType, RunStatus
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Statistics"])


@router.get("/stats", response_model=StatsResponse)
async def get_stats(
    request: Request,
    limit: int = Query(10, ge=1, le=100, description="Number of recent runs to return"),
    db: AsyncSession = Depends(get_db)
):
    """
    Get queue statistics and metrics.

    Returns:
    - Job counts by kind and status
    - Delivery counts by status
    - Recent worker / reaper / digest runs
    """
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")

    logger.info(f"[{request_id}] GET /stats")

    # ========== Jobs ==========

    jobs_result = await db.execute(
        select(SourceRecord.kind, SourceRecord.status, func.count())
        .group_by(SourceRecord.kind, SourceRecord.status)
    )
    jobs_by_kind_and_status = {}
    total_jobs = 0
    for kind, status, count in jobs_result.all():
        jobs_by_kind_and_status.setdefault(kind.value, {})[status.value] = count
        total_jobs += count

    # ========== Deliveries ==========

    deliveries_result = await db.execute(
        select(DeliveryRecord.status, func.count()).group_by(DeliveryRecord.status)
    )
    deliveries_by_status = {status.value: count for status, count in deliveries_result.all()}

    # ========== Worker Runs ==========

    avg_duration_result = await db.execute(
        select(func.avg(WorkerRun.duration_seconds)).where(
            and_(
                WorkerRun.run_type == RunType.WORKER,
                WorkerRun.status != RunStatus.FAILED,
                WorkerRun.duration_seconds.isnot(None)
            )
        )
    )
    avg_duration = avg_duration_result.scalar()

    recent_runs_result = await db.execute(
        select(WorkerRun)
        .order_by(WorkerRun.started_at.desc(), WorkerRun.id.desc())
        .limit(limit)
    )
    recent_runs = [
        WorkerRunSummary(
            run_id=str(run.run_id),
            run_type=run.run_type,
            worker_id=run.worker_id,
            status=run.status,
            started_at=run.started_at,
            completed_at=run.completed_at,
            duration_seconds=run.duration_seconds,
            records_claimed=run.records_claimed or 0,
            records_succeeded=run.records_succeeded or 0,
            records_retried=run.records_retried or 0,
            records_failed=run.records_failed or 0,
            records_reclaimed=run.records_reclaimed or 0,
            messages_sent=run.messages_sent or 0,
            error_message=run.error_message
        )
        for run in recent_runs_result.scalars().all()
    ]

    logger.info(f"[{request_id}] Stats: {total_jobs} jobs, {sum(deliveries_by_status.values())} deliveries")

    return StatsResponse(
        total_jobs=total_jobs,
        jobs_by_kind_and_status=jobs_by_kind_and_status,
        deliveries_by_status=deliveries_by_status,
        recent_runs=recent_runs,
        avg_worker_run_seconds=round(avg_duration, 2) if avg_duration else None
    )
