"""
Lease reaper: returns records abandoned by crashed workers to PENDING.

A reclaimed row is eligible immediately. attempts is left alone (the
increment happened at claim time), last_error is left alone, and the
record's delivery rows are never touched: re-running the matching step
after reclaim is harmless because the ledger upsert is idempotent.
"""

from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, func
from models.source_record import SourceRecord
from models.worker_run import WorkerRun
from models.base import JobStatus, RunType, RunStatus
from core.clock import utcnow
from core.database import store_operation
import logging

logger = logging.getLogger(__name__)


class LeaseReaper:
    """
    Periodic sweep over expired PROCESSING leases.

    The UPDATE re-checks status and lease_expires_at, so a worker that
    reports or renews between the scan and the update keeps its row.
    """

    def __init__(self, db_session: AsyncSession, batch_size: Optional[int] = None):
        self.db = db_session
        self.batch_size = batch_size

    async def count_expired(self) -> int:
        now = utcnow()
        async with store_operation("count_expired_leases"):
            result = await self.db.execute(
                select(func.count(SourceRecord.id)).where(
                    SourceRecord.status == JobStatus.PROCESSING,
                    SourceRecord.lease_expires_at < now
                )
            )
            count = result.scalar_one()
            await self.db.commit()
        return count

    async def reclaim_expired_leases(self) -> int:
        """
        Reset expired leases to PENDING.

        Returns:
            Number of records reclaimed
        """
        now = utcnow()
        expired = (
            SourceRecord.status == JobStatus.PROCESSING,
            SourceRecord.lease_expires_at < now
        )

        async with store_operation("reclaim_expired_leases"):
            stmt = update(SourceRecord).where(*expired)

            if self.batch_size:
                id_result = await self.db.execute(
                    select(SourceRecord.id)
                    .where(*expired)
                    .order_by(SourceRecord.lease_expires_at, SourceRecord.id)
                    .limit(self.batch_size)
                )
                expired_ids = list(id_result.scalars().all())
                if not expired_ids:
                    await self.db.commit()
                    return 0
                stmt = stmt.where(SourceRecord.id.in_(expired_ids))

            result = await self.db.execute(
                stmt.values(
                    status=JobStatus.PENDING,
                    next_attempt_at=now,
                    lease_owner=None,
                    lease_expires_at=None,
                    updated_at=now
                )
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()

        reclaimed = result.rowcount
        if reclaimed:
            logger.warning(f"Reclaimed {reclaimed} expired lease(s)")
        return reclaimed

    async def sweep(self) -> int:
        """Reclaim expired leases and record a reaper run when any were found"""
        started_at = utcnow()
        reclaimed = await self.reclaim_expired_leases()

        if reclaimed:
            completed_at = utcnow()
            self.db.add(WorkerRun(
                run_type=RunType.REAPER,
                status=RunStatus.SUCCESS,
                started_at=started_at,
                completed_at=completed_at,
                duration_seconds=(completed_at - started_at).total_seconds(),
                records_reclaimed=reclaimed
            ))
            async with store_operation("record_reaper_run", "worker_runs"):
                await self.db.commit()

        return reclaimed
