"""
Job claimer: leases eligible source records to one worker.

Design:
- Candidates are PENDING rows whose next_attempt_at has passed, oldest first
- Each candidate is taken with a conditional UPDATE that re-checks
  status = PENDING; rowcount 1 means this worker won the row, 0 means
  another claimer got there first and the row is skipped
- On PostgreSQL the candidate SELECT uses FOR UPDATE SKIP LOCKED so
  concurrent claimers spread over different rows instead of queueing
- "No work" is an empty list, never an exception; only store failures
  propagate (as DatabaseConnectionError / DeadlockError)
"""

from typing import List
from datetime import timedelta
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update
from models.source_record import SourceRecord
from models.base import JobStatus
from core.clock import utcnow
from core.database import store_operation
import logging

logger = logging.getLogger(__name__)


class JobClaimer:
    """
    Atomically select and lease eligible records for a worker.

    Only the claimer moves rows PENDING → PROCESSING.
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def claim(
        self,
        worker_id: str,
        batch_size: int,
        lease_duration: float
    ) -> List[SourceRecord]:
        """
        Lease up to batch_size eligible rows.

        Args:
            worker_id: Lease owner written to the claimed rows
            batch_size: Maximum number of rows to lease
            lease_duration: Lease length in seconds

        Returns:
            The rows this worker won, in claim order (may be empty)

        Raises:
            DatabaseConnectionError: Store unreachable; nothing was claimed
        """
        if batch_size <= 0:
            return []

        now = utcnow()
        lease_expires_at = now + timedelta(seconds=lease_duration)

        async with store_operation("claim"):
            result = await self.db.execute(
                select(SourceRecord.id)
                .where(
                    SourceRecord.status == JobStatus.PENDING,
                    SourceRecord.next_attempt_at <= now
                )
                .order_by(SourceRecord.next_attempt_at, SourceRecord.id)
                .limit(batch_size)
                .with_for_update(skip_locked=True)
            )
            candidate_ids = list(result.scalars().all())

            if not candidate_ids:
                await self.db.commit()
                return []

            won_ids = []
            for record_id in candidate_ids:
                update_result = await self.db.execute(
                    update(SourceRecord)
                    .where(
                        SourceRecord.id == record_id,
                        SourceRecord.status == JobStatus.PENDING
                    )
                    .values(
                        status=JobStatus.PROCESSING,
                        lease_owner=worker_id,
                        lease_expires_at=lease_expires_at,
                        attempts=SourceRecord.attempts + 1,
                        updated_at=now
                    )
                    .execution_options(synchronize_session=False)
                )
                if update_result.rowcount == 1:
                    won_ids.append(record_id)
                else:
                    logger.debug(f"Claim lost for record {record_id} (taken by another worker)")

            await self.db.commit()

            if not won_ids:
                return []

            rows = await self.db.execute(
                select(SourceRecord)
                .where(SourceRecord.id.in_(won_ids))
                .order_by(SourceRecord.next_attempt_at, SourceRecord.id)
                .execution_options(populate_existing=True)
            )
            claimed = list(rows.scalars().all())
            await self.db.commit()

        logger.debug(f"Worker {worker_id} claimed {len(claimed)} record(s): {won_ids}")
        return claimed

    async def renew_lease(
        self,
        record_id: int,
        worker_id: str,
        lease_duration: float
    ) -> bool:
        """
        Extend a live lease held by worker_id.

        Returns:
            False when the lease is no longer held (reclaimed or reported)
        """
        now = utcnow()
        async with store_operation("renew_lease"):
            result = await self.db.execute(
                update(SourceRecord)
                .where(
                    SourceRecord.id == record_id,
                    SourceRecord.status == JobStatus.PROCESSING,
                    SourceRecord.lease_owner == worker_id
                )
                .values(
                    lease_expires_at=now + timedelta(seconds=lease_duration),
                    updated_at=now
                )
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()

        renewed = result.rowcount == 1
        if not renewed:
            logger.warning(f"Lease renewal rejected for record {record_id}: lease no longer held by {worker_id}")
        return renewed
