"""
Job state machine shared by every job kind.

States:
    PENDING     eligible for claim once next_attempt_at has passed
    PROCESSING  leased to one worker
    DONE        terminal success (operator-requeueable)
    FAILED      terminal failure (operator-requeueable)

Ownership of transitions:
- PENDING → PROCESSING: JobClaimer only
- PROCESSING → DONE / PENDING / FAILED: the worker holding the lease, via
  report(); the UPDATE re-checks status and lease_owner so a report from a
  worker whose lease was reclaimed changes nothing
- stale PROCESSING → PENDING: LeaseReaper only
- DONE / FAILED → PENDING: operator requeue only
"""

from dataclasses import dataclass
from typing import Optional
from datetime import timedelta
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update
from models.source_record import SourceRecord
from models.delivery import DeliveryRecord
from models.base import JobStatus, DeliveryStatus
from jobs.outcomes import JobOutcome, OutcomeKind
from jobs.policy import RetryPolicy
from core.clock import utcnow
from core.database import store_operation
from core.exceptions import InvalidTransitionError, RecordNotFoundError
import logging

logger = logging.getLogger(__name__)

REQUEUEABLE_STATUSES = (JobStatus.DONE, JobStatus.FAILED)


@dataclass(frozen=True)
class Transition:
    status: JobStatus
    delay_seconds: Optional[float] = None
    exhausted: bool = False


def decide(attempts: int, outcome: JobOutcome, policy: RetryPolicy) -> Transition:
    """
    Pure transition function for a PROCESSING row.

    Args:
        attempts: Post-increment attempts of the row (PROCESSING entries so far)
        outcome: What the handler reported
        policy: Job-level retry policy
    """
    if outcome.kind == OutcomeKind.SUCCEEDED:
        return Transition(JobStatus.DONE)

    if outcome.kind == OutcomeKind.FAILED:
        return Transition(JobStatus.FAILED)

    retry_after = outcome.failure.retry_after if outcome.failure else None
    delay = retry_after if retry_after is not None else policy.backoff(attempts)

    if outcome.kind == OutcomeKind.DEFERRED:
        # Outstanding deliveries carry their own budget
        return Transition(JobStatus.PENDING, delay_seconds=delay)

    if policy.exhausted(attempts):
        return Transition(JobStatus.FAILED, exhausted=True)
    return Transition(JobStatus.PENDING, delay_seconds=delay)


class JobStateMachine:
    """
    Applies reported outcomes and operator actions to source records.
    """

    def __init__(self, db_session: AsyncSession, policy: Optional[RetryPolicy] = None):
        self.db = db_session
        self.policy = policy or RetryPolicy.from_settings()

    async def report(
        self,
        record_id: int,
        worker_id: str,
        outcome: JobOutcome
    ) -> Optional[JobStatus]:
        """
        Apply a handler outcome to a leased record.

        Returns:
            The new status, or None when worker_id no longer holds the lease
        """
        async with store_operation("report"):
            result = await self.db.execute(
                select(SourceRecord.attempts).where(
                    SourceRecord.id == record_id,
                    SourceRecord.status == JobStatus.PROCESSING,
                    SourceRecord.lease_owner == worker_id
                )
            )
            attempts = result.scalar_one_or_none()
            if attempts is None:
                await self.db.commit()
                logger.warning(f"Lease lost for record {record_id}; report from {worker_id} ignored")
                return None

            transition = decide(attempts, outcome, self.policy)
            now = utcnow()
            values = {
                "status": transition.status,
                "lease_owner": None,
                "lease_expires_at": None,
                "updated_at": now,
            }

            if transition.status == JobStatus.DONE:
                values.update(
                    processed_at=now,
                    result=outcome.result,
                    last_error=None,
                    last_error_code=None
                )
            else:
                values.update(
                    last_error=outcome.failure.as_last_error(),
                    last_error_code=outcome.failure.code
                )
                if transition.status == JobStatus.PENDING:
                    values["next_attempt_at"] = now + timedelta(seconds=transition.delay_seconds)

            update_result = await self.db.execute(
                update(SourceRecord)
                .where(
                    SourceRecord.id == record_id,
                    SourceRecord.status == JobStatus.PROCESSING,
                    SourceRecord.lease_owner == worker_id,
                    SourceRecord.attempts == attempts
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()

        if update_result.rowcount != 1:
            logger.warning(f"Lease lost for record {record_id} while reporting; no change applied")
            return None

        self._log_transition(record_id, attempts, outcome, transition)
        return transition.status

    def _log_transition(self, record_id: int, attempts: int, outcome: JobOutcome, transition: Transition):
        if transition.status == JobStatus.DONE:
            logger.info(f"Record {record_id} DONE after {attempts} attempt(s)")
        elif transition.status == JobStatus.PENDING:
            logger.warning(
                f"Record {record_id} rescheduled in {transition.delay_seconds:.1f}s "
                f"({outcome.kind.value}, attempt {attempts}/{self.policy.max_attempts}): "
                f"{outcome.failure.code}"
            )
        else:
            reason = "attempts exhausted" if transition.exhausted else "permanent failure"
            logger.error(
                f"Record {record_id} FAILED ({reason}, attempt {attempts}): "
                f"{outcome.failure.as_last_error()}"
            )

    async def requeue(self, record_id: int, reset_attempts: bool = False) -> SourceRecord:
        """
        Operator requeue: DONE / FAILED → PENDING, eligible immediately.

        Args:
            record_id: Source record to requeue
            reset_attempts: Also reset attempts to 0 and restore the retry
                budget of this record's retryable FAILED deliveries

        Raises:
            RecordNotFoundError: No such record
            InvalidTransitionError: Record is PENDING or PROCESSING
        """
        now = utcnow()
        values = {
            "status": JobStatus.PENDING,
            "next_attempt_at": now,
            "last_error": None,
            "last_error_code": None,
            "updated_at": now,
        }
        if reset_attempts:
            values["attempts"] = 0

        async with store_operation("requeue"):
            result = await self.db.execute(
                update(SourceRecord)
                .where(
                    SourceRecord.id == record_id,
                    SourceRecord.status.in_(REQUEUEABLE_STATUSES)
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )

            if result.rowcount != 1:
                await self.db.rollback()
                record = await self.db.get(SourceRecord, record_id, populate_existing=True)
                current = record.status.name if record is not None else None
                await self.db.commit()
                if current is None:
                    raise RecordNotFoundError(
                        f"Source record {record_id} not found",
                        context={"record_id": record_id}
                    )
                raise InvalidTransitionError(
                    f"Cannot requeue record {record_id} from status {current}",
                    context={
                        "record_id": record_id,
                        "status": current,
                        "requested": JobStatus.PENDING.name
                    }
                )

            if reset_attempts:
                await self.db.execute(
                    update(DeliveryRecord)
                    .where(
                        DeliveryRecord.source_record_id == record_id,
                        DeliveryRecord.status == DeliveryStatus.FAILED,
                        DeliveryRecord.retryable.is_(True)
                    )
                    .values(attempts=0, updated_at=now)
                    .execution_options(synchronize_session=False)
                )

            await self.db.commit()

            refreshed = await self.db.execute(
                select(SourceRecord)
                .where(SourceRecord.id == record_id)
                .execution_options(populate_existing=True)
            )
            record = refreshed.scalar_one()
            await self.db.commit()

        logger.info(f"Record {record_id} requeued by operator (reset_attempts={reset_attempts})")
        return record
