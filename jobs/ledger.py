"""
Delivery ledger: the idempotency barrier between matching and sending.

One row per (subscription, source record), ever. ensure_queued() inserts
with ON CONFLICT DO NOTHING against that unique pair and returns whichever
row exists afterwards, so a retried or reclaimed event re-derives its
matches without ever creating a second delivery.

Each mark_* call commits on its own so progress survives a worker crash.
"""

from typing import List, Optional, Sequence
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, or_, and_
from sqlalchemy.orm import selectinload
from models.delivery import DeliveryRecord
from models.base import DeliveryStatus, SendMode
from jobs.outcomes import Failure
from core.clock import utcnow
from core.database import dialect_insert, store_operation
import logging

logger = logging.getLogger(__name__)

TABLE_NAME = "delivery_records"


class DeliveryLedger:
    """
    Records and advances deliveries for change events.

    Delivery retry budget is independent of the parent event's attempts:
    a FAILED delivery stays outstanding while it is retryable and its own
    attempts are below max_delivery_attempts.
    """

    def __init__(self, db_session: AsyncSession, max_delivery_attempts: int):
        self.db = db_session
        self.max_delivery_attempts = max_delivery_attempts

    # ------------------------------------------------------------------
    # Idempotent creation
    # ------------------------------------------------------------------

    async def ensure_queued(
        self,
        subscription_id: int,
        source_record_id: int,
        send_mode: SendMode = SendMode.INSTANT
    ) -> DeliveryRecord:
        """
        Return the delivery for the pair, creating it QUEUED if absent.

        An existing row is returned unchanged whatever its status.
        """
        now = utcnow()
        stmt = dialect_insert(self.db, DeliveryRecord).values(
            subscription_id=subscription_id,
            source_record_id=source_record_id,
            status=DeliveryStatus.QUEUED,
            send_mode=send_mode,
            attempts=0,
            retryable=True,
            created_at=now,
            updated_at=now
        )
        stmt = stmt.on_conflict_do_nothing(
            index_elements=["subscription_id", "source_record_id"]
        )

        async with store_operation("ensure_queued", TABLE_NAME):
            result = await self.db.execute(stmt)
            if result.rowcount == 1:
                logger.debug(f"Delivery queued: subscription {subscription_id} × record {source_record_id}")

            row = await self.db.execute(
                select(DeliveryRecord)
                .where(
                    DeliveryRecord.subscription_id == subscription_id,
                    DeliveryRecord.source_record_id == source_record_id
                )
                .execution_options(populate_existing=True)
            )
            delivery = row.scalar_one()
            await self.db.commit()

        return delivery

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def outstanding_clause(self):
        return or_(
            DeliveryRecord.status == DeliveryStatus.QUEUED,
            and_(
                DeliveryRecord.status == DeliveryStatus.FAILED,
                DeliveryRecord.retryable.is_(True),
                DeliveryRecord.attempts < self.max_delivery_attempts
            )
        )

    async def deliveries_for(self, source_record_id: int) -> List[DeliveryRecord]:
        async with store_operation("list_deliveries", TABLE_NAME):
            result = await self.db.execute(
                select(DeliveryRecord)
                .where(DeliveryRecord.source_record_id == source_record_id)
                .order_by(DeliveryRecord.id)
                .execution_options(populate_existing=True)
            )
            return list(result.scalars().all())

    async def outstanding(
        self,
        source_record_id: int,
        send_mode: Optional[SendMode] = SendMode.INSTANT
    ) -> List[DeliveryRecord]:
        """
        Deliveries of a record still owed a send attempt.

        With the default send_mode this is exactly the set that keeps the
        event open; DIGEST rows belong to the digest dispatcher.
        """
        stmt = (
            select(DeliveryRecord)
            .options(selectinload(DeliveryRecord.subscription))
            .where(
                DeliveryRecord.source_record_id == source_record_id,
                self.outstanding_clause()
            )
            .order_by(DeliveryRecord.id)
            .execution_options(populate_existing=True)
        )
        if send_mode is not None:
            stmt = stmt.where(DeliveryRecord.send_mode == send_mode)

        async with store_operation("list_outstanding", TABLE_NAME):
            result = await self.db.execute(stmt)
            return list(result.scalars().all())

    async def is_complete(self, source_record_id: int) -> bool:
        """Completion join: no INSTANT delivery of the record is outstanding"""
        return not await self.outstanding(source_record_id, SendMode.INSTANT)

    async def pending_digest_deliveries(self, subscription_id: int, limit: int) -> List[DeliveryRecord]:
        """Oldest outstanding digest deliveries of one subscription, with their events"""
        async with store_operation("list_digest", TABLE_NAME):
            result = await self.db.execute(
                select(DeliveryRecord)
                .options(selectinload(DeliveryRecord.source_record))
                .where(
                    DeliveryRecord.subscription_id == subscription_id,
                    DeliveryRecord.send_mode == SendMode.DIGEST,
                    self.outstanding_clause()
                )
                .order_by(DeliveryRecord.created_at, DeliveryRecord.id)
                .limit(limit)
                .execution_options(populate_existing=True)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def mark_sent(
        self,
        delivery_ids: Sequence[int],
        provider_message_id: Optional[str] = None
    ) -> int:
        """QUEUED / FAILED → SENT. A SENT row is never touched again."""
        if not delivery_ids:
            return 0
        now = utcnow()
        async with store_operation("mark_sent", TABLE_NAME):
            result = await self.db.execute(
                update(DeliveryRecord)
                .where(
                    DeliveryRecord.id.in_(list(delivery_ids)),
                    DeliveryRecord.status != DeliveryStatus.SENT
                )
                .values(
                    status=DeliveryStatus.SENT,
                    attempts=DeliveryRecord.attempts + 1,
                    sent_at=now,
                    provider_message_id=provider_message_id,
                    error=None,
                    error_code=None,
                    updated_at=now
                )
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        return result.rowcount

    async def mark_failed(self, delivery_ids: Sequence[int], failure: Failure) -> int:
        """
        Record a failed send attempt.

        Permanent failures clear ``retryable``; transient ones leave the row
        outstanding until its attempts reach max_delivery_attempts.
        """
        if not delivery_ids:
            return 0
        now = utcnow()
        async with store_operation("mark_failed", TABLE_NAME):
            result = await self.db.execute(
                update(DeliveryRecord)
                .where(
                    DeliveryRecord.id.in_(list(delivery_ids)),
                    DeliveryRecord.status != DeliveryStatus.SENT
                )
                .values(
                    status=DeliveryStatus.FAILED,
                    attempts=DeliveryRecord.attempts + 1,
                    retryable=failure.is_transient,
                    error=failure.as_last_error(),
                    error_code=failure.code,
                    updated_at=now
                )
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        return result.rowcount
