"""
Digest dispatcher: sends queued DIGEST deliveries in one message per
subscription when the subscription's digest is due.

Due rules (wall clock in DIGEST_TIMEZONE):
- DAILY:  within DIGEST_WINDOW_MINUTES of digest_time (default 06:00)
- WEEKLY: same, and only on digest_day (default monday)
- HOURLY: at most once per hour
- never more often than DIGEST_MIN_GAP_MINUTES after the last send
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import or_, select, update
from models.subscription import Subscription
from models.delivery import DeliveryRecord
from models.worker_run import WorkerRun
from models.base import DigestCadence, SendMode, RunType, RunStatus
from schemas.events import ChangeEvent
from jobs.handlers.base import validate_payload
from jobs.ledger import DeliveryLedger
from jobs.notifiers import Notifier
from jobs.outcomes import Failure, SendResult
from core.clock import utcnow
from core.config import settings
from core.database import store_operation
from core.exceptions import InvalidPayloadError
import logging

logger = logging.getLogger(__name__)

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def parse_hhmm(value: Optional[str]) -> Optional[int]:
    """'06:30' -> 390 minutes since midnight; None when malformed"""
    if not value:
        return None
    try:
        hours, minutes = value.strip().split(":")
        hours, minutes = int(hours), int(minutes)
    except ValueError:
        return None
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        return None
    return hours * 60 + minutes


def is_digest_due(
    subscription: Subscription,
    now: datetime,
    tz: str = None,
    default_time: str = None,
    window_minutes: int = None,
    min_gap_minutes: int = None
) -> bool:
    """
    Whether a digest subscription should be sent at ``now`` (naive UTC).
    """
    tz = tz or settings.DIGEST_TIMEZONE
    default_time = default_time or settings.DIGEST_DEFAULT_TIME
    window_minutes = settings.DIGEST_WINDOW_MINUTES if window_minutes is None else window_minutes
    min_gap_minutes = settings.DIGEST_MIN_GAP_MINUTES if min_gap_minutes is None else min_gap_minutes

    last = subscription.last_triggered_at
    if last is not None and now - last < timedelta(minutes=min_gap_minutes):
        return False

    cadence = subscription.digest_cadence or DigestCadence.DAILY
    if cadence == DigestCadence.HOURLY:
        return last is None or now - last >= timedelta(hours=1)

    target = parse_hhmm(subscription.digest_time or default_time)
    if target is None:
        logger.warning(f"Subscription {subscription.id} has malformed digest_time {subscription.digest_time!r}")
        return False

    local = now.replace(tzinfo=timezone.utc).astimezone(ZoneInfo(tz))

    if cadence == DigestCadence.WEEKLY:
        digest_day = (subscription.digest_day or "monday").strip().lower()
        if WEEKDAYS[local.weekday()] != digest_day:
            return False

    minutes_since_midnight = local.hour * 60 + local.minute
    return abs(minutes_since_midnight - target) <= window_minutes


class DigestDispatcher:
    """
    Periodic sweep over subscriptions with outstanding digest deliveries.

    Any number of dispatchers may sweep at once. Before sending, a
    dispatcher leases the subscription with a conditional UPDATE; only the
    winner reads the pending deliveries and sends. A dispatcher that dies
    mid-send leaves its lease to expire after ``lease_duration`` seconds.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        notifier: Notifier,
        max_delivery_attempts: Optional[int] = None,
        max_items: Optional[int] = None,
        dispatcher_id: Optional[str] = None,
        lease_duration: Optional[int] = None
    ):
        self.db = db_session
        self.notifier = notifier
        self.ledger = DeliveryLedger(db_session, max_delivery_attempts or settings.MAX_DELIVERY_ATTEMPTS)
        self.max_items = max_items or settings.DIGEST_MAX_ITEMS
        self.dispatcher_id = dispatcher_id or settings.WORKER_ID
        self.lease_duration = lease_duration or settings.LEASE_DURATION_SECONDS

    async def _subscriptions_with_pending(self) -> List[Subscription]:
        pending = (
            select(DeliveryRecord.subscription_id)
            .where(
                DeliveryRecord.send_mode == SendMode.DIGEST,
                self.ledger.outstanding_clause()
            )
        )
        async with store_operation("list_digest_subscriptions", "subscriptions"):
            result = await self.db.execute(
                select(Subscription)
                .where(
                    Subscription.active.is_(True),
                    Subscription.id.in_(pending)
                )
                .order_by(Subscription.id)
                .execution_options(populate_existing=True)
            )
            subscriptions = list(result.scalars().all())
            await self.db.commit()
        return subscriptions

    async def claim(self, subscription: Subscription) -> bool:
        """
        Lease a subscription's digest to this dispatcher.

        The UPDATE matches only while no live lease is held and
        last_triggered_at still has the value the due check saw, so a
        digest sent by another dispatcher in the meantime also loses the
        claim. Returns True for the single winner.
        """
        now = utcnow()
        seen = subscription.last_triggered_at
        unchanged = (
            Subscription.last_triggered_at.is_(None) if seen is None
            else Subscription.last_triggered_at == seen
        )
        stmt = (
            update(Subscription)
            .where(
                Subscription.id == subscription.id,
                Subscription.active.is_(True),
                or_(
                    Subscription.digest_lease_owner.is_(None),
                    Subscription.digest_lease_expires_at < now
                ),
                unchanged
            )
            .values(
                digest_lease_owner=self.dispatcher_id,
                digest_lease_expires_at=now + timedelta(seconds=self.lease_duration)
            )
            .execution_options(synchronize_session=False)
        )
        async with store_operation("claim_digest", "subscriptions"):
            result = await self.db.execute(stmt)
            await self.db.commit()
        return result.rowcount == 1

    async def release(self, subscription_id: int, triggered_at: Optional[datetime] = None):
        """Drop this dispatcher's lease, stamping last_triggered_at when a digest went out"""
        values = {"digest_lease_owner": None, "digest_lease_expires_at": None}
        if triggered_at is not None:
            values["last_triggered_at"] = triggered_at

        async with store_operation("release_digest", "subscriptions"):
            await self.db.execute(
                update(Subscription)
                .where(
                    Subscription.id == subscription_id,
                    Subscription.digest_lease_owner == self.dispatcher_id
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()

    async def dispatch(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Send every due digest.

        Returns:
            Counters: subscriptions due, digests held by another dispatcher,
            digests sent / failed, deliveries sent
        """
        now = now or utcnow()
        stats = {"due": 0, "contended": 0, "digests_sent": 0, "digests_failed": 0, "deliveries_sent": 0}

        for subscription in await self._subscriptions_with_pending():
            if not is_digest_due(subscription, now):
                continue
            stats["due"] += 1

            if not await self.claim(subscription):
                stats["contended"] += 1
                logger.debug(f"Digest for subscription {subscription.id} is held by another dispatcher")
                continue

            sent = await self._dispatch_claimed(subscription, stats)
            await self.release(subscription.id, triggered_at=now if sent else None)

        return stats

    async def _dispatch_claimed(self, subscription: Subscription, stats: Dict[str, int]) -> bool:
        deliveries = await self.ledger.pending_digest_deliveries(subscription.id, self.max_items)
        events = []
        delivery_ids = []
        for delivery in deliveries:
            try:
                events.append(validate_payload(ChangeEvent, delivery.source_record))
                delivery_ids.append(delivery.id)
            except InvalidPayloadError as e:
                await self.ledger.mark_failed([delivery.id], Failure.from_exception(e))
        # no transaction stays open across the provider call
        await self.db.commit()

        if not delivery_ids:
            return False

        result = await self._send(subscription, events, delivery_ids)
        if not result.ok:
            await self.ledger.mark_failed(delivery_ids, result.failure)
            stats["digests_failed"] += 1
            logger.warning(
                f"Digest for subscription {subscription.id} failed: {result.failure.as_last_error()}"
            )
            return False

        await self.ledger.mark_sent(delivery_ids, result.provider_message_id)
        stats["digests_sent"] += 1
        stats["deliveries_sent"] += len(delivery_ids)
        logger.info(f"Digest sent to subscription {subscription.id} ({len(delivery_ids)} item(s))")
        return True

    async def sweep(self) -> Dict[str, int]:
        """Dispatch due digests and record a digest run when anything was attempted"""
        started_at = utcnow()
        stats = await self.dispatch(started_at)

        attempted = stats["digests_sent"] + stats["digests_failed"]
        if attempted:
            completed_at = utcnow()
            if stats["digests_failed"] == 0:
                status = RunStatus.SUCCESS
            elif stats["digests_sent"] == 0:
                status = RunStatus.FAILED
            else:
                status = RunStatus.PARTIAL
            self.db.add(WorkerRun(
                run_type=RunType.DIGEST,
                status=status,
                started_at=started_at,
                completed_at=completed_at,
                duration_seconds=(completed_at - started_at).total_seconds(),
                messages_sent=stats["digests_sent"],
                records_failed=stats["digests_failed"],
                run_metadata=stats
            ))
            async with store_operation("record_digest_run", "worker_runs"):
                await self.db.commit()
        return stats

    async def _send(self, subscription: Subscription, events: List[ChangeEvent], delivery_ids: List[int]) -> SendResult:
        try:
            return await self.notifier.send_digest(subscription, events, delivery_ids)
        except Exception as e:
            logger.exception(f"Notifier raised for digest of subscription {subscription.id}")
            return SendResult.failed(Failure.from_exception(e))

