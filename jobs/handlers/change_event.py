"""
Change-event handler: match subscriptions, queue deliveries, send.

One pass:
1. Validate the payload as a ChangeEvent (invalid → permanent failure)
2. Match active subscriptions and ensure one ledger row per match
3. Send every outstanding INSTANT delivery through the notifier
4. Report DONE when nothing INSTANT is outstanding, otherwise DEFERRED

Sends stop for the rest of the pass once the provider rate-limits; the
remaining deliveries stay QUEUED for the next pass.
"""

from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import update
from models.source_record import SourceRecord
from models.subscription import Subscription
from models.base import JobKind
from schemas.events import ChangeEvent
from jobs.handlers.base import JobHandler, validate_payload
from jobs.matching import MatchingEngine
from jobs.ledger import DeliveryLedger
from jobs.notifiers import Notifier
from jobs.outcomes import Failure, JobOutcome, SendResult
from core.clock import utcnow
from core.config import settings
from core.database import store_operation
from core.exceptions import InvalidPayloadError
import logging

logger = logging.getLogger(__name__)

RATE_LIMIT_CODES = ("rate_limited", "quota_exceeded")


class ChangeEventHandler(JobHandler):
    kind = JobKind.CHANGE_EVENT

    def __init__(self, notifier: Notifier, max_delivery_attempts: Optional[int] = None):
        self.notifier = notifier
        self.max_delivery_attempts = max_delivery_attempts or settings.MAX_DELIVERY_ATTEMPTS

    async def handle(self, session: AsyncSession, record: SourceRecord) -> JobOutcome:
        try:
            event = validate_payload(ChangeEvent, record)
        except InvalidPayloadError as e:
            return JobOutcome.from_failure(Failure.from_exception(e))

        ledger = DeliveryLedger(session, self.max_delivery_attempts)

        matches = await MatchingEngine(session).match(event)
        for match in matches:
            await ledger.ensure_queued(match.subscription.id, record.id, match.send_mode)

        sent = 0
        failed = 0
        last_failure: Optional[Failure] = None

        for delivery in await ledger.outstanding(record.id):
            subscription = delivery.subscription
            result = await self._send(subscription, event, delivery.id)

            if result.ok:
                await ledger.mark_sent([delivery.id], result.provider_message_id)
                await self._touch_subscription(session, subscription.id)
                sent += 1
                continue

            await ledger.mark_failed([delivery.id], result.failure)
            failed += 1
            last_failure = result.failure
            logger.warning(
                f"Delivery {delivery.id} (subscription {subscription.id}, record {record.id}) failed: "
                f"{result.failure.as_last_error()}"
            )
            if result.failure.code in RATE_LIMIT_CODES:
                logger.warning(f"Provider rate limit hit; stopping sends for record {record.id} this pass")
                break

        stats = {"matched": len(matches), "sent": sent, "failed": failed}
        remaining = await ledger.outstanding(record.id)
        if not remaining:
            return JobOutcome.succeeded(result=stats, **stats)

        reason = last_failure.as_last_error() if last_failure else "not attempted"
        return JobOutcome.deferred(
            Failure.transient(
                "deliveries_pending",
                f"{len(remaining)} delivery(ies) awaiting retry ({reason})",
                retry_after=last_failure.retry_after if last_failure else None
            ),
            **stats
        )

    async def _send(self, subscription: Subscription, event: ChangeEvent, delivery_id: int) -> SendResult:
        if not subscription.active:
            return SendResult.failed(Failure.permanent("subscription_inactive", "Subscription was deactivated"))
        try:
            return await self.notifier.send(subscription, event, delivery_id)
        except Exception as e:
            logger.exception(f"Notifier raised for delivery {delivery_id}")
            return SendResult.failed(Failure.from_exception(e))

    async def _touch_subscription(self, session: AsyncSession, subscription_id: int):
        async with store_operation("touch_subscription", "subscriptions"):
            await session.execute(
                update(Subscription)
                .where(Subscription.id == subscription_id)
                .values(last_triggered_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
