"""
Tests for the digest dispatcher
"""

import asyncio
from datetime import datetime, timedelta
import pytest
from sqlalchemy import select
from models.subscription import Subscription
from models.delivery import DeliveryRecord
from models.worker_run import WorkerRun
from models.base import DeliveryStatus, DigestCadence, SendMode, RunType, RunStatus
from jobs.digest import DigestDispatcher
from jobs.ledger import DeliveryLedger
from core.clock import utcnow
from tests.conftest import FakeNotifier, change_event_payload, transient_send

# Monday 2025-01-06 06:00 in New York
DIGEST_HOUR = datetime(2025, 1, 6, 11, 0)


class SlowNotifier(FakeNotifier):
    """Yields to the event loop mid-send, as a real provider call does"""

    async def send_digest(self, subscription, events, delivery_ids):
        await asyncio.sleep(0.05)
        return await super().send_digest(subscription, events, delivery_ids)


@pytest.fixture
def queue_digest(db_session, make_record):
    async def _queue(subscription, bill_number="HB0001"):
        record = await make_record(payload=change_event_payload(bill_number=bill_number))
        delivery = await DeliveryLedger(db_session, 3).ensure_queued(subscription.id, record.id, SendMode.DIGEST)
        return delivery
    return _queue


@pytest.mark.asyncio
async def test_due_subscription_gets_one_digest(db_session, make_subscription, queue_digest, fetch):
    subscription = await make_subscription(send_mode=SendMode.DIGEST, digest_cadence=DigestCadence.DAILY)
    first = await queue_digest(subscription, "HB0001")
    second = await queue_digest(subscription, "SB0007")

    notifier = FakeNotifier()
    stats = await DigestDispatcher(db_session, notifier).dispatch(DIGEST_HOUR)

    assert stats == {"due": 1, "contended": 0, "digests_sent": 1, "digests_failed": 0, "deliveries_sent": 2}
    assert notifier.digests == [(subscription.id, ["HB0001", "SB0007"], [first.id, second.id])]

    for delivery_id in (first.id, second.id):
        stored = await fetch(DeliveryRecord, delivery_id)
        assert stored.status == DeliveryStatus.SENT
        assert stored.attempts == 1
    stored_subscription = await fetch(Subscription, subscription.id)
    assert stored_subscription.last_triggered_at == DIGEST_HOUR
    assert stored_subscription.digest_lease_owner is None


@pytest.mark.asyncio
async def test_subscription_outside_window_is_skipped(db_session, make_subscription, queue_digest, fetch):
    subscription = await make_subscription(send_mode=SendMode.DIGEST, digest_cadence=DigestCadence.DAILY)
    delivery = await queue_digest(subscription)

    notifier = FakeNotifier()
    stats = await DigestDispatcher(db_session, notifier).dispatch(DIGEST_HOUR + timedelta(hours=3))

    assert stats["due"] == 0
    assert notifier.digests == []
    assert (await fetch(DeliveryRecord, delivery.id)).status == DeliveryStatus.QUEUED


@pytest.mark.asyncio
async def test_recently_triggered_subscription_waits(db_session, make_subscription, queue_digest):
    subscription = await make_subscription(
        send_mode=SendMode.DIGEST,
        digest_cadence=DigestCadence.HOURLY,
        last_triggered_at=DIGEST_HOUR - timedelta(minutes=10)
    )
    await queue_digest(subscription)

    stats = await DigestDispatcher(db_session, FakeNotifier()).dispatch(DIGEST_HOUR)

    assert stats["due"] == 0


@pytest.mark.asyncio
async def test_failed_digest_leaves_deliveries_retryable(db_session, make_subscription, queue_digest, fetch):
    subscription = await make_subscription(send_mode=SendMode.DIGEST, digest_cadence=DigestCadence.HOURLY)
    delivery = await queue_digest(subscription)

    notifier = FakeNotifier({subscription.id: [transient_send(), None]})
    dispatcher = DigestDispatcher(db_session, notifier)

    stats = await dispatcher.dispatch(DIGEST_HOUR)
    assert stats["digests_failed"] == 1
    stored = await fetch(DeliveryRecord, delivery.id)
    assert stored.status == DeliveryStatus.FAILED
    assert stored.retryable is True
    assert (await fetch(Subscription, subscription.id)).last_triggered_at is None

    stats = await dispatcher.dispatch(DIGEST_HOUR + timedelta(minutes=1))
    assert stats["digests_sent"] == 1
    stored = await fetch(DeliveryRecord, delivery.id)
    assert stored.status == DeliveryStatus.SENT
    assert stored.attempts == 2


@pytest.mark.asyncio
async def test_inactive_subscription_gets_no_digest(db_session, make_subscription, queue_digest):
    subscription = await make_subscription(send_mode=SendMode.DIGEST, digest_cadence=DigestCadence.HOURLY)
    await queue_digest(subscription)
    subscription.active = False
    await db_session.commit()

    notifier = FakeNotifier()
    await DigestDispatcher(db_session, notifier).dispatch(DIGEST_HOUR)

    assert notifier.digests == []


@pytest.mark.asyncio
async def test_sweep_records_digest_run(db_session, make_subscription, queue_digest):
    subscription = await make_subscription(send_mode=SendMode.DIGEST, digest_cadence=DigestCadence.HOURLY)
    await queue_digest(subscription)

    stats = await DigestDispatcher(db_session, FakeNotifier()).sweep()

    assert stats["digests_sent"] == 1
    result = await db_session.execute(select(WorkerRun).where(WorkerRun.run_type == RunType.DIGEST))
    run = result.scalar_one()
    assert run.status == RunStatus.SUCCESS
    assert run.messages_sent == 1
    await db_session.commit()


@pytest.mark.asyncio
async def test_concurrent_dispatchers_send_one_digest(race_session_factory, make_subscription, queue_digest, fetch):
    subscription = await make_subscription(send_mode=SendMode.DIGEST, digest_cadence=DigestCadence.HOURLY)
    first = await queue_digest(subscription, "HB0001")
    second = await queue_digest(subscription, "SB0007")
    notifier = SlowNotifier()

    async def dispatch(dispatcher_id):
        async with race_session_factory() as session:
            return await DigestDispatcher(session, notifier, dispatcher_id=dispatcher_id).dispatch(DIGEST_HOUR)

    results = await asyncio.gather(*(dispatch(f"dispatcher-{i}") for i in range(4)))

    assert notifier.digests == [(subscription.id, ["HB0001", "SB0007"], [first.id, second.id])]
    assert sum(stats["digests_sent"] for stats in results) == 1
    assert sum(stats["digests_failed"] for stats in results) == 0
    for delivery_id in (first.id, second.id):
        stored = await fetch(DeliveryRecord, delivery_id)
        assert stored.status == DeliveryStatus.SENT
        assert stored.attempts == 1

    stored_subscription = await fetch(Subscription, subscription.id)
    assert stored_subscription.last_triggered_at == DIGEST_HOUR
    assert stored_subscription.digest_lease_owner is None


@pytest.mark.asyncio
async def test_digest_leased_elsewhere_is_skipped(db_session, make_subscription, queue_digest, fetch):
    subscription = await make_subscription(
        send_mode=SendMode.DIGEST,
        digest_cadence=DigestCadence.HOURLY,
        digest_lease_owner="dispatcher-other",
        digest_lease_expires_at=utcnow() + timedelta(minutes=5)
    )
    delivery = await queue_digest(subscription)

    notifier = FakeNotifier()
    stats = await DigestDispatcher(db_session, notifier, dispatcher_id="dispatcher-me").dispatch(DIGEST_HOUR)

    assert stats["due"] == 1
    assert stats["contended"] == 1
    assert notifier.digests == []
    assert (await fetch(DeliveryRecord, delivery.id)).status == DeliveryStatus.QUEUED
    assert (await fetch(Subscription, subscription.id)).digest_lease_owner == "dispatcher-other"


@pytest.mark.asyncio
async def test_expired_digest_lease_is_taken_over(db_session, make_subscription, queue_digest, fetch):
    subscription = await make_subscription(
        send_mode=SendMode.DIGEST,
        digest_cadence=DigestCadence.HOURLY,
        digest_lease_owner="dispatcher-dead",
        digest_lease_expires_at=utcnow() - timedelta(minutes=1)
    )
    delivery = await queue_digest(subscription)

    notifier = FakeNotifier()
    stats = await DigestDispatcher(db_session, notifier, dispatcher_id="dispatcher-me").dispatch(DIGEST_HOUR)

    assert stats["digests_sent"] == 1
    assert (await fetch(DeliveryRecord, delivery.id)).status == DeliveryStatus.SENT
    assert (await fetch(Subscription, subscription.id)).digest_lease_owner is None


@pytest.mark.asyncio
async def test_claim_loses_when_digest_was_sent_since_due_check(db_session, make_subscription):
    subscription = await make_subscription(send_mode=SendMode.DIGEST, digest_cadence=DigestCadence.HOURLY)
    stale = Subscription(id=subscription.id, last_triggered_at=None)

    subscription.last_triggered_at = DIGEST_HOUR
    await db_session.commit()

    assert await DigestDispatcher(db_session, FakeNotifier(), dispatcher_id="dispatcher-me").claim(stale) is False
