"""
Matching engine for change-event jobs.

matching_subscriptions() is a pure function of the event and the given
subscriptions, so re-running it on every retry re-derives the same set;
the delivery ledger's unique pair is then the only de-duplication needed.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from models.subscription import Subscription
from models.base import SendMode
from schemas.events import ChangeEvent
from core.database import store_operation
import logging

logger = logging.getLogger(__name__)


def _normalize_bill_number(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return "".join(value.split()).upper() or None


def subscription_matches(event: ChangeEvent, subscription: Subscription) -> bool:
    """
    Every non-null criterion must hold. Flagged events skip only the
    event-type filter.
    """
    if subscription.bill_number:
        if _normalize_bill_number(subscription.bill_number) != event.bill_number:
            return False

    if subscription.committee_id is not None:
        if subscription.committee_id != event.committee_id:
            return False

    if subscription.chamber is not None:
        if subscription.chamber != event.chamber:
            return False

    if subscription.subject:
        wanted = subscription.subject.strip().lower()
        if wanted not in {s.lower() for s in event.subjects}:
            return False

    if subscription.event_type_filter is not None and not event.is_flagged:
        if subscription.event_type_filter != event.event_type:
            return False

    return True


def matching_subscriptions(event: ChangeEvent, subscriptions: Iterable[Subscription]) -> List[int]:
    """Return the ids of active subscriptions matching event, sorted"""
    return sorted(
        s.id for s in subscriptions
        if s.active is not False and subscription_matches(event, s)
    )


def effective_send_mode(event: ChangeEvent, subscription: Subscription) -> SendMode:
    """Flagged bills are always delivered instantly"""
    if event.is_flagged:
        return SendMode.INSTANT
    return subscription.send_mode or SendMode.INSTANT


@dataclass(frozen=True)
class Match:
    subscription: Subscription
    send_mode: SendMode


class MatchingEngine:
    """Evaluates active subscriptions against one event"""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def load_active_subscriptions(self) -> List[Subscription]:
        async with store_operation("load_subscriptions", "subscriptions"):
            result = await self.db.execute(
                select(Subscription)
                .where(Subscription.active.is_(True))
                .order_by(Subscription.id)
            )
            return list(result.scalars().all())

    async def match(self, event: ChangeEvent) -> List[Match]:
        """
        Match one event.

        Returns:
            Matching subscriptions with the send mode to use, ordered by id
        """
        subscriptions = await self.load_active_subscriptions()
        matched_ids = set(matching_subscriptions(event, subscriptions))
        matches = [
            Match(subscription=s, send_mode=effective_send_mode(event, s))
            for s in subscriptions
            if s.id in matched_ids
        ]
        logger.debug(
            f"Event {event.event_type.value} ({event.bill_number or 'no bill'}) "
            f"matched {len(matches)}/{len(subscriptions)} subscription(s)"
        )
        return matches
