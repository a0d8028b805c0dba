"""
Notifier collaborators: perform the actual send for a resolved
(subscription, event) pair.

Every notifier returns a SendResult instead of raising. Provider failures
are classified by jobs.http into transient or permanent failures.

Channels:
- EMAIL   Resend HTTP API, one Idempotency-Key per delivery
- SMS     Twilio Messages API
- WEBHOOK JSON POST to the subscription target
- PUSH    not supported (permanent ``unsupported_channel``)
"""

from abc import ABC, abstractmethod
from html import escape
from typing import Dict, Optional, Sequence
import httpx
from models.subscription import Subscription
from models.base import DeliveryChannel, EventType
from schemas.events import ChangeEvent
from jobs.outcomes import Failure, SendResult
from jobs.http import classify_response, classify_transport_error
from core.config import settings
from core.exceptions import AuthenticationError, InvalidRecipientError, UnsupportedChannelError
import logging

logger = logging.getLogger(__name__)

SMS_MAX_CHARS = 320


# ============================================================================
# Rendering
# ============================================================================

def humanize_event_type(event_type: EventType) -> str:
    """BILL_ADDED_TO_CALENDAR -> 'Bill added to calendar'"""
    return event_type.name.replace("_", " ").capitalize()


def build_subject(event: ChangeEvent) -> str:
    label = humanize_event_type(event.event_type)
    subject = f"{event.bill_number} - {label}" if event.bill_number else label

    if event.event_type == EventType.CALENDAR_PUBLISHED and event.summary.strip() and event.chamber:
        subject = f"{event.chamber.name.capitalize()} {event.summary.strip()}"

    if event.is_flagged:
        subject = f"IMPORTANT: {subject}"
    return subject


def bill_url(event: ChangeEvent) -> Optional[str]:
    if not event.bill_number:
        return None
    return f"{settings.DASHBOARD_BASE_URL.rstrip('/')}/bills/{event.bill_number}"


def render_text(event: ChangeEvent) -> str:
    lines = [build_subject(event)]
    if event.bill_title:
        lines.append(event.bill_title)
    if event.summary:
        lines.append(event.summary)
    if event.committee_name:
        lines.append(f"Committee: {event.committee_name}")
    url = bill_url(event)
    if url:
        lines.append(url)
    return "\n".join(lines)


def render_html(event: ChangeEvent) -> str:
    parts = []
    if event.is_flagged:
        parts.append('<p style="color:#b91c1c;font-weight:bold">IMPORTANT: flagged bill</p>')
    parts.append(f"<h2>{escape(build_subject(event))}</h2>")
    if event.bill_title:
        parts.append(f"<p><strong>{escape(event.bill_title)}</strong></p>")
    if event.summary:
        parts.append(f"<p>{escape(event.summary)}</p>")
    if event.committee_name:
        parts.append(f"<p>Committee: {escape(event.committee_name)}</p>")
    url = bill_url(event)
    if url:
        parts.append(f'<p><a href="{escape(url)}">View bill</a></p>')
    return "\n".join(parts)


def render_digest_html(events: Sequence[ChangeEvent]) -> str:
    items = "\n".join(f"<li>{render_html(event)}</li>" for event in events)
    return f"<h1>Bill updates digest ({len(events)})</h1>\n<ul>\n{items}\n</ul>"


def render_digest_text(events: Sequence[ChangeEvent]) -> str:
    return "\n\n".join(render_text(event) for event in events)


def render_sms(event: ChangeEvent) -> str:
    text = build_subject(event)
    if event.summary:
        text = f"{text}: {event.summary}"
    url = bill_url(event)
    if url:
        text = f"{text} {url}"
    if len(text) > SMS_MAX_CHARS:
        text = text[: SMS_MAX_CHARS - 3] + "..."
    return text


# ============================================================================
# Notifier interface
# ============================================================================

class Notifier(ABC):
    """
    Send one alert, or one digest of alerts, to a subscription's target.

    Implementations must not raise for provider failures; they return
    SendResult.failed(Failure) instead.
    """

    @abstractmethod
    async def send(self, subscription: Subscription, event: ChangeEvent, delivery_id: int) -> SendResult:
        pass

    @abstractmethod
    async def send_digest(
        self,
        subscription: Subscription,
        events: Sequence[ChangeEvent],
        delivery_ids: Sequence[int]
    ) -> SendResult:
        pass


class HTTPNotifier(Notifier):
    """Base for notifiers backed by one HTTP POST per message"""

    provider = "http"

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout or settings.NOTIFIER_TIMEOUT_SECONDS

    async def _post(self, url: str, **kwargs) -> SendResult:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, **kwargs)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            error = classify_transport_error(e, self.provider, url)
            logger.warning(f"{self.provider} send failed: {error.message}")
            return SendResult.failed(Failure.from_exception(error))

        error = classify_response(response, self.provider, url)
        if error is not None:
            logger.warning(
                f"{self.provider} send failed: {error.message}",
                extra={"error_context": error.to_dict()}
            )
            return SendResult.failed(Failure.from_exception(error))

        return SendResult.sent(self._message_id(response))

    def _message_id(self, response: httpx.Response) -> Optional[str]:
        try:
            data = response.json()
        except ValueError:
            return None
        if isinstance(data, dict):
            value = data.get("id") or data.get("sid")
            return str(value) if value else None
        return None


class EmailNotifier(HTTPNotifier):
    """Email through the Resend API"""

    provider = "resend"

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        from_address: Optional[str] = None,
        timeout: Optional[float] = None
    ):
        super().__init__(timeout)
        self.api_key = api_key or settings.RESEND_API_KEY
        self.api_url = api_url or settings.RESEND_API_URL
        self.from_address = from_address or settings.ALERTS_FROM_ADDRESS

    async def _send_email(
        self,
        to: str,
        subject: str,
        html: str,
        text: str,
        idempotency_key: str,
        important: bool
    ) -> SendResult:
        if not self.api_key:
            return SendResult.failed(Failure.from_exception(
                AuthenticationError("RESEND_API_KEY is not configured", context={"provider": self.provider})
            ))

        payload = {
            "from": self.from_address,
            "to": [to],
            "subject": subject,
            "html": html,
            "text": text,
        }
        if important:
            payload["headers"] = {"X-Priority": "1", "Importance": "high"}

        return await self._post(
            self.api_url,
            json=payload,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Idempotency-Key": idempotency_key,
            }
        )

    async def send(self, subscription: Subscription, event: ChangeEvent, delivery_id: int) -> SendResult:
        return await self._send_email(
            to=subscription.target,
            subject=build_subject(event),
            html=render_html(event),
            text=render_text(event),
            idempotency_key=f"delivery-{delivery_id}",
            important=event.is_flagged
        )

    async def send_digest(
        self,
        subscription: Subscription,
        events: Sequence[ChangeEvent],
        delivery_ids: Sequence[int]
    ) -> SendResult:
        return await self._send_email(
            to=subscription.target,
            subject=f"Bill updates digest ({len(events)})",
            html=render_digest_html(events),
            text=render_digest_text(events),
            idempotency_key="digest-" + "-".join(str(i) for i in sorted(delivery_ids)),
            important=any(event.is_flagged for event in events)
        )


class SmsNotifier(HTTPNotifier):
    """SMS through the Twilio Messages API"""

    provider = "twilio"

    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        timeout: Optional[float] = None
    ):
        super().__init__(timeout)
        self.account_sid = account_sid or settings.TWILIO_ACCOUNT_SID
        self.auth_token = auth_token or settings.TWILIO_AUTH_TOKEN
        self.from_number = from_number or settings.TWILIO_FROM_NUMBER

    @property
    def api_url(self) -> str:
        return f"https://api.twilio.com/2010-04-01/Accounts/{self.account_sid}/Messages.json"

    async def _send_sms(self, to: str, body: str) -> SendResult:
        if not (self.account_sid and self.auth_token):
            return SendResult.failed(Failure.from_exception(
                AuthenticationError("Twilio credentials are not configured", context={"provider": self.provider})
            ))
        return await self._post(
            self.api_url,
            data={"To": to, "From": self.from_number, "Body": body},
            auth=(self.account_sid, self.auth_token)
        )

    async def send(self, subscription: Subscription, event: ChangeEvent, delivery_id: int) -> SendResult:
        return await self._send_sms(subscription.target, render_sms(event))

    async def send_digest(
        self,
        subscription: Subscription,
        events: Sequence[ChangeEvent],
        delivery_ids: Sequence[int]
    ) -> SendResult:
        body = f"{len(events)} bill update(s): " + "; ".join(build_subject(e) for e in events)
        if len(body) > SMS_MAX_CHARS:
            body = body[: SMS_MAX_CHARS - 3] + "..."
        return await self._send_sms(subscription.target, body)


class WebhookNotifier(HTTPNotifier):
    """JSON POST to the subscription's target URL"""

    provider = "webhook"

    def _invalid_target(self, target: Optional[str]) -> Optional[SendResult]:
        """Permanent failure for a target that is not an absolute http(s) URL"""
        try:
            url = httpx.URL(target or "")
        except httpx.InvalidURL as e:
            reason = str(e)
        else:
            if url.scheme in ("http", "https") and url.host:
                return None
            reason = "expected an absolute http or https URL"

        return SendResult.failed(Failure.from_exception(InvalidRecipientError(
            f"Invalid webhook target {target!r}: {reason}",
            context={"provider": self.provider}
        )))

    async def send(self, subscription: Subscription, event: ChangeEvent, delivery_id: int) -> SendResult:
        invalid = self._invalid_target(subscription.target)
        if invalid is not None:
            return invalid
        return await self._post(
            subscription.target,
            json={
                "delivery_id": delivery_id,
                "subscription_id": subscription.id,
                "event": event.model_dump(mode="json"),
            },
            headers={"Idempotency-Key": f"delivery-{delivery_id}"}
        )

    async def send_digest(
        self,
        subscription: Subscription,
        events: Sequence[ChangeEvent],
        delivery_ids: Sequence[int]
    ) -> SendResult:
        invalid = self._invalid_target(subscription.target)
        if invalid is not None:
            return invalid
        return await self._post(
            subscription.target,
            json={
                "delivery_ids": list(delivery_ids),
                "subscription_id": subscription.id,
                "events": [event.model_dump(mode="json") for event in events],
            },
            headers={"Idempotency-Key": "digest-" + "-".join(str(i) for i in sorted(delivery_ids))}
        )


class ChannelNotifier(Notifier):
    """Routes each send to the notifier for the subscription's channel"""

    def __init__(self, notifiers: Optional[Dict[DeliveryChannel, Notifier]] = None):
        if notifiers is None:
            notifiers = {
                DeliveryChannel.EMAIL: EmailNotifier(),
                DeliveryChannel.SMS: SmsNotifier(),
                DeliveryChannel.WEBHOOK: WebhookNotifier(),
            }
        self.notifiers = notifiers

    def _route(self, subscription: Subscription):
        channel = subscription.delivery_channel or DeliveryChannel.EMAIL
        notifier = self.notifiers.get(channel)
        if notifier is None:
            error = UnsupportedChannelError(
                f"No notifier configured for channel {channel.name}",
                context={"channel": channel.name, "subscription_id": subscription.id}
            )
            return None, SendResult.failed(Failure.from_exception(error))
        return notifier, None

    async def send(self, subscription: Subscription, event: ChangeEvent, delivery_id: int) -> SendResult:
        notifier, rejected = self._route(subscription)
        if rejected:
            return rejected
        return await notifier.send(subscription, event, delivery_id)

    async def send_digest(
        self,
        subscription: Subscription,
        events: Sequence[ChangeEvent],
        delivery_ids: Sequence[int]
    ) -> SendResult:
        notifier, rejected = self._route(subscription)
        if rejected:
            return rejected
        return await notifier.send_digest(subscription, events, delivery_ids)


def default_notifier() -> Notifier:
    return ChannelNotifier()
