"""Lifecycle events, the outbox and the notification sinks.

Services ``record`` events while they mutate state; the rows land in
``domain_events`` inside the same transaction. After the commit ``dispatch``
hands every pending event to the in-process subscribers (the care-session
orchestrator) and then to the notification sink. An event whose delivery
fails keeps ``delivered_at`` NULL and is picked up again by
``redeliver_pending``; delivery is therefore at-least-once and consumers
deduplicate on ``Event.id``.
"""
import enum
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Protocol

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from telecare.core.config import settings
from telecare.core.errors import ProviderUnavailable
from telecare.core.types import isoformat_z, utcnow
from telecare.models.event import DomainEvent

logger = logging.getLogger(__name__)


class EventType(str, enum.Enum):
    appointment_booked = "AppointmentBooked"
    appointment_approved = "AppointmentApproved"
    appointment_cancelled = "AppointmentCancelled"
    appointment_completed = "AppointmentCompleted"
    subscription_activated = "SubscriptionActivated"
    subscription_expired = "SubscriptionExpired"
    subscription_deactivated = "SubscriptionDeactivated"
    prescription_ready = "PrescriptionReady"
    prescription_dispatched = "PrescriptionDispatched"
    prescription_delivered = "PrescriptionDelivered"


@dataclass(frozen=True)
class Event:
    type: EventType
    entity_id: str
    occurred_at: datetime
    payload: dict = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "entity_id": self.entity_id,
            "occurred_at": isoformat_z(self.occurred_at),
            "payload": self.payload,
        }


Handler = Callable[[Event], Awaitable[None]]


class NotificationSink(Protocol):
    async def deliver(self, event: Event) -> None: ...


class LogNotificationSink:
    async def deliver(self, event: Event) -> None:
        logger.info("📣 %s %s (%s)", event.type.value, event.entity_id, event.id)


class WebhookNotificationSink:
    """POSTs each event as JSON to the messaging service."""

    def __init__(self, url: str, timeout: float = 5.0, transport: httpx.AsyncBaseTransport | None = None):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def deliver(self, event: Event) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(
                    self.url,
                    json=event.as_dict(),
                    headers={"Idempotency-Key": event.id},
                )
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise ProviderUnavailable(f"Notification delivery failed: {exc}") from exc


def default_sink() -> NotificationSink:
    if settings.NOTIFICATION_WEBHOOK_URL:
        return WebhookNotificationSink(settings.NOTIFICATION_WEBHOOK_URL)
    return LogNotificationSink()


class EventBus:
    def __init__(self, db: AsyncSession, sink: NotificationSink | None = None, clock=utcnow):
        self.db = db
        self.sink = sink or default_sink()
        self.clock = clock
        self._handlers: dict[EventType, list[Handler]] = defaultdict(list)
        self._pending: list[tuple[Event, DomainEvent]] = []

    def subscribe(self, event_type: EventType, handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    def record(self, event_type: EventType, entity_id: str, **payload) -> Event:
        event = Event(type=event_type, entity_id=entity_id, occurred_at=self.clock(), payload=payload)
        row = DomainEvent(
            id=event.id,
            type=event.type.value,
            entity_id=entity_id,
            payload=payload,
            occurred_at=event.occurred_at,
        )
        self.db.add(row)
        self._pending.append((event, row))
        return event

    async def dispatch(self) -> None:
        """Deliver everything recorded so far. Call after the commit."""
        while self._pending:
            batch, self._pending = self._pending, []
            for event, row in batch:
                if await self._deliver(event):
                    row.delivered_at = self.clock()
            await self.db.commit()

    async def _deliver(self, event: Event) -> bool:
        try:
            for handler in self._handlers.get(event.type, []):
                await handler(event)
            await self.sink.deliver(event)
        except Exception:
            # the change that raised the event is already committed; leave the
            # row undelivered so redeliver_pending retries it
            logger.exception("Delivery of %s %s failed", event.type.value, event.id)
            return False
        return True

    async def redeliver_pending(self, limit: int = 100) -> int:
        res = await self.db.execute(
            select(DomainEvent)
            .where(DomainEvent.delivered_at.is_(None))
            .order_by(DomainEvent.occurred_at)
            .limit(limit)
        )
        rows = list(res.scalars())
        delivered = 0
        for row in rows:
            event = Event(
                type=EventType(row.type),
                entity_id=row.entity_id,
                occurred_at=row.occurred_at,
                payload=row.payload or {},
                id=row.id,
            )
            if await self._deliver(event):
                row.delivered_at = self.clock()
                delivered += 1
        await self.db.commit()
        # handlers may have recorded follow-up events
        await self.dispatch()
        return delivered
