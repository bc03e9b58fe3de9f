from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from telecare.core.types import utcnow
from telecare.services.care_sessions import CareSessionOrchestrator
from telecare.services.events import EventBus, NotificationSink
from telecare.services.ledger import SubscriptionLedger
from telecare.services.scheduler import AppointmentScheduler
from telecare.services.video import RoomProvider


@dataclass
class Services:
    bus: EventBus
    ledger: SubscriptionLedger
    scheduler: AppointmentScheduler
    care: CareSessionOrchestrator


def build_services(
    db: AsyncSession,
    clock=utcnow,
    provider: RoomProvider | None = None,
    sink: NotificationSink | None = None,
) -> Services:
    """Wire the services of one unit of work around a single session and event bus."""
    bus = EventBus(db, sink=sink, clock=clock)
    ledger = SubscriptionLedger(db, bus, clock=clock)
    scheduler = AppointmentScheduler(db, bus, ledger, clock=clock)
    care = CareSessionOrchestrator(db, bus, ledger, provider=provider, clock=clock)
    return Services(bus=bus, ledger=ledger, scheduler=scheduler, care=care)
