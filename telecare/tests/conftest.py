# telecare/tests/conftest.py
import os

os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("PAYMENT_WEBHOOK_SECRET", "whsec-test")

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from telecare.core.db import Base
from telecare.core.errors import ProviderUnavailable
from telecare.models import *  # noqa: F401,F403  register every table with Base
from telecare.models.subscription import SubscriptionPlan
from telecare.models.user import RoleEnum, User
from telecare.services.access import Actor
from telecare.services.container import build_services
from telecare.services.video import Room


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeRoomProvider:
    def __init__(self):
        self.fail = False
        self.calls: list[str] = []

    async def create_room(self, consultation_id, *, start_time_iso=None, duration_min=None):
        self.calls.append(consultation_id)
        if self.fail:
            raise ProviderUnavailable("video provider down")
        return Room(room_id=f"room-{consultation_id[:8]}", join_url=f"https://video.test/{consultation_id}")


class RecordingSink:
    def __init__(self):
        self.fail = False
        self.events = []

    async def deliver(self, event):
        if self.fail:
            raise ProviderUnavailable("sink down")
        self.events.append(event)

    def types(self) -> list[str]:
        return [e.type.value for e in self.events]


@pytest.fixture
async def engine(tmp_path):
    """A fresh SQLite file per test; NullPool gives every session its own connection."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'telecare.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 6, 1, 8, 0, tzinfo=timezone.utc))


@pytest.fixture
def provider():
    return FakeRoomProvider()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def make_services(clock, provider, sink):
    def _make(session):
        return build_services(session, clock=clock, provider=provider, sink=sink)
    return _make


@pytest.fixture
def services(db, make_services):
    return make_services(db)


@pytest.fixture
def as_actor():
    def _actor(user: User) -> Actor:
        return Actor(id=user.id, role=user.role)
    return _actor


@pytest.fixture
def make_user(db):
    async def _make(role: RoleEnum, full_name: str | None = None) -> User:
        user = User(
            id=str(uuid.uuid4()),
            email=f"{uuid.uuid4().hex[:12]}@telecare.test",
            full_name=full_name or f"Test {role.value.title()}",
            role=role,
        )
        db.add(user)
        await db.commit()
        return user
    return _make


@pytest.fixture
def subscribe(services, clock, as_actor):
    """Purchase + confirmed payment: the user ends up with an ACTIVE subscription."""
    async def _subscribe(user: User, plan: SubscriptionPlan = SubscriptionPlan.monthly):
        sub = await services.ledger.purchase(as_actor(user), plan, provider="paypal")
        clock.advance(seconds=1)
        return await services.ledger.confirm_payment(sub.id, sub.amount, f"PAY-{sub.id[:8]}")
    return _subscribe


@pytest.fixture
async def admin(make_user):
    return await make_user(RoleEnum.admin, "Ada Admin")


@pytest.fixture
async def patient(make_user):
    return await make_user(RoleEnum.patient, "Pablo Paciente")


@pytest.fixture
async def pharmacy(make_user):
    return await make_user(RoleEnum.pharmacy, "Farmacia Central")


@pytest.fixture
async def doctor(make_user, subscribe):
    """A doctor with an ACTIVE monthly subscription."""
    user = await make_user(RoleEnum.doctor, "Dra. Laura Gómez")
    await subscribe(user)
    return user


# 2025-06-10T14:30:00.000Z, well inside the doctor's subscription period
APPOINTMENT_AT = datetime(2025, 6, 10, 14, 30, tzinfo=timezone.utc)


@pytest.fixture
def appointment_at():
    return APPOINTMENT_AT
