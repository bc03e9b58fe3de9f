import enum
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from sqlalchemy import String, Enum, ForeignKey, Numeric, Integer
from sqlalchemy.orm import Mapped, mapped_column, relationship

from telecare.core.db import Base
from telecare.core.types import UTCDateTime, utcnow

class SubscriptionPlan(str, enum.Enum):
    monthly = "MONTHLY"
    yearly = "YEARLY"

    @property
    def period(self) -> timedelta:
        return timedelta(days=365 if self is SubscriptionPlan.yearly else 30)

class SubscriptionStatus(str, enum.Enum):
    unsubscribed = "UNSUBSCRIBED"
    pending = "PENDING"
    active = "ACTIVE"
    expired = "EXPIRED"
    deactivated = "DEACTIVATED"

class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), index=True)

    plan: Mapped[SubscriptionPlan] = mapped_column(Enum(SubscriptionPlan))
    status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus), default=SubscriptionStatus.pending, index=True
    )

    start_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    provider: Mapped[str | None] = mapped_column(String(32), nullable=True)
    reference: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User")

class SubscriptionPrice(Base):
    """Single-row price table edited by admins."""
    __tablename__ = "subscription_prices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)

    doctor_monthly: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("25.00"))
    doctor_yearly: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("262.50"))
    patient_monthly: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("10.00"))
    patient_yearly: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("105.00"))
    pharmacy_monthly: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("30.00"))
    pharmacy_yearly: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("300.00"))
    currency: Mapped[str] = mapped_column(String(3), default="USD")

    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)
