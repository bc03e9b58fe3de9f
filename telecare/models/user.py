import enum
import uuid
from datetime import datetime
from sqlalchemy import String, Enum, Boolean
from sqlalchemy.orm import Mapped, mapped_column
from telecare.core.db import Base
from telecare.core.types import UTCDateTime, utcnow
from telecare.models.subscription import SubscriptionStatus

class RoleEnum(str, enum.Enum):
    patient = "PATIENT"
    doctor = "DOCTOR"
    pharmacy = "PHARMACY"
    admin = "ADMIN"
    superadmin = "SUPERADMIN"
    support = "SUPPORT"

class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    full_name: Mapped[str] = mapped_column(String(255))
    role: Mapped[RoleEnum] = mapped_column(Enum(RoleEnum), default=RoleEnum.patient)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # cache of the ledger's view; written only by SubscriptionLedger
    subscription_state: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus), default=SubscriptionStatus.unsubscribed
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
