import uuid
import enum
from datetime import datetime
from sqlalchemy import String, Enum, ForeignKey, Text, BigInteger, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from telecare.core.db import Base
from telecare.core.types import UTCDateTime, utcnow

class ApptStatus(str, enum.Enum):
    pending = "PENDING"
    approved = "APPROVED"
    cancelled = "CANCELLED"
    completed = "COMPLETED"

    @property
    def holds_slot(self) -> bool:
        return self in (ApptStatus.pending, ApptStatus.approved)

class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        # one live booking per doctor per slot bucket; slot_key is NULL once released
        UniqueConstraint("doctor_id", "slot_key", name="uq_appt_doctor_slot"),
        Index("ix_appt_doctor_at", "doctor_id", "appointment_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    doctor_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), index=True)
    patient_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), index=True)

    appointment_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[ApptStatus] = mapped_column(Enum(ApptStatus), default=ApptStatus.pending, index=True)

    slot_key: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String(36), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    consultation = relationship("VideoConsultation", back_populates="appointment", uselist=False)
