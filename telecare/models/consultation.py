# telecare/models/consultation.py
from __future__ import annotations
import enum
import uuid
import datetime as dt
from sqlalchemy import String, Text, Enum, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship
from telecare.core.db import Base
from telecare.core.types import UTCDateTime, utcnow


class ConsultationStatus(str, enum.Enum):
    scheduled = "SCHEDULED"
    in_progress = "IN_PROGRESS"
    ended = "ENDED"
    cancelled = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (ConsultationStatus.ended, ConsultationStatus.cancelled)


class VideoConsultation(Base):
    __tablename__ = "video_consultations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    appointment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("appointments.id", ondelete="CASCADE"), unique=True
    )

    # both NULL while the room is pending creation at the provider
    room_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    meeting_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    provisioning_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[ConsultationStatus] = mapped_column(
        Enum(ConsultationStatus), default=ConsultationStatus.scheduled, index=True
    )
    started_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime, nullable=True)
    ended_at: Mapped[dt.datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime, default=utcnow)

    appointment = relationship("Appointment", back_populates="consultation")

    @property
    def is_provisioned(self) -> bool:
        return self.room_id is not None
