import uuid
from datetime import date, datetime, time
from sqlalchemy import String, ForeignKey, SmallInteger, Time, Date, Boolean, Index
from sqlalchemy.orm import Mapped, mapped_column

from telecare.core.db import Base
from telecare.core.types import UTCDateTime, utcnow

class DoctorSchedule(Base):
    """A weekly availability window of a doctor, in UTC wall-clock times.

    ``day_of_week`` counts from Sunday (0) to Saturday (6).
    """
    __tablename__ = "doctor_schedules"
    __table_args__ = (
        Index("ix_schedule_doctor_day", "doctor_id", "day_of_week"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    doctor_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True)

    day_of_week: Mapped[int] = mapped_column(SmallInteger)
    start_time: Mapped[time] = mapped_column(Time)
    end_time: Mapped[time] = mapped_column(Time)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # both bounds inclusive; NULL leaves that side open
    effective_from: Mapped[date | None] = mapped_column(Date, nullable=True)
    effective_to: Mapped[date | None] = mapped_column(Date, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    def applies_on(self, day: date) -> bool:
        if not self.is_active or day_of_week(day) != self.day_of_week:
            return False
        if self.effective_from and day < self.effective_from:
            return False
        if self.effective_to and day > self.effective_to:
            return False
        return True


def day_of_week(day: date) -> int:
    """Sunday-based weekday (0-6); ``date.weekday`` starts on Monday."""
    return (day.weekday() + 1) % 7
