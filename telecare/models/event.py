from datetime import datetime
from sqlalchemy import String, JSON
from sqlalchemy.orm import Mapped, mapped_column
from telecare.core.db import Base
from telecare.core.types import UTCDateTime

class DomainEvent(Base):
    """Outbox row, written in the same transaction as the change it records."""
    __tablename__ = "domain_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    type: Mapped[str] = mapped_column(String(64), index=True)
    entity_id: Mapped[str] = mapped_column(String(36), index=True)
    payload: Mapped[dict] = mapped_column(JSON, default=dict)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    delivered_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, index=True)
