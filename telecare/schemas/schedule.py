from datetime import date, time
from typing import Optional

from pydantic import BaseModel, Field

from telecare.schemas.common import UTCInstant


class ScheduleCreate(BaseModel):
    doctor_id: Optional[str] = None       # el médico publica su propia agenda si se omite
    day_of_week: int = Field(..., ge=0, le=6, description="0 = Sunday ... 6 = Saturday")
    start_time: time = Field(..., description="UTC wall-clock time, HH:MM")
    end_time: time = Field(..., description="UTC wall-clock time, HH:MM")
    is_active: bool = True
    effective_from: Optional[date] = None
    effective_to: Optional[date] = None


class ScheduleUpdate(BaseModel):
    day_of_week: Optional[int] = Field(None, ge=0, le=6)
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    is_active: Optional[bool] = None
    effective_from: Optional[date] = None
    effective_to: Optional[date] = None


class ScheduleOut(BaseModel):
    id: str
    doctor_id: str
    day_of_week: int
    start_time: time
    end_time: time
    is_active: bool
    effective_from: Optional[date] = None
    effective_to: Optional[date] = None
    updated_at: UTCInstant

    class Config:
        from_attributes = True
