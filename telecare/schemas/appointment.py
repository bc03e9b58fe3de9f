from pydantic import BaseModel, Field
from typing import Optional

from telecare.models.appointment import ApptStatus
from telecare.schemas.common import UTCInstant


class AppointmentCreate(BaseModel):
    doctor_id: str
    patient_id: Optional[str] = None      # si el que reserva es paciente, puede omitirse
    appointment_at: UTCInstant = Field(..., description="ISO-8601 instant with offset, e.g. 2025-06-10T14:30:00.000Z")
    reason: Optional[str] = Field(None, max_length=2000)


class AppointmentOut(BaseModel):
    id: str
    doctor_id: str
    patient_id: str
    appointment_at: UTCInstant
    reason: Optional[str] = None
    status: ApptStatus
    cancelled_by: Optional[str] = None
    created_at: UTCInstant

    class Config:
        from_attributes = True


class SlotsOut(BaseModel):
    doctor_id: str
    slot_minutes: int
    slots: list[UTCInstant]
