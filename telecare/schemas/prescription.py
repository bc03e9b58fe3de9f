from __future__ import annotations
from typing import List, Optional
from pydantic import BaseModel, Field, ConfigDict

from telecare.models.prescription import DispatchStatus
from telecare.schemas.common import UTCInstant


class RxItemIn(BaseModel):
    drug: str = Field(..., min_length=1, max_length=255)
    dose: str = Field(..., min_length=1, max_length=255)
    frequency: str = Field(..., min_length=1, max_length=255)
    duration: Optional[str] = None
    notes: Optional[str] = None


class PrescriptionCreate(BaseModel):
    appointment_id: str
    diagnosis: Optional[str] = None
    notes: Optional[str] = None
    pharmacy_id: Optional[str] = None
    items: List[RxItemIn] = Field(..., min_length=1)


class RxItemOut(RxItemIn):
    model_config = ConfigDict(from_attributes=True)
    id: int
    position: int


class PrescriptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    appointment_id: str
    doctor_id: str
    patient_id: str
    pharmacy_id: Optional[str] = None
    diagnosis: Optional[str] = None
    notes: Optional[str] = None
    items: List[RxItemOut] = Field(default_factory=list)
    dispatch_status: DispatchStatus
    verify_code: str
    created_at: UTCInstant
    dispatched_at: Optional[UTCInstant] = None
    delivered_at: Optional[UTCInstant] = None


class DispatchIn(BaseModel):
    pharmacy_id: Optional[str] = None     # por defecto, la farmacia que llama
