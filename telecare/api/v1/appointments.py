from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import AwareDatetime

from telecare.api.deps import get_current_actor, get_services
from telecare.models.appointment import ApptStatus
from telecare.schemas.appointment import AppointmentCreate, AppointmentOut, SlotsOut
from telecare.schemas.common import Page
from telecare.schemas.consultation import ConsultationOut
from telecare.services.access import Actor
from telecare.services.container import Services
from telecare.services.scheduler import AppointmentFilter


router = APIRouter(prefix="/appointments", tags=["appointments"])

# ---------- create ----------
@router.post("", response_model=AppointmentOut, status_code=201)
async def book_appointment(
    payload: AppointmentCreate,
    actor: Actor = Depends(get_current_actor),
    svc: Services = Depends(get_services),
):
    # el paciente reserva para sí mismo si no envía patient_id
    patient_id = payload.patient_id or actor.id
    return await svc.scheduler.book(
        actor, payload.doctor_id, patient_id, payload.appointment_at, payload.reason
    )

# ---------- list ----------
@router.get("", response_model=Page[AppointmentOut])
async def list_appointments(
    doctor_id: Optional[str] = Query(None),
    patient_id: Optional[str] = Query(None),
    status: Optional[ApptStatus] = Query(None),
    date_from: Optional[AwareDatetime] = Query(None),
    date_to: Optional[AwareDatetime] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=200),
    actor: Actor = Depends(get_current_actor),
    svc: Services = Depends(get_services),
):
    flt = AppointmentFilter(
        doctor_id=doctor_id, patient_id=patient_id, status=status,
        date_from=date_from, date_to=date_to, page=page, page_size=page_size,
    )
    total, items = await svc.scheduler.list_appointments(actor, flt)
    return Page[AppointmentOut](
        total=total, page=page, page_size=page_size,
        items=[AppointmentOut.model_validate(ap) for ap in items],
    )

# ---------- slots ----------
@router.get("/slots/{doctor_id}", response_model=SlotsOut, dependencies=[Depends(get_current_actor)])
async def available_slots(
    doctor_id: str,
    day: date = Query(..., description="UTC day, YYYY-MM-DD"),
    svc: Services = Depends(get_services),
):
    slots = await svc.scheduler.available_slots(doctor_id, day)
    return SlotsOut(
        doctor_id=doctor_id,
        slot_minutes=int(svc.scheduler.slot.total_seconds() // 60),
        slots=slots,
    )

# ---------- get ----------
@router.get("/{appointment_id}", response_model=AppointmentOut)
async def get_appointment(
    appointment_id: str,
    actor: Actor = Depends(get_current_actor),
    svc: Services = Depends(get_services),
):
    return await svc.scheduler.get(actor, appointment_id)

@router.get("/{appointment_id}/consultation", response_model=ConsultationOut)
async def get_appointment_consultation(
    appointment_id: str,
    actor: Actor = Depends(get_current_actor),
    svc: Services = Depends(get_services),
):
    return await svc.care.consultation_for_appointment(actor, appointment_id)

# ---------- transitions ----------
@router.post("/{appointment_id}/approve", response_model=AppointmentOut)
async def approve_appointment(
    appointment_id: str,
    actor: Actor = Depends(get_current_actor),
    svc: Services = Depends(get_services),
):
    return await svc.scheduler.approve(actor, appointment_id)

@router.post("/{appointment_id}/decline", response_model=AppointmentOut)
async def decline_appointment(
    appointment_id: str,
    actor: Actor = Depends(get_current_actor),
    svc: Services = Depends(get_services),
):
    return await svc.scheduler.decline(actor, appointment_id)

@router.post("/{appointment_id}/cancel", response_model=AppointmentOut)
async def cancel_appointment(
    appointment_id: str,
    actor: Actor = Depends(get_current_actor),
    svc: Services = Depends(get_services),
):
    return await svc.scheduler.cancel(actor, appointment_id)

@router.post("/{appointment_id}/complete", response_model=AppointmentOut)
async def complete_appointment(
    appointment_id: str,
    actor: Actor = Depends(get_current_actor),
    svc: Services = Depends(get_services),
):
    return await svc.scheduler.complete(actor, appointment_id)
