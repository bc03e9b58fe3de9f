from typing import Optional

from fastapi import APIRouter, Depends, Query

from telecare.api.deps import get_current_actor, get_services
from telecare.models.prescription import DispatchStatus
from telecare.schemas.common import Page
from telecare.schemas.prescription import DispatchIn, PrescriptionCreate, PrescriptionOut
from telecare.services.access import Actor
from telecare.services.care_sessions import MedicationItem, PrescriptionDetails, PrescriptionFilter
from telecare.services.container import Services

router = APIRouter(prefix="/prescriptions", tags=["prescriptions"])

@router.post("", response_model=PrescriptionOut, status_code=201)
async def issue_prescription(
    payload: PrescriptionCreate,
    actor: Actor = Depends(get_current_actor),
    svc: Services = Depends(get_services),
):
    details = PrescriptionDetails(
        items=[MedicationItem(**it.model_dump()) for it in payload.items],
        diagnosis=payload.diagnosis,
        notes=payload.notes,
        pharmacy_id=payload.pharmacy_id,
    )
    rx = await svc.care.issue_prescription(actor, payload.appointment_id, details)
    # 👇 forzamos la validación desde atributos ORM
    return PrescriptionOut.model_validate(rx, from_attributes=True)

@router.get("", response_model=Page[PrescriptionOut])
async def list_prescriptions(
    patient_id: Optional[str] = None,
    doctor_id: Optional[str] = None,
    pharmacy_id: Optional[str] = None,
    dispatch_status: Optional[DispatchStatus] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=200),
    actor: Actor = Depends(get_current_actor),
    svc: Services = Depends(get_services),
):
    flt = PrescriptionFilter(
        doctor_id=doctor_id, patient_id=patient_id, pharmacy_id=pharmacy_id,
        dispatch_status=dispatch_status, page=page, page_size=page_size,
    )
    total, rows = await svc.care.list_prescriptions(actor, flt)
    return Page[PrescriptionOut](
        total=total, page=page, page_size=page_size,
        items=[PrescriptionOut.model_validate(rx, from_attributes=True) for rx in rows],
    )

@router.get("/{rx_id}", response_model=PrescriptionOut)
async def get_prescription(
    rx_id: str,
    actor: Actor = Depends(get_current_actor),
    svc: Services = Depends(get_services),
):
    rx = await svc.care.get_prescription(actor, rx_id)
    return PrescriptionOut.model_validate(rx, from_attributes=True)

@router.post("/{rx_id}/dispatch", response_model=PrescriptionOut)
async def dispatch_prescription(
    rx_id: str,
    payload: DispatchIn | None = None,
    actor: Actor = Depends(get_current_actor),
    svc: Services = Depends(get_services),
):
    pharmacy_id = (payload.pharmacy_id if payload else None) or actor.id
    rx = await svc.care.dispatch(actor, rx_id, pharmacy_id)
    return PrescriptionOut.model_validate(rx, from_attributes=True)

@router.post("/{rx_id}/deliver", response_model=PrescriptionOut)
async def confirm_delivery(
    rx_id: str,
    actor: Actor = Depends(get_current_actor),
    svc: Services = Depends(get_services),
):
    rx = await svc.care.confirm_delivery(actor, rx_id)
    return PrescriptionOut.model_validate(rx, from_attributes=True)
