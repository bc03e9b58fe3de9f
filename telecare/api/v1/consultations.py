from fastapi import APIRouter, Depends

from telecare.api.deps import get_current_actor, get_services
from telecare.schemas.consultation import ConsultationOut
from telecare.services.access import Actor
from telecare.services.container import Services


router = APIRouter(prefix="/consultations", tags=["consultations"])

@router.get("/{consultation_id}", response_model=ConsultationOut)
async def get_consultation(
    consultation_id: str,
    actor: Actor = Depends(get_current_actor),
    svc: Services = Depends(get_services),
):
    return await svc.care.get_consultation(actor, consultation_id)

@router.post("/{consultation_id}/join", response_model=ConsultationOut)
async def join_consultation(
    consultation_id: str,
    actor: Actor = Depends(get_current_actor),
    svc: Services = Depends(get_services),
):
    return await svc.care.join_session(actor, consultation_id)

@router.post("/{consultation_id}/end", response_model=ConsultationOut)
async def end_consultation(
    consultation_id: str,
    actor: Actor = Depends(get_current_actor),
    svc: Services = Depends(get_services),
):
    return await svc.care.end_session(actor, consultation_id)

@router.post("/{consultation_id}/provision", response_model=ConsultationOut)
async def provision_consultation_room(
    consultation_id: str,
    actor: Actor = Depends(get_current_actor),
    svc: Services = Depends(get_services),
):
    """Retry room creation for a consultation still pending at the provider."""
    await svc.care.get_consultation(actor, consultation_id)
    return await svc.care.provision_room(consultation_id, raise_on_failure=True)
