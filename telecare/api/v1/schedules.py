from fastapi import APIRouter, Depends, Query, Response

from telecare.api.deps import get_current_actor, get_services
from telecare.schemas.schedule import ScheduleCreate, ScheduleOut, ScheduleUpdate
from telecare.services.access import Actor
from telecare.services.container import Services
from telecare.services.scheduler import ScheduleWindow


router = APIRouter(prefix="/schedules", tags=["schedules"])

@router.post("", response_model=ScheduleOut, status_code=201)
async def create_schedule(
    payload: ScheduleCreate,
    actor: Actor = Depends(get_current_actor),
    svc: Services = Depends(get_services),
):
    window = ScheduleWindow(**payload.model_dump(exclude={"doctor_id"}))
    return await svc.scheduler.create_schedule(actor, payload.doctor_id or actor.id, window)

@router.get("", response_model=list[ScheduleOut], dependencies=[Depends(get_current_actor)])
async def list_schedules(
    doctor_id: str = Query(...),
    svc: Services = Depends(get_services),
):
    return await svc.scheduler.list_schedules(doctor_id)

@router.patch("/{schedule_id}", response_model=ScheduleOut)
async def update_schedule(
    schedule_id: str,
    payload: ScheduleUpdate,
    actor: Actor = Depends(get_current_actor),
    svc: Services = Depends(get_services),
):
    return await svc.scheduler.update_schedule(actor, schedule_id, **payload.model_dump(exclude_unset=True))

@router.delete("/{schedule_id}", status_code=204)
async def delete_schedule(
    schedule_id: str,
    actor: Actor = Depends(get_current_actor),
    svc: Services = Depends(get_services),
):
    await svc.scheduler.delete_schedule(actor, schedule_id)
    return Response(status_code=204)
