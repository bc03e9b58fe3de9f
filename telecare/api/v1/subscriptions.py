from typing import Optional

from fastapi import APIRouter, Depends, Query

from telecare.api.deps import get_current_actor, get_services, require_roles, verify_payment_webhook
from telecare.models.subscription import SubscriptionPlan, SubscriptionStatus
from telecare.models.user import RoleEnum
from telecare.schemas.common import Page
from telecare.schemas.subscription import (
    EntitlementOut, PaymentConfirmation, PricesOut, PricesUpdate, ReactivateIn,
    StatsOut, SubscriptionCreate, SubscriptionOut,
)
from telecare.services.access import Actor
from telecare.services.container import Services
from telecare.services.ledger import SubscriptionFilter


router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])

# ---------- purchase ----------
@router.post("", response_model=SubscriptionOut, status_code=201)
async def purchase_subscription(
    payload: SubscriptionCreate,
    actor: Actor = Depends(require_roles(RoleEnum.doctor, RoleEnum.patient, RoleEnum.pharmacy)),
    svc: Services = Depends(get_services),
):
    return await svc.ledger.purchase(actor, payload.plan, payload.provider)

@router.post("/payments/confirm", response_model=SubscriptionOut, dependencies=[Depends(verify_payment_webhook)])
async def confirm_payment(
    payload: PaymentConfirmation,
    svc: Services = Depends(get_services),
):
    """Payment provider callback. Re-deliveries of the same confirmation are no-ops."""
    return await svc.ledger.confirm_payment(
        payload.subscription_id, payload.confirmed_amount, payload.reference
    )

# ---------- own ----------
@router.get("/me", response_model=list[SubscriptionOut])
async def my_subscriptions(
    actor: Actor = Depends(get_current_actor),
    svc: Services = Depends(get_services),
):
    return await svc.ledger.history(actor, actor.id)

@router.get("/status", response_model=EntitlementOut)
async def subscription_status(
    user_id: Optional[str] = Query(None),
    actor: Actor = Depends(get_current_actor),
    svc: Services = Depends(get_services),
):
    target = user_id or actor.id
    return EntitlementOut(user_id=target, status=await svc.ledger.status_for(actor, target))

@router.post("/{subscription_id}/abandon", response_model=SubscriptionOut)
async def abandon_checkout(
    subscription_id: str,
    actor: Actor = Depends(get_current_actor),
    svc: Services = Depends(get_services),
):
    return await svc.ledger.abandon(actor, subscription_id)

# ---------- admin ----------
@router.get("", response_model=Page[SubscriptionOut])
async def list_subscriptions(
    role: Optional[RoleEnum] = None,
    plan: Optional[SubscriptionPlan] = None,
    status: Optional[SubscriptionStatus] = None,
    query: Optional[str] = Query(None, max_length=255),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    svc: Services = Depends(get_services),
):
    flt = SubscriptionFilter(role=role, plan=plan, status=status, query=query,
                             page=page, page_size=page_size)
    total, items = await svc.ledger.list_subscriptions(actor, flt)
    out = []
    for sub in items:
        dto = SubscriptionOut.model_validate(sub)
        dto.status = svc.ledger.effective_status(sub)
        out.append(dto)
    return Page[SubscriptionOut](total=total, page=page, page_size=page_size, items=out)

@router.get("/stats", response_model=StatsOut)
async def subscription_stats(
    actor: Actor = Depends(get_current_actor),
    svc: Services = Depends(get_services),
):
    return await svc.ledger.stats(actor)

@router.post("/{subscription_id}/deactivate", response_model=SubscriptionOut)
async def deactivate_subscription(
    subscription_id: str,
    actor: Actor = Depends(get_current_actor),
    svc: Services = Depends(get_services),
):
    return await svc.ledger.deactivate(actor, subscription_id)

@router.post("/{subscription_id}/reactivate", response_model=SubscriptionOut)
async def reactivate_subscription(
    subscription_id: str,
    payload: ReactivateIn,
    actor: Actor = Depends(get_current_actor),
    svc: Services = Depends(get_services),
):
    return await svc.ledger.reactivate(actor, subscription_id, payload.new_end_date)

# ---------- prices ----------
@router.get("/prices", response_model=PricesOut, dependencies=[Depends(get_current_actor)])
async def get_prices(svc: Services = Depends(get_services)):
    return await svc.ledger.get_prices()

@router.put("/prices", response_model=PricesOut)
async def set_prices(
    payload: PricesUpdate,
    actor: Actor = Depends(get_current_actor),
    svc: Services = Depends(get_services),
):
    return await svc.ledger.set_prices(actor, **payload.model_dump())
