"""Subscription Ledger - the only writer of subscription state.

Expiry is lazy: every read path runs ``expire_if_due`` so an ACTIVE row past
its end date is never reported as ACTIVE. ``sweep_expired`` does the same
eagerly for all rows and is optional.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from telecare.core.errors import InvalidTransition, NotFound, ValidationError
from telecare.core.types import utcnow
from telecare.models.subscription import (
    Subscription, SubscriptionPlan, SubscriptionPrice, SubscriptionStatus,
)
from telecare.models.user import RoleEnum, User
from telecare.services.access import Action, Actor, authorize
from telecare.services.events import EventBus, EventType

logger = logging.getLogger(__name__)

PRICED_ROLES = {
    RoleEnum.doctor: "doctor",
    RoleEnum.patient: "patient",
    RoleEnum.pharmacy: "pharmacy",
}

PRICE_FIELDS = (
    "doctor_monthly", "doctor_yearly",
    "patient_monthly", "patient_yearly",
    "pharmacy_monthly", "pharmacy_yearly",
)


@dataclass
class SubscriptionFilter:
    role: RoleEnum | None = None
    plan: SubscriptionPlan | None = None
    status: SubscriptionStatus | None = None
    query: str | None = None
    page: int = 1
    page_size: int = 20


class SubscriptionLedger:
    def __init__(self, db: AsyncSession, bus: EventBus, clock=utcnow):
        self.db = db
        self.bus = bus
        self.clock = clock

    # ---------- helpers ----------
    async def _commit(self) -> None:
        await self.db.commit()
        await self.bus.dispatch()

    async def get(self, subscription_id: str) -> Subscription:
        sub = await self.db.get(Subscription, subscription_id)
        if not sub:
            raise NotFound("Subscription not found")
        return sub

    async def _user(self, user_id: str) -> User:
        user = await self.db.get(User, user_id)
        if not user:
            raise NotFound("User not found")
        return user

    def effective_status(self, sub: Subscription) -> SubscriptionStatus:
        """Status as of now, without writing anything."""
        if (
            sub.status == SubscriptionStatus.active
            and sub.end_date is not None
            and self.clock() >= sub.end_date
        ):
            return SubscriptionStatus.expired
        return sub.status

    async def _sync_user_state(self, user_id: str) -> SubscriptionStatus:
        """Recompute the denormalized User.subscription_state from the rows."""
        res = await self.db.execute(
            select(Subscription.status)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())
        )
        statuses = list(res.scalars())
        if SubscriptionStatus.active in statuses:
            state = SubscriptionStatus.active
        elif SubscriptionStatus.pending in statuses:
            state = SubscriptionStatus.pending
        else:
            state = next(
                (s for s in statuses if s != SubscriptionStatus.unsubscribed),
                SubscriptionStatus.unsubscribed,
            )
        user = await self._user(user_id)
        user.subscription_state = state
        return state

    async def _supersede(self, sub: Subscription) -> None:
        res = await self.db.execute(
            select(Subscription).where(
                Subscription.user_id == sub.user_id,
                Subscription.status == SubscriptionStatus.active,
                Subscription.id != sub.id,
            )
        )
        for other in res.scalars():
            other.status = SubscriptionStatus.expired
            self.bus.record(EventType.subscription_expired, other.id,
                            user_id=other.user_id, superseded_by=sub.id)
            logger.info("Subscription %s superseded by %s", other.id, sub.id)

    # ---------- prices ----------
    async def get_prices(self) -> SubscriptionPrice:
        prices = await self.db.get(SubscriptionPrice, 1)
        if prices is None:
            prices = SubscriptionPrice(id=1)
            self.db.add(prices)
            await self.db.commit()
            await self.db.refresh(prices)
        return prices

    async def set_prices(self, actor: Actor, **values: Decimal) -> SubscriptionPrice:
        authorize(actor, Action.set_prices)
        for name in PRICE_FIELDS:
            value = values.get(name)
            if value is None or Decimal(value) <= 0:
                raise ValidationError(f"{name} must be a positive number")
        prices = await self.get_prices()
        for name in PRICE_FIELDS:
            setattr(prices, name, Decimal(values[name]))
        if values.get("currency"):
            prices.currency = str(values["currency"]).upper()
        await self.db.commit()
        await self.db.refresh(prices)
        logger.info("Subscription prices updated by %s", actor.id)
        return prices

    async def price_for(self, role: RoleEnum, plan: SubscriptionPlan) -> tuple[Decimal, str]:
        key = PRICED_ROLES.get(role)
        if key is None:
            raise ValidationError(f"No subscription plans for role {role.value}")
        prices = await self.get_prices()
        return getattr(prices, f"{key}_{plan.name}"), prices.currency

    # ---------- purchase & payment ----------
    async def purchase(self, actor: Actor, plan: SubscriptionPlan, provider: str | None = None) -> Subscription:
        user = await self._user(actor.id)
        amount, currency = await self.price_for(user.role, plan)
        sub = Subscription(
            user_id=user.id,
            plan=plan,
            status=SubscriptionStatus.pending,
            amount=amount,
            currency=currency,
            provider=provider,
            created_at=self.clock(),
        )
        self.db.add(sub)
        await self.db.flush()
        await self._sync_user_state(user.id)
        await self._commit()
        logger.info("Subscription %s pending for user %s (%s %s)", sub.id, user.id, amount, currency)
        return sub

    async def confirm_payment(self, subscription_id: str, confirmed_amount: Decimal, reference: str) -> Subscription:
        """Payment provider confirmation. Replays of the same confirmation are no-ops."""
        if not reference:
            raise ValidationError("reference is required")
        sub = await self.get(subscription_id)
        if sub.reference == reference and sub.status != SubscriptionStatus.pending:
            return sub
        if sub.status != SubscriptionStatus.pending:
            raise InvalidTransition(f"Cannot confirm payment for a {sub.status.value} subscription")
        if Decimal(confirmed_amount) != Decimal(sub.amount):
            raise ValidationError(
                f"Confirmed amount {confirmed_amount} does not match subscription amount {sub.amount}"
            )
        sub.reference = reference
        return await self.activate(subscription_id)

    # ---------- transitions ----------
    async def activate(self, subscription_id: str) -> Subscription:
        sub = await self.get(subscription_id)
        await self.expire_if_due(sub)
        if sub.status == SubscriptionStatus.active:
            return sub
        if sub.status != SubscriptionStatus.pending:
            raise InvalidTransition(f"Cannot activate a {sub.status.value} subscription")

        now = self.clock()
        sub.start_date = sub.start_date or now
        if sub.end_date is None or sub.end_date <= sub.start_date:
            sub.end_date = sub.start_date + sub.plan.period
        await self._supersede(sub)
        sub.status = SubscriptionStatus.active
        await self.db.flush()
        await self._sync_user_state(sub.user_id)
        self.bus.record(EventType.subscription_activated, sub.id,
                        user_id=sub.user_id, plan=sub.plan.value)
        await self._commit()
        logger.info("✅ Subscription %s active until %s", sub.id, sub.end_date)
        return sub

    async def expire_if_due(self, sub: Subscription) -> Subscription:
        if self.effective_status(sub) != SubscriptionStatus.expired or sub.status == SubscriptionStatus.expired:
            return sub
        sub.status = SubscriptionStatus.expired
        await self.db.flush()
        await self._sync_user_state(sub.user_id)
        self.bus.record(EventType.subscription_expired, sub.id, user_id=sub.user_id)
        await self._commit()
        logger.info("Subscription %s expired (end %s)", sub.id, sub.end_date)
        return sub

    async def deactivate(self, actor: Actor, subscription_id: str) -> Subscription:
        authorize(actor, Action.deactivate_subscription)
        sub = await self.get(subscription_id)
        await self.expire_if_due(sub)
        if sub.status != SubscriptionStatus.active:
            raise InvalidTransition(f"Cannot deactivate a {sub.status.value} subscription")
        sub.status = SubscriptionStatus.deactivated
        await self.db.flush()
        await self._sync_user_state(sub.user_id)
        self.bus.record(EventType.subscription_deactivated, sub.id,
                        user_id=sub.user_id, by=actor.id)
        await self._commit()
        logger.info("Subscription %s deactivated by %s", sub.id, actor.id)
        return sub

    async def reactivate(self, actor: Actor, subscription_id: str, new_end_date: datetime) -> Subscription:
        authorize(actor, Action.reactivate_subscription)
        if new_end_date.tzinfo is None:
            raise ValidationError("new_end_date must carry a timezone offset")
        now = self.clock()
        if new_end_date <= now:
            raise ValidationError("new_end_date must be in the future")

        sub = await self.get(subscription_id)
        await self.expire_if_due(sub)
        if sub.status not in (SubscriptionStatus.deactivated, SubscriptionStatus.expired):
            raise InvalidTransition(f"Cannot reactivate a {sub.status.value} subscription")

        if sub.start_date is None or sub.start_date >= new_end_date:
            sub.start_date = now
        sub.end_date = new_end_date
        await self._supersede(sub)
        sub.status = SubscriptionStatus.active
        await self.db.flush()
        await self._sync_user_state(sub.user_id)
        self.bus.record(EventType.subscription_activated, sub.id,
                        user_id=sub.user_id, plan=sub.plan.value, reactivated_by=actor.id)
        await self._commit()
        logger.info("Subscription %s reactivated by %s until %s", sub.id, actor.id, new_end_date)
        return sub

    async def abandon(self, actor: Actor, subscription_id: str) -> Subscription:
        sub = await self.get(subscription_id)
        authorize(actor, Action.cancel, sub.user_id)
        if sub.status != SubscriptionStatus.pending:
            raise InvalidTransition(f"Cannot abandon a {sub.status.value} subscription")
        sub.status = SubscriptionStatus.unsubscribed
        await self.db.flush()
        await self._sync_user_state(sub.user_id)
        await self.db.commit()
        return sub

    # ---------- reads ----------
    async def entitlement(self, user_id: str) -> SubscriptionStatus:
        """Current status of a user after lazy expiry; feeds the access gate."""
        res = await self.db.execute(
            select(Subscription).where(
                Subscription.user_id == user_id,
                Subscription.status == SubscriptionStatus.active,
            )
        )
        for sub in list(res.scalars()):
            await self.expire_if_due(sub)
        state = await self._sync_user_state(user_id)
        await self.db.commit()
        return state

    async def status_for(self, actor: Actor, user_id: str) -> SubscriptionStatus:
        authorize(actor, Action.view_subscription, user_id)
        return await self.entitlement(user_id)

    async def history(self, actor: Actor, user_id: str) -> list[Subscription]:
        authorize(actor, Action.view_subscription, user_id)
        res = await self.db.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())
        )
        subs = list(res.scalars())
        for sub in subs:
            await self.expire_if_due(sub)
        return subs

    async def sweep_expired(self) -> int:
        res = await self.db.execute(
            select(Subscription).where(
                Subscription.status == SubscriptionStatus.active,
                Subscription.end_date <= self.clock(),
            )
        )
        expired = 0
        for sub in list(res.scalars()):
            await self.expire_if_due(sub)
            expired += 1
        if expired:
            logger.info("Subscription sweep expired %d rows", expired)
        return expired

    def _status_clause(self, status: SubscriptionStatus):
        now = self.clock()
        if status == SubscriptionStatus.active:
            return and_(Subscription.status == status, Subscription.end_date > now)
        if status == SubscriptionStatus.expired:
            return or_(
                Subscription.status == status,
                and_(Subscription.status == SubscriptionStatus.active, Subscription.end_date <= now),
            )
        return Subscription.status == status

    async def list_subscriptions(self, actor: Actor, flt: SubscriptionFilter) -> tuple[int, list[Subscription]]:
        """Admin listing. Pure read: lazily-due rows are reported via effective_status."""
        authorize(actor, Action.list_subscriptions)
        q = select(Subscription).join(User, User.id == Subscription.user_id)
        if flt.role:
            q = q.where(User.role == flt.role)
        if flt.plan:
            q = q.where(Subscription.plan == flt.plan)
        if flt.status:
            q = q.where(self._status_clause(flt.status))
        text = (flt.query or "").strip()
        if text:
            like = f"%{text.lower()}%"
            q = q.where(or_(func.lower(User.full_name).like(like), func.lower(User.email).like(like)))

        total = (await self.db.execute(select(func.count()).select_from(q.subquery()))).scalar_one()
        page_size = max(1, min(100, flt.page_size))
        offset = (max(1, flt.page) - 1) * page_size
        res = await self.db.execute(
            q.order_by(Subscription.created_at.desc()).offset(offset).limit(page_size)
        )
        return total, list(res.scalars())

    async def stats(self, actor: Actor) -> dict:
        authorize(actor, Action.subscription_stats)
        res = await self.db.execute(
            select(Subscription.user_id, Subscription.plan, User.role)
            .join(User, User.id == Subscription.user_id)
            .where(self._status_clause(SubscriptionStatus.active))
        )
        rows = {r.user_id: r for r in res}  # one ACTIVE row per user
        return {
            "total_active": len(rows),
            "monthly_active": sum(1 for r in rows.values() if r.plan == SubscriptionPlan.monthly),
            "yearly_active": sum(1 for r in rows.values() if r.plan == SubscriptionPlan.yearly),
            "doctors_active": sum(1 for r in rows.values() if r.role == RoleEnum.doctor),
            "patients_active": sum(1 for r in rows.values() if r.role == RoleEnum.patient),
            "pharmacies_active": sum(1 for r in rows.values() if r.role == RoleEnum.pharmacy),
        }
