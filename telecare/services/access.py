"""Access Gate.

The single authorization policy of the engine. ``evaluate`` is a pure function
of the actor, the action, the owner of the resource acted upon and the
subscription status the caller resolved through the ledger. Rules are checked
in order and the first match decides.
"""
import enum
import logging
from dataclasses import dataclass

from telecare.core.errors import (
    DomainError, DoctorUnavailable, Forbidden, SubscriptionRequired,
)
from telecare.models.subscription import SubscriptionStatus
from telecare.models.user import RoleEnum

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    id: str
    role: RoleEnum


class Action(str, enum.Enum):
    view = "view"
    cancel = "cancel"
    complete = "complete"
    join_session = "joinSession"
    end_session = "endSession"
    book_appointment = "bookAppointment"
    approve_appointment = "approveAppointment"
    issue_prescription = "issuePrescription"
    dispatch_prescription = "dispatchPrescription"
    confirm_delivery = "confirmDelivery"
    list_appointments = "listAppointments"
    list_prescriptions = "listPrescriptions"
    view_subscription = "viewSubscription"
    list_subscriptions = "listSubscriptions"
    subscription_stats = "subscriptionStats"
    deactivate_subscription = "deactivateSubscription"
    reactivate_subscription = "reactivateSubscription"
    set_prices = "setPrices"
    manage_schedule = "manageSchedule"


ADMIN_ROLES = frozenset({RoleEnum.admin, RoleEnum.superadmin})

READ_ACTIONS = frozenset({
    Action.view,
    Action.list_appointments,
    Action.list_prescriptions,
    Action.view_subscription,
    Action.list_subscriptions,
    Action.subscription_stats,
})

OWNER_ACTIONS = frozenset({
    Action.view,
    Action.view_subscription,
    Action.cancel,
    Action.complete,
    Action.join_session,
    Action.end_session,
    Action.manage_schedule,
})

DOCTOR_PRIVILEGED = frozenset({Action.approve_appointment, Action.issue_prescription})

PHARMACY_ACTIONS = frozenset({Action.dispatch_prescription, Action.confirm_delivery})


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: type[DomainError] | None = None
    rule: str = ""

    def raise_for_deny(self, message: str | None = None) -> None:
        if not self.allowed:
            assert self.reason is not None
            raise self.reason(message)


def _allow(rule: str) -> Decision:
    return Decision(True, None, rule)


def _deny(reason: type[DomainError], rule: str) -> Decision:
    return Decision(False, reason, rule)


def evaluate(
    actor: Actor,
    action: Action,
    resource_owner_id: str | None = None,
    resolved_subscription_status: SubscriptionStatus | None = None,
) -> Decision:
    # 1. admins bypass everything
    if actor.role in ADMIN_ROLES:
        return _allow("admin")

    # 2. support staff is read-only
    if actor.role == RoleEnum.support:
        if action in READ_ACTIONS:
            return _allow("support-read")
        return _deny(Forbidden, "support-read")

    is_owner = resource_owner_id is not None and actor.id == resource_owner_id

    # 3. owners may view/cancel (and act on their own session) regardless of subscription
    if action in OWNER_ACTIONS and is_owner:
        return _allow("owner")

    # 4. doctor-privileged actions need the doctor's own ACTIVE subscription
    if action in DOCTOR_PRIVILEGED:
        if actor.role != RoleEnum.doctor or not is_owner:
            return _deny(Forbidden, "doctor-privileged")
        if resolved_subscription_status != SubscriptionStatus.active:
            return _deny(SubscriptionRequired, "doctor-privileged")
        return _allow("doctor-privileged")

    # 5. patients book for themselves; the target doctor must be entitled
    if action == Action.book_appointment:
        if actor.role != RoleEnum.patient or not is_owner:
            return _deny(Forbidden, "booking")
        if resolved_subscription_status != SubscriptionStatus.active:
            return _deny(DoctorUnavailable, "booking")
        return _allow("booking")

    # 6. pharmacies move their own prescriptions through dispatch
    if action in PHARMACY_ACTIONS:
        if actor.role == RoleEnum.pharmacy and is_owner:
            return _allow("pharmacy")
        return _deny(Forbidden, "pharmacy")

    # 7. default
    return _deny(Forbidden, "default")


def authorize(
    actor: Actor,
    action: Action,
    resource_owner_id: str | None = None,
    resolved_subscription_status: SubscriptionStatus | None = None,
) -> None:
    """``evaluate`` and raise the denial reason."""
    decision = evaluate(actor, action, resource_owner_id, resolved_subscription_status)
    if not decision.allowed:
        logger.warning(
            "Denied %s for %s (%s) by rule %s: %s",
            action.value, actor.id, actor.role.value, decision.rule, decision.reason.__name__,
        )
    decision.raise_for_deny()
