"""Appointment Scheduler.

Owns every Appointment transition::

    PENDING --approve--> APPROVED --complete--> COMPLETED*
    PENDING --decline/cancel--> CANCELLED*
    APPROVED --cancel--> CANCELLED*

Booking is serialized per doctor (in-process lock + row lock on the doctor)
and backed by the ``uq_appt_doctor_slot`` unique constraint, so at most one
PENDING/APPROVED appointment exists per doctor within one slot.
Every transition is a conditional UPDATE on the expected status, so a decision
taken on a stale read fails with InvalidTransition instead of overwriting.

Doctors publish weekly availability windows; free slots are derived from them.
"""
import logging
from dataclasses import asdict, dataclass, fields, replace
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from telecare.core.config import settings
from telecare.core.errors import (
    InvalidTransition, NotFound, PastDateError, SchedulingConflict, ValidationError,
)
from telecare.core.types import as_utc, isoformat_z, utcnow
from telecare.models.appointment import Appointment, ApptStatus
from telecare.models.schedule import DoctorSchedule
from telecare.models.subscription import SubscriptionStatus
from telecare.models.user import RoleEnum, User
from telecare.services.access import Action, Actor, authorize
from telecare.services.events import EventBus, EventType
from telecare.services.ledger import SubscriptionLedger
from telecare.services.locks import KeyedLock, booking_locks

logger = logging.getLogger(__name__)

LIVE_STATUSES = (ApptStatus.pending, ApptStatus.approved)


@dataclass
class AppointmentFilter:
    doctor_id: str | None = None
    patient_id: str | None = None
    status: ApptStatus | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    page: int = 1
    page_size: int = 20


@dataclass
class ScheduleWindow:
    day_of_week: int
    start_time: time
    end_time: time
    is_active: bool = True
    effective_from: date | None = None
    effective_to: date | None = None

    @classmethod
    def of(cls, sched: DoctorSchedule) -> "ScheduleWindow":
        return cls(**{f.name: getattr(sched, f.name) for f in fields(cls)})

    def validate(self) -> None:
        if None in (self.day_of_week, self.start_time, self.end_time, self.is_active):
            raise ValidationError("Schedule window is missing required fields")
        if not 0 <= self.day_of_week <= 6:
            raise ValidationError("day_of_week must be between 0 (Sunday) and 6 (Saturday)")
        if self.start_time >= self.end_time:
            raise ValidationError("start_time must be before end_time")
        if self.effective_from and self.effective_to and self.effective_from > self.effective_to:
            raise ValidationError("effective_from must not be after effective_to")


def participant_owner(ap: Appointment, actor: Actor) -> str:
    """Owner id to check against: the actor when they take part, else the patient."""
    if actor.id in (ap.doctor_id, ap.patient_id):
        return actor.id
    return ap.patient_id


class AppointmentScheduler:
    def __init__(
        self,
        db: AsyncSession,
        bus: EventBus,
        ledger: SubscriptionLedger,
        clock=utcnow,
        slot_minutes: int | None = None,
        cancellation_cutoff_minutes: int | None = None,
        locks: KeyedLock = booking_locks,
    ):
        self.db = db
        self.bus = bus
        self.ledger = ledger
        self.clock = clock
        self.slot = timedelta(minutes=slot_minutes or settings.SLOT_DURATION_MINUTES)
        self.cutoff = timedelta(
            minutes=settings.CANCELLATION_CUTOFF_MINUTES
            if cancellation_cutoff_minutes is None else cancellation_cutoff_minutes
        )
        self.locks = locks

    # ---------- helpers ----------
    def slot_key(self, at: datetime) -> int:
        return int(as_utc(at).timestamp()) // int(self.slot.total_seconds())

    async def get_appointment(self, appointment_id: str) -> Appointment:
        ap = await self.db.get(Appointment, appointment_id)
        if not ap:
            raise NotFound("Appointment not found")
        return ap

    async def _user_with_role(self, user_id: str, role: RoleEnum, what: str) -> User:
        user = await self.db.get(User, user_id)
        if not user or user.role != role or not user.is_active:
            raise NotFound(f"{what} not found")
        return user

    async def _find_conflict(self, doctor_id: str, at: datetime) -> Appointment | None:
        res = await self.db.execute(
            select(Appointment).where(
                Appointment.doctor_id == doctor_id,
                Appointment.status.in_(LIVE_STATUSES),
                Appointment.appointment_at > at - self.slot,
                Appointment.appointment_at < at + self.slot,
            ).limit(1)
        )
        return res.scalar_one_or_none()

    def _ensure_not_started(self, ap: Appointment) -> None:
        if self.clock() >= ap.appointment_at - self.cutoff:
            raise InvalidTransition("Appointment can no longer be cancelled")

    async def _transition(self, ap: Appointment, expected: tuple[ApptStatus, ...], **values) -> None:
        """Write ``values`` only while the row still holds one of ``expected``.

        The status check and the write are one UPDATE, so a transition decided
        on a stale read loses to whichever writer committed first.
        """
        values.setdefault("updated_at", self.clock())
        res = await self.db.execute(
            update(Appointment)
            .where(Appointment.id == ap.id, Appointment.status.in_(expected))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            await self.db.refresh(ap)
            raise InvalidTransition(f"Appointment is already {ap.status.value}")
        for key, value in values.items():
            set_committed_value(ap, key, value)

    async def _release(self, ap: Appointment, actor: Actor, kind: str,
                       expected: tuple[ApptStatus, ...] = LIVE_STATUSES) -> Appointment:
        await self._transition(ap, expected, status=ApptStatus.cancelled,
                               slot_key=None, cancelled_by=actor.id)
        self.bus.record(EventType.appointment_cancelled, ap.id,
                        doctor_id=ap.doctor_id, patient_id=ap.patient_id,
                        by=actor.id, kind=kind)
        await self.db.commit()
        await self.bus.dispatch()
        logger.info("Appointment %s %s by %s", ap.id, kind, actor.id)
        return ap

    # ---------- book ----------
    async def book(
        self,
        actor: Actor,
        doctor_id: str,
        patient_id: str,
        at: datetime,
        reason: str | None = None,
    ) -> Appointment:
        if at.tzinfo is None:
            raise ValidationError("appointment_at must carry a timezone offset")
        at = as_utc(at)
        if at.microsecond % 1000:
            # the wire format stops at milliseconds
            raise ValidationError("appointment_at must not be more precise than milliseconds")
        if at <= self.clock():
            raise PastDateError()

        await self._user_with_role(doctor_id, RoleEnum.doctor, "Doctor")
        await self._user_with_role(patient_id, RoleEnum.patient, "Patient")

        doctor_status = await self.ledger.entitlement(doctor_id)
        authorize(actor, Action.book_appointment, patient_id, doctor_status)

        async with self.locks.hold(doctor_id):
            # serialize bookings for this doctor across processes as well
            await self.db.execute(
                select(User.id).where(User.id == doctor_id).with_for_update()
            )
            existing = await self._find_conflict(doctor_id, at)
            if existing:
                await self.db.commit()  # releases the row lock
                logger.info("Slot conflict for doctor %s at %s (appointment %s)",
                            doctor_id, isoformat_z(at), existing.id)
                raise SchedulingConflict()

            ap = Appointment(
                doctor_id=doctor_id,
                patient_id=patient_id,
                appointment_at=at,
                reason=reason,
                status=ApptStatus.pending,
                slot_key=self.slot_key(at),
                created_at=self.clock(),
            )
            self.db.add(ap)
            try:
                await self.db.flush()
            except IntegrityError as exc:
                await self.db.rollback()
                raise SchedulingConflict() from exc

            self.bus.record(EventType.appointment_booked, ap.id,
                            doctor_id=doctor_id, patient_id=patient_id,
                            appointment_at=isoformat_z(at))
            await self.db.commit()

        await self.bus.dispatch()
        logger.info("📅 Appointment %s booked: doctor %s, patient %s at %s",
                    ap.id, doctor_id, patient_id, isoformat_z(at))
        return ap

    # ---------- transitions ----------
    async def approve(self, actor: Actor, appointment_id: str) -> Appointment:
        ap = await self.get_appointment(appointment_id)
        doctor_status = await self.ledger.entitlement(ap.doctor_id)
        authorize(actor, Action.approve_appointment, ap.doctor_id, doctor_status)
        if ap.status != ApptStatus.pending:
            raise InvalidTransition(f"Cannot approve a {ap.status.value} appointment")

        await self._transition(ap, (ApptStatus.pending,), status=ApptStatus.approved)
        self.bus.record(EventType.appointment_approved, ap.id,
                        doctor_id=ap.doctor_id, patient_id=ap.patient_id,
                        appointment_at=isoformat_z(ap.appointment_at))
        await self.db.commit()
        logger.info("Appointment %s approved by %s", ap.id, actor.id)
        await self.bus.dispatch()
        return ap

    async def decline(self, actor: Actor, appointment_id: str) -> Appointment:
        ap = await self.get_appointment(appointment_id)
        authorize(actor, Action.cancel, ap.doctor_id)
        if ap.status != ApptStatus.pending:
            raise InvalidTransition(f"Cannot decline a {ap.status.value} appointment")
        self._ensure_not_started(ap)
        return await self._release(ap, actor, "declined", (ApptStatus.pending,))

    async def cancel(self, actor: Actor, appointment_id: str) -> Appointment:
        ap = await self.get_appointment(appointment_id)
        authorize(actor, Action.cancel, participant_owner(ap, actor))
        if not ap.status.holds_slot:
            raise InvalidTransition(f"Cannot cancel a {ap.status.value} appointment")
        self._ensure_not_started(ap)
        return await self._release(ap, actor, "cancelled")

    async def complete(self, actor: Actor, appointment_id: str) -> Appointment:
        ap = await self.get_appointment(appointment_id)
        authorize(actor, Action.complete, participant_owner(ap, actor))
        if ap.status == ApptStatus.completed:
            return ap
        if ap.status != ApptStatus.approved:
            raise InvalidTransition(f"Cannot complete a {ap.status.value} appointment")
        if self.clock() < ap.appointment_at:
            raise InvalidTransition("Appointment has not taken place yet")

        try:
            await self._transition(ap, (ApptStatus.approved,), status=ApptStatus.completed, slot_key=None)
        except InvalidTransition:
            # a concurrent completion already did the work
            if ap.status == ApptStatus.completed:
                return ap
            raise
        self.bus.record(EventType.appointment_completed, ap.id,
                        doctor_id=ap.doctor_id, patient_id=ap.patient_id)
        await self.db.commit()
        logger.info("Appointment %s completed", ap.id)
        await self.bus.dispatch()
        return ap

    # ---------- reads ----------
    async def get(self, actor: Actor, appointment_id: str) -> Appointment:
        ap = await self.get_appointment(appointment_id)
        authorize(actor, Action.view, participant_owner(ap, actor))
        return ap

    async def list_appointments(self, actor: Actor, flt: AppointmentFilter) -> tuple[int, list[Appointment]]:
        # doctors and patients only ever see their own appointments
        if actor.role == RoleEnum.doctor:
            flt.doctor_id = actor.id
        elif actor.role == RoleEnum.patient:
            flt.patient_id = actor.id
        else:
            authorize(actor, Action.list_appointments)

        q = select(Appointment)
        if flt.doctor_id:
            q = q.where(Appointment.doctor_id == flt.doctor_id)
        if flt.patient_id:
            q = q.where(Appointment.patient_id == flt.patient_id)
        if flt.status:
            q = q.where(Appointment.status == flt.status)
        if flt.date_from:
            q = q.where(Appointment.appointment_at >= flt.date_from)
        if flt.date_to:
            q = q.where(Appointment.appointment_at < flt.date_to)

        total = (await self.db.execute(select(func.count()).select_from(q.subquery()))).scalar_one()
        page_size = max(1, min(200, flt.page_size))
        offset = (max(1, flt.page) - 1) * page_size
        res = await self.db.execute(
            q.order_by(Appointment.appointment_at).offset(offset).limit(page_size)
        )
        return total, list(res.scalars())

    # ---------- weekly schedule ----------
    async def _schedule(self, schedule_id: str) -> DoctorSchedule:
        sched = await self.db.get(DoctorSchedule, schedule_id)
        if not sched:
            raise NotFound("Schedule not found")
        return sched

    async def _ensure_no_overlap(self, doctor_id: str, window: ScheduleWindow,
                                 exclude_id: str | None = None) -> None:
        if not window.is_active:
            return
        q = select(DoctorSchedule).where(
            DoctorSchedule.doctor_id == doctor_id,
            DoctorSchedule.day_of_week == window.day_of_week,
            DoctorSchedule.is_active.is_(True),
            DoctorSchedule.start_time < window.end_time,
            DoctorSchedule.end_time > window.start_time,
        )
        if exclude_id:
            q = q.where(DoctorSchedule.id != exclude_id)
        clash = (await self.db.execute(q.limit(1))).scalar_one_or_none()
        if clash:
            raise SchedulingConflict(
                f"Time conflict with existing window {clash.start_time:%H:%M}-{clash.end_time:%H:%M}"
            )

    async def create_schedule(self, actor: Actor, doctor_id: str, window: ScheduleWindow) -> DoctorSchedule:
        await self._user_with_role(doctor_id, RoleEnum.doctor, "Doctor")
        authorize(actor, Action.manage_schedule, doctor_id)
        window.validate()

        async with self.locks.hold(doctor_id):
            await self._ensure_no_overlap(doctor_id, window)
            sched = DoctorSchedule(doctor_id=doctor_id, created_at=self.clock(),
                                   updated_at=self.clock(), **asdict(window))
            self.db.add(sched)
            await self.db.commit()
        logger.info("Schedule %s added for doctor %s: day %d %s-%s", sched.id, doctor_id,
                    window.day_of_week, window.start_time, window.end_time)
        return sched

    async def list_schedules(self, doctor_id: str) -> list[DoctorSchedule]:
        res = await self.db.execute(
            select(DoctorSchedule)
            .where(DoctorSchedule.doctor_id == doctor_id)
            .order_by(DoctorSchedule.day_of_week, DoctorSchedule.start_time)
        )
        return list(res.scalars())

    async def update_schedule(self, actor: Actor, schedule_id: str, **changes) -> DoctorSchedule:
        sched = await self._schedule(schedule_id)
        authorize(actor, Action.manage_schedule, sched.doctor_id)
        unknown = set(changes) - {f.name for f in fields(ScheduleWindow)}
        if unknown:
            raise ValidationError(f"Unknown schedule fields: {', '.join(sorted(unknown))}")
        window = replace(ScheduleWindow.of(sched), **changes)
        window.validate()

        async with self.locks.hold(sched.doctor_id):
            await self._ensure_no_overlap(sched.doctor_id, window, exclude_id=sched.id)
            for key, value in changes.items():
                setattr(sched, key, value)
            sched.updated_at = self.clock()
            await self.db.commit()
        logger.info("Schedule %s updated", sched.id)
        return sched

    async def delete_schedule(self, actor: Actor, schedule_id: str) -> None:
        sched = await self._schedule(schedule_id)
        authorize(actor, Action.manage_schedule, sched.doctor_id)
        await self.db.delete(sched)
        await self.db.commit()
        logger.info("Schedule %s deleted", schedule_id)

    async def _open_windows(self, doctor_id: str, day: date) -> list[tuple[datetime, datetime]]:
        """UTC bounds of the windows the doctor works on ``day``.

        A doctor who never published a schedule works the default workday.
        """
        schedules = await self.list_schedules(doctor_id)
        if not schedules:
            start = datetime.combine(day, time(settings.WORKDAY_START_HOUR), tzinfo=timezone.utc)
            end = datetime.combine(day, time(0), tzinfo=timezone.utc) + timedelta(hours=settings.WORKDAY_END_HOUR)
            return [(start, end)]
        return [
            (datetime.combine(day, s.start_time, tzinfo=timezone.utc),
             datetime.combine(day, s.end_time, tzinfo=timezone.utc))
            for s in schedules if s.applies_on(day)
        ]

    async def available_slots(self, doctor_id: str, day: date) -> list[datetime]:
        """Free slot starts for a UTC day within the doctor's working windows."""
        await self._user_with_role(doctor_id, RoleEnum.doctor, "Doctor")
        if await self.ledger.entitlement(doctor_id) != SubscriptionStatus.active:
            return []
        windows = await self._open_windows(doctor_id, day)
        if not windows:
            return []

        lo = min(start for start, _ in windows)
        hi = max(end for _, end in windows)
        res = await self.db.execute(
            select(Appointment.appointment_at).where(
                Appointment.doctor_id == doctor_id,
                Appointment.status.in_(LIVE_STATUSES),
                Appointment.appointment_at > lo - self.slot,
                Appointment.appointment_at < hi + self.slot,
            )
        )
        booked = list(res.scalars())
        now = self.clock()

        slots: list[datetime] = []
        for start, end in sorted(windows):
            t = start
            while t + self.slot <= end:
                if t > now and all(abs(b - t) >= self.slot for b in booked):
                    slots.append(t)
                t += self.slot
        return slots
