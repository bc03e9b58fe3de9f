"""Care Session Orchestrator.

Derives the video consultation and the prescription from an appointment and
keeps them consistent with it. It reacts to appointment events and never
writes the Appointment itself.

Consultation: SCHEDULED -> IN_PROGRESS -> ENDED, or -> CANCELLED when the
appointment is cancelled. Prescription dispatch: READY -> SENT -> DELIVERED.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.attributes import set_committed_value

from telecare.core.config import settings
from telecare.core.errors import (
    Forbidden, InvalidTransition, NotFound, ProviderUnavailable, ValidationError,
)
from telecare.core.types import isoformat_z, utcnow
from telecare.models.appointment import Appointment, ApptStatus
from telecare.models.consultation import ConsultationStatus, VideoConsultation
from telecare.models.prescription import DispatchStatus, Prescription, PrescriptionItem
from telecare.models.user import RoleEnum, User
from telecare.services._helpers import gen_code
from telecare.services.access import Action, Actor, authorize
from telecare.services.events import Event, EventBus, EventType
from telecare.services.ledger import SubscriptionLedger
from telecare.services.locks import KeyedLock
from telecare.services.scheduler import participant_owner
from telecare.services.video import RoomProvider, default_provider

logger = logging.getLogger(__name__)

# one provisioning attempt per consultation at a time
room_locks = KeyedLock()


@dataclass
class MedicationItem:
    drug: str
    dose: str
    frequency: str
    duration: str | None = None
    notes: str | None = None


@dataclass
class PrescriptionDetails:
    items: list[MedicationItem] = field(default_factory=list)
    diagnosis: str | None = None
    notes: str | None = None
    pharmacy_id: str | None = None


@dataclass
class PrescriptionFilter:
    doctor_id: str | None = None
    patient_id: str | None = None
    pharmacy_id: str | None = None
    dispatch_status: DispatchStatus | None = None
    page: int = 1
    page_size: int = 20


class CareSessionOrchestrator:
    def __init__(
        self,
        db: AsyncSession,
        bus: EventBus,
        ledger: SubscriptionLedger,
        provider: RoomProvider | None = None,
        clock=utcnow,
        slot_minutes: int | None = None,
        grace_minutes: int | None = None,
    ):
        self.db = db
        self.bus = bus
        self.ledger = ledger
        self.provider = provider or default_provider()
        self.clock = clock
        self.slot = timedelta(minutes=slot_minutes or settings.SLOT_DURATION_MINUTES)
        self.grace = timedelta(
            minutes=settings.SESSION_GRACE_MINUTES if grace_minutes is None else grace_minutes
        )

        bus.subscribe(EventType.appointment_approved, self.on_appointment_approved)
        bus.subscribe(EventType.appointment_cancelled, self.on_appointment_cancelled)
        bus.subscribe(EventType.appointment_completed, self.on_appointment_completed)

    # ---------- helpers ----------
    async def _commit(self) -> None:
        await self.db.commit()
        await self.bus.dispatch()

    async def _appointment(self, appointment_id: str) -> Appointment:
        ap = await self.db.get(Appointment, appointment_id)
        if not ap:
            raise NotFound("Appointment not found")
        return ap

    async def _consultation(self, consultation_id: str) -> VideoConsultation:
        c = await self.db.get(VideoConsultation, consultation_id)
        if not c:
            raise NotFound("Consultation not found")
        return c

    async def _consultation_for(self, appointment_id: str) -> VideoConsultation | None:
        res = await self.db.execute(
            select(VideoConsultation).where(VideoConsultation.appointment_id == appointment_id)
        )
        return res.scalar_one_or_none()

    async def _prescription(self, prescription_id: str) -> Prescription:
        res = await self.db.execute(
            select(Prescription)
            .options(selectinload(Prescription.items))
            .where(Prescription.id == prescription_id)
            .execution_options(populate_existing=True)
        )
        rx = res.scalar_one_or_none()
        if not rx:
            raise NotFound("Prescription not found")
        return rx

    async def _advance_dispatch(self, rx: Prescription, expected: DispatchStatus, *criteria, **values) -> None:
        """Move the dispatch status forward only from ``expected``; never regresses."""
        res = await self.db.execute(
            update(Prescription)
            .where(Prescription.id == rx.id, Prescription.dispatch_status == expected, *criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            await self.db.refresh(rx, attribute_names=["dispatch_status", "pharmacy_id"])
            raise InvalidTransition(f"Prescription is already {rx.dispatch_status.value}")
        for key, value in values.items():
            set_committed_value(rx, key, value)

    # ---------- appointment events ----------
    async def on_appointment_approved(self, event: Event) -> None:
        ap = await self.db.get(Appointment, event.entity_id, populate_existing=True)
        if ap is None or ap.status != ApptStatus.approved:
            # a late redelivery must not revive a cancelled or finished appointment
            logger.info("Skipping approval of appointment %s: no longer approved", event.entity_id)
            return
        c = await self._consultation_for(event.entity_id)
        if c is None:
            c = VideoConsultation(
                appointment_id=event.entity_id,
                status=ConsultationStatus.scheduled,
                created_at=self.clock(),
            )
            self.db.add(c)
            await self.db.commit()
            logger.info("🎥 Consultation %s scheduled for appointment %s", c.id, event.entity_id)
        await self.provision_room(c.id)

    async def on_appointment_cancelled(self, event: Event) -> None:
        c = await self._consultation_for(event.entity_id)
        if c is None or c.status.is_terminal:
            return
        c.status = ConsultationStatus.cancelled
        await self.db.commit()
        logger.info("Consultation %s cancelled with appointment %s", c.id, event.entity_id)

    async def on_appointment_completed(self, event: Event) -> None:
        c = await self._consultation_for(event.entity_id)
        if c is None or c.status.is_terminal:
            return
        c.status = ConsultationStatus.ended
        c.ended_at = self.clock()
        await self.db.commit()

    # ---------- rooms ----------
    async def provision_room(self, consultation_id: str, raise_on_failure: bool = False) -> VideoConsultation:
        """Ask the provider for a room unless the consultation already has one."""
        async with room_locks.hold(consultation_id):
            c = await self._consultation(consultation_id)
            if c.is_provisioned or c.status.is_terminal:
                return c
            ap = await self._appointment(c.appointment_id)
            try:
                room = await self.provider.create_room(
                    c.id,
                    start_time_iso=isoformat_z(ap.appointment_at),
                    duration_min=int(self.slot.total_seconds() // 60),
                )
            except ProviderUnavailable as exc:
                c.provisioning_error = exc.message
                await self.db.commit()
                logger.warning("Room for consultation %s pending: %s", c.id, exc.message)
                if raise_on_failure:
                    raise
                return c

            c.room_id = room.room_id
            c.meeting_url = room.join_url
            c.provisioning_error = None
            await self.db.commit()
            logger.info("Room %s ready for consultation %s", room.room_id, c.id)
            return c

    async def retry_pending_rooms(self, limit: int = 50) -> int:
        res = await self.db.execute(
            select(VideoConsultation.id).where(
                VideoConsultation.room_id.is_(None),
                VideoConsultation.status.in_(
                    (ConsultationStatus.scheduled, ConsultationStatus.in_progress)
                ),
            ).limit(limit)
        )
        provisioned = 0
        for consultation_id in list(res.scalars()):
            c = await self.provision_room(consultation_id)
            if c.is_provisioned:
                provisioned += 1
        return provisioned

    # ---------- sessions ----------
    async def get_consultation(self, actor: Actor, consultation_id: str) -> VideoConsultation:
        c = await self._consultation(consultation_id)
        ap = await self._appointment(c.appointment_id)
        authorize(actor, Action.view, participant_owner(ap, actor))
        return c

    async def consultation_for_appointment(self, actor: Actor, appointment_id: str) -> VideoConsultation:
        ap = await self._appointment(appointment_id)
        authorize(actor, Action.view, participant_owner(ap, actor))
        c = await self._consultation_for(appointment_id)
        if c is None:
            raise NotFound("Consultation not found")
        return c

    async def join_session(self, actor: Actor, consultation_id: str) -> VideoConsultation:
        c = await self._consultation(consultation_id)
        ap = await self._appointment(c.appointment_id)
        authorize(actor, Action.join_session, participant_owner(ap, actor))
        if c.status == ConsultationStatus.in_progress:
            return c
        if c.status != ConsultationStatus.scheduled:
            raise InvalidTransition(f"Cannot join a {c.status.value} consultation")
        if not c.is_provisioned:
            c = await self.provision_room(c.id, raise_on_failure=True)

        c.status = ConsultationStatus.in_progress
        c.started_at = self.clock()
        await self.db.commit()
        logger.info("Consultation %s started by %s", c.id, actor.id)
        return c

    async def end_session(self, actor: Actor, consultation_id: str) -> VideoConsultation:
        c = await self._consultation(consultation_id)
        ap = await self._appointment(c.appointment_id)
        authorize(actor, Action.end_session, participant_owner(ap, actor))
        if c.status == ConsultationStatus.ended:
            return c
        if c.status == ConsultationStatus.cancelled:
            raise InvalidTransition("Cannot end a CANCELLED consultation")
        c.status = ConsultationStatus.ended
        c.ended_at = self.clock()
        await self.db.commit()
        logger.info("Consultation %s ended by %s", c.id, actor.id)
        return c

    async def end_stale_sessions(self) -> int:
        """End open consultations whose slot finished more than the grace period ago."""
        cutoff = self.clock() - self.slot - self.grace
        res = await self.db.execute(
            select(VideoConsultation)
            .join(Appointment, Appointment.id == VideoConsultation.appointment_id)
            .where(
                VideoConsultation.status.in_(
                    (ConsultationStatus.scheduled, ConsultationStatus.in_progress)
                ),
                Appointment.appointment_at <= cutoff,
            )
        )
        stale = list(res.scalars())
        now = self.clock()
        for c in stale:
            c.status = ConsultationStatus.ended
            c.ended_at = now
        if stale:
            await self.db.commit()
            logger.info("Ended %d stale consultations", len(stale))
        return len(stale)

    # ---------- prescriptions ----------
    async def issue_prescription(self, actor: Actor, appointment_id: str, details: PrescriptionDetails) -> Prescription:
        ap = await self._appointment(appointment_id)
        doctor_status = await self.ledger.entitlement(ap.doctor_id)
        authorize(actor, Action.issue_prescription, ap.doctor_id, doctor_status)
        if ap.status not in (ApptStatus.approved, ApptStatus.completed):
            raise InvalidTransition(f"Cannot prescribe for a {ap.status.value} appointment")
        if not details.items:
            raise ValidationError("At least one medication is required")
        if details.pharmacy_id:
            pharmacy = await self.db.get(User, details.pharmacy_id)
            if not pharmacy or pharmacy.role != RoleEnum.pharmacy:
                raise NotFound("Pharmacy not found")

        rx = Prescription(
            id=str(uuid.uuid4()),
            doctor_id=ap.doctor_id,
            patient_id=ap.patient_id,
            appointment_id=ap.id,
            diagnosis=details.diagnosis,
            notes=details.notes,
            dispatch_status=DispatchStatus.ready,
            pharmacy_id=details.pharmacy_id,
            verify_code=gen_code(8),
            created_at=self.clock(),
        )
        for idx, it in enumerate(details.items):
            rx.items.append(PrescriptionItem(
                position=idx,
                drug=it.drug,
                dose=it.dose,
                frequency=it.frequency,
                duration=it.duration,
                notes=it.notes,
            ))
        self.db.add(rx)
        await self.db.flush()
        self.bus.record(EventType.prescription_ready, rx.id,
                        appointment_id=ap.id, doctor_id=ap.doctor_id, patient_id=ap.patient_id)
        await self._commit()
        await self.db.refresh(rx, attribute_names=["items"])
        logger.info("💊 Prescription %s issued for appointment %s", rx.id, ap.id)
        return rx

    async def dispatch(self, actor: Actor, prescription_id: str, pharmacy_id: str) -> Prescription:
        rx = await self._prescription(prescription_id)
        authorize(actor, Action.dispatch_prescription, pharmacy_id)
        pharmacy = await self.db.get(User, pharmacy_id)
        if not pharmacy or pharmacy.role != RoleEnum.pharmacy:
            raise NotFound("Pharmacy not found")
        if rx.dispatch_status != DispatchStatus.ready:
            raise InvalidTransition(f"Cannot dispatch a {rx.dispatch_status.value} prescription")
        if rx.pharmacy_id and rx.pharmacy_id != pharmacy_id:
            raise Forbidden("Prescription is assigned to another pharmacy")

        await self._advance_dispatch(
            rx, DispatchStatus.ready,
            or_(Prescription.pharmacy_id.is_(None), Prescription.pharmacy_id == pharmacy_id),
            pharmacy_id=pharmacy_id, dispatch_status=DispatchStatus.sent, dispatched_at=self.clock(),
        )
        self.bus.record(EventType.prescription_dispatched, rx.id,
                        pharmacy_id=pharmacy_id, patient_id=rx.patient_id)
        await self._commit()
        logger.info("Prescription %s sent by pharmacy %s", rx.id, pharmacy_id)
        return rx

    async def confirm_delivery(self, actor: Actor, prescription_id: str) -> Prescription:
        rx = await self._prescription(prescription_id)
        authorize(actor, Action.confirm_delivery, rx.pharmacy_id)
        if rx.dispatch_status != DispatchStatus.sent:
            raise InvalidTransition(f"Cannot deliver a {rx.dispatch_status.value} prescription")

        await self._advance_dispatch(
            rx, DispatchStatus.sent,
            dispatch_status=DispatchStatus.delivered, delivered_at=self.clock(),
        )
        self.bus.record(EventType.prescription_delivered, rx.id,
                        pharmacy_id=rx.pharmacy_id, patient_id=rx.patient_id)
        await self._commit()
        logger.info("Prescription %s delivered", rx.id)
        return rx

    async def get_prescription(self, actor: Actor, prescription_id: str) -> Prescription:
        rx = await self._prescription(prescription_id)
        if actor.id in (rx.doctor_id, rx.patient_id, rx.pharmacy_id):
            owner = actor.id
        else:
            owner = rx.patient_id
        authorize(actor, Action.view, owner)
        return rx

    async def list_prescriptions(self, actor: Actor, flt: PrescriptionFilter) -> tuple[int, list[Prescription]]:
        # participants only see their own prescriptions
        if actor.role == RoleEnum.doctor:
            flt.doctor_id = actor.id
        elif actor.role == RoleEnum.patient:
            flt.patient_id = actor.id
        elif actor.role == RoleEnum.pharmacy:
            flt.pharmacy_id = actor.id
        else:
            authorize(actor, Action.list_prescriptions)

        q = select(Prescription)
        if flt.doctor_id:
            q = q.where(Prescription.doctor_id == flt.doctor_id)
        if flt.patient_id:
            q = q.where(Prescription.patient_id == flt.patient_id)
        if flt.pharmacy_id:
            q = q.where(Prescription.pharmacy_id == flt.pharmacy_id)
        if flt.dispatch_status:
            q = q.where(Prescription.dispatch_status == flt.dispatch_status)

        total = (await self.db.execute(select(func.count()).select_from(q.subquery()))).scalar_one()
        page_size = max(1, min(200, flt.page_size))
        offset = (max(1, flt.page) - 1) * page_size
        res = await self.db.execute(
            q.options(selectinload(Prescription.items))
            .order_by(Prescription.created_at.desc())
            .offset(offset).limit(page_size)
        )
        return total, list(res.scalars().unique())
