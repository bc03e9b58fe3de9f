import asyncio
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from telecare.core.errors import (
    DoctorUnavailable, Forbidden, InvalidTransition, NotFound, PastDateError,
    SchedulingConflict, SubscriptionRequired, ValidationError,
)
from telecare.models.appointment import Appointment, ApptStatus
from telecare.models.consultation import VideoConsultation
from telecare.models.user import RoleEnum
from telecare.services.scheduler import AppointmentFilter, AppointmentScheduler


async def _count_appointments(db) -> int:
    return (await db.execute(select(func.count()).select_from(Appointment))).scalar_one()


async def test_book_creates_a_pending_appointment(services, doctor, patient, as_actor, appointment_at, sink):
    ap = await services.scheduler.book(as_actor(patient), doctor.id, patient.id, appointment_at, "Control")

    assert ap.status == ApptStatus.pending
    assert ap.appointment_at == appointment_at
    assert ap.slot_key is not None
    assert sink.types()[-1] == "AppointmentBooked"


async def test_book_in_the_past_creates_nothing(services, doctor, patient, as_actor, clock, db):
    with pytest.raises(PastDateError):
        await services.scheduler.book(as_actor(patient), doctor.id, patient.id, clock() - timedelta(minutes=1))
    with pytest.raises(PastDateError):
        await services.scheduler.book(as_actor(patient), doctor.id, patient.id, clock())
    assert await _count_appointments(db) == 0


async def test_book_rejects_naive_datetimes(services, doctor, patient, as_actor):
    with pytest.raises(ValidationError):
        await services.scheduler.book(as_actor(patient), doctor.id, patient.id, datetime(2025, 6, 10, 14, 30))


async def test_book_validates_participants(services, doctor, patient, pharmacy, as_actor, appointment_at):
    with pytest.raises(NotFound):
        await services.scheduler.book(as_actor(patient), pharmacy.id, patient.id, appointment_at)
    with pytest.raises(NotFound):
        await services.scheduler.book(as_actor(patient), doctor.id, "missing", appointment_at)


async def test_book_needs_an_entitled_doctor(services, make_user, patient, as_actor, appointment_at):
    unsubscribed = await make_user(RoleEnum.doctor)
    with pytest.raises(DoctorUnavailable):
        await services.scheduler.book(as_actor(patient), unsubscribed.id, patient.id, appointment_at)


async def test_patient_books_only_for_themselves(services, doctor, patient, make_user, as_actor, appointment_at):
    other = await make_user(RoleEnum.patient)
    with pytest.raises(Forbidden):
        await services.scheduler.book(as_actor(other), doctor.id, patient.id, appointment_at)


async def test_overlapping_slot_conflicts(services, doctor, patient, make_user, as_actor, appointment_at, db):
    other = await make_user(RoleEnum.patient)
    await services.scheduler.book(as_actor(patient), doctor.id, patient.id, appointment_at)

    with pytest.raises(SchedulingConflict):
        await services.scheduler.book(as_actor(other), doctor.id, other.id, appointment_at + timedelta(minutes=29))
    with pytest.raises(SchedulingConflict):
        await services.scheduler.book(as_actor(other), doctor.id, other.id, appointment_at - timedelta(minutes=15))

    # back-to-back slots are fine
    await services.scheduler.book(as_actor(other), doctor.id, other.id, appointment_at + timedelta(minutes=30))
    assert await _count_appointments(db) == 2


async def test_cancelled_slot_can_be_rebooked(services, doctor, patient, as_actor, appointment_at):
    ap = await services.scheduler.book(as_actor(patient), doctor.id, patient.id, appointment_at)
    await services.scheduler.cancel(as_actor(patient), ap.id)

    again = await services.scheduler.book(as_actor(patient), doctor.id, patient.id, appointment_at)
    assert again.status == ApptStatus.pending
    assert ap.slot_key is None


async def test_storage_uniqueness_backs_the_conflict_check(services, doctor, patient, as_actor, appointment_at, db):
    doctor_id, patient_id = doctor.id, patient.id
    actor = as_actor(patient)
    # a released row that still holds its slot key, as a concurrent writer would leave it
    db.add(Appointment(
        doctor_id=doctor_id, patient_id=patient_id, appointment_at=appointment_at,
        status=ApptStatus.cancelled, slot_key=services.scheduler.slot_key(appointment_at),
    ))
    await db.commit()

    with pytest.raises(SchedulingConflict):
        await services.scheduler.book(actor, doctor_id, patient_id, appointment_at)


async def test_concurrent_bookings_one_wins(session_factory, make_services, doctor, patient, make_user, as_actor, appointment_at):
    other = await make_user(RoleEnum.patient)

    async with session_factory() as s1, session_factory() as s2:
        first, second = make_services(s1), make_services(s2)
        results = await asyncio.gather(
            first.scheduler.book(as_actor(patient), doctor.id, patient.id, appointment_at),
            second.scheduler.book(as_actor(other), doctor.id, other.id, appointment_at + timedelta(minutes=10)),
            return_exceptions=True,
        )

    booked = [r for r in results if isinstance(r, Appointment)]
    conflicts = [r for r in results if isinstance(r, SchedulingConflict)]
    assert len(booked) == 1
    assert len(conflicts) == 1


async def test_approve_only_from_pending(services, doctor, patient, as_actor, appointment_at):
    ap = await services.scheduler.book(as_actor(patient), doctor.id, patient.id, appointment_at)
    ap = await services.scheduler.approve(as_actor(doctor), ap.id)
    assert ap.status == ApptStatus.approved

    with pytest.raises(InvalidTransition):
        await services.scheduler.approve(as_actor(doctor), ap.id)
    assert ap.status == ApptStatus.approved


async def test_approve_requires_an_active_subscription(services, doctor, patient, admin, as_actor, appointment_at, clock):
    ap = await services.scheduler.book(as_actor(patient), doctor.id, patient.id, appointment_at)
    subs = await services.ledger.history(as_actor(doctor), doctor.id)
    await services.ledger.deactivate(as_actor(admin), subs[0].id)

    with pytest.raises(SubscriptionRequired):
        await services.scheduler.approve(as_actor(doctor), ap.id)
    assert (await services.scheduler.get_appointment(ap.id)).status == ApptStatus.pending

    await services.ledger.reactivate(as_actor(admin), subs[0].id, clock() + timedelta(days=30))
    ap = await services.scheduler.approve(as_actor(doctor), ap.id)
    assert ap.status == ApptStatus.approved


async def test_approve_after_expiry_is_refused(services, doctor, patient, as_actor, appointment_at, clock):
    ap = await services.scheduler.book(as_actor(patient), doctor.id, patient.id, appointment_at)
    clock.advance(days=31)
    with pytest.raises(SubscriptionRequired):
        await services.scheduler.approve(as_actor(doctor), ap.id)


async def test_only_the_doctor_declines(services, doctor, patient, as_actor, appointment_at):
    ap = await services.scheduler.book(as_actor(patient), doctor.id, patient.id, appointment_at)
    with pytest.raises(Forbidden):
        await services.scheduler.decline(as_actor(patient), ap.id)

    ap = await services.scheduler.decline(as_actor(doctor), ap.id)
    assert ap.status == ApptStatus.cancelled
    assert ap.cancelled_by == doctor.id


async def test_cancel_rules(services, doctor, patient, make_user, as_actor, appointment_at, clock):
    stranger = await make_user(RoleEnum.patient)
    ap = await services.scheduler.book(as_actor(patient), doctor.id, patient.id, appointment_at)

    with pytest.raises(Forbidden):
        await services.scheduler.cancel(as_actor(stranger), ap.id)

    clock.now = appointment_at
    with pytest.raises(InvalidTransition):
        await services.scheduler.cancel(as_actor(patient), ap.id)
    assert ap.status == ApptStatus.pending


async def test_cancel_terminal_is_invalid(services, doctor, patient, as_actor, appointment_at):
    ap = await services.scheduler.book(as_actor(patient), doctor.id, patient.id, appointment_at)
    await services.scheduler.cancel(as_actor(patient), ap.id)
    with pytest.raises(InvalidTransition):
        await services.scheduler.cancel(as_actor(doctor), ap.id)
    with pytest.raises(InvalidTransition):
        await services.scheduler.approve(as_actor(doctor), ap.id)


async def test_stale_approve_loses_to_a_committed_cancel(session_factory, make_services, services, doctor, patient, as_actor, appointment_at):
    ap = await services.scheduler.book(as_actor(patient), doctor.id, patient.id, appointment_at)

    async with session_factory() as s1, session_factory() as s2:
        doctor_side, patient_side = make_services(s1), make_services(s2)
        seen = await doctor_side.scheduler.get_appointment(ap.id)
        assert seen.status == ApptStatus.pending

        await patient_side.scheduler.cancel(as_actor(patient), ap.id)

        # doctor_side still holds the PENDING copy it read earlier
        with pytest.raises(InvalidTransition):
            await doctor_side.scheduler.approve(as_actor(doctor), ap.id)
        assert seen.status == ApptStatus.cancelled

    async with session_factory() as fresh:
        final = await fresh.get(Appointment, ap.id)
        assert final.status == ApptStatus.cancelled
        assert final.slot_key is None
        consultations = (await fresh.execute(select(func.count()).select_from(VideoConsultation))).scalar_one()
        assert consultations == 0


async def test_stale_cancel_loses_to_a_committed_completion(session_factory, make_services, services, doctor, patient, as_actor, appointment_at, clock):
    ap = await services.scheduler.book(as_actor(patient), doctor.id, patient.id, appointment_at)
    await services.scheduler.approve(as_actor(doctor), ap.id)

    async with session_factory() as s1, session_factory() as s2:
        patient_side, doctor_side = make_services(s1), make_services(s2)
        await patient_side.scheduler.get_appointment(ap.id)

        clock.now = appointment_at + timedelta(minutes=30)
        await doctor_side.scheduler.complete(as_actor(doctor), ap.id)

        # back before the cutoff, so only the stored status can refuse
        clock.now = appointment_at - timedelta(hours=1)
        with pytest.raises(InvalidTransition):
            await patient_side.scheduler.cancel(as_actor(patient), ap.id)

    async with session_factory() as fresh:
        assert (await fresh.get(Appointment, ap.id)).status == ApptStatus.completed


async def test_cancellation_cutoff_window(db, services, doctor, patient, as_actor, appointment_at, clock):
    strict = AppointmentScheduler(db, services.bus, services.ledger, clock=clock, cancellation_cutoff_minutes=60)
    ap = await strict.book(as_actor(patient), doctor.id, patient.id, appointment_at)

    clock.now = appointment_at - timedelta(minutes=30)
    with pytest.raises(InvalidTransition):
        await strict.cancel(as_actor(patient), ap.id)
    with pytest.raises(InvalidTransition):
        await strict.decline(as_actor(doctor), ap.id)
    assert (await strict.get_appointment(ap.id)).status == ApptStatus.pending

    clock.now = appointment_at - timedelta(minutes=61)
    ap = await strict.cancel(as_actor(patient), ap.id)
    assert ap.status == ApptStatus.cancelled


async def test_complete_after_the_appointment(services, doctor, patient, as_actor, appointment_at, clock, sink):
    ap = await services.scheduler.book(as_actor(patient), doctor.id, patient.id, appointment_at)
    with pytest.raises(InvalidTransition):
        await services.scheduler.complete(as_actor(doctor), ap.id)

    await services.scheduler.approve(as_actor(doctor), ap.id)
    with pytest.raises(InvalidTransition):
        await services.scheduler.complete(as_actor(doctor), ap.id)

    clock.now = appointment_at + timedelta(minutes=20)
    ap = await services.scheduler.complete(as_actor(doctor), ap.id)
    assert ap.status == ApptStatus.completed
    assert ap.slot_key is None

    # idempotent
    await services.scheduler.complete(as_actor(doctor), ap.id)
    assert sink.types().count("AppointmentCompleted") == 1


async def test_list_is_scoped_and_paginated(services, doctor, patient, make_user, as_actor, appointment_at, admin):
    other = await make_user(RoleEnum.patient)
    for i in range(3):
        await services.scheduler.book(as_actor(patient), doctor.id, patient.id, appointment_at + timedelta(hours=i))
    await services.scheduler.book(as_actor(other), doctor.id, other.id, appointment_at + timedelta(days=1))

    total, items = await services.scheduler.list_appointments(as_actor(patient), AppointmentFilter(page_size=2))
    assert total == 3
    assert len(items) == 2
    assert all(ap.patient_id == patient.id for ap in items)

    total, _ = await services.scheduler.list_appointments(as_actor(doctor), AppointmentFilter())
    assert total == 4

    total, items = await services.scheduler.list_appointments(
        as_actor(admin), AppointmentFilter(status=ApptStatus.approved)
    )
    assert (total, items) == (0, [])


async def test_available_slots_skip_booked_and_past(services, doctor, patient, as_actor, appointment_at, clock):
    day = date(2025, 6, 10)
    slots = await services.scheduler.available_slots(doctor.id, day)
    assert len(slots) == 16  # 09:00 - 17:00 every 30 minutes
    assert slots[0] == datetime(2025, 6, 10, 9, 0, tzinfo=timezone.utc)

    await services.scheduler.book(as_actor(patient), doctor.id, patient.id, appointment_at)
    slots = await services.scheduler.available_slots(doctor.id, day)
    assert appointment_at not in slots
    assert len(slots) == 15

    clock.now = datetime(2025, 6, 10, 16, 0, tzinfo=timezone.utc)
    slots = await services.scheduler.available_slots(doctor.id, day)
    assert slots == [datetime(2025, 6, 10, 16, 30, tzinfo=timezone.utc)]
