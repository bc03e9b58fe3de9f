from datetime import timedelta

import pytest

from telecare.core.errors import (
    Forbidden, InvalidTransition, NotFound, ProviderUnavailable, SubscriptionRequired, ValidationError,
)
from telecare.models.appointment import ApptStatus
from telecare.models.consultation import ConsultationStatus
from telecare.models.prescription import DispatchStatus, Prescription
from telecare.models.user import RoleEnum
from telecare.services.care_sessions import MedicationItem, PrescriptionDetails, PrescriptionFilter
from telecare.services.events import Event, EventType

AMOXICILLIN = MedicationItem(drug="Amoxicilina 500mg", dose="1 comprimido", frequency="cada 8 horas", duration="7 días")


@pytest.fixture
async def approved(services, doctor, patient, as_actor, appointment_at):
    ap = await services.scheduler.book(as_actor(patient), doctor.id, patient.id, appointment_at, "Fiebre")
    return await services.scheduler.approve(as_actor(doctor), ap.id)


async def test_approval_creates_one_scheduled_consultation(services, approved, doctor, as_actor, provider, clock):
    c = await services.care.consultation_for_appointment(as_actor(doctor), approved.id)

    assert c.status == ConsultationStatus.scheduled
    assert c.is_provisioned
    assert c.meeting_url == f"https://video.test/{c.id}"
    assert provider.calls == [c.id]

    # redelivered approval event does not create a second consultation
    await services.care.on_appointment_approved(
        Event(EventType.appointment_approved, approved.id, clock())
    )
    again = await services.care.consultation_for_appointment(as_actor(doctor), approved.id)
    assert again.id == c.id
    assert provider.calls == [c.id]


async def test_provider_failure_keeps_the_approval(services, doctor, patient, as_actor, appointment_at, provider):
    provider.fail = True
    ap = await services.scheduler.book(as_actor(patient), doctor.id, patient.id, appointment_at)
    ap = await services.scheduler.approve(as_actor(doctor), ap.id)

    assert ap.status == ApptStatus.approved
    c = await services.care.consultation_for_appointment(as_actor(doctor), ap.id)
    assert not c.is_provisioned
    assert c.provisioning_error == "video provider down"

    with pytest.raises(ProviderUnavailable):
        await services.care.provision_room(c.id, raise_on_failure=True)

    provider.fail = False
    assert await services.care.retry_pending_rooms() == 1
    assert c.is_provisioned
    assert c.provisioning_error is None


async def test_join_and_end_session(services, approved, doctor, patient, as_actor, clock):
    c = await services.care.consultation_for_appointment(as_actor(patient), approved.id)

    c = await services.care.join_session(as_actor(patient), c.id)
    assert c.status == ConsultationStatus.in_progress
    started = c.started_at

    clock.advance(minutes=5)
    c = await services.care.join_session(as_actor(doctor), c.id)
    assert c.started_at == started

    c = await services.care.end_session(as_actor(doctor), c.id)
    assert c.status == ConsultationStatus.ended
    with pytest.raises(InvalidTransition):
        await services.care.join_session(as_actor(patient), c.id)


async def test_strangers_cannot_join(services, approved, make_user, doctor, as_actor):
    stranger = await make_user(RoleEnum.patient)
    c = await services.care.consultation_for_appointment(as_actor(doctor), approved.id)
    with pytest.raises(Forbidden):
        await services.care.join_session(as_actor(stranger), c.id)


async def test_cancelling_an_approved_appointment_cancels_the_consultation(services, approved, patient, as_actor):
    await services.scheduler.cancel(as_actor(patient), approved.id)

    c = await services.care.consultation_for_appointment(as_actor(patient), approved.id)
    assert c.status == ConsultationStatus.cancelled
    with pytest.raises(InvalidTransition):
        await services.care.join_session(as_actor(patient), c.id)
    with pytest.raises(InvalidTransition):
        await services.care.end_session(as_actor(patient), c.id)


async def test_cancelling_during_a_live_session_cancels_the_consultation(services, approved, doctor, patient, as_actor):
    c = await services.care.consultation_for_appointment(as_actor(patient), approved.id)
    c = await services.care.join_session(as_actor(doctor), c.id)
    assert c.status == ConsultationStatus.in_progress

    await services.scheduler.cancel(as_actor(patient), approved.id)

    c = await services.care.get_consultation(as_actor(patient), c.id)
    assert c.status == ConsultationStatus.cancelled


async def test_late_approval_event_does_not_revive_a_cancelled_appointment(services, doctor, patient, as_actor, appointment_at, clock, provider):
    ap = await services.scheduler.book(as_actor(patient), doctor.id, patient.id, appointment_at)
    await services.scheduler.cancel(as_actor(patient), ap.id)

    await services.care.on_appointment_approved(Event(EventType.appointment_approved, ap.id, clock()))

    with pytest.raises(NotFound):
        await services.care.consultation_for_appointment(as_actor(patient), ap.id)
    assert provider.calls == []


async def test_completing_the_appointment_ends_the_session(services, approved, doctor, as_actor, clock, appointment_at):
    clock.now = appointment_at + timedelta(minutes=30)
    await services.scheduler.complete(as_actor(doctor), approved.id)

    c = await services.care.consultation_for_appointment(as_actor(doctor), approved.id)
    assert c.status == ConsultationStatus.ended
    assert c.ended_at == clock()


async def test_stale_sessions_time_out(services, approved, doctor, as_actor, clock, appointment_at):
    clock.now = appointment_at + timedelta(minutes=44)
    assert await services.care.end_stale_sessions() == 0

    clock.now = appointment_at + timedelta(minutes=45)
    assert await services.care.end_stale_sessions() == 1
    c = await services.care.consultation_for_appointment(as_actor(doctor), approved.id)
    assert c.status == ConsultationStatus.ended


async def test_prescription_on_pending_appointment_is_invalid(services, doctor, patient, as_actor, appointment_at):
    ap = await services.scheduler.book(as_actor(patient), doctor.id, patient.id, appointment_at)
    with pytest.raises(InvalidTransition):
        await services.care.issue_prescription(as_actor(doctor), ap.id, PrescriptionDetails(items=[AMOXICILLIN]))


async def test_prescription_needs_items_and_an_active_doctor(services, approved, doctor, admin, as_actor):
    with pytest.raises(ValidationError):
        await services.care.issue_prescription(as_actor(doctor), approved.id, PrescriptionDetails())

    subs = await services.ledger.history(as_actor(doctor), doctor.id)
    await services.ledger.deactivate(as_actor(admin), subs[0].id)
    with pytest.raises(SubscriptionRequired):
        await services.care.issue_prescription(as_actor(doctor), approved.id, PrescriptionDetails(items=[AMOXICILLIN]))


async def test_dispatch_flow_only_advances(services, approved, doctor, patient, pharmacy, make_user, as_actor, sink):
    rx = await services.care.issue_prescription(
        as_actor(doctor), approved.id,
        PrescriptionDetails(items=[AMOXICILLIN, MedicationItem("Paracetamol 1g", "1", "cada 8 horas")],
                            diagnosis="Faringitis", pharmacy_id=pharmacy.id),
    )
    assert rx.dispatch_status == DispatchStatus.ready
    assert [it.drug for it in rx.items] == ["Amoxicilina 500mg", "Paracetamol 1g"]
    assert len(rx.verify_code) == 8
    assert "PrescriptionReady" in sink.types()

    with pytest.raises(InvalidTransition):
        await services.care.confirm_delivery(as_actor(pharmacy), rx.id)

    other_pharmacy = await make_user(RoleEnum.pharmacy)
    with pytest.raises(Forbidden):
        await services.care.dispatch(as_actor(other_pharmacy), rx.id, pharmacy.id)

    rx = await services.care.dispatch(as_actor(pharmacy), rx.id, pharmacy.id)
    assert rx.dispatch_status == DispatchStatus.sent
    with pytest.raises(InvalidTransition):
        await services.care.dispatch(as_actor(pharmacy), rx.id, pharmacy.id)

    rx = await services.care.confirm_delivery(as_actor(pharmacy), rx.id)
    assert rx.dispatch_status == DispatchStatus.delivered
    assert sink.types()[-2:] == ["PrescriptionDispatched", "PrescriptionDelivered"]


async def test_prescription_reads_are_scoped(services, approved, doctor, patient, pharmacy, make_user, as_actor):
    rx = await services.care.issue_prescription(as_actor(doctor), approved.id, PrescriptionDetails(items=[AMOXICILLIN]))

    assert (await services.care.get_prescription(as_actor(patient), rx.id)).id == rx.id
    stranger = await make_user(RoleEnum.patient)
    with pytest.raises(Forbidden):
        await services.care.get_prescription(as_actor(stranger), rx.id)
    with pytest.raises(NotFound):
        await services.care.get_prescription(as_actor(patient), "missing")

    total, items = await services.care.list_prescriptions(as_actor(patient), PrescriptionFilter())
    assert total == 1 and items[0].items[0].drug == AMOXICILLIN.drug
    total, _ = await services.care.list_prescriptions(as_actor(pharmacy), PrescriptionFilter())
    assert total == 0


async def test_stale_dispatch_cannot_regress_a_delivery(session_factory, make_services, services, approved, doctor, pharmacy, as_actor):
    rx = await services.care.issue_prescription(
        as_actor(doctor), approved.id, PrescriptionDetails(items=[AMOXICILLIN], pharmacy_id=pharmacy.id),
    )

    async with session_factory() as s1, session_factory() as s2:
        late, current = make_services(s1), make_services(s2)
        seen = await late.care.get_prescription(as_actor(pharmacy), rx.id)
        assert seen.dispatch_status == DispatchStatus.ready

        await current.care.dispatch(as_actor(pharmacy), rx.id, pharmacy.id)
        await current.care.confirm_delivery(as_actor(pharmacy), rx.id)

        with pytest.raises(InvalidTransition):
            await late.care.dispatch(as_actor(pharmacy), rx.id, pharmacy.id)

    async with session_factory() as fresh:
        final = await fresh.get(Prescription, rx.id)
        assert final.dispatch_status == DispatchStatus.delivered
