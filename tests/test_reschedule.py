"""Tests for doctor reschedule requests and patient proposals."""

from datetime import time, timedelta
from types import SimpleNamespace

import pytest
import pytest_asyncio
from conftest import Factory, FakeClock, RecordingNotifier, doctor_actor, patient_actor
from sqlalchemy.ext.asyncio import AsyncSession

from clinicflow.core.exceptions import (
    BadRequestException,
    ForbiddenException,
    InvalidTransitionException,
    SlotUnavailableException,
    ValidationException,
)
from clinicflow.schemas.appointments import (
    AppointmentCreate,
    AppointmentStatus,
    DoctorApproval,
    DoctorRescheduleRequest,
    PaymentStatus,
    RescheduleProposal,
)
from clinicflow.schemas.invoices import PaymentCreate
from clinicflow.services.invoice_service import InvoiceLedger
from clinicflow.services.payment_service import PaymentService
from clinicflow.services.reschedule_service import RescheduleService

S = AppointmentStatus


@pytest_asyncio.fixture
async def schedule(factory: Factory, slot_day) -> SimpleNamespace:
    """A doctor with two free slots and a patient."""
    doctor_id = await factory.doctor(consultation_fee=100_000)
    patient_id = await factory.patient()
    first = await factory.slot(doctor_id, slot_day, time(9, 0), time(9, 30))
    second = await factory.slot(doctor_id, slot_day + timedelta(days=1), time(14, 0), time(14, 30))
    return SimpleNamespace(
        doctor=doctor_actor(doctor_id),
        patient=patient_actor(patient_id),
        doctor_id=doctor_id,
        slot_day=slot_day,
        first=first,
        second=second,
    )


async def book(service: RescheduleService, schedule: SimpleNamespace):
    return await service.book_appointment(
        schedule.patient, AppointmentCreate(doctor_id=schedule.doctor_id, schedule_id=schedule.first)
    )


async def book_and_pay(db_session: AsyncSession, service: RescheduleService, schedule: SimpleNamespace, clock):
    appointment = await book(service, schedule)
    invoice = await InvoiceLedger(db_session).find_pending(appointment.id)
    result = await PaymentService(db_session, clock=clock).process_payment(
        appointment.id, schedule.patient, PaymentCreate(invoice_id=invoice.id)
    )
    return result.appointment


@pytest.mark.asyncio
async def test_unpaid_appointment_returns_to_booked(
    db_session: AsyncSession,
    factory: Factory,
    schedule: SimpleNamespace,
    notifier: RecordingNotifier,
    clock: FakeClock,
    approval_mode: None,
) -> None:
    service = RescheduleService(db_session, notifier, clock=clock)
    appointment = await book(service, schedule)

    requested = await service.request_reschedule(
        appointment.id,
        schedule.doctor,
        DoctorRescheduleRequest(new_schedule_id=schedule.second, reason="Conference"),
    )
    assert requested.status is S.DOCTOR_RESCHEDULE
    assert requested.new_schedule_id == schedule.second
    assert requested.reschedule_reason == "Conference"
    assert requested.reschedule_proposal.proposed_by == "doctor"
    assert requested.reschedule_proposal.proposed_slots == [str(schedule.second)]
    assert "reschedule_requested" in notifier.types_for(schedule.patient.id)
    # The offered slot is not held until the patient accepts
    assert not await factory.slot_booked(schedule.second)

    accepted = await service.accept_reschedule(appointment.id, schedule.patient)
    assert accepted.status is S.BOOKED
    assert accepted.schedule_id == schedule.second
    assert accepted.new_schedule_id is None
    assert accepted.appointment_time == time(14, 0)
    assert accepted.reschedule_proposal.proposed_by == "doctor"
    assert accepted.reschedule_proposal.accepted_by == "patient"
    assert accepted.reschedule_proposal.accepted_at == clock()
    assert not await factory.slot_booked(schedule.first)
    assert await factory.slot_booked(schedule.second)
    assert "reschedule_accepted" in notifier.types_for(schedule.doctor_id)


@pytest.mark.asyncio
async def test_paid_appointment_returns_to_confirmed(
    db_session: AsyncSession,
    factory: Factory,
    schedule: SimpleNamespace,
    clock: FakeClock,
) -> None:
    service = RescheduleService(db_session, clock=clock)
    appointment = await book_and_pay(db_session, service, schedule, clock)
    assert appointment.status is S.CONFIRMED

    await service.request_reschedule(
        appointment.id, schedule.doctor, DoctorRescheduleRequest(new_schedule_id=schedule.second)
    )
    accepted = await service.accept_reschedule(appointment.id, schedule.patient)

    assert accepted.status is S.CONFIRMED
    assert accepted.schedule_id == schedule.second
    assert accepted.confirmed_at == appointment.confirmed_at


@pytest.mark.asyncio
async def test_reapproval_after_reschedule_reprices(
    db_session: AsyncSession,
    schedule: SimpleNamespace,
    clock: FakeClock,
) -> None:
    """The hold opened at booking is voided so the doctor's new fee is what the patient pays."""
    service = RescheduleService(db_session, clock=clock)
    appointment = await book(service, schedule)
    ledger = InvoiceLedger(db_session)
    original = await ledger.find_pending(appointment.id)
    assert original.subtotal == 100_000

    requested = await service.request_reschedule(
        appointment.id, schedule.doctor, DoctorRescheduleRequest(new_schedule_id=schedule.second)
    )
    assert requested.hold_expires_at is None
    assert await ledger.find_pending(appointment.id) is None
    await db_session.commit()

    await service.accept_reschedule(appointment.id, schedule.patient)
    approved = await service.approve(
        appointment.id, schedule.doctor, DoctorApproval(consultation_fee=300_000)
    )

    assert approved.status is S.AWAIT_PAYMENT
    assert approved.consultation_fee == 300_000
    assert approved.total_amount == 300_000
    invoices = await ledger.list_for_appointment(appointment.id)
    await db_session.commit()
    pending = [invoice for invoice in invoices if invoice.status is PaymentStatus.PENDING]
    assert len(pending) == 1
    assert pending[0].id != original.id
    assert pending[0].subtotal == 300_000
    assert {invoice.status for invoice in invoices if invoice.id == original.id} == {PaymentStatus.FAILED}


@pytest.mark.asyncio
async def test_decline_cancels_and_frees_slot(
    db_session: AsyncSession,
    factory: Factory,
    schedule: SimpleNamespace,
    notifier: RecordingNotifier,
    clock: FakeClock,
    approval_mode: None,
) -> None:
    service = RescheduleService(db_session, notifier, clock=clock)
    appointment = await book(service, schedule)
    await service.request_reschedule(
        appointment.id, schedule.doctor, DoctorRescheduleRequest(new_schedule_id=schedule.second)
    )

    declined = await service.decline_reschedule(appointment.id, schedule.patient)

    assert declined.status is S.CANCELLED
    assert declined.cancellation_reason == "Reschedule declined"
    assert declined.new_schedule_id is None
    assert declined.reschedule_proposal is None
    assert not await factory.slot_booked(schedule.first)
    assert not await factory.slot_booked(schedule.second)
    assert "reschedule_declined" in notifier.types_for(schedule.doctor_id)


@pytest.mark.asyncio
async def test_request_needs_a_free_other_slot(
    db_session: AsyncSession,
    factory: Factory,
    schedule: SimpleNamespace,
    clock: FakeClock,
    approval_mode: None,
) -> None:
    service = RescheduleService(db_session, clock=clock)
    appointment = await book(service, schedule)
    taken = await factory.slot(schedule.doctor_id, schedule.slot_day, time(16, 0), time(16, 30), is_booked=True)

    with pytest.raises(ValidationException):
        await service.request_reschedule(
            appointment.id, schedule.doctor, DoctorRescheduleRequest(new_schedule_id=schedule.first)
        )
    with pytest.raises(SlotUnavailableException):
        await service.request_reschedule(
            appointment.id, schedule.doctor, DoctorRescheduleRequest(new_schedule_id=taken)
        )
    with pytest.raises(ForbiddenException):
        await service.request_reschedule(
            appointment.id, schedule.patient, DoctorRescheduleRequest(new_schedule_id=schedule.second)
        )


@pytest.mark.asyncio
async def test_accept_without_offer_is_rejected(
    db_session: AsyncSession,
    schedule: SimpleNamespace,
    clock: FakeClock,
    approval_mode: None,
) -> None:
    service = RescheduleService(db_session, clock=clock)
    appointment = await book(service, schedule)

    with pytest.raises(BadRequestException):
        await service.accept_reschedule(appointment.id, schedule.patient)
    with pytest.raises(BadRequestException):
        await service.accept_reschedule(appointment.id, schedule.patient, schedule.second)
    with pytest.raises(InvalidTransitionException):
        await service.decline_reschedule(appointment.id, schedule.patient)


@pytest.mark.asyncio
async def test_patient_proposal_then_pick_slot(
    db_session: AsyncSession,
    factory: Factory,
    schedule: SimpleNamespace,
    notifier: RecordingNotifier,
    clock: FakeClock,
) -> None:
    """A proposal lets the patient move a confirmed visit without changing its status."""
    service = RescheduleService(db_session, notifier, clock=clock)
    appointment = await book_and_pay(db_session, service, schedule, clock)

    proposed = await service.propose_reschedule(
        appointment.id,
        schedule.patient,
        RescheduleProposal(proposed_slots=["Friday afternoon"], message="Work trip"),
    )
    proposal = proposed.reschedule_proposal
    assert proposed.status is S.CONFIRMED
    assert proposal is not None
    assert proposal.proposed_by == "patient"
    assert proposal.proposed_slots == ["Friday afternoon"]
    assert proposal.expires_at == clock() + timedelta(days=7)
    assert "reschedule_proposed" in notifier.types_for(schedule.doctor_id)

    moved = await service.accept_reschedule(appointment.id, schedule.patient, schedule.second)
    assert moved.status is S.CONFIRMED
    assert moved.schedule_id == schedule.second
    assert moved.reschedule_proposal.proposed_by == "patient"
    assert moved.reschedule_proposal.accepted_by == "patient"
    assert moved.reschedule_proposal.accepted_at == clock()
    assert not await factory.slot_booked(schedule.first)
    assert await factory.slot_booked(schedule.second)

    # An accepted proposal cannot move the visit a second time
    with pytest.raises(BadRequestException):
        await service.accept_reschedule(appointment.id, schedule.patient, schedule.first)


@pytest.mark.asyncio
async def test_expired_proposal_cannot_be_used(
    db_session: AsyncSession,
    schedule: SimpleNamespace,
    clock: FakeClock,
) -> None:
    service = RescheduleService(db_session, clock=clock)
    appointment = await book_and_pay(db_session, service, schedule, clock)
    await service.propose_reschedule(appointment.id, schedule.patient, RescheduleProposal())

    clock.advance(days=7, seconds=1)
    with pytest.raises(BadRequestException):
        await service.accept_reschedule(appointment.id, schedule.patient, schedule.second)


@pytest.mark.asyncio
async def test_only_patient_proposes(
    db_session: AsyncSession,
    schedule: SimpleNamespace,
    clock: FakeClock,
) -> None:
    service = RescheduleService(db_session, clock=clock)
    appointment = await book(service, schedule)

    with pytest.raises(ForbiddenException):
        await service.propose_reschedule(appointment.id, schedule.doctor, RescheduleProposal())
