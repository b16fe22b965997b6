"""Tests for consultation extensions and the next patient's consent."""

from datetime import time, timedelta
from types import SimpleNamespace

import pytest
import pytest_asyncio
from conftest import Factory, FakeClock, RecordingNotifier, doctor_actor, patient_actor
from sqlalchemy.ext.asyncio import AsyncSession

from clinicflow.core.exceptions import (
    ConflictException,
    ConsentExpiredException,
    ForbiddenException,
    NotFoundException,
)
from clinicflow.schemas.appointments import (
    AppointmentCreate,
    AppointmentStatus,
    ExtensionRequest,
    ExtensionStatus,
)
from clinicflow.schemas.invoices import PaymentCreate
from clinicflow.services.extension_service import ExtensionService
from clinicflow.services.invoice_service import InvoiceLedger
from clinicflow.services.payment_service import PaymentService

SHIFT_NOTE = "[Shifted by 10 minutes due to previous appointment]"


@pytest_asyncio.fixture
async def morning(
    db_session: AsyncSession,
    factory: Factory,
    slot_day,
    clock: FakeClock,
) -> SimpleNamespace:
    """Two paid back-to-back visits with the same doctor; the first is under way."""
    doctor_id = await factory.doctor(consultation_fee=100_000)
    patients = [await factory.patient(), await factory.patient(full_name="Le Thi B")]
    starts = [(time(9, 0), time(9, 30)), (time(9, 30), time(10, 0))]

    payments = PaymentService(db_session, clock=clock)
    booked = []
    for patient_id, (start, end) in zip(patients, starts):
        slot_id = await factory.slot(doctor_id, slot_day, start, end)
        appointment = await payments.book_appointment(
            patient_actor(patient_id), AppointmentCreate(doctor_id=doctor_id, schedule_id=slot_id)
        )
        invoice = await InvoiceLedger(db_session).find_pending(appointment.id)
        await payments.process_payment(
            appointment.id, patient_actor(patient_id), PaymentCreate(invoice_id=invoice.id)
        )
        booked.append(appointment)
        clock.advance(seconds=1)

    first, second = booked
    await payments.start_consultation(first.id, doctor_actor(doctor_id))
    return SimpleNamespace(
        doctor=doctor_actor(doctor_id),
        doctor_id=doctor_id,
        first=first,
        second=second,
        first_patient=patient_actor(patients[0]),
        second_patient=patient_actor(patients[1]),
    )


@pytest.mark.asyncio
async def test_request_targets_next_appointment(
    db_session: AsyncSession,
    morning: SimpleNamespace,
    notifier: RecordingNotifier,
    clock: FakeClock,
) -> None:
    service = ExtensionService(db_session, notifier, clock=clock)

    appointment = await service.request_extension(
        morning.first.id, morning.doctor, ExtensionRequest(minutes=10, reason="Complex case")
    )

    extension = appointment.extension
    assert extension is not None
    assert extension.status is ExtensionStatus.CONSENT_PENDING
    assert extension.minutes == 10
    assert extension.target_appointment_id == morning.second.id
    assert extension.consent_expires_at == clock() + timedelta(minutes=3)

    consent = [n for n in notifier.sent if n["notification_type"] == "extension_consent"]
    assert len(consent) == 1
    assert consent[0]["user_id"] == morning.second_patient.id
    assert consent[0]["meta"] == {
        "appointment_id": str(morning.second.id),
        "from_appointment_id": str(morning.first.id),
        "minutes": "10",
    }


@pytest.mark.asyncio
async def test_accept_shifts_next_appointment(
    db_session: AsyncSession,
    factory: Factory,
    morning: SimpleNamespace,
    notifier: RecordingNotifier,
    clock: FakeClock,
) -> None:
    service = ExtensionService(db_session, notifier, clock=clock)
    await service.request_extension(morning.first.id, morning.doctor, ExtensionRequest(minutes=10))

    clock.advance(minutes=2)
    target = await service.respond_extension(morning.second.id, morning.second_patient, accept=True)

    assert SHIFT_NOTE in target.notes
    assert target.status is AppointmentStatus.CONFIRMED

    requester = await factory.appointment(morning.first.id)
    assert requester.extension.status is ExtensionStatus.ACCEPTED
    assert requester.extension.consent_by == morning.second_patient.id
    assert requester.extension.applied_at == clock()
    assert "extension_accepted" in notifier.types_for(morning.doctor_id)


@pytest.mark.asyncio
async def test_decline_leaves_next_appointment_untouched(
    db_session: AsyncSession,
    factory: Factory,
    morning: SimpleNamespace,
    notifier: RecordingNotifier,
    clock: FakeClock,
) -> None:
    service = ExtensionService(db_session, notifier, clock=clock)
    await service.request_extension(morning.first.id, morning.doctor, ExtensionRequest(minutes=10))

    target = await service.respond_extension(morning.second.id, morning.second_patient, accept=False)

    assert target.notes == morning.second.notes
    requester = await factory.appointment(morning.first.id)
    assert requester.extension.status is ExtensionStatus.DECLINED
    assert requester.extension.consent_response == "decline"
    assert "extension_declined" in notifier.types_for(morning.doctor_id)

    # Already answered
    with pytest.raises(NotFoundException):
        await service.respond_extension(morning.second.id, morning.second_patient, accept=True)


@pytest.mark.asyncio
async def test_late_answer_times_out(
    db_session: AsyncSession,
    factory: Factory,
    morning: SimpleNamespace,
    clock: FakeClock,
) -> None:
    """An answer after the consent window is refused and the timeout sticks."""
    service = ExtensionService(db_session, clock=clock)
    await service.request_extension(morning.first.id, morning.doctor, ExtensionRequest(minutes=10))

    clock.advance(minutes=3, seconds=1)
    with pytest.raises(ConsentExpiredException):
        await service.respond_extension(morning.second.id, morning.second_patient, accept=True)

    requester = await factory.appointment(morning.first.id)
    assert requester.extension.status is ExtensionStatus.TIMEOUT
    target = await factory.appointment(morning.second.id)
    assert not target.notes


@pytest.mark.asyncio
async def test_only_next_patient_answers(
    db_session: AsyncSession,
    morning: SimpleNamespace,
    clock: FakeClock,
) -> None:
    service = ExtensionService(db_session, clock=clock)
    await service.request_extension(morning.first.id, morning.doctor, ExtensionRequest(minutes=10))

    with pytest.raises(ForbiddenException):
        await service.respond_extension(morning.second.id, morning.first_patient, accept=True)


@pytest.mark.asyncio
async def test_one_pending_request_at_a_time(
    db_session: AsyncSession,
    morning: SimpleNamespace,
    clock: FakeClock,
) -> None:
    service = ExtensionService(db_session, clock=clock)
    await service.request_extension(morning.first.id, morning.doctor, ExtensionRequest(minutes=10))

    with pytest.raises(ConflictException):
        await service.request_extension(morning.first.id, morning.doctor, ExtensionRequest(minutes=5))

    # Once the window lapses a fresh request may be made
    clock.advance(minutes=4)
    renewed = await service.request_extension(
        morning.first.id, morning.doctor, ExtensionRequest(minutes=5)
    )
    assert renewed.extension.minutes == 5
    assert renewed.extension.status is ExtensionStatus.CONSENT_PENDING


@pytest.mark.asyncio
async def test_patient_cannot_request_extension(
    db_session: AsyncSession,
    morning: SimpleNamespace,
    clock: FakeClock,
) -> None:
    service = ExtensionService(db_session, clock=clock)

    with pytest.raises(ForbiddenException):
        await service.request_extension(
            morning.first.id, morning.first_patient, ExtensionRequest(minutes=10)
        )


@pytest.mark.asyncio
async def test_get_extension_marks_timeout(
    db_session: AsyncSession,
    factory: Factory,
    morning: SimpleNamespace,
    clock: FakeClock,
) -> None:
    service = ExtensionService(db_session, clock=clock)
    await service.request_extension(morning.first.id, morning.doctor, ExtensionRequest(minutes=10))

    pending = await service.get_extension(morning.first.id, morning.doctor)
    await db_session.commit()
    assert pending.status is ExtensionStatus.CONSENT_PENDING

    clock.advance(minutes=5)
    lapsed = await service.get_extension(morning.first.id, morning.doctor)
    assert lapsed.status is ExtensionStatus.TIMEOUT
    assert (await factory.appointment(morning.first.id)).extension.status is ExtensionStatus.TIMEOUT


@pytest.mark.asyncio
async def test_last_appointment_of_day_has_no_target(
    db_session: AsyncSession,
    morning: SimpleNamespace,
    notifier: RecordingNotifier,
    clock: FakeClock,
) -> None:
    """Extending the last visit of the day asks nobody."""
    service = ExtensionService(db_session, notifier, clock=clock)
    await service.start_consultation(morning.second.id, morning.doctor)

    appointment = await service.request_extension(
        morning.second.id, morning.doctor, ExtensionRequest(minutes=15)
    )

    assert appointment.extension.target_appointment_id is None
    assert "extension_consent" not in notifier.types_for(morning.second_patient.id)
