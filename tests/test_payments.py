"""Tests for payment capture, hold expiry and refunds."""

from datetime import time, timedelta
from types import SimpleNamespace

import pytest
import pytest_asyncio
from conftest import Factory, FakeClock, RecordingNotifier, doctor_actor, patient_actor
from sqlalchemy.ext.asyncio import AsyncSession

from clinicflow.core.exceptions import (
    ConflictException,
    ForbiddenException,
    HoldExpiredException,
    ValidationException,
)
from clinicflow.schemas.appointments import (
    AppointmentCreate,
    AppointmentStatus,
    DoctorApproval,
    PaymentStatus,
)
from clinicflow.schemas.invoices import PaymentCreate, PaymentMethod, RefundRequest
from clinicflow.services.appointment_service import AppointmentService
from clinicflow.services.invoice_service import InvoiceLedger
from clinicflow.services.payment_service import PaymentService

S = AppointmentStatus


@pytest_asyncio.fixture
async def held(
    db_session: AsyncSession,
    factory: Factory,
    slot_day,
    notifier: RecordingNotifier,
    clock: FakeClock,
) -> SimpleNamespace:
    """An appointment awaiting payment with its consultation invoice."""
    doctor_id = await factory.doctor(consultation_fee=150_000)
    patient_id = await factory.patient()
    slot_id = await factory.slot(doctor_id, slot_day, time(9, 0), time(9, 30))

    service = AppointmentService(db_session, notifier, clock=clock)
    appointment = await service.book_appointment(
        patient_actor(patient_id), AppointmentCreate(doctor_id=doctor_id, schedule_id=slot_id)
    )
    invoice = await InvoiceLedger(db_session).find_pending(appointment.id)
    await db_session.commit()
    return SimpleNamespace(
        doctor_id=doctor_id,
        patient_id=patient_id,
        slot_id=slot_id,
        appointment=appointment,
        invoice=invoice,
    )


def payment_service(db_session: AsyncSession, notifier: RecordingNotifier, clock: FakeClock) -> PaymentService:
    return PaymentService(db_session, notifier, clock=clock)


@pytest.mark.asyncio
async def test_payment_confirms_appointment(
    db_session: AsyncSession,
    held: SimpleNamespace,
    notifier: RecordingNotifier,
    clock: FakeClock,
) -> None:
    """Paying just before the deadline moves AWAIT_PAYMENT through PAID to CONFIRMED."""
    clock.advance(minutes=14, seconds=59)
    service = payment_service(db_session, notifier, clock)

    result = await service.process_payment(
        held.appointment.id,
        patient_actor(held.patient_id),
        PaymentCreate(invoice_id=held.invoice.id, payment_method=PaymentMethod.E_WALLET, transaction_id="TX-1"),
    )

    assert result.appointment.status is S.CONFIRMED
    assert result.appointment.payment_status is PaymentStatus.CAPTURED
    assert result.invoice.status is PaymentStatus.CAPTURED
    assert result.invoice.paid_at == clock()
    assert result.payment.amount == 150_000
    assert result.payment.payment_method == "e_wallet"
    assert result.payment.transaction_id == "TX-1"
    assert "payment_received" in notifier.types_for(held.doctor_id)


@pytest.mark.asyncio
async def test_invoice_cannot_be_paid_twice(
    db_session: AsyncSession,
    held: SimpleNamespace,
    clock: FakeClock,
) -> None:
    service = PaymentService(db_session, clock=clock)
    actor = patient_actor(held.patient_id)
    await service.process_payment(held.appointment.id, actor, PaymentCreate(invoice_id=held.invoice.id))

    with pytest.raises(ConflictException):
        await service.process_payment(held.appointment.id, actor, PaymentCreate(invoice_id=held.invoice.id))


@pytest.mark.asyncio
async def test_payment_after_deadline_expires_hold(
    db_session: AsyncSession,
    factory: Factory,
    held: SimpleNamespace,
    notifier: RecordingNotifier,
    clock: FakeClock,
) -> None:
    """A late payment is refused and the overdue transition still sticks."""
    clock.advance(minutes=15, seconds=1)
    service = payment_service(db_session, notifier, clock)

    with pytest.raises(HoldExpiredException):
        await service.process_payment(
            held.appointment.id,
            patient_actor(held.patient_id),
            PaymentCreate(invoice_id=held.invoice.id),
        )

    appointment = await factory.appointment(held.appointment.id)
    assert appointment.status is S.PAYMENT_OVERDUE
    assert not await factory.slot_booked(held.slot_id)

    payments = await InvoiceLedger(db_session).list_payments(held.appointment.id)
    invoice = await InvoiceLedger(db_session).get_invoice(held.invoice.id)
    await db_session.commit()
    assert payments == []
    assert invoice.status is PaymentStatus.FAILED
    assert "payment_overdue" in notifier.types_for(held.patient_id)


@pytest.mark.asyncio
async def test_only_patient_or_admin_pays(
    db_session: AsyncSession,
    held: SimpleNamespace,
    clock: FakeClock,
) -> None:
    service = PaymentService(db_session, clock=clock)

    with pytest.raises(ForbiddenException):
        await service.process_payment(
            held.appointment.id,
            doctor_actor(held.doctor_id),
            PaymentCreate(invoice_id=held.invoice.id),
        )


@pytest.mark.asyncio
async def test_lazy_expiry_on_read(
    db_session: AsyncSession,
    factory: Factory,
    held: SimpleNamespace,
    clock: FakeClock,
) -> None:
    """Reading a lapsed hold corrects it even without the sweeper."""
    service = AppointmentService(db_session, clock=clock)
    actor = patient_actor(held.patient_id)

    clock.advance(minutes=14)
    fresh = await service.get_appointment(held.appointment.id, actor)
    await db_session.commit()
    assert fresh.status is S.AWAIT_PAYMENT

    clock.advance(minutes=2)
    lapsed = await service.get_appointment(held.appointment.id, actor)
    assert lapsed.status is S.PAYMENT_OVERDUE
    assert not await factory.slot_booked(held.slot_id)


@pytest.mark.asyncio
async def test_lazy_expiry_on_list(
    db_session: AsyncSession,
    held: SimpleNamespace,
    clock: FakeClock,
) -> None:
    service = AppointmentService(db_session, clock=clock)

    clock.advance(minutes=16)
    listing = await service.list_patient_appointments(patient_actor(held.patient_id))
    await db_session.commit()

    assert listing.total == 1
    assert listing.items[0].status is S.PAYMENT_OVERDUE


@pytest.mark.asyncio
async def test_overdue_appointment_can_be_closed(
    db_session: AsyncSession,
    held: SimpleNamespace,
    clock: FakeClock,
) -> None:
    service = AppointmentService(db_session, clock=clock)
    actor = patient_actor(held.patient_id)
    clock.advance(minutes=16)
    await service.get_appointment(held.appointment.id, actor)

    closed = await service.close(held.appointment.id, actor)
    assert closed.status is S.CLOSED


@pytest.mark.asyncio
async def test_payment_status_lists_invoices_and_payments(
    db_session: AsyncSession,
    held: SimpleNamespace,
    clock: FakeClock,
) -> None:
    service = PaymentService(db_session, clock=clock)
    actor = patient_actor(held.patient_id)
    await service.process_payment(held.appointment.id, actor, PaymentCreate(invoice_id=held.invoice.id))

    status = await service.get_payment_status(held.appointment.id, actor)
    await db_session.commit()

    assert status.appointment.status is S.CONFIRMED
    assert [invoice.id for invoice in status.invoices] == [held.invoice.id]
    assert len(status.payments) == 1
    assert status.payments[0].status is PaymentStatus.CAPTURED


@pytest.mark.asyncio
async def test_invoice_created_once_for_approved_appointment(
    db_session: AsyncSession,
    factory: Factory,
    slot_day,
    clock: FakeClock,
    approval_mode: None,
) -> None:
    """Repeated reads of an approved appointment reuse one pending invoice."""
    doctor_id = await factory.doctor(consultation_fee=100_000)
    patient_id = await factory.patient()
    slot_id = await factory.slot(doctor_id, slot_day)
    service = PaymentService(db_session, clock=clock)
    appointment = await service.book_appointment(
        patient_actor(patient_id), AppointmentCreate(doctor_id=doctor_id, schedule_id=slot_id)
    )
    await service.approve(appointment.id, doctor_actor(doctor_id), DoctorApproval(deposit_amount=20_000))

    first = await service.create_or_fetch_invoice(appointment.id, patient_actor(patient_id))
    second = await service.create_or_fetch_invoice(appointment.id, patient_actor(patient_id))
    invoices = await service.ledger.list_for_appointment(appointment.id)
    await db_session.commit()

    assert first.id == second.id
    assert len(invoices) == 1
    assert first.patient_amount == 120_000
    assert [item.item_type for item in first.items] == ["facility", "doctor_fee", "deposit"]


@pytest.mark.asyncio
async def test_full_refund_cancels_and_releases(
    db_session: AsyncSession,
    factory: Factory,
    held: SimpleNamespace,
    notifier: RecordingNotifier,
    clock: FakeClock,
) -> None:
    service = payment_service(db_session, notifier, clock)
    paid = await service.process_payment(
        held.appointment.id, patient_actor(held.patient_id), PaymentCreate(invoice_id=held.invoice.id)
    )

    result = await service.refund_payment(
        paid.payment.id, doctor_actor(held.doctor_id), RefundRequest(reason="Doctor unavailable")
    )

    assert result.payment.status is PaymentStatus.REFUNDED
    assert result.payment.refund_amount == 150_000
    assert result.appointment.status is S.CANCELLED
    assert result.appointment.payment_status is PaymentStatus.REFUNDED
    assert result.appointment.cancelled_by == "system"
    assert not await factory.slot_booked(held.slot_id)

    invoice = await service.ledger.get_invoice(held.invoice.id)
    await db_session.commit()
    assert invoice.status is PaymentStatus.REFUNDED
    assert "payment_refunded" in notifier.types_for(held.patient_id)


@pytest.mark.asyncio
async def test_refund_limits(
    db_session: AsyncSession,
    held: SimpleNamespace,
    clock: FakeClock,
) -> None:
    service = PaymentService(db_session, clock=clock)
    paid = await service.process_payment(
        held.appointment.id, patient_actor(held.patient_id), PaymentCreate(invoice_id=held.invoice.id)
    )

    with pytest.raises(ForbiddenException):
        await service.refund_payment(paid.payment.id, patient_actor(held.patient_id), RefundRequest())

    with pytest.raises(ValidationException):
        await service.refund_payment(
            paid.payment.id, doctor_actor(held.doctor_id), RefundRequest(amount=150_001)
        )

    partial = await service.refund_payment(
        paid.payment.id, doctor_actor(held.doctor_id), RefundRequest(amount=50_000)
    )
    assert partial.payment.refund_amount == 50_000

    with pytest.raises(ConflictException):
        await service.refund_payment(paid.payment.id, doctor_actor(held.doctor_id), RefundRequest())
