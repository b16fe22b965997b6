"""Invoice settlement: capture, refunds and payment status."""

from uuid import UUID

import structlog

from clinicflow.core.exceptions import (
    ConflictException,
    ForbiddenException,
    HoldExpiredException,
    InvalidTransitionException,
    NotFoundException,
    ValidationException,
)
from clinicflow.schemas.appointments import (
    Actor,
    ActorRole,
    AppointmentResponse,
    PaymentStatus,
    system_actor,
)
from clinicflow.schemas.invoices import (
    InvoiceResponse,
    InvoiceType,
    PaymentCreate,
    PaymentResult,
    PaymentStatusResponse,
    RefundRequest,
    RefundResult,
)
from clinicflow.services.appointment_service import S, AppointmentService, is_legal
from clinicflow.services.notification_service import Notice

logger = structlog.get_logger(__name__)

# Statuses in which the consultation invoice is created on demand
INVOICEABLE_STATUSES = frozenset({S.DOCTOR_APPROVED, S.AWAIT_PAYMENT})


class PaymentService(AppointmentService):
    """Settles invoices and drives the payment edges of the lifecycle."""

    def _hold_lapsed(self, appointment: AppointmentResponse, invoice: InvoiceResponse) -> bool:
        now = self.clock()
        if invoice.status is PaymentStatus.FAILED or appointment.status is S.PAYMENT_OVERDUE:
            return True
        if appointment.hold_expires_at is not None and appointment.hold_expires_at <= now:
            return True
        return invoice.due_date is not None and invoice.due_date <= now

    async def _invoice_of(self, appointment: AppointmentResponse, invoice_id: UUID) -> InvoiceResponse:
        invoice = await self.ledger.get_invoice(invoice_id)
        if invoice.appointment_id != appointment.id:
            raise NotFoundException("Invoice not found")
        return invoice

    async def process_payment(
        self, appointment_id: UUID, actor: Actor, data: PaymentCreate
    ) -> PaymentResult:
        """
        Capture an invoice.

        Paying the consultation invoice moves the appointment through PAID to
        CONFIRMED in one commit. Paying the final settlement completes it.

        Args:
            appointment_id: Appointment being paid for
            actor: Paying patient
            data: Invoice and payment channel

        Returns:
            Appointment, captured invoice and payment record

        Raises:
            HoldExpiredException: If the payment deadline has passed
            ConflictException: If the invoice was already paid
            InvalidTransitionException: If the appointment is not awaiting this payment
        """
        if actor.role not in (ActorRole.PATIENT, ActorRole.ADMIN):
            raise ForbiddenException("Only the patient can pay for an appointment")

        hold_lapsed = False
        async with self.unit_of_work() as outbox:
            appointment = await self.load_for(appointment_id, actor)
            invoice = await self._invoice_of(appointment, data.invoice_id)
            if invoice.status in (PaymentStatus.CAPTURED, PaymentStatus.REFUNDED):
                raise ConflictException("Invoice already paid")

            if invoice.invoice_type is InvoiceType.FINAL_SETTLEMENT:
                result = await self._settle_final(appointment, invoice, data)
            elif self._hold_lapsed(appointment, invoice):
                # The overdue transition is committed before the error surfaces
                hold_lapsed = True
                if appointment.status is S.AWAIT_PAYMENT:
                    await self._expire(appointment, outbox)
            else:
                result = await self._settle_consultation(appointment, invoice, data)

            if not hold_lapsed:
                outbox.append(
                    Notice(
                        user_id=result.appointment.doctor_id,
                        notification_type="payment_received",
                        title="Payment received",
                        body=f"Payment of {result.payment.amount} was received.",
                        meta={"appointment_id": str(result.appointment.id)},
                    )
                )

        if hold_lapsed:
            raise HoldExpiredException()
        return result

    async def _settle_consultation(
        self,
        appointment: AppointmentResponse,
        invoice: InvoiceResponse,
        data: PaymentCreate,
    ) -> PaymentResult:
        if appointment.status is not S.AWAIT_PAYMENT:
            raise InvalidTransitionException(appointment.status.value, S.PAID.value)

        now = self.clock()
        if not await self.ledger.capture(invoice.id, now):
            raise ConflictException("Invoice already paid")
        payment = await self.ledger.record_payment(
            invoice, data.payment_method.value, data.transaction_id, now
        )

        system = system_actor()
        appointment = await self.transition(
            appointment, system, S.PAID, {"payment_status": PaymentStatus.CAPTURED.value}
        )
        appointment = await self.transition(
            appointment, system, S.CONFIRMED, {"confirmed_at": now}
        )
        return PaymentResult(
            appointment=appointment,
            invoice=await self.ledger.get_invoice(invoice.id),
            payment=payment,
        )

    async def _settle_final(
        self,
        appointment: AppointmentResponse,
        invoice: InvoiceResponse,
        data: PaymentCreate,
    ) -> PaymentResult:
        if appointment.status is not S.READY_TO_DISCHARGE:
            raise InvalidTransitionException(appointment.status.value, S.COMPLETED.value)

        now = self.clock()
        if not await self.ledger.capture(invoice.id, now):
            raise ConflictException("Invoice already paid")
        payment = await self.ledger.record_payment(
            invoice, data.payment_method.value, data.transaction_id, now
        )
        appointment = await self.transition(
            appointment, system_actor(), S.COMPLETED, {"completed_at": now}
        )
        return PaymentResult(
            appointment=appointment,
            invoice=await self.ledger.get_invoice(invoice.id),
            payment=payment,
        )

    async def refund_payment(
        self, payment_id: UUID, actor: Actor, data: RefundRequest
    ) -> RefundResult:
        """
        Refund a captured payment, fully or in part.

        The appointment is cancelled on the system's authority when that is
        still possible; otherwise only its payment status records the refund.

        Raises:
            ForbiddenException: If the actor is neither an admin nor the assigned doctor
            ValidationException: If the amount exceeds what was captured
            ConflictException: If the payment is not captured
        """
        if actor.role not in (ActorRole.ADMIN, ActorRole.DOCTOR):
            raise ForbiddenException("Only staff can issue refunds")

        async with self.unit_of_work() as outbox:
            payment = await self.ledger.get_payment(payment_id)
            appointment = await self.load_for(payment.appointment_id, actor)

            amount = data.amount if data.amount is not None else payment.amount
            if amount > payment.amount:
                raise ValidationException("Refund amount exceeds the captured amount")

            now = self.clock()
            refunded = await self.ledger.refund(payment.id, amount, data.reason, now)
            if refunded is None:
                raise ConflictException("Payment is not captured")
            await self.ledger.mark_refunded(payment.invoice_id, now)

            values = {"payment_status": PaymentStatus.REFUNDED.value}
            if is_legal(appointment.status, S.CANCELLED):
                appointment = await self.transition(
                    appointment,
                    system_actor(),
                    S.CANCELLED,
                    {
                        **values,
                        "cancelled_at": now,
                        "cancelled_by": ActorRole.SYSTEM.value,
                        "cancellation_reason": data.reason or "Payment refunded",
                    },
                )
            else:
                appointment = await self.update_fields(appointment, values)

            outbox.append(
                Notice(
                    user_id=appointment.patient_id,
                    notification_type="payment_refunded",
                    title="Payment refunded",
                    body=f"{amount} has been refunded.",
                    meta={"appointment_id": str(appointment.id), "payment_id": str(payment.id)},
                )
            )
        return RefundResult(appointment=appointment, payment=refunded)

    async def create_or_fetch_invoice(
        self, appointment_id: UUID, actor: Actor
    ) -> InvoiceResponse | None:
        """
        The appointment's open consultation invoice, creating it when one is due.

        A lapsed hold is expired instead of being given a new invoice.

        Returns:
            The pending invoice, or the most recent invoice when none is open
        """
        appointment = await self.load_for(appointment_id, actor, for_update=False)
        appointment = await self.expire_if_due(appointment)

        if appointment.status in INVOICEABLE_STATUSES and not appointment.is_paid:
            pending = await self.ledger.find_pending(appointment.id, InvoiceType.CONSULTATION)
            if pending is not None:
                return pending

            async with self.unit_of_work():
                appointment = await self.load(appointment.id, for_update=True)
                if appointment.status is S.DOCTOR_APPROVED:
                    appointment = await self.transition(appointment, system_actor(), S.AWAIT_PAYMENT)
                elif appointment.status is S.AWAIT_PAYMENT:
                    appointment = await self.open_payment_hold(appointment)
            logger.info("invoice_created_lazily", appointment_id=str(appointment.id))
            return await self.ledger.find_pending(appointment.id, InvoiceType.CONSULTATION)

        invoices = await self.ledger.list_for_appointment(appointment.id)
        return invoices[-1] if invoices else None

    async def get_payment_status(self, appointment_id: UUID, actor: Actor) -> PaymentStatusResponse:
        """Appointment with all its invoices and payments."""
        await self.create_or_fetch_invoice(appointment_id, actor)
        appointment = await self.load(appointment_id)
        return PaymentStatusResponse(
            appointment=appointment,
            invoices=await self.ledger.list_for_appointment(appointment.id),
            payments=await self.ledger.list_payments(appointment.id),
        )
