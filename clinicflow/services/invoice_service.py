"""Invoice ledger: invoices, their line items and payment records."""

from datetime import datetime
from uuid import UUID, uuid4

import structlog
from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from clinicflow.core.exceptions import NotFoundException, ValidationException
from clinicflow.models.invoices import invoice_items, invoices, payments
from clinicflow.schemas.appointments import AppointmentResponse, PaymentStatus
from clinicflow.schemas.invoices import (
    InvoiceItem,
    InvoiceResponse,
    InvoiceType,
    PaymentResponse,
)

logger = structlog.get_logger(__name__)


def invoice_number(now: datetime) -> str:
    """Human-facing invoice number."""
    return f"INV-{now:%Y%m%d%H%M%S}-{uuid4().hex[:6].upper()}"


class InvoiceLedger:
    """Creates invoices and records captures and refunds."""

    def __init__(self, db: AsyncSession):
        """Initialize ledger with database session."""
        self.db = db

    async def _items_for(self, invoice_ids: list[UUID]) -> dict[UUID, list[InvoiceItem]]:
        """Load line items grouped by invoice."""
        grouped: dict[UUID, list[InvoiceItem]] = {invoice_id: [] for invoice_id in invoice_ids}
        if not invoice_ids:
            return grouped

        result = await self.db.execute(
            select(invoice_items)
            .where(invoice_items.c.invoice_id.in_(invoice_ids))
            .order_by(invoice_items.c.invoice_id, invoice_items.c.position)
        )
        for row in result.fetchall():
            grouped[row.invoice_id].append(InvoiceItem.model_validate(dict(row._mapping)))
        return grouped

    async def _build(self, rows: list) -> list[InvoiceResponse]:
        items = await self._items_for([row.id for row in rows])
        return [
            InvoiceResponse.model_validate({**dict(row._mapping), "items": items[row.id]})
            for row in rows
        ]

    async def get_invoice(self, invoice_id: UUID) -> InvoiceResponse:
        """
        Get invoice by ID.

        Raises:
            NotFoundException: If invoice not found
        """
        result = await self.db.execute(select(invoices).where(invoices.c.id == invoice_id))
        row = result.fetchone()
        if not row:
            raise NotFoundException("Invoice not found")
        return (await self._build([row]))[0]

    async def list_for_appointment(self, appointment_id: UUID) -> list[InvoiceResponse]:
        """All invoices of an appointment, oldest first."""
        result = await self.db.execute(
            select(invoices)
            .where(invoices.c.appointment_id == appointment_id)
            .order_by(invoices.c.created_at)
        )
        return await self._build(result.fetchall())

    async def find_pending(
        self,
        appointment_id: UUID,
        invoice_type: InvoiceType = InvoiceType.CONSULTATION,
    ) -> InvoiceResponse | None:
        """The open invoice of a type for an appointment, if any."""
        result = await self.db.execute(
            select(invoices).where(
                invoices.c.appointment_id == appointment_id,
                invoices.c.invoice_type == invoice_type.value,
                invoices.c.status == PaymentStatus.PENDING.value,
            )
        )
        row = result.fetchone()
        if not row:
            return None
        return (await self._build([row]))[0]

    async def find_expired_pending(
        self,
        now: datetime,
        invoice_type: InvoiceType = InvoiceType.CONSULTATION,
    ) -> list[InvoiceResponse]:
        """Open invoices whose due date has passed."""
        result = await self.db.execute(
            select(invoices)
            .where(
                invoices.c.invoice_type == invoice_type.value,
                invoices.c.status == PaymentStatus.PENDING.value,
                invoices.c.due_date <= now,
            )
            .order_by(invoices.c.due_date)
        )
        return await self._build(result.fetchall())

    async def create_invoice(
        self,
        appointment: AppointmentResponse,
        invoice_type: InvoiceType,
        items: list[InvoiceItem],
        due_date: datetime | None,
        now: datetime,
    ) -> InvoiceResponse:
        """
        Persist an itemized invoice.

        A concurrent creator of the same open invoice wins; its invoice is
        returned instead of a duplicate.

        Args:
            appointment: Appointment being billed
            invoice_type: Consultation or final settlement
            items: Line items, each already split between insurer and patient
            due_date: Payment deadline, None for no deadline
            now: Creation time

        Returns:
            The open invoice for the appointment
        """
        subtotal = sum(item.amount for item in items)
        insurance = sum(item.insurance_amount for item in items)
        patient_amount = sum(item.patient_amount for item in items)
        if subtotal != insurance + patient_amount:
            raise ValidationException("Invalid money data")

        try:
            async with self.db.begin_nested():
                result = await self.db.execute(
                    insert(invoices)
                    .values(
                        invoice_number=invoice_number(now),
                        appointment_id=appointment.id,
                        patient_id=appointment.patient_id,
                        doctor_id=appointment.doctor_id,
                        invoice_type=invoice_type.value,
                        subtotal=subtotal,
                        insurance_coverage=insurance,
                        patient_amount=patient_amount,
                        status=PaymentStatus.PENDING.value,
                        due_date=due_date,
                        created_at=now,
                        updated_at=now,
                    )
                    .returning(invoices.c.id)
                )
                invoice_id = result.scalar_one()
                if items:
                    await self.db.execute(
                        insert(invoice_items),
                        [
                            {
                                "invoice_id": invoice_id,
                                "position": position,
                                **item.model_dump(),
                            }
                            for position, item in enumerate(items)
                        ],
                    )
        except IntegrityError:
            existing = await self.find_pending(appointment.id, invoice_type)
            if existing is None:
                raise
            logger.info("invoice_created_concurrently", appointment_id=str(appointment.id))
            return existing

        logger.info(
            "invoice_created",
            invoice_id=str(invoice_id),
            appointment_id=str(appointment.id),
            invoice_type=invoice_type.value,
            subtotal=subtotal,
            patient_amount=patient_amount,
        )
        return await self.get_invoice(invoice_id)

    async def rearm(self, invoice_id: UUID, due_date: datetime, now: datetime) -> InvoiceResponse:
        """Give an open invoice a fresh deadline."""
        await self.db.execute(
            update(invoices)
            .where(
                invoices.c.id == invoice_id,
                invoices.c.status == PaymentStatus.PENDING.value,
            )
            .values(due_date=due_date, updated_at=now)
        )
        return await self.get_invoice(invoice_id)

    async def capture(self, invoice_id: UUID, now: datetime) -> bool:
        """
        Mark an open invoice paid.

        Returns:
            False if the invoice was no longer pending
        """
        result = await self.db.execute(
            update(invoices)
            .where(
                invoices.c.id == invoice_id,
                invoices.c.status == PaymentStatus.PENDING.value,
            )
            .values(status=PaymentStatus.CAPTURED.value, paid_at=now, updated_at=now)
        )
        return result.rowcount == 1

    async def void_pending(
        self,
        appointment_id: UUID,
        now: datetime,
        invoice_type: InvoiceType = InvoiceType.CONSULTATION,
    ) -> int:
        """Mark open invoices of an appointment failed; returns how many changed."""
        result = await self.db.execute(
            update(invoices)
            .where(
                invoices.c.appointment_id == appointment_id,
                invoices.c.invoice_type == invoice_type.value,
                invoices.c.status == PaymentStatus.PENDING.value,
            )
            .values(status=PaymentStatus.FAILED.value, updated_at=now)
        )
        return result.rowcount

    async def mark_refunded(self, invoice_id: UUID, now: datetime) -> None:
        """Flag a captured invoice as refunded."""
        await self.db.execute(
            update(invoices)
            .where(
                invoices.c.id == invoice_id,
                invoices.c.status == PaymentStatus.CAPTURED.value,
            )
            .values(status=PaymentStatus.REFUNDED.value, updated_at=now)
        )

    async def record_payment(
        self,
        invoice: InvoiceResponse,
        payment_method: str,
        transaction_id: str | None,
        now: datetime,
    ) -> PaymentResponse:
        """Insert the captured payment for an invoice."""
        result = await self.db.execute(
            insert(payments)
            .values(
                appointment_id=invoice.appointment_id,
                invoice_id=invoice.id,
                amount=invoice.patient_amount,
                status=PaymentStatus.CAPTURED.value,
                payment_method=payment_method,
                transaction_id=transaction_id,
                captured_at=now,
                created_at=now,
            )
            .returning(payments)
        )
        row = result.fetchone()
        logger.info(
            "payment_captured",
            payment_id=str(row.id),
            invoice_id=str(invoice.id),
            amount=invoice.patient_amount,
        )
        return PaymentResponse.model_validate(dict(row._mapping))

    async def get_payment(self, payment_id: UUID) -> PaymentResponse:
        """
        Get payment by ID.

        Raises:
            NotFoundException: If payment not found
        """
        result = await self.db.execute(select(payments).where(payments.c.id == payment_id))
        row = result.fetchone()
        if not row:
            raise NotFoundException("Payment not found")
        return PaymentResponse.model_validate(dict(row._mapping))

    async def list_payments(self, appointment_id: UUID) -> list[PaymentResponse]:
        """All payments of an appointment, oldest first."""
        result = await self.db.execute(
            select(payments)
            .where(payments.c.appointment_id == appointment_id)
            .order_by(payments.c.created_at)
        )
        return [PaymentResponse.model_validate(dict(row._mapping)) for row in result.fetchall()]

    async def refund(
        self,
        payment_id: UUID,
        amount: int,
        reason: str | None,
        now: datetime,
    ) -> PaymentResponse | None:
        """
        Refund a captured payment.

        Returns:
            The refunded payment, or None if it was not captured any more
        """
        result = await self.db.execute(
            update(payments)
            .where(
                payments.c.id == payment_id,
                payments.c.status == PaymentStatus.CAPTURED.value,
            )
            .values(
                status=PaymentStatus.REFUNDED.value,
                refunded_at=now,
                refund_amount=amount,
                refund_reason=reason,
            )
            .returning(payments)
        )
        row = result.fetchone()
        if not row:
            return None
        logger.info("payment_refunded", payment_id=str(payment_id), amount=amount)
        return PaymentResponse.model_validate(dict(row._mapping))
