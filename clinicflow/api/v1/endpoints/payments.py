"""Invoice, payment and pricing endpoints."""

from uuid import UUID

from fastapi import APIRouter, status

from clinicflow.dependencies import AppNotifier, Cache, CurrentActor, DatabaseSession, PatientActor
from clinicflow.schemas.invoices import (
    InvoiceResponse,
    PaymentCreate,
    PaymentResult,
    PaymentStatusResponse,
    RefundRequest,
    RefundResult,
)
from clinicflow.schemas.pricing import PriceQuote, PriceRequest
from clinicflow.services.payment_service import PaymentService
from clinicflow.services.pricing_service import PricingService

router = APIRouter()


@router.get(
    "/appointments/{appointment_id}/payment",
    response_model=PaymentStatusResponse,
    status_code=status.HTTP_200_OK,
    summary="Get payment status",
)
async def get_payment_status(
    appointment_id: UUID,
    actor: CurrentActor,
    db: DatabaseSession,
    notifier: AppNotifier,
    cache: Cache,
) -> PaymentStatusResponse:
    """
    Appointment with its invoices and payments.

    The consultation invoice is created on first read when one is due.
    """
    service = PaymentService(db, notifier, cache=cache)
    return await service.get_payment_status(appointment_id, actor)


@router.post(
    "/appointments/{appointment_id}/invoice",
    response_model=InvoiceResponse | None,
    status_code=status.HTTP_200_OK,
    summary="Create or fetch invoice",
)
async def create_or_fetch_invoice(
    appointment_id: UUID,
    actor: CurrentActor,
    db: DatabaseSession,
    notifier: AppNotifier,
    cache: Cache,
) -> InvoiceResponse | None:
    """The open consultation invoice, priced now if needed."""
    service = PaymentService(db, notifier, cache=cache)
    return await service.create_or_fetch_invoice(appointment_id, actor)


@router.post(
    "/appointments/{appointment_id}/pay",
    response_model=PaymentResult,
    status_code=status.HTTP_200_OK,
    summary="Pay invoice",
)
async def process_payment(
    appointment_id: UUID,
    data: PaymentCreate,
    actor: PatientActor,
    db: DatabaseSession,
    notifier: AppNotifier,
) -> PaymentResult:
    """
    Capture an invoice of the appointment.

    Raises:
        HoldExpiredException: If the payment window has closed
    """
    service = PaymentService(db, notifier)
    return await service.process_payment(appointment_id, actor, data)


@router.post(
    "/payments/{payment_id}/refund",
    response_model=RefundResult,
    status_code=status.HTTP_200_OK,
    summary="Refund payment",
)
async def refund_payment(
    payment_id: UUID,
    data: RefundRequest,
    actor: CurrentActor,
    db: DatabaseSession,
    notifier: AppNotifier,
) -> RefundResult:
    """Refund a captured payment; omit the amount for a full refund."""
    service = PaymentService(db, notifier)
    return await service.refund_payment(payment_id, actor, data)


@router.post(
    "/pricing/preview",
    response_model=PriceQuote,
    status_code=status.HTTP_200_OK,
    summary="Preview consultation price",
)
async def preview_price(
    data: PriceRequest,
    actor: CurrentActor,
    db: DatabaseSession,
    cache: Cache,
) -> PriceQuote:
    """Price a consultation without creating anything."""
    return await PricingService(db, cache).quote(data)
