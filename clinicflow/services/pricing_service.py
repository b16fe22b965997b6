"""Consultation pricing.

``compute_consult_price`` is a pure function over already-resolved catalog
data; ``PricingService`` performs the read-only lookups (optionally through
Redis) and never writes anything, so quoting is always safe to call.
"""

import math
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from clinicflow.core.cache import PricingCache
from clinicflow.core.clock import is_after_hours
from clinicflow.models.doctors import doctors
from clinicflow.models.pricing import clinic_services, doctor_tariffs
from clinicflow.schemas.invoices import InvoiceItem
from clinicflow.schemas.pricing import FeeType, PriceQuote, PriceRequest, ServicePrice, Tariff

logger = structlog.get_logger(__name__)

SLOT_MINUTES = 15

# Cache key patterns
SERVICE_CACHE_KEY = "pricing:service:{code}"
TARIFF_CACHE_KEY = "pricing:tariff:{doctor_id}:{code}"


def round_money(value: float) -> int:
    """Round half up to a whole currency unit."""
    return math.floor(value + 0.5)


def doctor_fee_from_tariff(tariff: Tariff, request: PriceRequest) -> tuple[int, int | None]:
    """
    Doctor fee for a tariff.

    Returns:
        Tuple of (fee, billed 15-minute slots or None for flat fees)
    """
    slots = None
    if tariff.fee_type == FeeType.PER_15MIN:
        slots = max(1, math.ceil(request.duration_minutes / SLOT_MINUTES))
        fee: float = slots * tariff.unit_fee
    else:
        fee = tariff.base_fee

    if is_after_hours(request.starts_at):
        fee *= tariff.after_hours_multiplier

    lower = tariff.min_fee or 0
    fee = max(fee, lower)
    if tariff.max_fee is not None:
        fee = min(fee, tariff.max_fee)
    return round_money(fee), slots


def compute_consult_price(
    request: PriceRequest,
    service: ServicePrice | None,
    tariff: Tariff | None,
    fallback_doctor_fee: int = 0,
) -> PriceQuote:
    """
    Price a consultation as a facility line and a doctor fee line.

    The facility price is split with the insurer according to eligibility and
    copay rate; the doctor fee is always paid by the patient.

    Args:
        request: Pricing inputs
        service: Resolved facility service, None prices the facility at zero
        tariff: Doctor tariff for the service code, if any
        fallback_doctor_fee: Doctor's flat consultation fee used without a tariff

    Returns:
        Itemized quote whose lines each satisfy amount == insurance + patient
    """
    base = max(0, round_money(service.price)) if service else 0

    slots = None
    if request.doctor_fee_override:
        doctor_fee = request.doctor_fee_override
    elif tariff is not None:
        doctor_fee, slots = doctor_fee_from_tariff(tariff, request)
    else:
        doctor_fee = max(0, fallback_doctor_fee)

    insurer_share = 0
    if request.insurance_eligible:
        insurer_share = min(base, max(0, round_money(base * (1 - request.copay_rate))))

    items = [
        InvoiceItem(
            item_type="facility",
            description=service.name if service else "Facility fee",
            amount=base,
            insurance_amount=insurer_share,
            patient_amount=base - insurer_share,
        ),
        InvoiceItem(
            item_type="doctor_fee",
            description="Doctor fee",
            amount=doctor_fee,
            insurance_amount=0,
            patient_amount=doctor_fee,
        ),
    ]

    return PriceQuote(
        items=items,
        total=sum(item.amount for item in items),
        patient_total=sum(item.patient_amount for item in items),
        insurance_total=sum(item.insurance_amount for item in items),
        base_price=base,
        doctor_fee=doctor_fee,
        slots=slots,
        tariff_id=tariff.id if tariff else None,
    )


class PricingService:
    """Read-only catalog lookups feeding the price computation."""

    def __init__(self, db: AsyncSession, cache: PricingCache | None = None):
        """Initialize service with database session and optional cache."""
        self.db = db
        self.cache = cache

    async def resolve_service(self, service_code: str | None) -> ServicePrice | None:
        """
        Find the facility service for a code.

        Falls back to any active service, then to None (priced at zero).
        """
        cache_key = SERVICE_CACHE_KEY.format(code=service_code or "*")
        if self.cache:
            cached = self.cache.get(cache_key)
            if cached:
                return ServicePrice.model_validate(cached)

        row = None
        if service_code:
            result = await self.db.execute(
                select(clinic_services).where(
                    clinic_services.c.code == service_code,
                    clinic_services.c.is_active == True,  # noqa: E712
                )
            )
            row = result.fetchone()

        if row is None:
            result = await self.db.execute(
                select(clinic_services)
                .where(clinic_services.c.is_active == True)  # noqa: E712
                .order_by(clinic_services.c.code)
                .limit(1)
            )
            row = result.fetchone()

        if row is None:
            logger.info("pricing_service_not_found", service_code=service_code)
            return None

        service = ServicePrice(code=row.code, name=row.name, price=row.price)
        if self.cache:
            self.cache.put(cache_key, service.model_dump())
        return service

    async def resolve_tariff(self, doctor_id: UUID, service_code: str | None) -> Tariff | None:
        """
        Find the active tariff for a service code.

        The doctor's own tariff wins; otherwise the newest active tariff any
        doctor holds for the code applies.
        """
        if not service_code:
            return None

        cache_key = TARIFF_CACHE_KEY.format(doctor_id=doctor_id, code=service_code)
        if self.cache:
            cached = self.cache.get(cache_key)
            if cached:
                return Tariff.model_validate(cached)

        active = select(doctor_tariffs).where(
            doctor_tariffs.c.service_code == service_code,
            doctor_tariffs.c.status == "active",
        )
        newest = doctor_tariffs.c.created_at.desc()

        result = await self.db.execute(
            active.where(doctor_tariffs.c.doctor_id == doctor_id).order_by(newest).limit(1)
        )
        row = result.fetchone()
        if row is None:
            result = await self.db.execute(active.order_by(newest).limit(1))
            row = result.fetchone()
        if row is None:
            logger.debug("pricing_tariff_not_found", doctor_id=str(doctor_id), service_code=service_code)
            return None

        tariff = Tariff.model_validate(dict(row._mapping))
        if self.cache:
            self.cache.put(cache_key, tariff.model_dump(mode="json"))
        return tariff

    async def doctor_flat_fee(self, doctor_id: UUID) -> int:
        """Doctor's flat consultation fee, zero for unknown doctors."""
        result = await self.db.execute(
            select(doctors.c.consultation_fee).where(doctors.c.id == doctor_id)
        )
        return result.scalar_one_or_none() or 0

    async def quote(self, request: PriceRequest) -> PriceQuote:
        """
        Resolve catalog data and price a consultation.

        Args:
            request: Pricing inputs

        Returns:
            Itemized quote
        """
        service = await self.resolve_service(request.service_code)
        tariff = await self.resolve_tariff(request.doctor_id, request.service_code)
        fallback_fee = 0 if tariff else await self.doctor_flat_fee(request.doctor_id)

        quote = compute_consult_price(request, service, tariff, fallback_fee)
        logger.debug(
            "consult_price_computed",
            doctor_id=str(request.doctor_id),
            service_code=request.service_code,
            total=quote.total,
            patient_total=quote.patient_total,
        )
        return quote
