"""Pricing schemas."""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field

from clinicflow.schemas.invoices import InvoiceItem


class FeeType(str, Enum):
    """Doctor tariff fee type."""

    FLAT = "flat"
    PER_15MIN = "per_15min"


class PriceRequest(BaseModel):
    """Inputs of a consultation price computation."""

    service_code: str | None = None
    doctor_id: UUID
    duration_minutes: int = Field(default=45, gt=0)
    starts_at: datetime
    insurance_eligible: bool = False
    copay_rate: float = Field(default=0.0, ge=0, le=1)
    doctor_fee_override: int | None = Field(
        default=None,
        ge=0,
        description="Fee set by the doctor on approval; replaces the tariff when positive",
    )


class ServicePrice(BaseModel):
    """Resolved facility service."""

    code: str | None
    name: str
    price: int


class Tariff(BaseModel):
    """Doctor tariff for a service code."""

    id: UUID
    fee_type: FeeType
    base_fee: int = 0
    unit_fee: int = 0
    min_fee: int | None = None
    max_fee: int | None = None
    after_hours_multiplier: float = 1.0


class PriceQuote(BaseModel):
    """Itemized consultation price."""

    items: list[InvoiceItem]
    total: int
    patient_total: int
    insurance_total: int
    base_price: int
    doctor_fee: int
    slots: int | None = None
    tariff_id: UUID | None = None
