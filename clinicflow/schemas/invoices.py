"""Invoice and payment schemas."""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from clinicflow.core.clock import as_utc
from clinicflow.schemas.appointments import AppointmentResponse, PaymentStatus


class InvoiceType(str, Enum):
    """Invoice type enumeration."""

    CONSULTATION = "consultation"
    FINAL_SETTLEMENT = "final_settlement"


class PaymentMethod(str, Enum):
    """Supported payment channels."""

    CASH = "cash"
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    E_WALLET = "e_wallet"


class InvoiceItem(BaseModel):
    """Invoice line; amount is always split between insurer and patient."""

    item_type: str
    description: str
    amount: int = Field(..., ge=0)
    insurance_amount: int = Field(default=0, ge=0)
    patient_amount: int = Field(..., ge=0)

    model_config = {"from_attributes": True}

    @model_validator(mode="after")
    def check_split(self) -> "InvoiceItem":
        """Ensure the line splits exactly."""
        if self.amount != self.insurance_amount + self.patient_amount:
            raise ValueError("amount must equal insurance_amount + patient_amount")
        return self


class InvoiceResponse(BaseModel):
    """Schema for invoice response."""

    id: UUID
    invoice_number: str
    appointment_id: UUID
    patient_id: UUID
    doctor_id: UUID
    invoice_type: InvoiceType
    items: list[InvoiceItem] = Field(default_factory=list)
    subtotal: int
    insurance_coverage: int
    patient_amount: int
    status: PaymentStatus
    due_date: datetime | None = None
    paid_at: datetime | None = None
    created_at: datetime

    model_config = {"from_attributes": True}

    @model_validator(mode="before")
    @classmethod
    def normalize_datetimes(cls, data: Any) -> Any:
        """Attach UTC to naive timestamps read back from the database."""
        if isinstance(data, dict):
            return {k: as_utc(v) if isinstance(v, datetime) else v for k, v in data.items()}
        return data


class PaymentCreate(BaseModel):
    """Schema for paying an invoice."""

    invoice_id: UUID
    payment_method: PaymentMethod = PaymentMethod.CARD
    transaction_id: str | None = Field(None, max_length=100)


class RefundRequest(BaseModel):
    """Schema for refunding a captured payment."""

    amount: int | None = Field(default=None, gt=0)
    reason: str | None = Field(None, max_length=1000)


class PaymentResponse(BaseModel):
    """Schema for payment response."""

    id: UUID
    appointment_id: UUID
    invoice_id: UUID
    amount: int
    status: PaymentStatus
    payment_method: str
    transaction_id: str | None = None
    captured_at: datetime | None = None
    refunded_at: datetime | None = None
    refund_amount: int | None = None
    refund_reason: str | None = None
    created_at: datetime

    model_config = {"from_attributes": True}

    @model_validator(mode="before")
    @classmethod
    def normalize_datetimes(cls, data: Any) -> Any:
        """Attach UTC to naive timestamps read back from the database."""
        if isinstance(data, dict):
            return {k: as_utc(v) if isinstance(v, datetime) else v for k, v in data.items()}
        return data


class PaymentResult(BaseModel):
    """Outcome of a successful capture."""

    appointment: AppointmentResponse
    invoice: InvoiceResponse
    payment: PaymentResponse


class RefundResult(BaseModel):
    """Outcome of a refund."""

    appointment: AppointmentResponse
    payment: PaymentResponse


class PaymentStatusResponse(BaseModel):
    """Appointment with its invoices and payments."""

    appointment: AppointmentResponse
    invoices: list[InvoiceResponse]
    payments: list[PaymentResponse]
