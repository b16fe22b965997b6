"""Appointment schemas for request/response validation."""

from datetime import date, datetime, time
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from clinicflow.core.clock import as_utc


class AppointmentStatus(str, Enum):
    """Appointment status enumeration."""

    BOOKED = "booked"
    DOCTOR_APPROVED = "doctor_approved"
    DOCTOR_RESCHEDULE = "doctor_reschedule"
    DOCTOR_REJECTED = "doctor_rejected"
    AWAIT_PAYMENT = "await_payment"
    PAID = "paid"
    PAYMENT_OVERDUE = "payment_overdue"
    CONFIRMED = "confirmed"
    IN_CONSULT = "in_consult"
    PRESCRIPTION_ISSUED = "prescription_issued"
    READY_TO_DISCHARGE = "ready_to_discharge"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    CLOSED = "closed"


class PaymentStatus(str, Enum):
    """Payment status enumeration, shared by appointments, invoices and payments."""

    PENDING = "pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    REFUNDED = "refunded"
    FAILED = "failed"


class ActorRole(str, Enum):
    """Role of whoever drives a transition."""

    PATIENT = "patient"
    DOCTOR = "doctor"
    ADMIN = "admin"
    SYSTEM = "system"


class ExtensionStatus(str, Enum):
    """Extension request status enumeration."""

    REQUESTED = "requested"
    CONSENT_PENDING = "consent_pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    APPLIED = "applied"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    ESCALATED = "escalated"


class Actor(BaseModel):
    """Authenticated caller as issued by the identity provider."""

    id: UUID
    role: ActorRole


SYSTEM_ACTOR_ID = UUID(int=0)


def system_actor() -> Actor:
    """Actor used by background jobs and internal settlement steps."""
    return Actor(id=SYSTEM_ACTOR_ID, role=ActorRole.SYSTEM)


class AppointmentCreate(BaseModel):
    """Schema for booking an appointment."""

    doctor_id: UUID
    schedule_id: UUID
    service_code: str | None = Field(None, max_length=50)
    symptoms: str | None = Field(None, max_length=1000)
    notes: str | None = Field(None, max_length=1000)


class DoctorApproval(BaseModel):
    """Doctor approval payload; zero fees mean the price comes from the tariff."""

    notes: str | None = Field(None, max_length=1000)
    consultation_fee: int = Field(default=0, ge=0)
    deposit_amount: int = Field(default=0, ge=0)
    copay_rate: float | None = Field(default=None, ge=0, le=1)


class DoctorRejection(BaseModel):
    """Doctor rejection payload."""

    reason: str = Field(..., min_length=1, max_length=1000)


class DoctorRescheduleRequest(BaseModel):
    """Doctor asks the patient to move to another slot."""

    new_schedule_id: UUID
    reason: str | None = Field(None, max_length=1000)
    notes: str | None = Field(None, max_length=1000)


class AppointmentCancel(BaseModel):
    """Cancellation payload."""

    reason: str | None = Field(None, max_length=1000)
    force: bool = Field(default=False, description="Bypass the late cancellation cutoff")


class RescheduleProposal(BaseModel):
    """Patient proposes other slots or times."""

    proposed_slots: list[str] = Field(default_factory=list, max_length=10)
    message: str | None = Field(None, max_length=1000)


class RescheduleAcceptance(BaseModel):
    """Patient accepts the doctor's slot (no slot_id) or picks a free slot."""

    slot_id: UUID | None = None


class ConsultationCompletion(BaseModel):
    """Outcome recorded when the doctor finishes the consultation."""

    diagnosis: str = Field(..., min_length=1, max_length=4000)
    prescription: str | None = Field(None, max_length=4000)
    notes: str | None = Field(None, max_length=4000)


class AdditionalService(BaseModel):
    """Extra billable service performed during the visit."""

    name: str = Field(..., min_length=1, max_length=200)
    cost: int = Field(..., ge=0)


class FinalInvoiceRequest(BaseModel):
    """Services billed on discharge."""

    additional_services: list[AdditionalService] = Field(default_factory=list)


class CheckIn(BaseModel):
    """Check-in marker for either party."""

    by: ActorRole = Field(..., description="patient or doctor")


class ExtensionRequest(BaseModel):
    """Doctor asks for extra consultation time."""

    minutes: int = Field(..., gt=0, le=120)
    reason: str | None = Field(None, max_length=1000)


class ExtensionConsent(BaseModel):
    """Downstream patient's answer to an extension request."""

    accept: bool


class ExtensionInfo(BaseModel):
    """Extension sub-record of an appointment."""

    minutes: int | None = None
    status: ExtensionStatus
    reason: str | None = None
    requested_by: UUID | None = None
    requested_at: datetime | None = None
    target_appointment_id: UUID | None = None
    consent_requested_at: datetime | None = None
    consent_expires_at: datetime | None = None
    consent_by: UUID | None = None
    consent_response: str | None = None
    applied_at: datetime | None = None


class RescheduleProposalInfo(BaseModel):
    """Reschedule proposal sub-record of an appointment."""

    proposed_by: str
    proposed_at: datetime | None = None
    proposed_slots: list[str] = Field(default_factory=list)
    message: str | None = None
    expires_at: datetime | None = None
    accepted_at: datetime | None = None
    accepted_by: str | None = None


class AppointmentResponse(BaseModel):
    """Schema for appointment response."""

    id: UUID
    patient_id: UUID
    doctor_id: UUID
    schedule_id: UUID | None
    new_schedule_id: UUID | None = None
    service_code: str | None = None
    appointment_date: date
    appointment_time: time
    symptoms: str | None = None
    notes: str | None = None
    status: AppointmentStatus
    payment_status: PaymentStatus
    consultation_fee: int = 0
    deposit_amount: int = 0
    total_amount: int = 0
    insurance_coverage: int = 0
    patient_amount: int = 0
    doctor_decision: str | None = None
    doctor_notes: str | None = None
    reschedule_reason: str | None = None
    rejection_reason: str | None = None
    cancelled_by: str | None = None
    cancellation_reason: str | None = None
    diagnosis: str | None = None
    prescription: str | None = None
    booked_at: datetime | None = None
    confirmed_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    hold_expires_at: datetime | None = None
    patient_checked_in_at: datetime | None = None
    doctor_checked_in_at: datetime | None = None
    extension: ExtensionInfo | None = None
    reschedule_proposal: RescheduleProposalInfo | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

    @model_validator(mode="before")
    @classmethod
    def fold_sub_records(cls, data: Any) -> Any:
        """Fold the flat extension_* and reschedule_* columns into sub-records."""
        if not isinstance(data, dict):
            return data

        data = {
            key: as_utc(value) if isinstance(value, datetime) else value
            for key, value in data.items()
        }

        extension = {
            key.removeprefix("extension_"): data.pop(key)
            for key in list(data)
            if key.startswith("extension_")
        }
        if extension.get("status"):
            data["extension"] = extension

        proposal = {
            key.removeprefix("reschedule_"): data.pop(key)
            for key in list(data)
            if key.startswith("reschedule_") and key != "reschedule_reason"
        }
        if proposal.get("proposed_by"):
            proposal["proposed_slots"] = proposal.get("proposed_slots") or []
            data["reschedule_proposal"] = proposal

        return data

    @property
    def is_paid(self) -> bool:
        """Payment already captured or authorized."""
        return self.payment_status in (PaymentStatus.CAPTURED, PaymentStatus.AUTHORIZED)


class AppointmentListResponse(BaseModel):
    """Schema for appointment list response."""

    total: int
    items: list[AppointmentResponse]
