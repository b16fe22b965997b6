"""Appointments table model using SQLAlchemy Core."""

import uuid

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    Time,
    Uuid,
    func,
)

from clinicflow.models.base import metadata

APPOINTMENT_STATUSES = (
    "booked",
    "doctor_approved",
    "doctor_reschedule",
    "doctor_rejected",
    "await_payment",
    "paid",
    "payment_overdue",
    "confirmed",
    "in_consult",
    "prescription_issued",
    "ready_to_discharge",
    "completed",
    "cancelled",
    "closed",
)

appointments = Table(
    "appointments",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid.uuid4),
    # Ownership / references
    Column("patient_id", Uuid, ForeignKey("patients.id"), nullable=False),
    Column("doctor_id", Uuid, ForeignKey("doctors.id"), nullable=False),
    Column("schedule_id", Uuid, ForeignKey("doctor_schedules.id"), nullable=True),
    Column("new_schedule_id", Uuid, ForeignKey("doctor_schedules.id"), nullable=True),
    Column("service_code", String(50), nullable=True),
    # Clinic-local day and start time copied from the slot
    Column("appointment_date", Date, nullable=False),
    Column("appointment_time", Time, nullable=False),
    Column("symptoms", Text),
    Column("notes", Text),
    # Status management
    Column("status", String(30), nullable=False, server_default="booked"),
    Column("payment_status", String(20), nullable=False, server_default="pending"),
    # Money snapshot
    Column("consultation_fee", BigInteger, nullable=False, server_default="0"),
    Column("deposit_amount", BigInteger, nullable=False, server_default="0"),
    Column("total_amount", BigInteger, nullable=False, server_default="0"),
    Column("insurance_coverage", BigInteger, nullable=False, server_default="0"),
    Column("patient_amount", BigInteger, nullable=False, server_default="0"),
    # Decision metadata
    Column("doctor_decision", String(20)),
    Column("doctor_notes", Text),
    Column("reschedule_reason", Text),
    Column("rejection_reason", Text),
    Column("cancelled_by", String(20)),
    Column("cancellation_reason", Text),
    # Consultation outcome
    Column("diagnosis", Text),
    Column("prescription", Text),
    # Timeline
    Column("booked_at", DateTime(timezone=True)),
    Column("confirmed_at", DateTime(timezone=True)),
    Column("started_at", DateTime(timezone=True)),
    Column("completed_at", DateTime(timezone=True)),
    Column("cancelled_at", DateTime(timezone=True)),
    Column("hold_expires_at", DateTime(timezone=True)),
    Column("patient_checked_in_at", DateTime(timezone=True)),
    Column("doctor_checked_in_at", DateTime(timezone=True)),
    # Extension request (one active at a time)
    Column("extension_minutes", Integer),
    Column("extension_status", String(20)),
    Column("extension_reason", Text),
    Column("extension_requested_by", Uuid),
    Column("extension_requested_at", DateTime(timezone=True)),
    Column("extension_target_appointment_id", Uuid),
    Column("extension_consent_requested_at", DateTime(timezone=True)),
    Column("extension_consent_expires_at", DateTime(timezone=True)),
    Column("extension_consent_by", Uuid),
    Column("extension_consent_response", String(20)),
    Column("extension_applied_at", DateTime(timezone=True)),
    # Reschedule proposal (one active at a time)
    Column("reschedule_proposed_by", String(20)),
    Column("reschedule_proposed_at", DateTime(timezone=True)),
    Column("reschedule_proposed_slots", JSON),
    Column("reschedule_message", Text),
    Column("reschedule_expires_at", DateTime(timezone=True)),
    Column("reschedule_accepted_at", DateTime(timezone=True)),
    Column("reschedule_accepted_by", String(20)),
    # Audit fields
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    # Constraints
    CheckConstraint(
        "status IN (" + ", ".join(f"'{s}'" for s in APPOINTMENT_STATUSES) + ")",
        name="status_check",
    ),
    CheckConstraint(
        "payment_status IN ('pending', 'authorized', 'captured', 'refunded', 'failed')",
        name="payment_status_check",
    ),
    Index("ix_appointments_patient_date", "patient_id", "appointment_date"),
    Index("ix_appointments_doctor_date", "doctor_id", "appointment_date"),
    Index("ix_appointments_schedule_id", "schedule_id"),
    Index("ix_appointments_status", "status"),
    Index("ix_appointments_extension_target", "extension_target_appointment_id"),
)
