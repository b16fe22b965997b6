"""Initial migration - create the clinic workflow schema.

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

STATUSES = (
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
PAYMENT_STATUSES = "('pending', 'authorized', 'captured', 'refunded', 'failed')"


def _id() -> sa.Column:
    return sa.Column(
        "id", postgresql.UUID(), server_default=sa.text("gen_random_uuid()"), nullable=False
    )


def _timestamp(name: str, nullable: bool = True) -> sa.Column:
    if nullable:
        return sa.Column(name, postgresql.TIMESTAMP(timezone=True), nullable=True)
    return sa.Column(
        name,
        postgresql.TIMESTAMP(timezone=True),
        server_default=sa.text("NOW()"),
        nullable=False,
    )


def upgrade() -> None:
    """Upgrade database schema."""
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto"')

    op.create_table(
        "doctors",
        _id(),
        sa.Column("full_name", sa.Text(), nullable=False),
        sa.Column("specialty", sa.Text(), nullable=True),
        sa.Column("consultation_fee", sa.BigInteger(), server_default="0", nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        _timestamp("created_at", nullable=False),
        _timestamp("updated_at", nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_doctors"),
    )
    op.create_index("ix_doctors_specialty", "doctors", ["specialty"])

    op.create_table(
        "patients",
        _id(),
        sa.Column("full_name", sa.Text(), nullable=False),
        sa.Column("birth_year", sa.Integer(), nullable=True),
        sa.Column("gender", sa.VARCHAR(length=20), nullable=True),
        sa.Column("phone", sa.VARCHAR(length=20), nullable=True),
        sa.Column("emergency_contact_name", sa.Text(), nullable=True),
        sa.Column("emergency_contact_phone", sa.VARCHAR(length=20), nullable=True),
        sa.Column("emergency_contact_relation", sa.VARCHAR(length=50), nullable=True),
        sa.Column("insurance_number", sa.VARCHAR(length=100), nullable=True),
        sa.Column("insurance_eligible", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("copay_rate", sa.Float(), server_default="0", nullable=False),
        sa.Column("allergies", sa.Text(), nullable=True),
        sa.Column("current_medications", sa.Text(), nullable=True),
        sa.Column("medical_history", sa.Text(), nullable=True),
        sa.Column("pregnancy_status", sa.VARCHAR(length=30), nullable=True),
        _timestamp("created_at", nullable=False),
        _timestamp("updated_at", nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_patients"),
    )

    op.create_table(
        "doctor_schedules",
        _id(),
        sa.Column("doctor_id", postgresql.UUID(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.Column("is_booked", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("status", sa.VARCHAR(length=20), server_default="pending", nullable=False),
        _timestamp("created_at", nullable=False),
        _timestamp("updated_at", nullable=False),
        sa.CheckConstraint(
            "status IN ('pending', 'accepted', 'rejected', 'busy')",
            name="doctor_schedules_status_check",
        ),
        sa.ForeignKeyConstraint(
            ["doctor_id"],
            ["doctors.id"],
            name="fk_doctor_schedules_doctor_id_doctors",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_doctor_schedules"),
    )
    op.create_index("ix_doctor_schedules_doctor_date", "doctor_schedules", ["doctor_id", "date"])

    op.create_table(
        "clinic_services",
        _id(),
        sa.Column("code", sa.VARCHAR(length=50), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("price", sa.BigInteger(), server_default="0", nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        _timestamp("created_at", nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_clinic_services"),
        sa.UniqueConstraint("code", name="uq_clinic_services_code"),
    )

    op.create_table(
        "doctor_tariffs",
        _id(),
        sa.Column("doctor_id", postgresql.UUID(), nullable=False),
        sa.Column("service_code", sa.VARCHAR(length=50), nullable=False),
        sa.Column("fee_type", sa.VARCHAR(length=20), server_default="flat", nullable=False),
        sa.Column("base_fee", sa.BigInteger(), server_default="0", nullable=False),
        sa.Column("unit_fee", sa.BigInteger(), server_default="0", nullable=False),
        sa.Column("min_fee", sa.BigInteger(), nullable=True),
        sa.Column("max_fee", sa.BigInteger(), nullable=True),
        sa.Column("after_hours_multiplier", sa.Float(), server_default="1", nullable=False),
        sa.Column("status", sa.VARCHAR(length=20), server_default="active", nullable=False),
        _timestamp("created_at", nullable=False),
        sa.CheckConstraint(
            "fee_type IN ('flat', 'per_15min')", name="doctor_tariffs_fee_type_check"
        ),
        sa.CheckConstraint("status IN ('active', 'inactive')", name="doctor_tariffs_status_check"),
        sa.ForeignKeyConstraint(
            ["doctor_id"],
            ["doctors.id"],
            name="fk_doctor_tariffs_doctor_id_doctors",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_doctor_tariffs"),
    )
    op.create_index(
        "ix_doctor_tariffs_doctor_service", "doctor_tariffs", ["doctor_id", "service_code"]
    )

    op.create_table(
        "appointments",
        _id(),
        sa.Column("patient_id", postgresql.UUID(), nullable=False),
        sa.Column("doctor_id", postgresql.UUID(), nullable=False),
        sa.Column("schedule_id", postgresql.UUID(), nullable=True),
        sa.Column("new_schedule_id", postgresql.UUID(), nullable=True),
        sa.Column("service_code", sa.VARCHAR(length=50), nullable=True),
        sa.Column("appointment_date", sa.Date(), nullable=False),
        sa.Column("appointment_time", sa.Time(), nullable=False),
        sa.Column("symptoms", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("status", sa.VARCHAR(length=30), server_default="booked", nullable=False),
        sa.Column("payment_status", sa.VARCHAR(length=20), server_default="pending", nullable=False),
        sa.Column("consultation_fee", sa.BigInteger(), server_default="0", nullable=False),
        sa.Column("deposit_amount", sa.BigInteger(), server_default="0", nullable=False),
        sa.Column("total_amount", sa.BigInteger(), server_default="0", nullable=False),
        sa.Column("insurance_coverage", sa.BigInteger(), server_default="0", nullable=False),
        sa.Column("patient_amount", sa.BigInteger(), server_default="0", nullable=False),
        sa.Column("doctor_decision", sa.VARCHAR(length=20), nullable=True),
        sa.Column("doctor_notes", sa.Text(), nullable=True),
        sa.Column("reschedule_reason", sa.Text(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("cancelled_by", sa.VARCHAR(length=20), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("diagnosis", sa.Text(), nullable=True),
        sa.Column("prescription", sa.Text(), nullable=True),
        _timestamp("booked_at"),
        _timestamp("confirmed_at"),
        _timestamp("started_at"),
        _timestamp("completed_at"),
        _timestamp("cancelled_at"),
        _timestamp("hold_expires_at"),
        _timestamp("patient_checked_in_at"),
        _timestamp("doctor_checked_in_at"),
        sa.Column("extension_minutes", sa.Integer(), nullable=True),
        sa.Column("extension_status", sa.VARCHAR(length=20), nullable=True),
        sa.Column("extension_reason", sa.Text(), nullable=True),
        sa.Column("extension_requested_by", postgresql.UUID(), nullable=True),
        _timestamp("extension_requested_at"),
        sa.Column("extension_target_appointment_id", postgresql.UUID(), nullable=True),
        _timestamp("extension_consent_requested_at"),
        _timestamp("extension_consent_expires_at"),
        sa.Column("extension_consent_by", postgresql.UUID(), nullable=True),
        sa.Column("extension_consent_response", sa.VARCHAR(length=20), nullable=True),
        _timestamp("extension_applied_at"),
        sa.Column("reschedule_proposed_by", sa.VARCHAR(length=20), nullable=True),
        _timestamp("reschedule_proposed_at"),
        sa.Column("reschedule_proposed_slots", sa.JSON(), nullable=True),
        sa.Column("reschedule_message", sa.Text(), nullable=True),
        _timestamp("reschedule_expires_at"),
        _timestamp("reschedule_accepted_at"),
        sa.Column("reschedule_accepted_by", sa.VARCHAR(length=20), nullable=True),
        _timestamp("created_at", nullable=False),
        _timestamp("updated_at", nullable=False),
        sa.CheckConstraint(
            "status IN (" + ", ".join(f"'{s}'" for s in STATUSES) + ")",
            name="appointments_status_check",
        ),
        sa.CheckConstraint(
            f"payment_status IN {PAYMENT_STATUSES}",
            name="appointments_payment_status_check",
        ),
        sa.ForeignKeyConstraint(
            ["patient_id"], ["patients.id"], name="fk_appointments_patient_id_patients"
        ),
        sa.ForeignKeyConstraint(
            ["doctor_id"], ["doctors.id"], name="fk_appointments_doctor_id_doctors"
        ),
        sa.ForeignKeyConstraint(
            ["schedule_id"],
            ["doctor_schedules.id"],
            name="fk_appointments_schedule_id_doctor_schedules",
        ),
        sa.ForeignKeyConstraint(
            ["new_schedule_id"],
            ["doctor_schedules.id"],
            name="fk_appointments_new_schedule_id_doctor_schedules",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_appointments"),
    )
    op.create_index("ix_appointments_patient_date", "appointments", ["patient_id", "appointment_date"])
    op.create_index("ix_appointments_doctor_date", "appointments", ["doctor_id", "appointment_date"])
    op.create_index("ix_appointments_schedule_id", "appointments", ["schedule_id"])
    op.create_index("ix_appointments_status", "appointments", ["status"])
    op.create_index(
        "ix_appointments_extension_target", "appointments", ["extension_target_appointment_id"]
    )

    op.create_table(
        "invoices",
        _id(),
        sa.Column("invoice_number", sa.VARCHAR(length=40), nullable=False),
        sa.Column("appointment_id", postgresql.UUID(), nullable=False),
        sa.Column("patient_id", postgresql.UUID(), nullable=False),
        sa.Column("doctor_id", postgresql.UUID(), nullable=False),
        sa.Column("invoice_type", sa.VARCHAR(length=20), nullable=False),
        sa.Column("subtotal", sa.BigInteger(), server_default="0", nullable=False),
        sa.Column("insurance_coverage", sa.BigInteger(), server_default="0", nullable=False),
        sa.Column("patient_amount", sa.BigInteger(), server_default="0", nullable=False),
        sa.Column("status", sa.VARCHAR(length=20), server_default="pending", nullable=False),
        _timestamp("due_date"),
        _timestamp("paid_at"),
        _timestamp("created_at", nullable=False),
        _timestamp("updated_at", nullable=False),
        sa.CheckConstraint(
            "invoice_type IN ('consultation', 'final_settlement')", name="invoices_type_check"
        ),
        sa.CheckConstraint(f"status IN {PAYMENT_STATUSES}", name="invoices_status_check"),
        sa.CheckConstraint(
            "subtotal = insurance_coverage + patient_amount", name="invoices_split_check"
        ),
        sa.ForeignKeyConstraint(
            ["appointment_id"],
            ["appointments.id"],
            name="fk_invoices_appointment_id_appointments",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_invoices"),
        sa.UniqueConstraint("invoice_number", name="uq_invoices_invoice_number"),
    )
    op.create_index(
        "ix_invoices_appointment_type_status",
        "invoices",
        ["appointment_id", "invoice_type", "status"],
    )
    op.create_index("ix_invoices_status_due", "invoices", ["status", "due_date"])
    op.create_index(
        "uq_invoices_pending_per_type",
        "invoices",
        ["appointment_id", "invoice_type"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "invoice_items",
        _id(),
        sa.Column("invoice_id", postgresql.UUID(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("item_type", sa.VARCHAR(length=30), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("insurance_amount", sa.BigInteger(), nullable=False),
        sa.Column("patient_amount", sa.BigInteger(), nullable=False),
        sa.CheckConstraint(
            "amount = insurance_amount + patient_amount", name="invoice_items_split_check"
        ),
        sa.ForeignKeyConstraint(
            ["invoice_id"],
            ["invoices.id"],
            name="fk_invoice_items_invoice_id_invoices",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_invoice_items"),
    )
    op.create_index("ix_invoice_items_invoice_id", "invoice_items", ["invoice_id"])

    op.create_table(
        "payments",
        _id(),
        sa.Column("appointment_id", postgresql.UUID(), nullable=False),
        sa.Column("invoice_id", postgresql.UUID(), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.VARCHAR(length=20), nullable=False),
        sa.Column("payment_method", sa.VARCHAR(length=30), nullable=False),
        sa.Column("transaction_id", sa.VARCHAR(length=100), nullable=True),
        _timestamp("captured_at"),
        _timestamp("refunded_at"),
        sa.Column("refund_amount", sa.BigInteger(), nullable=True),
        sa.Column("refund_reason", sa.Text(), nullable=True),
        _timestamp("created_at", nullable=False),
        sa.CheckConstraint(f"status IN {PAYMENT_STATUSES}", name="payments_status_check"),
        sa.ForeignKeyConstraint(
            ["appointment_id"],
            ["appointments.id"],
            name="fk_payments_appointment_id_appointments",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["invoice_id"], ["invoices.id"], name="fk_payments_invoice_id_invoices"
        ),
        sa.PrimaryKeyConstraint("id", name="pk_payments"),
        sa.UniqueConstraint("invoice_id", name="uq_payments_invoice_id"),
    )
    op.create_index("ix_payments_appointment_id", "payments", ["appointment_id"])

    op.create_table(
        "encounters",
        _id(),
        sa.Column("encounter_number", sa.VARCHAR(length=40), nullable=False),
        sa.Column("appointment_id", postgresql.UUID(), nullable=False),
        sa.Column("patient_id", postgresql.UUID(), nullable=False),
        sa.Column("doctor_id", postgresql.UUID(), nullable=False),
        sa.Column("status", sa.VARCHAR(length=30), server_default="in_consult", nullable=False),
        _timestamp("started_at"),
        _timestamp("completed_at"),
        _timestamp("created_at", nullable=False),
        sa.ForeignKeyConstraint(
            ["appointment_id"],
            ["appointments.id"],
            name="fk_encounters_appointment_id_appointments",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_encounters"),
        sa.UniqueConstraint("encounter_number", name="uq_encounters_encounter_number"),
        sa.UniqueConstraint("appointment_id", name="uq_encounters_appointment_id"),
    )

    op.create_table(
        "medical_records",
        _id(),
        sa.Column("appointment_id", postgresql.UUID(), nullable=True),
        sa.Column("patient_id", postgresql.UUID(), nullable=False),
        sa.Column("doctor_id", postgresql.UUID(), nullable=False),
        sa.Column("status", sa.VARCHAR(length=20), server_default="draft", nullable=False),
        sa.Column("patient_info", sa.JSON(), nullable=True),
        sa.Column("reason_for_visit", sa.Text(), nullable=True),
        sa.Column("chief_complaint", sa.Text(), nullable=True),
        sa.Column("medical_history", sa.Text(), nullable=True),
        sa.Column("allergies", sa.Text(), nullable=True),
        sa.Column("current_medications", sa.Text(), nullable=True),
        sa.Column("pregnancy_status", sa.VARCHAR(length=30), nullable=True),
        sa.Column("diagnosis", sa.Text(), nullable=True),
        sa.Column("prescription", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        _timestamp("completed_at"),
        _timestamp("created_at", nullable=False),
        _timestamp("updated_at", nullable=False),
        sa.ForeignKeyConstraint(
            ["appointment_id"],
            ["appointments.id"],
            name="fk_medical_records_appointment_id_appointments",
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_medical_records"),
        sa.UniqueConstraint("appointment_id", name="uq_medical_records_appointment_id"),
    )
    op.create_index(
        "ix_medical_records_patient_status", "medical_records", ["patient_id", "status"]
    )

    op.create_table(
        "notifications",
        _id(),
        sa.Column("user_id", postgresql.UUID(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("notification_type", sa.VARCHAR(length=50), nullable=False),
        sa.Column("data", sa.JSON(), nullable=True),
        sa.Column("status", sa.VARCHAR(length=20), server_default="pending", nullable=False),
        _timestamp("sent_at"),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        _timestamp("created_at", nullable=False),
        sa.CheckConstraint(
            "status IN ('pending', 'sent', 'delivered', 'failed', 'read')",
            name="notifications_status_check",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_notifications"),
    )
    op.create_index("ix_notifications_user_status", "notifications", ["user_id", "status"])

    op.create_table(
        "push_tokens",
        _id(),
        sa.Column("user_id", postgresql.UUID(), nullable=False),
        sa.Column("fcm_token", sa.Text(), nullable=False),
        sa.Column("platform", sa.VARCHAR(length=10), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        _timestamp("last_used_at"),
        _timestamp("created_at", nullable=False),
        sa.CheckConstraint(
            "platform IN ('android', 'ios', 'web')", name="push_tokens_platform_check"
        ),
        sa.PrimaryKeyConstraint("id", name="pk_push_tokens"),
    )
    op.create_index("ix_push_tokens_user_id", "push_tokens", ["user_id"])


def downgrade() -> None:
    """Downgrade database schema."""
    for table in (
        "push_tokens",
        "notifications",
        "medical_records",
        "encounters",
        "payments",
        "invoice_items",
        "invoices",
        "appointments",
        "doctor_tariffs",
        "clinic_services",
        "doctor_schedules",
        "patients",
        "doctors",
    ):
        op.drop_table(table)
