"""Invoice, invoice item and payment tables."""

import uuid

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    Uuid,
    func,
    text,
)

from clinicflow.models.base import metadata

invoices = Table(
    "invoices",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid.uuid4),
    Column("invoice_number", String(40), nullable=False, unique=True),
    Column(
        "appointment_id",
        Uuid,
        ForeignKey("appointments.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("patient_id", Uuid, nullable=False),
    Column("doctor_id", Uuid, nullable=False),
    Column("invoice_type", String(20), nullable=False),
    Column("subtotal", BigInteger, nullable=False, server_default="0"),
    Column("insurance_coverage", BigInteger, nullable=False, server_default="0"),
    Column("patient_amount", BigInteger, nullable=False, server_default="0"),
    Column("status", String(20), nullable=False, server_default="pending"),
    Column("due_date", DateTime(timezone=True), nullable=True),
    Column("paid_at", DateTime(timezone=True), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    CheckConstraint(
        "invoice_type IN ('consultation', 'final_settlement')",
        name="type_check",
    ),
    CheckConstraint(
        "status IN ('pending', 'authorized', 'captured', 'refunded', 'failed')",
        name="status_check",
    ),
    CheckConstraint("subtotal = insurance_coverage + patient_amount", name="split_check"),
    Index("ix_invoices_appointment_type_status", "appointment_id", "invoice_type", "status"),
    Index("ix_invoices_status_due", "status", "due_date"),
    # At most one open invoice of each type per appointment
    Index(
        "uq_invoices_pending_per_type",
        "appointment_id",
        "invoice_type",
        unique=True,
        postgresql_where=text("status = 'pending'"),
        sqlite_where=text("status = 'pending'"),
    ),
)

invoice_items = Table(
    "invoice_items",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid.uuid4),
    Column(
        "invoice_id",
        Uuid,
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("position", Integer, nullable=False),
    Column("item_type", String(30), nullable=False),
    Column("description", Text, nullable=False),
    Column("amount", BigInteger, nullable=False),
    Column("insurance_amount", BigInteger, nullable=False),
    Column("patient_amount", BigInteger, nullable=False),
    CheckConstraint("amount = insurance_amount + patient_amount", name="split_check"),
)

payments = Table(
    "payments",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid.uuid4),
    Column(
        "appointment_id",
        Uuid,
        ForeignKey("appointments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("invoice_id", Uuid, ForeignKey("invoices.id"), nullable=False, unique=True),
    Column("amount", BigInteger, nullable=False),
    Column("status", String(20), nullable=False),
    Column("payment_method", String(30), nullable=False),
    Column("transaction_id", String(100)),
    Column("captured_at", DateTime(timezone=True)),
    Column("refunded_at", DateTime(timezone=True)),
    Column("refund_amount", BigInteger),
    Column("refund_reason", Text),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    CheckConstraint(
        "status IN ('pending', 'authorized', 'captured', 'refunded', 'failed')",
        name="status_check",
    ),
)
