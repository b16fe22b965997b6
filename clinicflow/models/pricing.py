"""Service catalog and doctor tariff tables."""

import uuid

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    String,
    Table,
    Text,
    Uuid,
    func,
    true,
)

from clinicflow.models.base import metadata

clinic_services = Table(
    "clinic_services",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid.uuid4),
    Column("code", String(50), nullable=False, unique=True),
    Column("name", Text, nullable=False),
    Column("price", BigInteger, nullable=False, server_default="0"),
    Column("is_active", Boolean, nullable=False, server_default=true()),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)

doctor_tariffs = Table(
    "doctor_tariffs",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid.uuid4),
    Column(
        "doctor_id",
        Uuid,
        ForeignKey("doctors.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("service_code", String(50), nullable=False),
    Column("fee_type", String(20), nullable=False, server_default="flat"),
    Column("base_fee", BigInteger, nullable=False, server_default="0"),
    Column("unit_fee", BigInteger, nullable=False, server_default="0"),
    Column("min_fee", BigInteger, nullable=True),
    Column("max_fee", BigInteger, nullable=True),
    Column("after_hours_multiplier", Float, nullable=False, server_default="1"),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    CheckConstraint("fee_type IN ('flat', 'per_15min')", name="fee_type_check"),
    CheckConstraint("status IN ('active', 'inactive')", name="status_check"),
    Index("ix_doctor_tariffs_doctor_service", "doctor_id", "service_code"),
)
