"""Doctor schedule slots using SQLAlchemy Core."""

import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    String,
    Table,
    Time,
    Uuid,
    false,
    func,
)

from clinicflow.models.base import metadata

doctor_schedules = Table(
    "doctor_schedules",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid.uuid4),
    Column(
        "doctor_id",
        Uuid,
        ForeignKey("doctors.id", ondelete="CASCADE"),
        nullable=False,
    ),
    # Clinic-local calendar day and time range
    Column("date", Date, nullable=False),
    Column("start_time", Time, nullable=False),
    Column("end_time", Time, nullable=False),
    # Only the slot registry writes this flag
    Column("is_booked", Boolean, nullable=False, server_default=false()),
    Column("status", String(20), nullable=False, server_default="pending"),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    CheckConstraint(
        "status IN ('pending', 'accepted', 'rejected', 'busy')",
        name="status_check",
    ),
    Index("ix_doctor_schedules_doctor_date", "doctor_id", "date"),
)
