"""Encounter and medical record tables."""

import uuid

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Table,
    Text,
    Uuid,
    func,
)

from clinicflow.models.base import metadata

encounters = Table(
    "encounters",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid.uuid4),
    Column("encounter_number", String(40), nullable=False, unique=True),
    Column(
        "appointment_id",
        Uuid,
        ForeignKey("appointments.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    ),
    Column("patient_id", Uuid, nullable=False),
    Column("doctor_id", Uuid, nullable=False),
    Column("status", String(30), nullable=False, server_default="in_consult"),
    Column("started_at", DateTime(timezone=True)),
    Column("completed_at", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)

medical_records = Table(
    "medical_records",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid.uuid4),
    Column(
        "appointment_id",
        Uuid,
        ForeignKey("appointments.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
    ),
    Column("patient_id", Uuid, nullable=False),
    Column("doctor_id", Uuid, nullable=False),
    Column("status", String(20), nullable=False, server_default="draft"),
    Column("patient_info", JSON),
    Column("reason_for_visit", Text),
    Column("chief_complaint", Text),
    # Carried forward from the previous completed record
    Column("medical_history", Text),
    Column("allergies", Text),
    Column("current_medications", Text),
    Column("pregnancy_status", String(30)),
    # Filled when the consultation ends
    Column("diagnosis", Text),
    Column("prescription", Text),
    Column("notes", Text),
    Column("completed_at", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Index("ix_medical_records_patient_status", "patient_id", "status"),
)
