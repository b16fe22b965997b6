"""Patient model definition using SQLAlchemy Core."""

import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    String,
    Table,
    Text,
    Uuid,
    false,
    func,
)

from clinicflow.models.base import metadata

patients = Table(
    "patients",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid.uuid4),
    Column("full_name", Text, nullable=False),
    Column("birth_year", Integer),
    Column("gender", String(20)),
    Column("phone", String(20)),
    # Emergency contact
    Column("emergency_contact_name", Text),
    Column("emergency_contact_phone", String(20)),
    Column("emergency_contact_relation", String(50)),
    # Insurance
    Column("insurance_number", String(100)),
    Column("insurance_eligible", Boolean, nullable=False, server_default=false()),
    # Share of the facility price the patient still pays when insured (0-1)
    Column("copay_rate", Float, nullable=False, server_default="0"),
    # Standing medical information
    Column("allergies", Text),
    Column("current_medications", Text),
    Column("medical_history", Text),
    Column("pregnancy_status", String(30)),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)
