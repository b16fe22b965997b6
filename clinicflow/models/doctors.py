"""Doctor model definition using SQLAlchemy Core."""

import uuid

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Table,
    Text,
    Uuid,
    func,
    true,
)

from clinicflow.models.base import metadata

doctors = Table(
    "doctors",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid.uuid4),
    Column("full_name", Text, nullable=False),
    Column("specialty", Text, nullable=True, index=True),
    # Flat fee used when no tariff matches
    Column("consultation_fee", BigInteger, nullable=False, server_default="0"),
    Column("is_active", Boolean, nullable=False, server_default=true()),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)
