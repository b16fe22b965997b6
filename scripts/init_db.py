"""Script to initialize the database."""

import asyncio

from sqlalchemy import text

from clinicflow.database import engine
from clinicflow.models import metadata


async def init_db() -> None:
    """Create all tables from the shared metadata."""
    async with engine.begin() as conn:
        if engine.dialect.name == "postgresql":
            await conn.execute(text('CREATE EXTENSION IF NOT EXISTS "pgcrypto"'))

        await conn.run_sync(metadata.create_all)

    await engine.dispose()
    print("✓ Database initialized successfully!")


if __name__ == "__main__":
    asyncio.run(init_db())
