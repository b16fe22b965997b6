import os
import tempfile
from collections.abc import AsyncGenerator
from datetime import UTC, date, datetime, time, timedelta
from unittest.mock import MagicMock
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Tests run against a throwaway SQLite file unless TEST_DATABASE_URL says otherwise
TEST_DATABASE_URL = os.getenv(
    "TEST_DATABASE_URL",
    f"sqlite+aiosqlite:///{tempfile.gettempdir()}/clinicflow_test_{os.getpid()}.db",
)
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ["SWEEPER_ENABLED"] = "false"
os.environ.setdefault("LOG_FORMAT", "console")

from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import insert, select  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from clinicflow.config import settings  # noqa: E402
from clinicflow.core.cache import PricingCache  # noqa: E402
from clinicflow.core.clock import clinic_today  # noqa: E402
from clinicflow.core.security import create_access_token  # noqa: E402
from clinicflow.database import configure_sqlite, get_db  # noqa: E402
from clinicflow.dependencies import get_cache, get_notifier  # noqa: E402
from clinicflow.main import app  # noqa: E402
from clinicflow.models import (  # noqa: E402
    appointments,
    clinic_services,
    doctor_schedules,
    doctor_tariffs,
    doctors,
    metadata,
    patients,
)
from clinicflow.schemas.appointments import Actor, ActorRole, AppointmentResponse  # noqa: E402

# Safety check: never drop tables of the configured application database
if TEST_DATABASE_URL.startswith("postgresql") and not TEST_DATABASE_URL.rstrip("/").endswith("_test"):
    raise RuntimeError("TEST_DATABASE_URL must point at a database whose name ends in _test")

# Use NullPool so every session gets its own connection, like separate requests
test_engine = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,
    poolclass=NullPool,
    **({"connect_args": {"timeout": 30}} if TEST_DATABASE_URL.startswith("sqlite") else {}),
)
if TEST_DATABASE_URL.startswith("sqlite"):
    configure_sqlite(test_engine)

# Create test session factory
TestSessionLocal = async_sessionmaker(
    test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

# Monday 08:00 in the clinic, so slots later in the week are more than a day away
START_TIME = datetime(2026, 3, 2, 1, 0, tzinfo=UTC)


class FakeClock:
    """Callable clock the tests move by hand."""

    def __init__(self, now: datetime = START_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    """Notifier that keeps every delivered message."""

    def __init__(self, fail: bool = False):
        self.sent: list[dict] = []
        self.fail = fail

    async def notify(self, user_id, notification_type, title, body, meta=None) -> None:
        if self.fail:
            raise RuntimeError("push backend down")
        self.sent.append(
            {
                "user_id": user_id,
                "notification_type": notification_type,
                "title": title,
                "body": body,
                "meta": meta or {},
            }
        )

    def types_for(self, user_id: UUID) -> list[str]:
        return [n["notification_type"] for n in self.sent if n["user_id"] == user_id]


class Factory:
    """Inserts catalog rows the workflow needs and commits them."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def doctor(
        self,
        specialty: str | None = "cardiology",
        consultation_fee: int = 0,
        full_name: str = "Dr. Tran",
    ) -> UUID:
        doctor_id = uuid4()
        await self.db.execute(
            insert(doctors).values(
                id=doctor_id,
                full_name=full_name,
                specialty=specialty,
                consultation_fee=consultation_fee,
            )
        )
        await self.db.commit()
        return doctor_id

    async def patient(
        self,
        insurance_eligible: bool = False,
        copay_rate: float = 0.0,
        **values,
    ) -> UUID:
        patient_id = uuid4()
        await self.db.execute(
            insert(patients).values(
                id=patient_id,
                full_name=values.pop("full_name", "Nguyen Van A"),
                insurance_eligible=insurance_eligible,
                copay_rate=copay_rate,
                **values,
            )
        )
        await self.db.commit()
        return patient_id

    async def slot(
        self,
        doctor_id: UUID,
        day: date,
        start: time = time(9, 0),
        end: time = time(9, 30),
        status: str = "accepted",
        is_booked: bool = False,
    ) -> UUID:
        slot_id = uuid4()
        await self.db.execute(
            insert(doctor_schedules).values(
                id=slot_id,
                doctor_id=doctor_id,
                date=day,
                start_time=start,
                end_time=end,
                status=status,
                is_booked=is_booked,
            )
        )
        await self.db.commit()
        return slot_id

    async def service(self, code: str = "GEN", price: int = 100_000, name: str = "General exam") -> None:
        await self.db.execute(insert(clinic_services).values(code=code, name=name, price=price))
        await self.db.commit()

    async def tariff(self, doctor_id: UUID, service_code: str = "GEN", **values) -> UUID:
        tariff_id = uuid4()
        await self.db.execute(
            insert(doctor_tariffs).values(
                id=tariff_id,
                doctor_id=doctor_id,
                service_code=service_code,
                **values,
            )
        )
        await self.db.commit()
        return tariff_id

    async def slot_booked(self, slot_id: UUID) -> bool:
        result = await self.db.execute(
            select(doctor_schedules.c.is_booked).where(doctor_schedules.c.id == slot_id)
        )
        booked = result.scalar_one()
        await self.db.commit()
        return booked

    async def appointment(self, appointment_id: UUID) -> AppointmentResponse:
        result = await self.db.execute(select(appointments).where(appointments.c.id == appointment_id))
        row = result.fetchone()
        await self.db.commit()
        return AppointmentResponse.model_validate(dict(row._mapping))


def patient_actor(patient_id: UUID) -> Actor:
    return Actor(id=patient_id, role=ActorRole.PATIENT)


def doctor_actor(doctor_id: UUID) -> Actor:
    return Actor(id=doctor_id, role=ActorRole.DOCTOR)


def auth_headers_for(user_id: UUID, role: str) -> dict:
    """Bearer header for a patient, doctor or admin."""
    token = create_access_token(
        data={"sub": str(user_id), "role": role},
        expires_delta=timedelta(minutes=30),
    )
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session over freshly created tables."""
    async with test_engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
        await conn.run_sync(metadata.create_all)

    async with TestSessionLocal() as session:
        yield session

    # Drop tables after test
    async with test_engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)


@pytest.fixture
def session_factory() -> async_sessionmaker[AsyncSession]:
    """Factory for sessions independent of ``db_session``."""
    return TestSessionLocal


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def factory(db_session: AsyncSession) -> Factory:
    return Factory(db_session)


@pytest.fixture
def slot_day(clock: FakeClock) -> date:
    """Thursday of the test week, three days after the clock's start."""
    return clinic_today(clock()) + timedelta(days=3)


@pytest.fixture
def approval_mode(monkeypatch: pytest.MonkeyPatch) -> None:
    """Bookings wait for the doctor instead of opening a payment hold."""
    monkeypatch.setattr(settings, "booking_mode", "approval")


@pytest.fixture
def fake_redis() -> MagicMock:
    """Redis stand-in that always misses."""
    redis = MagicMock()
    redis.get.return_value = None
    redis.keys.return_value = []
    return redis


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    notifier: RecordingNotifier,
    fake_redis: MagicMock,
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session
        # Requests share the session; end whatever the handler left open
        await db_session.rollback()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_cache] = lambda: PricingCache(fake_redis)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def api_slot_day() -> date:
    """A clinic-local day a few days ahead of the real clock, for HTTP tests."""
    return clinic_today(datetime.now(UTC)) + timedelta(days=3)
