"""Time helpers shared by the workflow services."""

from collections.abc import Callable
from datetime import UTC, date, datetime, time
from functools import lru_cache
from zoneinfo import ZoneInfo

from clinicflow.config import settings

# Services take a clock so tests can move time without waiting
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """
    Normalize a datetime read back from the database.

    Some drivers return naive values for timezone-aware columns; those are
    stored in UTC, so the zone is attached rather than converted.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@lru_cache
def clinic_zone() -> ZoneInfo:
    """Timezone the clinic's calendar days are expressed in."""
    return ZoneInfo(settings.clinic_timezone)


def clinic_local(value: datetime) -> datetime:
    """Convert an aware datetime to clinic-local time."""
    return as_utc(value).astimezone(clinic_zone())


def clinic_today(now: datetime) -> date:
    """Clinic-local calendar day for ``now``."""
    return clinic_local(now).date()


def scheduled_start(day: date, start: time) -> datetime:
    """UTC instant of a clinic-local slot start."""
    return datetime.combine(day, start, tzinfo=clinic_zone()).astimezone(UTC)


def is_after_hours(start: datetime) -> bool:
    """True outside 07:00-18:00 clinic time or on a weekend."""
    local = clinic_local(start)
    return local.hour < 7 or local.hour >= 18 or local.weekday() >= 5
