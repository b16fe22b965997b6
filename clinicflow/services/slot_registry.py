"""Slot registry: the only writer of a slot's booked flag."""

from datetime import date
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from clinicflow.core.exceptions import NotFoundException, SlotUnavailableException
from clinicflow.models.schedules import doctor_schedules
from clinicflow.schemas.schedules import SlotResponse, SlotStatus

logger = structlog.get_logger(__name__)


class SlotRegistry:
    """Atomic acquire/release of doctor schedule slots."""

    def __init__(self, db: AsyncSession):
        """Initialize registry with database session."""
        self.db = db

    async def get_slot(self, slot_id: UUID) -> SlotResponse:
        """
        Load a slot.

        Raises:
            NotFoundException: If the slot does not exist
        """
        result = await self.db.execute(
            select(doctor_schedules).where(doctor_schedules.c.id == slot_id)
        )
        row = result.fetchone()
        if not row:
            raise NotFoundException("Schedule not found")
        return SlotResponse.model_validate(dict(row._mapping))

    async def get_doctor_slot(self, slot_id: UUID, doctor_id: UUID) -> SlotResponse:
        """
        Load a slot that must belong to the given doctor.

        Raises:
            NotFoundException: If the slot is missing or owned by another doctor
        """
        slot = await self.get_slot(slot_id)
        if slot.doctor_id != doctor_id:
            raise NotFoundException("Schedule not found for this doctor")
        return slot

    async def list_available(self, doctor_id: UUID, day: date | None = None) -> list[SlotResponse]:
        """List open slots for a doctor, optionally for one clinic-local day."""
        conditions = [
            doctor_schedules.c.doctor_id == doctor_id,
            doctor_schedules.c.is_booked == False,  # noqa: E712
            doctor_schedules.c.status == SlotStatus.ACCEPTED.value,
        ]
        if day is not None:
            conditions.append(doctor_schedules.c.date == day)

        result = await self.db.execute(
            select(doctor_schedules)
            .where(*conditions)
            .order_by(doctor_schedules.c.date, doctor_schedules.c.start_time)
        )
        return [SlotResponse.model_validate(dict(row._mapping)) for row in result.fetchall()]

    async def acquire(self, slot_id: UUID) -> None:
        """
        Mark a slot booked with a single conditional write.

        Raises:
            SlotUnavailableException: If another booking holds the slot or it is not open
        """
        result = await self.db.execute(
            update(doctor_schedules)
            .where(
                doctor_schedules.c.id == slot_id,
                doctor_schedules.c.is_booked == False,  # noqa: E712
                doctor_schedules.c.status == SlotStatus.ACCEPTED.value,
            )
            .values(is_booked=True)
        )
        if result.rowcount != 1:
            logger.info("slot_acquire_lost", slot_id=str(slot_id))
            raise SlotUnavailableException()
        logger.debug("slot_acquired", slot_id=str(slot_id))

    async def release(self, slot_id: UUID | None) -> bool:
        """
        Mark a slot free again. Releasing a free or missing slot is a no-op.

        Returns:
            True if the flag changed
        """
        if slot_id is None:
            return False
        result = await self.db.execute(
            update(doctor_schedules)
            .where(
                doctor_schedules.c.id == slot_id,
                doctor_schedules.c.is_booked == True,  # noqa: E712
            )
            .values(is_booked=False)
        )
        released = result.rowcount == 1
        if released:
            logger.debug("slot_released", slot_id=str(slot_id))
        return released

    async def swap(self, old_slot_id: UUID | None, new_slot_id: UUID) -> None:
        """Move a booking to another slot; the new slot is taken first."""
        await self.acquire(new_slot_id)
        await self.release(old_slot_id)
