"""Doctor schedule slot schemas."""

from datetime import date, datetime, time
from enum import Enum
from uuid import UUID

from pydantic import BaseModel


class SlotStatus(str, Enum):
    """Administrative status of a slot."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    BUSY = "busy"


class SlotResponse(BaseModel):
    """Schema for a bookable slot."""

    id: UUID
    doctor_id: UUID
    date: date
    start_time: time
    end_time: time
    is_booked: bool
    status: SlotStatus

    model_config = {"from_attributes": True}

    @property
    def duration_minutes(self) -> int:
        """Length of the slot; zero when the range is empty or inverted."""
        start = datetime.combine(self.date, self.start_time)
        end = datetime.combine(self.date, self.end_time)
        return max(0, int((end - start).total_seconds() // 60))
