"""Encounters and medical records opened by the consultation workflow.

Everything here is best-effort: each write runs in its own SAVEPOINT and a
failure is logged, leaving the enclosing appointment transition intact.
"""

from datetime import datetime
from uuid import uuid4

import structlog
from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from clinicflow.models.clinical import encounters, medical_records
from clinicflow.models.patients import patients
from clinicflow.schemas.appointments import AppointmentResponse

logger = structlog.get_logger(__name__)

# Fields carried over from the patient's last completed record
CARRIED_FIELDS = ("medical_history", "allergies", "current_medications", "pregnancy_status")


def encounter_number(now: datetime) -> str:
    """Human-facing encounter number."""
    return f"ENC-{now:%Y%m%d%H%M%S}-{uuid4().hex[:6].upper()}"


class ClinicalRecordService:
    """Creates and updates the clinical paperwork of an appointment."""

    def __init__(self, db: AsyncSession):
        """Initialize service with database session."""
        self.db = db

    async def open_consultation(self, appointment: AppointmentResponse, now: datetime) -> None:
        """Ensure an encounter and a draft medical record exist for the appointment."""
        try:
            async with self.db.begin_nested():
                await self._ensure_encounter(appointment, now)
        except Exception as e:
            logger.warning(
                "encounter_creation_failed",
                appointment_id=str(appointment.id),
                error=str(e),
            )

        try:
            async with self.db.begin_nested():
                await self._ensure_medical_record(appointment, now)
        except Exception as e:
            logger.warning(
                "medical_record_prefill_failed",
                appointment_id=str(appointment.id),
                error=str(e),
            )

    async def _ensure_encounter(self, appointment: AppointmentResponse, now: datetime) -> None:
        result = await self.db.execute(
            select(encounters.c.id).where(encounters.c.appointment_id == appointment.id)
        )
        if result.scalar_one_or_none() is not None:
            return

        await self.db.execute(
            insert(encounters).values(
                encounter_number=encounter_number(now),
                appointment_id=appointment.id,
                patient_id=appointment.patient_id,
                doctor_id=appointment.doctor_id,
                status="in_consult",
                started_at=now,
                created_at=now,
            )
        )
        logger.info("encounter_created", appointment_id=str(appointment.id))

    async def _ensure_medical_record(
        self, appointment: AppointmentResponse, now: datetime
    ) -> None:
        result = await self.db.execute(
            select(medical_records.c.id).where(medical_records.c.appointment_id == appointment.id)
        )
        if result.scalar_one_or_none() is not None:
            return

        result = await self.db.execute(select(patients).where(patients.c.id == appointment.patient_id))
        patient = result.fetchone()

        result = await self.db.execute(
            select(medical_records)
            .where(
                medical_records.c.patient_id == appointment.patient_id,
                medical_records.c.status == "completed",
            )
            .order_by(medical_records.c.completed_at.desc())
            .limit(1)
        )
        previous = result.fetchone()

        values = {
            "appointment_id": appointment.id,
            "patient_id": appointment.patient_id,
            "doctor_id": appointment.doctor_id,
            "status": "draft",
            "reason_for_visit": appointment.symptoms,
            "chief_complaint": appointment.symptoms,
            "created_at": now,
            "updated_at": now,
        }

        if patient is not None:
            values["patient_info"] = {
                "full_name": patient.full_name,
                "birth_year": patient.birth_year,
                "gender": patient.gender,
                "phone": patient.phone,
                "insurance_number": patient.insurance_number,
                "emergency_contact": {
                    "name": patient.emergency_contact_name,
                    "phone": patient.emergency_contact_phone,
                    "relation": patient.emergency_contact_relation,
                },
            }
            for field in CARRIED_FIELDS:
                values[field] = getattr(patient, field)

        # The last completed record is more current than the profile
        if previous is not None:
            for field in CARRIED_FIELDS:
                carried = getattr(previous, field)
                if carried:
                    values[field] = carried

        await self.db.execute(insert(medical_records).values(**values))
        logger.info(
            "medical_record_drafted",
            appointment_id=str(appointment.id),
            prefilled_from_record=previous is not None,
        )

    async def record_outcome(
        self,
        appointment: AppointmentResponse,
        diagnosis: str,
        prescription: str | None,
        notes: str | None,
        now: datetime,
    ) -> None:
        """Complete the medical record with the consultation outcome."""
        try:
            async with self.db.begin_nested():
                await self.db.execute(
                    update(medical_records)
                    .where(medical_records.c.appointment_id == appointment.id)
                    .values(
                        status="completed",
                        diagnosis=diagnosis,
                        prescription=prescription,
                        notes=notes,
                        completed_at=now,
                        updated_at=now,
                    )
                )
                await self.db.execute(
                    update(encounters)
                    .where(encounters.c.appointment_id == appointment.id)
                    .values(status="prescription_issued")
                )
        except Exception as e:
            logger.warning(
                "medical_record_update_failed",
                appointment_id=str(appointment.id),
                error=str(e),
            )

    async def close_encounter(self, appointment: AppointmentResponse, status: str, now: datetime) -> None:
        """Mirror a late-stage appointment status onto its encounter."""
        try:
            async with self.db.begin_nested():
                values: dict = {"status": status}
                if status == "completed":
                    values["completed_at"] = now
                await self.db.execute(
                    update(encounters)
                    .where(encounters.c.appointment_id == appointment.id)
                    .values(**values)
                )
        except Exception as e:
            logger.warning(
                "encounter_update_failed",
                appointment_id=str(appointment.id),
                error=str(e),
            )
