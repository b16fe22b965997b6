"""Reschedule negotiation between doctor and patient."""

from datetime import timedelta
from uuid import UUID

import structlog

from clinicflow.config import settings
from clinicflow.core.exceptions import (
    BadRequestException,
    ForbiddenException,
    InvalidTransitionException,
    SlotUnavailableException,
    ValidationException,
)
from clinicflow.schemas.appointments import (
    Actor,
    ActorRole,
    AppointmentResponse,
    DoctorRescheduleRequest,
    RescheduleProposal,
)
from clinicflow.schemas.schedules import SlotStatus
from clinicflow.services.appointment_service import S, TERMINAL_STATUSES, AppointmentService
from clinicflow.services.notification_service import Notice

logger = structlog.get_logger(__name__)

# Once the consultation has begun the visit can no longer move
NON_PROPOSABLE_STATUSES = TERMINAL_STATUSES | {
    S.IN_CONSULT,
    S.PRESCRIPTION_ISSUED,
    S.READY_TO_DISCHARGE,
}

CLEARED_RESCHEDULE_FIELDS = {
    "new_schedule_id": None,
    "reschedule_accepted_at": None,
    "reschedule_accepted_by": None,
    "reschedule_proposed_by": None,
    "reschedule_proposed_at": None,
    "reschedule_proposed_slots": None,
    "reschedule_message": None,
    "reschedule_expires_at": None,
}


class RescheduleService(AppointmentService):
    """Doctor-initiated reschedule requests and patient proposals."""

    async def request_reschedule(
        self, appointment_id: UUID, actor: Actor, data: DoctorRescheduleRequest
    ) -> AppointmentResponse:
        """
        Ask the patient to move to another of the doctor's slots.

        Raises:
            ValidationException: If the new slot is the current one
            SlotUnavailableException: If the new slot is not free
        """
        async with self.unit_of_work() as outbox:
            appointment = await self.load_for(appointment_id, actor)
            self.check_edge(appointment, actor, S.DOCTOR_RESCHEDULE)

            slot = await self.slots.get_doctor_slot(data.new_schedule_id, appointment.doctor_id)
            if slot.id == appointment.schedule_id:
                raise ValidationException("New slot must differ from the current one")
            if slot.is_booked or slot.status is not SlotStatus.ACCEPTED:
                raise SlotUnavailableException()

            now = self.clock()
            appointment = await self.transition(
                appointment,
                actor,
                S.DOCTOR_RESCHEDULE,
                {
                    "new_schedule_id": slot.id,
                    "doctor_decision": "reschedule",
                    "reschedule_reason": data.reason,
                    "doctor_notes": data.notes,
                    "reschedule_proposed_by": ActorRole.DOCTOR.value,
                    "reschedule_proposed_at": now,
                    "reschedule_proposed_slots": [str(slot.id)],
                    "reschedule_message": data.reason,
                    "reschedule_expires_at": None,
                    "reschedule_accepted_at": None,
                    "reschedule_accepted_by": None,
                    "hold_expires_at": None,
                },
            )
            outbox.append(
                Notice(
                    user_id=appointment.patient_id,
                    notification_type="reschedule_requested",
                    title="Doctor asks to reschedule",
                    body=f"Proposed new time: {slot.date} at {slot.start_time:%H:%M}.",
                    meta={
                        "appointment_id": str(appointment.id),
                        "new_schedule_id": str(slot.id),
                    },
                )
            )
        return appointment

    async def propose_reschedule(
        self, appointment_id: UUID, actor: Actor, data: RescheduleProposal
    ) -> AppointmentResponse:
        """
        Record a patient's proposal of other times; replaces any earlier proposal.

        Raises:
            ForbiddenException: If the actor is not the appointment's patient
            InvalidTransitionException: If the visit can no longer move
        """
        if actor.role is not ActorRole.PATIENT:
            raise ForbiddenException("Only the patient can propose a reschedule")

        async with self.unit_of_work() as outbox:
            appointment = await self.load_for(appointment_id, actor)
            if appointment.status in NON_PROPOSABLE_STATUSES:
                raise InvalidTransitionException(
                    appointment.status.value,
                    S.DOCTOR_RESCHEDULE.value,
                    "Appointment can no longer be rescheduled",
                )

            now = self.clock()
            appointment = await self.update_fields(
                appointment,
                {
                    "reschedule_proposed_by": ActorRole.PATIENT.value,
                    "reschedule_proposed_at": now,
                    "reschedule_proposed_slots": list(data.proposed_slots),
                    "reschedule_message": data.message,
                    "reschedule_expires_at": now + timedelta(days=settings.reschedule_proposal_days),
                    "reschedule_accepted_at": None,
                    "reschedule_accepted_by": None,
                },
            )
            outbox.append(
                Notice(
                    user_id=appointment.doctor_id,
                    notification_type="reschedule_proposed",
                    title="Patient proposes a new time",
                    body=data.message or "The patient asked to move the appointment.",
                    meta={"appointment_id": str(appointment.id)},
                )
            )
        return appointment

    def _has_active_proposal(self, appointment: AppointmentResponse) -> bool:
        proposal = appointment.reschedule_proposal
        return (
            proposal is not None
            and proposal.accepted_at is None
            and proposal.expires_at is not None
            and proposal.expires_at > self.clock()
        )

    async def accept_reschedule(
        self, appointment_id: UUID, actor: Actor, slot_id: UUID | None = None
    ) -> AppointmentResponse:
        """
        Move the appointment to a new slot.

        Without ``slot_id`` the patient takes the slot the doctor offered.
        With it, the patient picks a free slot of the same doctor, which needs
        a pending doctor request or an open proposal of their own. Leaving
        DOCTOR_RESCHEDULE, the appointment ends up CONFIRMED when already
        paid, otherwise BOOKED; any other status is kept.

        Raises:
            BadRequestException: If there is nothing to accept
            SlotUnavailableException: If the target slot is taken
        """
        async with self.unit_of_work() as outbox:
            appointment = await self.load_for(appointment_id, actor)

            if slot_id is None:
                if appointment.status is not S.DOCTOR_RESCHEDULE or appointment.new_schedule_id is None:
                    raise BadRequestException("No reschedule offer to accept")
                target_slot_id = appointment.new_schedule_id
            else:
                if appointment.status is not S.DOCTOR_RESCHEDULE and not self._has_active_proposal(
                    appointment
                ):
                    raise BadRequestException("No active reschedule to accept")
                target_slot_id = slot_id

            slot = await self.slots.get_doctor_slot(target_slot_id, appointment.doctor_id)
            if slot.id == appointment.schedule_id:
                raise ValidationException("New slot must differ from the current one")
            if slot.is_booked or slot.status is not SlotStatus.ACCEPTED:
                raise SlotUnavailableException()

            target = appointment.status
            if appointment.status is S.DOCTOR_RESCHEDULE:
                target = S.CONFIRMED if appointment.is_paid else S.BOOKED
            moves_status = target is not appointment.status
            if moves_status:
                self.check_edge(appointment, actor, target)
            elif actor.role is not ActorRole.ADMIN and appointment.patient_id != actor.id:
                raise ForbiddenException("Only the patient can accept a reschedule")

            await self.slots.swap(appointment.schedule_id, slot.id)

            now = self.clock()
            # The accepted proposal stays on record; only the pending offer goes
            values = {
                "new_schedule_id": None,
                "schedule_id": slot.id,
                "appointment_date": slot.date,
                "appointment_time": slot.start_time,
                "reschedule_accepted_at": now,
                "reschedule_accepted_by": actor.role.value,
            }
            if moves_status:
                if target is S.CONFIRMED:
                    values["confirmed_at"] = appointment.confirmed_at or now
                appointment = await self.transition(appointment, actor, target, values)
            else:
                appointment = await self.update_fields(appointment, values)

            outbox.append(
                Notice(
                    user_id=appointment.doctor_id,
                    notification_type="reschedule_accepted",
                    title="Reschedule accepted",
                    body=f"The appointment moved to {slot.date} at {slot.start_time:%H:%M}.",
                    meta={"appointment_id": str(appointment.id)},
                )
            )

        logger.info(
            "appointment_rescheduled",
            appointment_id=str(appointment.id),
            slot_id=str(appointment.schedule_id),
        )
        return appointment

    async def decline_reschedule(self, appointment_id: UUID, actor: Actor) -> AppointmentResponse:
        """Patient turns down the doctor's offer; the appointment is cancelled."""
        async with self.unit_of_work() as outbox:
            appointment = await self.load_for(appointment_id, actor)
            if appointment.status is not S.DOCTOR_RESCHEDULE:
                raise InvalidTransitionException(
                    appointment.status.value,
                    S.CANCELLED.value,
                    "No reschedule offer to decline",
                )
            appointment = await self.transition(
                appointment,
                actor,
                S.CANCELLED,
                {
                    **CLEARED_RESCHEDULE_FIELDS,
                    "cancelled_at": self.clock(),
                    "cancelled_by": actor.role.value,
                    "cancellation_reason": "Reschedule declined",
                },
            )
            outbox.append(
                Notice(
                    user_id=appointment.doctor_id,
                    notification_type="reschedule_declined",
                    title="Reschedule declined",
                    body="The patient declined the new time; the appointment is cancelled.",
                    meta={"appointment_id": str(appointment.id)},
                )
            )
        return appointment
