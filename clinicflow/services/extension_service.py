"""Consultation extension with consent from the next patient in line."""

from datetime import timedelta
from uuid import UUID

import structlog
from sqlalchemy import select, update

from clinicflow.config import settings
from clinicflow.core.exceptions import (
    ConflictException,
    ConsentExpiredException,
    ForbiddenException,
    InvalidTransitionException,
    NotFoundException,
)
from clinicflow.models.appointments import appointments
from clinicflow.schemas.appointments import (
    Actor,
    ActorRole,
    AppointmentResponse,
    ExtensionInfo,
    ExtensionRequest,
    ExtensionStatus,
)
from clinicflow.services.appointment_service import S, AppointmentService
from clinicflow.services.notification_service import Notice

logger = structlog.get_logger(__name__)

EXTENDABLE_STATUSES = frozenset({S.CONFIRMED, S.IN_CONSULT})


class ExtensionService(AppointmentService):
    """Requests extra consultation time and collects the next patient's answer."""

    async def _next_appointment(self, appointment: AppointmentResponse) -> AppointmentResponse | None:
        """The doctor's next appointment that day, by booking order."""
        result = await self.db.execute(
            select(appointments)
            .where(
                appointments.c.doctor_id == appointment.doctor_id,
                appointments.c.appointment_date == appointment.appointment_date,
                appointments.c.id != appointment.id,
                appointments.c.status != S.CANCELLED.value,
                appointments.c.created_at > appointment.created_at,
            )
            .order_by(appointments.c.created_at)
            .limit(1)
        )
        row = result.fetchone()
        if not row:
            return None
        return AppointmentResponse.model_validate(dict(row._mapping))

    async def request_extension(
        self, appointment_id: UUID, actor: Actor, data: ExtensionRequest
    ) -> AppointmentResponse:
        """
        Ask the next patient to accept a delay.

        Args:
            appointment_id: Appointment running over
            actor: Doctor (or admin) asking
            data: Minutes requested and reason

        Returns:
            Appointment carrying the pending extension

        Raises:
            ForbiddenException: If a patient asks
            InvalidTransitionException: If the appointment is not confirmed or in consultation
            ConflictException: If an unexpired request is already pending
        """
        if actor.role not in (ActorRole.DOCTOR, ActorRole.ADMIN):
            raise ForbiddenException("Only the doctor can request an extension")

        async with self.unit_of_work() as outbox:
            appointment = await self.load_for(appointment_id, actor)
            if appointment.status not in EXTENDABLE_STATUSES:
                raise InvalidTransitionException(
                    appointment.status.value,
                    appointment.status.value,
                    "Extensions can only be requested for confirmed or ongoing consultations",
                )

            now = self.clock()
            current = appointment.extension
            if (
                current is not None
                and current.status is ExtensionStatus.CONSENT_PENDING
                and current.consent_expires_at is not None
                and current.consent_expires_at >= now
            ):
                raise ConflictException("An extension request is already pending")

            target = await self._next_appointment(appointment)
            appointment = await self.update_fields(
                appointment,
                {
                    "extension_minutes": data.minutes,
                    "extension_status": ExtensionStatus.CONSENT_PENDING.value,
                    "extension_reason": data.reason,
                    "extension_requested_by": actor.id,
                    "extension_requested_at": now,
                    "extension_target_appointment_id": target.id if target else None,
                    "extension_consent_requested_at": now,
                    "extension_consent_expires_at": now
                    + timedelta(minutes=settings.extension_consent_minutes),
                    "extension_consent_by": None,
                    "extension_consent_response": None,
                    "extension_applied_at": None,
                },
            )

            if target is not None:
                outbox.append(
                    Notice(
                        user_id=target.patient_id,
                        notification_type="extension_consent",
                        title="Your doctor is running late",
                        body=(
                            f"The previous consultation needs {data.minutes} more minutes. "
                            "Do you accept the delay?"
                        ),
                        meta={
                            "appointment_id": str(target.id),
                            "from_appointment_id": str(appointment.id),
                            "minutes": str(data.minutes),
                        },
                    )
                )

        logger.info(
            "extension_requested",
            appointment_id=str(appointment.id),
            minutes=data.minutes,
            target_appointment_id=str(target.id) if target else None,
        )
        return appointment

    async def _pending_requester(self, target_id: UUID) -> AppointmentResponse | None:
        result = await self.db.execute(
            select(appointments)
            .where(
                appointments.c.extension_target_appointment_id == target_id,
                appointments.c.extension_status == ExtensionStatus.CONSENT_PENDING.value,
            )
            .order_by(appointments.c.extension_requested_at.desc())
            .limit(1)
        )
        row = result.fetchone()
        if not row:
            return None
        return AppointmentResponse.model_validate(dict(row._mapping))

    async def _set_extension_status(
        self,
        requester: AppointmentResponse,
        status: ExtensionStatus,
        **values,
    ) -> bool:
        """Compare-and-set the extension status from consent_pending."""
        result = await self.db.execute(
            update(appointments)
            .where(
                appointments.c.id == requester.id,
                appointments.c.extension_status == ExtensionStatus.CONSENT_PENDING.value,
            )
            .values(extension_status=status.value, updated_at=self.clock(), **values)
        )
        return result.rowcount == 1

    async def respond_extension(
        self, target_id: UUID, actor: Actor, accept: bool
    ) -> AppointmentResponse:
        """
        Record the next patient's answer.

        Accepting shifts the target appointment by a note on it; the requester
        is told either way.

        Args:
            target_id: The downstream appointment asked for consent
            actor: Its patient
            accept: The answer

        Returns:
            The target appointment

        Raises:
            NotFoundException: If there is no pending request for the appointment
            ConsentExpiredException: If the consent window has passed
            ForbiddenException: If the actor is not the target's patient
        """
        async with self.unit_of_work() as outbox:
            target = await self.load(target_id, for_update=True)
            requester = await self._pending_requester(target_id)
            if requester is None or requester.extension is None:
                raise NotFoundException("No pending extension request for this appointment")

            now = self.clock()
            extension = requester.extension
            if extension.consent_expires_at is not None and extension.consent_expires_at < now:
                await self._set_extension_status(requester, ExtensionStatus.TIMEOUT)
                await self.db.commit()
                logger.info("extension_consent_timeout", appointment_id=str(requester.id))
                raise ConsentExpiredException()

            if actor.role is not ActorRole.ADMIN and target.patient_id != actor.id:
                raise ForbiddenException("Only the next patient can answer this request")

            status = ExtensionStatus.ACCEPTED if accept else ExtensionStatus.DECLINED
            values = {
                "extension_consent_by": actor.id,
                "extension_consent_response": "accept" if accept else "decline",
            }
            if accept:
                values["extension_applied_at"] = now
            changed = await self._set_extension_status(requester, status, **values)
            if not changed:
                raise ConflictException("Extension request was already answered")

            if accept:
                shift_note = f"[Shifted by {extension.minutes} minutes due to previous appointment]"
                notes = f"{target.notes}\n{shift_note}" if target.notes else shift_note
                target = await self.update_fields(target, {"notes": notes})

            outbox.append(
                Notice(
                    user_id=requester.doctor_id,
                    notification_type="extension_accepted" if accept else "extension_declined",
                    title="Extension accepted" if accept else "Extension declined",
                    body=(
                        f"The next patient accepted a {extension.minutes} minute delay."
                        if accept
                        else "The next patient declined the delay."
                    ),
                    meta={
                        "appointment_id": str(requester.id),
                        "target_appointment_id": str(target.id),
                    },
                )
            )

        logger.info(
            "extension_answered",
            appointment_id=str(requester.id),
            target_appointment_id=str(target_id),
            accepted=accept,
        )
        return target

    async def get_extension(self, appointment_id: UUID, actor: Actor) -> ExtensionInfo | None:
        """The extension sub-record, marking an unanswered request timed out once expired."""
        appointment = await self.load_for(appointment_id, actor, for_update=False)
        extension = appointment.extension
        if (
            extension is not None
            and extension.status is ExtensionStatus.CONSENT_PENDING
            and extension.consent_expires_at is not None
            and extension.consent_expires_at < self.clock()
        ):
            async with self.unit_of_work():
                await self._set_extension_status(appointment, ExtensionStatus.TIMEOUT)
            extension = extension.model_copy(update={"status": ExtensionStatus.TIMEOUT})
        return extension
