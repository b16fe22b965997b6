"""Appointment state machine.

``AppointmentService.transition`` is the only place an appointment's status
is written. Request handlers, the payment flow, the negotiation protocols and
the hold expiry sweeper all go through it, so legality, authority and side
effects are enforced in one spot.
"""

from datetime import date, timedelta
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from clinicflow.config import settings
from clinicflow.core.cache import PricingCache
from clinicflow.core.clock import Clock, clinic_today, scheduled_start, utcnow
from clinicflow.core.exceptions import (
    DuplicateBookingException,
    ForbiddenException,
    InvalidTransitionException,
    NotFoundException,
    SlotUnavailableException,
    TooLateToCancelException,
    ValidationException,
)
from clinicflow.models.appointments import appointments
from clinicflow.models.doctors import doctors
from clinicflow.models.patients import patients
from clinicflow.schemas.appointments import (
    Actor,
    ActorRole,
    AdditionalService,
    AppointmentCancel,
    AppointmentCreate,
    AppointmentListResponse,
    AppointmentResponse,
    AppointmentStatus,
    ConsultationCompletion,
    DoctorApproval,
    DoctorRejection,
    PaymentStatus,
    system_actor,
)
from clinicflow.schemas.invoices import InvoiceItem, InvoiceResponse, InvoiceType
from clinicflow.schemas.pricing import PriceQuote, PriceRequest
from clinicflow.schemas.schedules import SlotStatus
from clinicflow.services.base import WorkflowService
from clinicflow.services.clinical_service import ClinicalRecordService
from clinicflow.services.invoice_service import InvoiceLedger
from clinicflow.services.notification_service import Notice, Notifier
from clinicflow.services.pricing_service import PricingService, round_money
from clinicflow.services.slot_registry import SlotRegistry

logger = structlog.get_logger(__name__)

S = AppointmentStatus

TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    S.BOOKED: frozenset({S.DOCTOR_APPROVED, S.DOCTOR_RESCHEDULE, S.DOCTOR_REJECTED, S.CANCELLED}),
    S.DOCTOR_APPROVED: frozenset({S.AWAIT_PAYMENT, S.CONFIRMED, S.CANCELLED}),
    S.AWAIT_PAYMENT: frozenset({S.PAID, S.PAYMENT_OVERDUE, S.DOCTOR_RESCHEDULE, S.CANCELLED}),
    S.PAID: frozenset({S.CONFIRMED, S.DOCTOR_RESCHEDULE, S.CANCELLED}),
    S.CONFIRMED: frozenset({S.IN_CONSULT, S.DOCTOR_RESCHEDULE, S.CANCELLED}),
    S.IN_CONSULT: frozenset({S.PRESCRIPTION_ISSUED, S.CANCELLED}),
    S.PRESCRIPTION_ISSUED: frozenset({S.READY_TO_DISCHARGE, S.CANCELLED}),
    S.READY_TO_DISCHARGE: frozenset({S.COMPLETED, S.CANCELLED}),
    S.DOCTOR_REJECTED: frozenset({S.CLOSED}),
    S.DOCTOR_RESCHEDULE: frozenset({S.BOOKED, S.CONFIRMED, S.CANCELLED}),
    S.PAYMENT_OVERDUE: frozenset({S.CLOSED}),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
    S.CLOSED: frozenset(),
}

TERMINAL_STATUSES = frozenset(status for status, nxt in TRANSITIONS.items() if not nxt)

# A patient may hold only one appointment per day in these
BLOCKING_STATUSES = frozenset({S.AWAIT_PAYMENT, S.BOOKED, S.CONFIRMED})

# Statuses that no longer occupy the patient's day for the specialty rule
INACTIVE_STATUSES = frozenset({S.CANCELLED, S.CLOSED, S.PAYMENT_OVERDUE, S.DOCTOR_REJECTED})

# Entering these gives the slot back
SLOT_RELEASING_STATUSES = frozenset({S.CANCELLED, S.PAYMENT_OVERDUE, S.DOCTOR_REJECTED})

# Edges each role may drive besides cancellation; admins may drive any legal edge
DOCTOR_EDGES = frozenset(
    {
        (S.BOOKED, S.DOCTOR_APPROVED),
        (S.BOOKED, S.DOCTOR_REJECTED),
        (S.BOOKED, S.DOCTOR_RESCHEDULE),
        (S.AWAIT_PAYMENT, S.DOCTOR_RESCHEDULE),
        (S.PAID, S.DOCTOR_RESCHEDULE),
        (S.CONFIRMED, S.DOCTOR_RESCHEDULE),
        (S.DOCTOR_APPROVED, S.AWAIT_PAYMENT),
        (S.DOCTOR_APPROVED, S.CONFIRMED),
        (S.CONFIRMED, S.IN_CONSULT),
        (S.IN_CONSULT, S.PRESCRIPTION_ISSUED),
        (S.PRESCRIPTION_ISSUED, S.READY_TO_DISCHARGE),
        (S.READY_TO_DISCHARGE, S.COMPLETED),
        (S.DOCTOR_REJECTED, S.CLOSED),
        (S.PAYMENT_OVERDUE, S.CLOSED),
    }
)
PATIENT_EDGES = frozenset(
    {
        (S.DOCTOR_RESCHEDULE, S.BOOKED),
        (S.DOCTOR_RESCHEDULE, S.CONFIRMED),
        (S.DOCTOR_REJECTED, S.CLOSED),
        (S.PAYMENT_OVERDUE, S.CLOSED),
    }
)
SYSTEM_EDGES = frozenset(
    {
        (S.DOCTOR_APPROVED, S.AWAIT_PAYMENT),
        (S.AWAIT_PAYMENT, S.PAID),
        (S.AWAIT_PAYMENT, S.PAYMENT_OVERDUE),
        (S.PAID, S.CONFIRMED),
        (S.READY_TO_DISCHARGE, S.COMPLETED),
    }
)


def is_legal(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    """Whether the transition table allows current -> target."""
    return target in TRANSITIONS[current]


def can_drive(
    actor: Actor,
    appointment: AppointmentResponse,
    current: AppointmentStatus,
    target: AppointmentStatus,
) -> bool:
    """Whether the actor has authority over a legal edge."""
    edge = (current, target)
    if actor.role is ActorRole.ADMIN:
        return True
    if actor.role is ActorRole.SYSTEM:
        return target is S.CANCELLED or edge in SYSTEM_EDGES
    if actor.role is ActorRole.DOCTOR:
        return appointment.doctor_id == actor.id and (target is S.CANCELLED or edge in DOCTOR_EDGES)
    if actor.role is ActorRole.PATIENT:
        return appointment.patient_id == actor.id and (
            target is S.CANCELLED or edge in PATIENT_EDGES
        )
    return False


def require_participant(appointment: AppointmentResponse, actor: Actor) -> None:
    """
    Ensure the actor is the appointment's patient or doctor.

    Raises:
        ForbiddenException: For anyone else except admins and the system
    """
    if actor.role in (ActorRole.ADMIN, ActorRole.SYSTEM):
        return
    if actor.role is ActorRole.PATIENT and appointment.patient_id == actor.id:
        return
    if actor.role is ActorRole.DOCTOR and appointment.doctor_id == actor.id:
        return
    raise ForbiddenException("Access denied to this appointment")


class AppointmentService(WorkflowService):
    """Service for the appointment lifecycle."""

    def __init__(
        self,
        db: AsyncSession,
        notifier: Notifier | None = None,
        clock: Clock = utcnow,
        cache: PricingCache | None = None,
    ):
        """Initialize service with its collaborators."""
        super().__init__(db, notifier=notifier, clock=clock)
        self.slots = SlotRegistry(db)
        self.ledger = InvoiceLedger(db)
        self.pricing = PricingService(db, cache)
        self.clinical = ClinicalRecordService(db)

    # Loading

    async def load(self, appointment_id: UUID, for_update: bool = False) -> AppointmentResponse:
        """
        Load an appointment.

        Args:
            appointment_id: Appointment ID
            for_update: Lock the row for the rest of the transaction

        Raises:
            NotFoundException: If appointment not found
        """
        stmt = select(appointments).where(appointments.c.id == appointment_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        row = result.fetchone()
        if not row:
            raise NotFoundException("Appointment not found")
        return AppointmentResponse.model_validate(dict(row._mapping))

    async def load_for(
        self, appointment_id: UUID, actor: Actor, for_update: bool = True
    ) -> AppointmentResponse:
        """Load an appointment the actor takes part in."""
        appointment = await self.load(appointment_id, for_update=for_update)
        require_participant(appointment, actor)
        return appointment

    # Core transition

    def check_edge(
        self,
        appointment: AppointmentResponse,
        actor: Actor,
        target: AppointmentStatus,
    ) -> None:
        """
        Validate an edge without writing.

        Raises:
            InvalidTransitionException: If target is not reachable
            ForbiddenException: If the actor lacks authority for the edge
        """
        current = appointment.status
        if not is_legal(current, target):
            raise InvalidTransitionException(current.value, target.value)
        if not can_drive(actor, appointment, current, target):
            raise ForbiddenException(
                f"{actor.role.value} may not move this appointment to {target.value}"
            )

    async def transition(
        self,
        appointment: AppointmentResponse,
        actor: Actor,
        target: AppointmentStatus,
        values: dict[str, Any] | None = None,
        approval: DoctorApproval | None = None,
    ) -> AppointmentResponse:
        """
        Move an appointment to a new status and apply the side effects.

        Must run inside a unit of work; nothing is committed here.

        Args:
            appointment: Current snapshot of the appointment
            actor: Who drives the edge
            target: Target status
            values: Extra columns written with the status
            approval: Doctor's pricing overrides when opening a payment hold

        Returns:
            Updated appointment

        Raises:
            InvalidTransitionException: If the edge is illegal or the status changed concurrently
            ForbiddenException: If the actor lacks authority for the edge
        """
        self.check_edge(appointment, actor, target)
        now = self.clock()
        current = appointment.status

        result = await self.db.execute(
            update(appointments)
            .where(
                appointments.c.id == appointment.id,
                appointments.c.status == current.value,
            )
            .values(**(values or {}), status=target.value, updated_at=now)
            .returning(appointments)
        )
        row = result.fetchone()
        if row is None:
            raise InvalidTransitionException(
                current.value,
                target.value,
                "Appointment was changed by another request",
            )
        updated = AppointmentResponse.model_validate(dict(row._mapping))

        if target in SLOT_RELEASING_STATUSES:
            await self.slots.release(updated.schedule_id)
        # A reschedule reprices on the next approval
        if target in (S.PAYMENT_OVERDUE, S.CANCELLED, S.DOCTOR_RESCHEDULE):
            await self.ledger.void_pending(updated.id, now)
        if target is S.AWAIT_PAYMENT:
            updated = await self.open_payment_hold(updated, approval)
        if target is S.IN_CONSULT:
            await self.clinical.open_consultation(updated, now)
        if target is S.COMPLETED:
            await self.clinical.close_encounter(updated, "completed", now)

        logger.info(
            "appointment_transition",
            appointment_id=str(updated.id),
            from_status=current.value,
            to_status=target.value,
            actor_role=actor.role.value,
        )
        return updated

    async def update_fields(
        self,
        appointment: AppointmentResponse,
        values: dict[str, Any],
    ) -> AppointmentResponse:
        """
        Write non-status columns, guarded on the status the caller saw.

        Raises:
            InvalidTransitionException: If the status changed concurrently
        """
        result = await self.db.execute(
            update(appointments)
            .where(
                appointments.c.id == appointment.id,
                appointments.c.status == appointment.status.value,
            )
            .values(**values, updated_at=self.clock())
            .returning(appointments)
        )
        row = result.fetchone()
        if row is None:
            raise InvalidTransitionException(
                appointment.status.value,
                appointment.status.value,
                "Appointment was changed by another request",
            )
        return AppointmentResponse.model_validate(dict(row._mapping))

    # Payment hold

    async def quote_for(
        self,
        appointment: AppointmentResponse,
        approval: DoctorApproval | None = None,
    ) -> PriceQuote:
        """Price the consultation of an appointment without writing anything."""
        duration = settings.default_consultation_minutes
        if appointment.schedule_id is not None:
            slot = await self.slots.get_slot(appointment.schedule_id)
            duration = slot.duration_minutes or duration

        eligible, copay_rate = await self._insurance_terms(appointment.patient_id)
        if approval is not None and approval.copay_rate is not None:
            copay_rate = approval.copay_rate

        request = PriceRequest(
            service_code=appointment.service_code,
            doctor_id=appointment.doctor_id,
            duration_minutes=duration,
            starts_at=scheduled_start(appointment.appointment_date, appointment.appointment_time),
            insurance_eligible=eligible,
            copay_rate=copay_rate,
            doctor_fee_override=approval.consultation_fee if approval else None,
        )
        return await self.pricing.quote(request)

    async def _insurance_terms(self, patient_id: UUID) -> tuple[bool, float]:
        result = await self.db.execute(
            select(patients.c.insurance_eligible, patients.c.copay_rate).where(
                patients.c.id == patient_id
            )
        )
        row = result.fetchone()
        if row is None:
            return False, 0.0
        return bool(row.insurance_eligible), float(row.copay_rate or 0)

    async def open_payment_hold(
        self,
        appointment: AppointmentResponse,
        approval: DoctorApproval | None = None,
    ) -> AppointmentResponse:
        """
        Make sure a priced consultation invoice backs the payment hold.

        Reuses the open invoice if there is one, otherwise prices and creates
        it. The appointment's money snapshot and hold deadline are copied from
        the invoice so the two clocks never diverge.
        """
        now = self.clock()
        due_date = now + timedelta(minutes=settings.payment_hold_minutes)

        invoice = await self.ledger.find_pending(appointment.id, InvoiceType.CONSULTATION)
        if invoice is not None and invoice.due_date is not None and invoice.due_date <= now:
            invoice = await self.ledger.rearm(invoice.id, due_date, now)

        consultation_fee = appointment.consultation_fee
        if invoice is None:
            quote = await self.quote_for(appointment, approval)
            items = list(quote.items)
            deposit = approval.deposit_amount if approval else appointment.deposit_amount
            if deposit > 0:
                items.append(
                    InvoiceItem(
                        item_type="deposit",
                        description="Deposit",
                        amount=deposit,
                        insurance_amount=0,
                        patient_amount=deposit,
                    )
                )
            consultation_fee = quote.doctor_fee
            invoice = await self.ledger.create_invoice(
                appointment, InvoiceType.CONSULTATION, items, due_date, now
            )

        return await self.update_fields(
            appointment,
            {
                "consultation_fee": consultation_fee,
                "total_amount": invoice.subtotal,
                "insurance_coverage": invoice.insurance_coverage,
                "patient_amount": invoice.patient_amount,
                "payment_status": PaymentStatus.PENDING.value,
                "hold_expires_at": invoice.due_date,
            },
        )

    # Hold expiry

    def _hold_expired(self, appointment: AppointmentResponse) -> bool:
        return (
            appointment.status is S.AWAIT_PAYMENT
            and appointment.hold_expires_at is not None
            and appointment.hold_expires_at <= self.clock()
        )

    async def _expire(self, appointment: AppointmentResponse, outbox: list[Notice]) -> AppointmentResponse:
        updated = await self.transition(appointment, system_actor(), S.PAYMENT_OVERDUE)
        outbox.append(
            Notice(
                user_id=updated.patient_id,
                notification_type="payment_overdue",
                title="Payment time expired",
                body="Your booking was released because payment was not completed in time.",
                meta={"appointment_id": str(updated.id)},
            )
        )
        return updated

    async def expire_if_due(self, appointment: AppointmentResponse) -> AppointmentResponse:
        """Lazily move a lapsed hold to PAYMENT_OVERDUE; otherwise return it unchanged."""
        if not self._hold_expired(appointment):
            return appointment
        try:
            async with self.unit_of_work() as outbox:
                appointment = await self._expire(appointment, outbox)
        except InvalidTransitionException:
            # The sweeper or another request moved it first; serve what it wrote
            logger.debug("lazy_hold_expiry_lost_race", appointment_id=str(appointment.id))
            appointment = await self.load(appointment.id)
        return appointment

    async def expire_for_invoice(self, invoice: InvoiceResponse) -> str:
        """
        Enforce the deadline of an overdue consultation invoice.

        Returns:
            "expired" when the appointment moved to PAYMENT_OVERDUE, otherwise "skipped"
        """
        async with self.unit_of_work() as outbox:
            appointment = await self.load(invoice.appointment_id, for_update=True)
            if appointment.status is S.PAYMENT_OVERDUE:
                return "skipped"
            if not is_legal(appointment.status, S.PAYMENT_OVERDUE):
                logger.debug(
                    "hold_expiry_skipped",
                    appointment_id=str(appointment.id),
                    status=appointment.status.value,
                )
                return "skipped"

            appointment = await self.update_fields(
                appointment, {"hold_expires_at": invoice.due_date}
            )
            await self._expire(appointment, outbox)
        return "expired"

    async def expire_patient_holds(self, patient_id: UUID) -> int:
        """Correct every lapsed hold of a patient before their list is served."""
        now = self.clock()
        result = await self.db.execute(
            select(appointments).where(
                appointments.c.patient_id == patient_id,
                appointments.c.status == S.AWAIT_PAYMENT.value,
                appointments.c.hold_expires_at <= now,
            )
        )
        lapsed = [AppointmentResponse.model_validate(dict(row._mapping)) for row in result.fetchall()]
        if not lapsed:
            return 0

        expired = 0
        for appointment in lapsed:
            try:
                async with self.unit_of_work() as outbox:
                    await self._expire(appointment, outbox)
            except InvalidTransitionException:
                logger.debug("lazy_hold_expiry_lost_race", appointment_id=str(appointment.id))
                continue
            expired += 1
        logger.info("lazy_hold_expiry", patient_id=str(patient_id), count=expired)
        return expired

    # Booking

    async def _ensure_day_free(self, patient_id: UUID, day: date) -> None:
        # Row lock on the patient serialises their concurrent bookings
        await self.db.execute(
            select(patients.c.id).where(patients.c.id == patient_id).with_for_update()
        )
        result = await self.db.execute(
            select(func.count())
            .select_from(appointments)
            .where(
                appointments.c.patient_id == patient_id,
                appointments.c.appointment_date == day,
                appointments.c.status.in_([s.value for s in BLOCKING_STATUSES]),
            )
        )
        if (result.scalar() or 0) > 0:
            raise DuplicateBookingException()

    async def _same_specialty_booked(self, patient_id: UUID, doctor_id: UUID, day: date) -> bool:
        """Best-effort specialty-per-day check; lookup failures count as no conflict."""
        try:
            async with self.db.begin_nested():
                result = await self.db.execute(
                    select(doctors.c.specialty).where(doctors.c.id == doctor_id)
                )
                specialty = result.scalar_one_or_none()
                if not specialty:
                    return False

                result = await self.db.execute(
                    select(func.count())
                    .select_from(appointments.join(doctors, appointments.c.doctor_id == doctors.c.id))
                    .where(
                        appointments.c.patient_id == patient_id,
                        appointments.c.appointment_date == day,
                        appointments.c.status.not_in([s.value for s in INACTIVE_STATUSES]),
                        doctors.c.specialty == specialty,
                    )
                )
                return (result.scalar() or 0) > 0
        except Exception as e:
            logger.warning("specialty_check_failed", doctor_id=str(doctor_id), error=str(e))
            return False

    async def book_appointment(self, actor: Actor, data: AppointmentCreate) -> AppointmentResponse:
        """
        Book a slot for a patient.

        In ``hold`` mode the appointment starts in AWAIT_PAYMENT with a priced
        invoice and a payment deadline; in ``approval`` mode it starts BOOKED.

        Args:
            actor: Patient booking for themselves
            data: Booking request

        Returns:
            Created appointment

        Raises:
            ForbiddenException: If the actor is not a patient
            NotFoundException: If the slot does not exist for this doctor
            SlotUnavailableException: If the slot is taken, including lost races
            DuplicateBookingException: If the patient's day is already taken
        """
        if actor.role is not ActorRole.PATIENT:
            raise ForbiddenException("Only patients can book appointments")

        async with self.unit_of_work() as outbox:
            slot = await self.slots.get_doctor_slot(data.schedule_id, data.doctor_id)
            if slot.is_booked or slot.status is not SlotStatus.ACCEPTED:
                raise SlotUnavailableException()
            if slot.date < clinic_today(self.clock()):
                raise SlotUnavailableException("Slot is in the past")

            await self._ensure_day_free(actor.id, slot.date)
            if settings.enforce_specialty_per_day and await self._same_specialty_booked(
                actor.id, data.doctor_id, slot.date
            ):
                raise DuplicateBookingException(
                    "Only one appointment per specialty per day is allowed"
                )

            await self.slots.acquire(slot.id)

            now = self.clock()
            initial = S.AWAIT_PAYMENT if settings.booking_mode == "hold" else S.BOOKED
            result = await self.db.execute(
                insert(appointments)
                .values(
                    patient_id=actor.id,
                    doctor_id=data.doctor_id,
                    schedule_id=slot.id,
                    service_code=data.service_code,
                    appointment_date=slot.date,
                    appointment_time=slot.start_time,
                    symptoms=data.symptoms,
                    notes=data.notes,
                    status=initial.value,
                    payment_status=PaymentStatus.PENDING.value,
                    booked_at=now,
                    created_at=now,
                    updated_at=now,
                )
                .returning(appointments)
            )
            appointment = AppointmentResponse.model_validate(dict(result.fetchone()._mapping))

            if initial is S.AWAIT_PAYMENT:
                appointment = await self.open_payment_hold(appointment)

            meta = {"appointment_id": str(appointment.id)}
            outbox.append(
                Notice(
                    user_id=appointment.patient_id,
                    notification_type="appointment_booked",
                    title="Appointment booked",
                    body=f"Your appointment on {slot.date} at {slot.start_time:%H:%M} is reserved.",
                    meta=meta,
                )
            )
            outbox.append(
                Notice(
                    user_id=appointment.doctor_id,
                    notification_type="appointment_new",
                    title="New appointment",
                    body=f"A patient booked {slot.date} at {slot.start_time:%H:%M}.",
                    meta=meta,
                )
            )

        logger.info(
            "appointment_booked",
            appointment_id=str(appointment.id),
            status=appointment.status.value,
            slot_id=str(slot.id),
        )
        return appointment

    # Reads

    async def get_appointment(self, appointment_id: UUID, actor: Actor) -> AppointmentResponse:
        """
        Get appointment by ID, correcting a lapsed hold first.

        Raises:
            NotFoundException: If appointment not found
            ForbiddenException: If the actor takes no part in it
        """
        appointment = await self.load_for(appointment_id, actor, for_update=False)
        return await self.expire_if_due(appointment)

    async def list_patient_appointments(self, actor: Actor) -> AppointmentListResponse:
        """A patient's appointments, newest first, with lapsed holds corrected."""
        await self.expire_patient_holds(actor.id)
        result = await self.db.execute(
            select(appointments)
            .where(appointments.c.patient_id == actor.id)
            .order_by(appointments.c.created_at.desc())
        )
        items = [AppointmentResponse.model_validate(dict(row._mapping)) for row in result.fetchall()]
        return AppointmentListResponse(total=len(items), items=items)

    async def list_patient_history(self, actor: Actor) -> AppointmentListResponse:
        """A patient's finished appointments, newest first."""
        result = await self.db.execute(
            select(appointments)
            .where(
                appointments.c.patient_id == actor.id,
                appointments.c.status.in_([s.value for s in TERMINAL_STATUSES]),
            )
            .order_by(appointments.c.created_at.desc())
        )
        items = [AppointmentResponse.model_validate(dict(row._mapping)) for row in result.fetchall()]
        return AppointmentListResponse(total=len(items), items=items)

    async def list_doctor_appointments(
        self, actor: Actor, day: date | None = None
    ) -> AppointmentListResponse:
        """A doctor's appointments ordered by start, optionally for one day."""
        conditions = [appointments.c.doctor_id == actor.id]
        if day is not None:
            conditions.append(appointments.c.appointment_date == day)
        result = await self.db.execute(
            select(appointments)
            .where(*conditions)
            .order_by(appointments.c.appointment_date, appointments.c.appointment_time)
        )
        items = [AppointmentResponse.model_validate(dict(row._mapping)) for row in result.fetchall()]
        return AppointmentListResponse(total=len(items), items=items)

    # Doctor decisions

    async def approve(
        self, appointment_id: UUID, actor: Actor, data: DoctorApproval
    ) -> AppointmentResponse:
        """
        Approve a booked appointment and open its payment hold.

        An appointment that is already paid is confirmed directly instead of
        being asked to pay a second time.
        """
        async with self.unit_of_work() as outbox:
            appointment = await self.load_for(appointment_id, actor)
            appointment = await self.transition(
                appointment,
                actor,
                S.DOCTOR_APPROVED,
                {
                    "doctor_decision": "approved",
                    "doctor_notes": data.notes,
                    "consultation_fee": data.consultation_fee,
                    "deposit_amount": data.deposit_amount,
                },
            )

            if appointment.is_paid:
                appointment = await self.transition(
                    appointment,
                    actor,
                    S.CONFIRMED,
                    {"confirmed_at": appointment.confirmed_at or self.clock()},
                )
                body = "Your appointment is approved and confirmed."
            else:
                appointment = await self.transition(
                    appointment, actor, S.AWAIT_PAYMENT, approval=data
                )
                body = f"Your appointment is approved. Please pay {appointment.patient_amount}."

            outbox.append(
                Notice(
                    user_id=appointment.patient_id,
                    notification_type="appointment_approved",
                    title="Appointment approved",
                    body=body,
                    meta={"appointment_id": str(appointment.id)},
                )
            )
        return appointment

    async def reject(
        self, appointment_id: UUID, actor: Actor, data: DoctorRejection
    ) -> AppointmentResponse:
        """Reject a booked appointment and free its slot."""
        async with self.unit_of_work() as outbox:
            appointment = await self.load_for(appointment_id, actor)
            appointment = await self.transition(
                appointment,
                actor,
                S.DOCTOR_REJECTED,
                {
                    "doctor_decision": "rejected",
                    "rejection_reason": data.reason,
                    "cancelled_at": self.clock(),
                    "cancelled_by": ActorRole.DOCTOR.value,
                },
            )
            outbox.append(
                Notice(
                    user_id=appointment.patient_id,
                    notification_type="appointment_rejected",
                    title="Appointment rejected",
                    body=data.reason,
                    meta={"appointment_id": str(appointment.id)},
                )
            )
        return appointment

    async def close(self, appointment_id: UUID, actor: Actor) -> AppointmentResponse:
        """Close a rejected or overdue appointment."""
        async with self.unit_of_work():
            appointment = await self.load_for(appointment_id, actor)
            appointment = await self.transition(appointment, actor, S.CLOSED)
        return appointment

    # Cancellation

    async def cancel(
        self, appointment_id: UUID, actor: Actor, data: AppointmentCancel
    ) -> AppointmentResponse:
        """
        Cancel an appointment and free its slot.

        Patients cannot cancel inside the cutoff window before the start
        unless ``force`` is set.

        Raises:
            InvalidTransitionException: If the appointment is already finished
            TooLateToCancelException: If a patient cancels too late without override
        """
        async with self.unit_of_work() as outbox:
            appointment = await self.load_for(appointment_id, actor)
            self.check_edge(appointment, actor, S.CANCELLED)

            now = self.clock()
            if actor.role is ActorRole.PATIENT and not data.force:
                starts_at = scheduled_start(appointment.appointment_date, appointment.appointment_time)
                if starts_at - now <= timedelta(hours=settings.cancellation_cutoff_hours):
                    raise TooLateToCancelException(
                        f"Appointments can only be cancelled more than "
                        f"{settings.cancellation_cutoff_hours} hours in advance"
                    )

            appointment = await self.transition(
                appointment,
                actor,
                S.CANCELLED,
                {
                    "cancelled_at": now,
                    "cancelled_by": actor.role.value,
                    "cancellation_reason": data.reason,
                    "new_schedule_id": None,
                },
            )

            counterpart = (
                appointment.doctor_id
                if actor.role is ActorRole.PATIENT
                else appointment.patient_id
            )
            outbox.append(
                Notice(
                    user_id=counterpart,
                    notification_type="appointment_cancelled",
                    title="Appointment cancelled",
                    body=data.reason or "The appointment was cancelled.",
                    meta={"appointment_id": str(appointment.id)},
                )
            )
        return appointment

    # Consultation

    async def start_consultation(self, appointment_id: UUID, actor: Actor) -> AppointmentResponse:
        """
        Start the consultation.

        Retrying on an appointment already in consultation only re-ensures
        its encounter and draft record.
        """
        async with self.unit_of_work() as outbox:
            appointment = await self.load_for(appointment_id, actor)
            if appointment.status is S.IN_CONSULT:
                await self.clinical.open_consultation(appointment, self.clock())
                return appointment

            appointment = await self.transition(
                appointment, actor, S.IN_CONSULT, {"started_at": self.clock()}
            )
            outbox.append(
                Notice(
                    user_id=appointment.patient_id,
                    notification_type="consultation_started",
                    title="Consultation started",
                    body="Your doctor has started the consultation.",
                    meta={"appointment_id": str(appointment.id)},
                )
            )
        return appointment

    async def complete_consultation(
        self, appointment_id: UUID, actor: Actor, data: ConsultationCompletion
    ) -> AppointmentResponse:
        """Record diagnosis and prescription."""
        async with self.unit_of_work() as outbox:
            appointment = await self.load_for(appointment_id, actor)
            appointment = await self.transition(
                appointment,
                actor,
                S.PRESCRIPTION_ISSUED,
                {"diagnosis": data.diagnosis, "prescription": data.prescription},
            )
            await self.clinical.record_outcome(
                appointment, data.diagnosis, data.prescription, data.notes, self.clock()
            )
            outbox.append(
                Notice(
                    user_id=appointment.patient_id,
                    notification_type="prescription_issued",
                    title="Prescription issued",
                    body="Your prescription is ready.",
                    meta={"appointment_id": str(appointment.id)},
                )
            )
        return appointment

    async def _final_items(
        self, appointment: AppointmentResponse, services: list[AdditionalService]
    ) -> list[InvoiceItem]:
        eligible, copay_rate = await self._insurance_terms(appointment.patient_id)
        items = []
        for service in services:
            insurer = round_money(service.cost * (1 - copay_rate)) if eligible else 0
            insurer = min(service.cost, max(0, insurer))
            items.append(
                InvoiceItem(
                    item_type="additional_services",
                    description=service.name,
                    amount=service.cost,
                    insurance_amount=insurer,
                    patient_amount=service.cost - insurer,
                )
            )
        return items

    async def issue_final_invoice(
        self,
        appointment_id: UUID,
        actor: Actor,
        services: list[AdditionalService],
    ) -> tuple[AppointmentResponse, InvoiceResponse | None]:
        """
        Bill the extra services and mark the patient ready for discharge.

        Returns:
            Tuple of (appointment, final invoice or None when nothing is billable)
        """
        async with self.unit_of_work() as outbox:
            appointment = await self.load_for(appointment_id, actor)
            appointment = await self.transition(appointment, actor, S.READY_TO_DISCHARGE)
            await self.clinical.close_encounter(appointment, "ready_to_discharge", self.clock())

            invoice = None
            items = await self._final_items(appointment, services)
            if any(item.patient_amount for item in items):
                invoice = await self.ledger.create_invoice(
                    appointment, InvoiceType.FINAL_SETTLEMENT, items, None, self.clock()
                )

            outbox.append(
                Notice(
                    user_id=appointment.patient_id,
                    notification_type="final_invoice_issued" if invoice else "ready_to_discharge",
                    title="Ready for discharge",
                    body=(
                        f"Please settle {invoice.patient_amount} before leaving."
                        if invoice
                        else "You are ready to be discharged."
                    ),
                    meta={"appointment_id": str(appointment.id)},
                )
            )
        return appointment, invoice

    async def discharge(self, appointment_id: UUID, actor: Actor) -> AppointmentResponse:
        """
        Complete the appointment.

        Raises:
            ValidationException: If a final invoice is still unpaid
        """
        async with self.unit_of_work():
            appointment = await self.load_for(appointment_id, actor)
            self.check_edge(appointment, actor, S.COMPLETED)
            if await self.ledger.find_pending(appointment.id, InvoiceType.FINAL_SETTLEMENT):
                raise ValidationException("Final invoice must be paid before discharge")
            appointment = await self.transition(
                appointment, actor, S.COMPLETED, {"completed_at": self.clock()}
            )
        return appointment

    async def check_in(self, appointment_id: UUID, actor: Actor, by: ActorRole) -> AppointmentResponse:
        """
        Record that the patient or the doctor has arrived.

        Raises:
            ForbiddenException: If the actor checks in on behalf of someone else
            InvalidTransitionException: If the appointment is not confirmed
        """
        if by not in (ActorRole.PATIENT, ActorRole.DOCTOR):
            raise ValidationException("Check-in must be by patient or doctor")
        if actor.role is not ActorRole.ADMIN and actor.role is not by:
            raise ForbiddenException("Cannot check in for the other party")

        async with self.unit_of_work() as outbox:
            appointment = await self.load_for(appointment_id, actor)
            if appointment.status is not S.CONFIRMED:
                raise InvalidTransitionException(
                    appointment.status.value,
                    appointment.status.value,
                    "Only confirmed appointments can be checked in",
                )

            column = f"{by.value}_checked_in_at"
            appointment = await self.update_fields(appointment, {column: self.clock()})

            counterpart = appointment.doctor_id if by is ActorRole.PATIENT else appointment.patient_id
            outbox.append(
                Notice(
                    user_id=counterpart,
                    notification_type="checked_in",
                    title="Check-in",
                    body=f"The {by.value} has checked in.",
                    meta={"appointment_id": str(appointment.id), "by": by.value},
                )
            )
        return appointment
