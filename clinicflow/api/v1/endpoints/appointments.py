"""Appointment endpoints shared by patients and doctors."""

from uuid import UUID

from fastapi import APIRouter, status

from clinicflow.dependencies import AppNotifier, Cache, CurrentActor, DatabaseSession, PatientActor
from clinicflow.schemas.appointments import (
    AppointmentCancel,
    AppointmentCreate,
    AppointmentListResponse,
    AppointmentResponse,
    CheckIn,
    ExtensionConsent,
    ExtensionInfo,
    RescheduleAcceptance,
    RescheduleProposal,
)
from clinicflow.services.appointment_service import AppointmentService
from clinicflow.services.extension_service import ExtensionService
from clinicflow.services.reschedule_service import RescheduleService

router = APIRouter()


@router.post(
    "/",
    response_model=AppointmentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Book an appointment",
)
async def book_appointment(
    data: AppointmentCreate,
    actor: PatientActor,
    db: DatabaseSession,
    notifier: AppNotifier,
    cache: Cache,
) -> AppointmentResponse:
    """
    Reserve a doctor's slot for the authenticated patient.

    Args:
        data: Doctor, slot and visit details
        actor: Authenticated patient
        db: Database session
        notifier: Notification backend
        cache: Pricing cache

    Returns:
        Created appointment, awaiting payment or the doctor's decision
    """
    service = AppointmentService(db, notifier, cache=cache)
    return await service.book_appointment(actor, data)


@router.get(
    "/",
    response_model=AppointmentListResponse,
    status_code=status.HTTP_200_OK,
    summary="List my appointments",
)
async def list_appointments(
    actor: PatientActor,
    db: DatabaseSession,
    notifier: AppNotifier,
) -> AppointmentListResponse:
    """List the patient's appointments, newest first."""
    service = AppointmentService(db, notifier)
    return await service.list_patient_appointments(actor)


@router.get(
    "/history",
    response_model=AppointmentListResponse,
    status_code=status.HTTP_200_OK,
    summary="List my finished appointments",
)
async def list_history(actor: PatientActor, db: DatabaseSession) -> AppointmentListResponse:
    """Completed, cancelled and closed appointments of the patient."""
    service = AppointmentService(db)
    return await service.list_patient_history(actor)


@router.get(
    "/{appointment_id}",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    summary="Get appointment by ID",
)
async def get_appointment(
    appointment_id: UUID,
    actor: CurrentActor,
    db: DatabaseSession,
    notifier: AppNotifier,
) -> AppointmentResponse:
    """
    Get a specific appointment by ID.

    Raises:
        NotFoundException: If appointment not found
        ForbiddenException: If the caller takes no part in it
    """
    service = AppointmentService(db, notifier)
    return await service.get_appointment(appointment_id, actor)


@router.post(
    "/{appointment_id}/cancel",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    summary="Cancel appointment",
)
async def cancel_appointment(
    appointment_id: UUID,
    data: AppointmentCancel,
    actor: CurrentActor,
    db: DatabaseSession,
    notifier: AppNotifier,
) -> AppointmentResponse:
    """Cancel an appointment and release its slot."""
    service = AppointmentService(db, notifier)
    return await service.cancel(appointment_id, actor, data)


@router.post(
    "/{appointment_id}/close",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    summary="Close rejected or overdue appointment",
)
async def close_appointment(
    appointment_id: UUID,
    actor: CurrentActor,
    db: DatabaseSession,
    notifier: AppNotifier,
) -> AppointmentResponse:
    """Archive an appointment the doctor rejected or the patient did not pay."""
    service = AppointmentService(db, notifier)
    return await service.close(appointment_id, actor)


@router.post(
    "/{appointment_id}/check-in",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    summary="Check in",
)
async def check_in(
    appointment_id: UUID,
    data: CheckIn,
    actor: CurrentActor,
    db: DatabaseSession,
    notifier: AppNotifier,
) -> AppointmentResponse:
    """Record arrival of the patient or the doctor."""
    service = AppointmentService(db, notifier)
    return await service.check_in(appointment_id, actor, data.by)


@router.post(
    "/{appointment_id}/reschedule/propose",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    summary="Propose other times",
)
async def propose_reschedule(
    appointment_id: UUID,
    data: RescheduleProposal,
    actor: PatientActor,
    db: DatabaseSession,
    notifier: AppNotifier,
) -> AppointmentResponse:
    """Send the doctor a reschedule proposal."""
    service = RescheduleService(db, notifier)
    return await service.propose_reschedule(appointment_id, actor, data)


@router.post(
    "/{appointment_id}/reschedule/accept",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    summary="Accept reschedule",
)
async def accept_reschedule(
    appointment_id: UUID,
    data: RescheduleAcceptance,
    actor: PatientActor,
    db: DatabaseSession,
    notifier: AppNotifier,
) -> AppointmentResponse:
    """Move to the doctor's offered slot, or to a chosen free slot."""
    service = RescheduleService(db, notifier)
    return await service.accept_reschedule(appointment_id, actor, data.slot_id)


@router.post(
    "/{appointment_id}/reschedule/decline",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    summary="Decline reschedule",
)
async def decline_reschedule(
    appointment_id: UUID,
    actor: PatientActor,
    db: DatabaseSession,
    notifier: AppNotifier,
) -> AppointmentResponse:
    """Turn down the doctor's reschedule request, cancelling the appointment."""
    service = RescheduleService(db, notifier)
    return await service.decline_reschedule(appointment_id, actor)


@router.get(
    "/{appointment_id}/extension",
    response_model=ExtensionInfo | None,
    status_code=status.HTTP_200_OK,
    summary="Get extension request",
)
async def get_extension(
    appointment_id: UUID,
    actor: CurrentActor,
    db: DatabaseSession,
) -> ExtensionInfo | None:
    """The appointment's extension request, if any."""
    service = ExtensionService(db)
    return await service.get_extension(appointment_id, actor)


@router.post(
    "/{appointment_id}/extension/consent",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    summary="Answer extension request",
)
async def respond_extension(
    appointment_id: UUID,
    data: ExtensionConsent,
    actor: PatientActor,
    db: DatabaseSession,
    notifier: AppNotifier,
) -> AppointmentResponse:
    """
    Accept or decline a delay caused by the previous consultation.

    Raises:
        ConsentExpiredException: If the consent window has closed
    """
    service = ExtensionService(db, notifier)
    return await service.respond_extension(appointment_id, actor, data.accept)
