"""Doctor endpoints: open slots and the doctor's side of the appointment workflow."""

from datetime import date
from uuid import UUID

from fastapi import APIRouter, Query, status
from pydantic import BaseModel

from clinicflow.dependencies import AppNotifier, Cache, DatabaseSession, DoctorActor
from clinicflow.schemas.appointments import (
    AppointmentListResponse,
    AppointmentResponse,
    ConsultationCompletion,
    DoctorApproval,
    DoctorRejection,
    DoctorRescheduleRequest,
    ExtensionRequest,
    FinalInvoiceRequest,
)
from clinicflow.schemas.invoices import InvoiceResponse
from clinicflow.schemas.schedules import SlotResponse
from clinicflow.services.appointment_service import AppointmentService
from clinicflow.services.extension_service import ExtensionService
from clinicflow.services.reschedule_service import RescheduleService
from clinicflow.services.slot_registry import SlotRegistry

router = APIRouter()


class FinalInvoiceResponse(BaseModel):
    """Appointment ready for discharge and its settlement invoice."""

    appointment: AppointmentResponse
    invoice: InvoiceResponse | None = None


# ============================================================================
# Slots
# ============================================================================


@router.get(
    "/doctors/{doctor_id}/slots",
    response_model=list[SlotResponse],
    status_code=status.HTTP_200_OK,
    summary="List open slots",
)
async def list_open_slots(
    doctor_id: UUID,
    db: DatabaseSession,
    day: date | None = Query(None, alias="date"),
) -> list[SlotResponse]:
    """
    List a doctor's bookable slots.

    - **date**: Only slots on this clinic-local day
    """
    return await SlotRegistry(db).list_available(doctor_id, day)


# ============================================================================
# Doctor workflow
# ============================================================================


@router.get(
    "/doctor/appointments",
    response_model=AppointmentListResponse,
    status_code=status.HTTP_200_OK,
    summary="List my appointments as doctor",
)
async def list_doctor_appointments(
    actor: DoctorActor,
    db: DatabaseSession,
    day: date | None = Query(None, alias="date"),
) -> AppointmentListResponse:
    """The doctor's appointments by start time, optionally for one day."""
    service = AppointmentService(db)
    return await service.list_doctor_appointments(actor, day)


@router.post(
    "/doctor/appointments/{appointment_id}/approve",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    summary="Approve appointment",
)
async def approve_appointment(
    appointment_id: UUID,
    data: DoctorApproval,
    actor: DoctorActor,
    db: DatabaseSession,
    notifier: AppNotifier,
    cache: Cache,
) -> AppointmentResponse:
    """
    Approve a booked appointment.

    - **consultation_fee**: Replaces the tariff fee when positive
    - **deposit_amount**: Added to the invoice as a patient-borne deposit
    - **copay_rate**: Overrides the patient's copay rate
    """
    service = AppointmentService(db, notifier, cache=cache)
    return await service.approve(appointment_id, actor, data)


@router.post(
    "/doctor/appointments/{appointment_id}/reject",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    summary="Reject appointment",
)
async def reject_appointment(
    appointment_id: UUID,
    data: DoctorRejection,
    actor: DoctorActor,
    db: DatabaseSession,
    notifier: AppNotifier,
) -> AppointmentResponse:
    """Reject a booked appointment."""
    service = AppointmentService(db, notifier)
    return await service.reject(appointment_id, actor, data)


@router.post(
    "/doctor/appointments/{appointment_id}/reschedule",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    summary="Ask patient to reschedule",
)
async def request_reschedule(
    appointment_id: UUID,
    data: DoctorRescheduleRequest,
    actor: DoctorActor,
    db: DatabaseSession,
    notifier: AppNotifier,
) -> AppointmentResponse:
    """Offer the patient another of the doctor's slots."""
    service = RescheduleService(db, notifier)
    return await service.request_reschedule(appointment_id, actor, data)


@router.post(
    "/doctor/appointments/{appointment_id}/start",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    summary="Start consultation",
)
async def start_consultation(
    appointment_id: UUID,
    actor: DoctorActor,
    db: DatabaseSession,
    notifier: AppNotifier,
) -> AppointmentResponse:
    """Begin the consultation and open its encounter."""
    service = AppointmentService(db, notifier)
    return await service.start_consultation(appointment_id, actor)


@router.post(
    "/doctor/appointments/{appointment_id}/complete",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    summary="Complete consultation",
)
async def complete_consultation(
    appointment_id: UUID,
    data: ConsultationCompletion,
    actor: DoctorActor,
    db: DatabaseSession,
    notifier: AppNotifier,
) -> AppointmentResponse:
    """Record diagnosis and prescription."""
    service = AppointmentService(db, notifier)
    return await service.complete_consultation(appointment_id, actor, data)


@router.post(
    "/doctor/appointments/{appointment_id}/final-invoice",
    response_model=FinalInvoiceResponse,
    status_code=status.HTTP_200_OK,
    summary="Issue final invoice",
)
async def issue_final_invoice(
    appointment_id: UUID,
    data: FinalInvoiceRequest,
    actor: DoctorActor,
    db: DatabaseSession,
    notifier: AppNotifier,
) -> FinalInvoiceResponse:
    """Bill additional services and mark the patient ready for discharge."""
    service = AppointmentService(db, notifier)
    appointment, invoice = await service.issue_final_invoice(
        appointment_id, actor, data.additional_services
    )
    return FinalInvoiceResponse(appointment=appointment, invoice=invoice)


@router.post(
    "/doctor/appointments/{appointment_id}/discharge",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    summary="Discharge patient",
)
async def discharge(
    appointment_id: UUID,
    actor: DoctorActor,
    db: DatabaseSession,
    notifier: AppNotifier,
) -> AppointmentResponse:
    """Complete the appointment once nothing is left to pay."""
    service = AppointmentService(db, notifier)
    return await service.discharge(appointment_id, actor)


@router.post(
    "/doctor/appointments/{appointment_id}/extension",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    summary="Request extension",
)
async def request_extension(
    appointment_id: UUID,
    data: ExtensionRequest,
    actor: DoctorActor,
    db: DatabaseSession,
    notifier: AppNotifier,
) -> AppointmentResponse:
    """Ask the next patient to accept a delay."""
    service = ExtensionService(db, notifier)
    return await service.request_extension(appointment_id, actor, data)
