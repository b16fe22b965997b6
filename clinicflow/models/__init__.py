"""Database models."""

from clinicflow.models.appointments import appointments
from clinicflow.models.base import metadata
from clinicflow.models.clinical import encounters, medical_records
from clinicflow.models.doctors import doctors
from clinicflow.models.invoices import invoice_items, invoices, payments
from clinicflow.models.notifications import notifications, push_tokens
from clinicflow.models.patients import patients
from clinicflow.models.pricing import clinic_services, doctor_tariffs
from clinicflow.models.schedules import doctor_schedules

__all__ = [
    "appointments",
    "clinic_services",
    "doctor_schedules",
    "doctor_tariffs",
    "doctors",
    "encounters",
    "invoice_items",
    "invoices",
    "medical_records",
    "metadata",
    "notifications",
    "patients",
    "payments",
    "push_tokens",
]
