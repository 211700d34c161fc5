"""
Scheduling Ledger

Clinics, doctors, time slots and the appointment/consultation lifecycle.
"""

from chaincare.scheduling.ledger import SchedulingLedger
from chaincare.scheduling.models import (
    OPEN_STATUSES,
    Appointment,
    AppointmentStatus,
    AppointmentType,
    Clinic,
    ConsultationRecord,
    Doctor,
    SlotStatus,
    TimeSlot,
)

__all__ = [
    "SchedulingLedger",
    "OPEN_STATUSES",
    "Appointment",
    "AppointmentStatus",
    "AppointmentType",
    "Clinic",
    "ConsultationRecord",
    "Doctor",
    "SlotStatus",
    "TimeSlot",
]
