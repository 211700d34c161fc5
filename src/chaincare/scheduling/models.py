"""
Scheduling Models

Clinics, doctors, time slots, appointments and consultation records.
"""

from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, Field


class SlotStatus(str, Enum):
    AVAILABLE = "available"
    BOOKED = "booked"
    BLOCKED = "blocked"
    BREAK = "break"


class AppointmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"
    RESCHEDULED = "rescheduled"


# Cancel / no-show / reschedule / start are only valid from these
OPEN_STATUSES = frozenset({AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED})


class AppointmentType(str, Enum):
    GENERAL_CONSULTATION = "general_consultation"
    FOLLOW_UP = "follow_up"
    EMERGENCY = "emergency"
    SPECIALIST = "specialist"
    TELEMEDICINE = "telemedicine"
    ROUTINE_CHECKUP = "routine_checkup"


class Clinic(BaseModel):
    id: int
    owner: str
    name: str
    location: str = ""
    specialties: list[str] = Field(default_factory=list)
    contact_info_ref: str = ""
    operating_hours: str = ""
    working_days: list[str] = Field(default_factory=list)
    consultation_fee: int = 0
    accepts_insurance: bool = False
    doctors: list[str] = Field(default_factory=list)
    is_active: bool = True
    registered_at: datetime


class Doctor(BaseModel):
    """A doctor bound to exactly one clinic."""

    id: int
    address: str
    clinic_id: int
    name: str
    specialization: str = ""
    license_number: str = ""
    consultation_fee: int = 0
    available_days: list[str] = Field(default_factory=list)
    available_times: list[str] = Field(default_factory=list)
    experience_years: int = 0
    qualifications: str = ""
    total_consultations: int = 0
    is_active: bool = True
    registered_at: datetime


class TimeSlot(BaseModel):
    id: int
    doctor: str
    clinic_id: int
    slot_date: date
    slot_time: str  # "HH:MM"
    duration_minutes: int
    fee: int = 0
    status: SlotStatus = SlotStatus.AVAILABLE
    appointment_id: int = 0  # 0 while unbooked


class Appointment(BaseModel):
    id: int
    patient: str
    doctor: str
    clinic_id: int
    slot_id: int
    appointment_type: AppointmentType = AppointmentType.GENERAL_CONSULTATION
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    symptoms: str = ""
    notes: str = ""
    attachments: list[str] = Field(default_factory=list)
    is_emergency: bool = False
    fee: int = 0

    is_paid: bool = False
    payment_id: int = 0
    consultation_id: int = 0
    rescheduled_from: int = 0
    rescheduled_to: int = 0
    cancellation_reason: str | None = None

    booked_at: datetime
    updated_at: datetime | None = None


class ConsultationRecord(BaseModel):
    """One per appointment; immutable once completed."""

    id: int
    appointment_id: int
    patient: str
    doctor: str
    started_at: datetime
    ended_at: datetime | None = None
    diagnosis: str = ""
    prescription: str = ""
    notes: str = ""
    follow_up_required: bool = False
    follow_up_date: date | None = None
    medical_record_id: int = 0
    is_completed: bool = False
