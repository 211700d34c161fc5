"""
Scheduling Ledger

Appointment state machine:
    SCHEDULED -> CONFIRMED -> IN_PROGRESS -> COMPLETED
    SCHEDULED / CONFIRMED -> CANCELLED | NO_SHOW | RESCHEDULED

Booking flips a slot AVAILABLE -> BOOKED inside the ledger lock, so two
concurrent bookings of the same slot resolve to exactly one winner.
"""

from datetime import date

import structlog

from chaincare.core.capabilities import Capability
from chaincare.core.ids import NO_ID
from chaincare.core.ledger import Ledger, atomic
from chaincare.errors import (
    AlreadyExists,
    InvalidArgument,
    InvalidStateTransition,
    NotFound,
    Unauthorized,
)
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

logger = structlog.get_logger(__name__)


# Manual slot transitions; BOOKED is only ever set by booking
SETTABLE_SLOT_STATUSES = frozenset({SlotStatus.AVAILABLE, SlotStatus.BLOCKED, SlotStatus.BREAK})


class SchedulingLedger(Ledger):
    """
    Clinic, doctor, slot and appointment ledger.

    Usage:
        clinic_id = scheduling.register_clinic("hospital", "City General")
        scheduling.register_doctor("hospital", "doctor", clinic_id, "Dr. Smith")
        slot_ids = scheduling.create_time_slots("doctor", "doctor", date(2025, 10, 15), ["09:00"], 30, 100)
        appointment_id = scheduling.book_appointment("patient", "doctor", slot_ids[0])
    """

    name = "scheduling"

    def __init__(self, address: str, admin: str, clock=None, events=None):
        super().__init__(address, admin, clock, events)
        self._clinics: dict[int, Clinic] = {}
        self._clinic_by_owner: dict[str, int] = {}
        self._doctors: dict[str, Doctor] = {}
        self._slots: dict[int, TimeSlot] = {}
        self._slot_index: dict[tuple[str, date, str], int] = {}
        self._appointments: dict[int, Appointment] = {}
        self._consultations: dict[int, ConsultationRecord] = {}
        self._patient_appointments: dict[str, list[int]] = {}
        self._doctor_appointments: dict[str, list[int]] = {}

    # =========================================================================
    # Clinics & doctors
    # =========================================================================

    @atomic
    def register_clinic(
        self,
        caller: str,
        name: str,
        location: str = "",
        specialties: list[str] | None = None,
        contact_info_ref: str = "",
        operating_hours: str = "",
        working_days: list[str] | None = None,
        consultation_fee: int = 0,
        accepts_insurance: bool = False,
    ) -> int:
        if caller in self._clinic_by_owner:
            raise AlreadyExists(f"{caller} already owns a clinic", detail={"clinic_id": self._clinic_by_owner[caller]})
        if not name:
            raise InvalidArgument("Clinic name is required")
        if consultation_fee < 0:
            raise InvalidArgument("Consultation fee cannot be negative")

        clinic = Clinic(
            id=self._next_id("clinic"),
            owner=caller,
            name=name,
            location=location,
            specialties=list(specialties or []),
            contact_info_ref=contact_info_ref,
            operating_hours=operating_hours,
            working_days=list(working_days or []),
            consultation_fee=consultation_fee,
            accepts_insurance=accepts_insurance,
            registered_at=self._now(),
        )
        self._clinics[clinic.id] = clinic
        self._clinic_by_owner[caller] = clinic.id
        self._commit("clinic", clinic, "clinic.registered", caller)
        logger.info("Clinic registered", clinic_id=clinic.id, owner=caller)
        return clinic.id

    @atomic
    def register_doctor(
        self,
        caller: str,
        doctor: str,
        clinic_id: int,
        name: str,
        specialization: str = "",
        license_number: str = "",
        consultation_fee: int = 0,
        available_days: list[str] | None = None,
        available_times: list[str] | None = None,
        experience_years: int = 0,
        qualifications: str = "",
    ) -> int:
        clinic = self._lookup(self._clinics, clinic_id, "clinic")
        if caller != clinic.owner:
            raise Unauthorized(f"{caller} does not own clinic {clinic_id}")
        if doctor in self._doctors:
            raise AlreadyExists(
                f"Doctor {doctor} already registered",
                detail={"clinic_id": self._doctors[doctor].clinic_id},
            )

        record = Doctor(
            id=self._next_id("doctor"),
            address=doctor,
            clinic_id=clinic_id,
            name=name,
            specialization=specialization,
            license_number=license_number,
            consultation_fee=consultation_fee,
            available_days=list(available_days or []),
            available_times=list(available_times or []),
            experience_years=experience_years,
            qualifications=qualifications,
            registered_at=self._now(),
        )
        self._doctors[doctor] = record
        clinic.doctors.append(doctor)
        self._commit("doctor", record, "doctor.registered", caller, clinic_id=clinic_id)
        self._commit("clinic", clinic, "clinic.doctor_added", caller, doctor=doctor)
        logger.info("Doctor registered", doctor=doctor, clinic_id=clinic_id)
        return record.id

    # =========================================================================
    # Time slots
    # =========================================================================

    @atomic
    def create_time_slots(
        self,
        caller: str,
        doctor: str,
        slot_date: date,
        times: list[str],
        duration_minutes: int,
        fee: int,
    ) -> list[int]:
        """
        Create one AVAILABLE slot per time on the given date.

        Returns:
            The new slot ids, in the order of `times`
        """
        record = self._lookup(self._doctors, doctor, "doctor")
        self._require_doctor_or_owner(caller, record)
        if not times:
            raise InvalidArgument("At least one slot time is required")
        if duration_minutes <= 0:
            raise InvalidArgument("Slot duration must be positive")
        if fee < 0:
            raise InvalidArgument("Slot fee cannot be negative")
        for slot_time in times:
            if (doctor, slot_date, slot_time) in self._slot_index or times.count(slot_time) > 1:
                raise AlreadyExists(f"Slot {slot_date} {slot_time} already exists for {doctor}")

        slot_ids = []
        for slot_time in times:
            slot = TimeSlot(
                id=self._next_id("slot"),
                doctor=doctor,
                clinic_id=record.clinic_id,
                slot_date=slot_date,
                slot_time=slot_time,
                duration_minutes=duration_minutes,
                fee=fee,
            )
            self._slots[slot.id] = slot
            self._slot_index[(doctor, slot_date, slot_time)] = slot.id
            self._commit("slot", slot, "slot.created", caller)
            slot_ids.append(slot.id)

        logger.info("Time slots created", doctor=doctor, date=slot_date.isoformat(), count=len(slot_ids))
        return slot_ids

    @atomic
    def set_slot_status(self, caller: str, slot_id: int, status: SlotStatus) -> None:
        slot = self._lookup(self._slots, slot_id, "slot")
        self._require_doctor_or_owner(caller, self._doctors[slot.doctor])
        if status not in SETTABLE_SLOT_STATUSES:
            raise InvalidArgument("Slots become booked only through booking")
        if slot.status == SlotStatus.BOOKED:
            raise InvalidStateTransition(f"Slot {slot_id} is booked", detail={"appointment_id": slot.appointment_id})
        slot.status = status
        self._commit("slot", slot, "slot.status_changed", caller, status=status.value)

    # =========================================================================
    # Booking
    # =========================================================================

    @atomic
    def book_appointment(
        self,
        caller: str,
        doctor: str,
        slot_id: int,
        appointment_type: AppointmentType = AppointmentType.GENERAL_CONSULTATION,
        symptoms: str = "",
        notes: str = "",
        attachments: list[str] | None = None,
        is_emergency: bool = False,
    ) -> int:
        slot = self._lookup(self._slots, slot_id, "slot")
        if slot.doctor != doctor:
            raise InvalidArgument(f"Slot {slot_id} does not belong to {doctor}")
        if caller == doctor:
            raise InvalidArgument("Doctors cannot book their own slots")
        appointment = self._claim_slot(
            slot,
            patient=caller,
            appointment_type=appointment_type,
            symptoms=symptoms,
            notes=notes,
            attachments=list(attachments or []),
            is_emergency=is_emergency,
        )
        logger.info("Appointment booked", appointment_id=appointment.id, patient=caller, doctor=doctor, slot_id=slot_id)
        return appointment.id

    def _claim_slot(self, slot: TimeSlot, patient: str, **fields) -> Appointment:
        """Check-and-flip AVAILABLE -> BOOKED. Caller holds the ledger lock."""
        if slot.status != SlotStatus.AVAILABLE:
            raise InvalidStateTransition(
                f"Slot {slot.id} is {slot.status.value}",
                detail={"slot_id": slot.id, "status": slot.status.value},
            )
        appointment = Appointment(
            id=self._next_id("appointment"),
            patient=patient,
            doctor=slot.doctor,
            clinic_id=slot.clinic_id,
            slot_id=slot.id,
            fee=slot.fee,
            booked_at=self._now(),
            **fields,
        )
        slot.status = SlotStatus.BOOKED
        slot.appointment_id = appointment.id

        self._appointments[appointment.id] = appointment
        self._patient_appointments.setdefault(patient, []).append(appointment.id)
        self._doctor_appointments.setdefault(slot.doctor, []).append(appointment.id)
        self._commit("slot", slot, "slot.booked", patient, appointment_id=appointment.id)
        self._commit("appointment", appointment, "appointment.scheduled", patient, slot_id=slot.id)
        return appointment

    def _release_slot(self, appointment: Appointment, actor: str) -> None:
        slot = self._slots[appointment.slot_id]
        if slot.appointment_id == appointment.id:
            slot.status = SlotStatus.AVAILABLE
            slot.appointment_id = NO_ID
            self._commit("slot", slot, "slot.released", actor, appointment_id=appointment.id)

    # =========================================================================
    # Appointment lifecycle
    # =========================================================================

    @atomic
    def confirm_appointment(self, caller: str, appointment_id: int) -> None:
        appointment = self._lookup(self._appointments, appointment_id, "appointment")
        self._require_doctor_or_owner(caller, self._doctors[appointment.doctor])
        self._transition(appointment, {AppointmentStatus.SCHEDULED}, AppointmentStatus.CONFIRMED)
        self._commit("appointment", appointment, "appointment.confirmed", caller)

    @atomic
    def start_consultation(self, caller: str, appointment_id: int) -> int:
        appointment = self._lookup(self._appointments, appointment_id, "appointment")
        if caller != appointment.doctor:
            raise Unauthorized(f"{caller} is not the doctor for appointment {appointment_id}")
        if appointment.consultation_id != NO_ID:
            raise AlreadyExists(f"Consultation already started for appointment {appointment_id}")
        self._transition(appointment, OPEN_STATUSES, AppointmentStatus.IN_PROGRESS)

        consultation = ConsultationRecord(
            id=self._next_id("consultation"),
            appointment_id=appointment_id,
            patient=appointment.patient,
            doctor=caller,
            started_at=self._now(),
        )
        self._consultations[consultation.id] = consultation
        appointment.consultation_id = consultation.id
        self._commit("consultation", consultation, "consultation.started", caller)
        self._commit("appointment", appointment, "appointment.in_progress", caller, consultation_id=consultation.id)
        return consultation.id

    @atomic
    def complete_consultation(
        self,
        caller: str,
        appointment_id: int,
        diagnosis: str,
        prescription: str = "",
        notes: str = "",
        follow_up_required: bool = False,
        follow_up_date: date | None = None,
        medical_record_id: int = NO_ID,
    ) -> int:
        """
        Finalise the consultation and complete the appointment.

        Returns:
            The consultation id
        """
        appointment = self._lookup(self._appointments, appointment_id, "appointment")
        consultation = self._consultations.get(appointment.consultation_id)
        if consultation is None:
            raise InvalidStateTransition(f"Appointment {appointment_id} has no active consultation")
        if caller != consultation.doctor:
            raise Unauthorized(f"{caller} does not own consultation {consultation.id}")
        if consultation.is_completed:
            raise InvalidStateTransition(f"Consultation {consultation.id} already completed")
        self._transition(appointment, {AppointmentStatus.IN_PROGRESS}, AppointmentStatus.COMPLETED)

        consultation.diagnosis = diagnosis
        consultation.prescription = prescription
        consultation.notes = notes
        consultation.follow_up_required = follow_up_required
        consultation.follow_up_date = follow_up_date
        consultation.medical_record_id = medical_record_id
        consultation.ended_at = self._now()
        consultation.is_completed = True
        self._doctors[caller].total_consultations += 1

        self._commit("consultation", consultation, "consultation.completed", caller, medical_record_id=medical_record_id)
        self._commit("appointment", appointment, "appointment.completed", caller)
        self._commit("doctor", self._doctors[caller], "doctor.consultation_counted", caller)
        logger.info("Consultation completed", appointment_id=appointment_id, consultation_id=consultation.id)
        return consultation.id

    @atomic
    def cancel_appointment(self, caller: str, appointment_id: int, reason: str = "") -> None:
        appointment = self._lookup(self._appointments, appointment_id, "appointment")
        if caller != appointment.patient:
            self._require_doctor_or_owner(caller, self._doctors[appointment.doctor])
        self._transition(appointment, OPEN_STATUSES, AppointmentStatus.CANCELLED)
        appointment.cancellation_reason = reason
        self._release_slot(appointment, caller)
        self._commit("appointment", appointment, "appointment.cancelled", caller, reason=reason)
        logger.info("Appointment cancelled", appointment_id=appointment_id, by=caller)

    @atomic
    def mark_no_show(self, caller: str, appointment_id: int) -> None:
        appointment = self._lookup(self._appointments, appointment_id, "appointment")
        if caller != appointment.doctor:
            raise Unauthorized(f"{caller} is not the doctor for appointment {appointment_id}")
        self._transition(appointment, OPEN_STATUSES, AppointmentStatus.NO_SHOW)
        self._release_slot(appointment, caller)
        self._commit("appointment", appointment, "appointment.no_show", caller)

    @atomic
    def reschedule_appointment(self, caller: str, appointment_id: int, new_slot_id: int) -> int:
        """
        Move an open appointment to another slot of the same doctor.

        The old appointment becomes RESCHEDULED and its slot is freed.

        Returns:
            The id of the replacement appointment
        """
        appointment = self._lookup(self._appointments, appointment_id, "appointment")
        if caller != appointment.patient:
            raise Unauthorized(f"{caller} is not the patient for appointment {appointment_id}")
        new_slot = self._lookup(self._slots, new_slot_id, "slot")
        if new_slot.doctor != appointment.doctor:
            raise InvalidArgument("Rescheduling must stay with the same doctor")
        if appointment.status not in OPEN_STATUSES:
            raise InvalidStateTransition(
                f"Appointment {appointment_id} cannot be rescheduled from {appointment.status.value}",
                detail={"status": appointment.status.value},
            )

        replacement = self._claim_slot(
            new_slot,
            patient=caller,
            appointment_type=appointment.appointment_type,
            symptoms=appointment.symptoms,
            notes=appointment.notes,
            attachments=list(appointment.attachments),
            is_emergency=appointment.is_emergency,
            rescheduled_from=appointment.id,
        )
        self._transition(appointment, OPEN_STATUSES, AppointmentStatus.RESCHEDULED)
        appointment.rescheduled_to = replacement.id
        self._release_slot(appointment, caller)
        self._commit("appointment", appointment, "appointment.rescheduled", caller, rescheduled_to=replacement.id)
        logger.info("Appointment rescheduled", appointment_id=appointment_id, replacement_id=replacement.id)
        return replacement.id

    @atomic
    def record_payment(self, caller: str, appointment_id: int, payment_id: int) -> None:
        appointment = self._lookup(self._appointments, appointment_id, "appointment")
        clinic = self._clinics[appointment.clinic_id]
        if caller not in (appointment.patient, clinic.owner) and not self.capabilities.has(
            caller, Capability.PAYMENT_PROCESSOR
        ):
            raise Unauthorized(f"{caller} may not record payment for appointment {appointment_id}")
        if appointment.is_paid:
            raise InvalidStateTransition(
                f"Appointment {appointment_id} already paid",
                detail={"payment_id": appointment.payment_id},
            )
        appointment.is_paid = True
        appointment.payment_id = payment_id
        appointment.updated_at = self._now()
        self._commit("appointment", appointment, "appointment.paid", caller, payment_id=payment_id)

    # =========================================================================
    # Internals
    # =========================================================================

    def _transition(
        self,
        appointment: Appointment,
        allowed: set[AppointmentStatus] | frozenset[AppointmentStatus],
        target: AppointmentStatus,
    ) -> None:
        if appointment.status not in allowed:
            raise InvalidStateTransition(
                f"Appointment {appointment.id} cannot move {appointment.status.value} -> {target.value}",
                detail={"status": appointment.status.value, "target": target.value},
            )
        appointment.status = target
        appointment.updated_at = self._now()

    def _require_doctor_or_owner(self, caller: str, doctor: Doctor) -> None:
        if caller == doctor.address or caller == self._clinics[doctor.clinic_id].owner:
            return
        raise Unauthorized(f"{caller} is neither {doctor.address} nor their clinic owner")

    def _can_view(self, caller: str, appointment: Appointment) -> bool:
        if caller in (appointment.patient, appointment.doctor):
            return True
        if caller == self._clinics[appointment.clinic_id].owner:
            return True
        return self.capabilities.has(caller, Capability.ADMIN)

    # =========================================================================
    # Reads
    # =========================================================================

    def get_appointment(self, caller: str, appointment_id: int) -> Appointment:
        with self._lock:
            appointment = self._lookup(self._appointments, appointment_id, "appointment")
            if not self._can_view(caller, appointment):
                raise Unauthorized(f"{caller} may not view appointment {appointment_id}")
            return self._view(appointment)

    def get_consultation(self, caller: str, consultation_id: int) -> ConsultationRecord:
        with self._lock:
            consultation = self._lookup(self._consultations, consultation_id, "consultation")
            if not self._can_view(caller, self._appointments[consultation.appointment_id]):
                raise Unauthorized(f"{caller} may not view consultation {consultation_id}")
            return self._view(consultation)

    def get_patient_appointments(self, caller: str, patient: str) -> list[int]:
        with self._lock:
            if caller != patient and not self.capabilities.has(caller, Capability.ADMIN):
                raise Unauthorized(f"{caller} may not list appointments of {patient}")
            return list(self._patient_appointments.get(patient, []))

    def get_doctor_appointments(self, caller: str, doctor: str) -> list[int]:
        with self._lock:
            record = self._lookup(self._doctors, doctor, "doctor")
            if caller not in (doctor, self._clinics[record.clinic_id].owner) and not self.capabilities.has(
                caller, Capability.ADMIN
            ):
                raise Unauthorized(f"{caller} may not list appointments of {doctor}")
            return list(self._doctor_appointments.get(doctor, []))

    def get_slot(self, slot_id: int) -> TimeSlot:
        with self._lock:
            return self._view(self._lookup(self._slots, slot_id, "slot"))

    def get_clinic(self, clinic_id: int) -> Clinic:
        with self._lock:
            return self._view(self._lookup(self._clinics, clinic_id, "clinic"))

    def get_doctor(self, doctor: str) -> Doctor:
        with self._lock:
            return self._view(self._lookup(self._doctors, doctor, "doctor"))

    def get_available_slots(self, doctor: str, slot_date: date | None = None) -> list[int]:
        with self._lock:
            if doctor not in self._doctors:
                raise NotFound(f"doctor {doctor} not found")
            return [
                slot.id
                for slot in self._slots.values()
                if slot.doctor == doctor
                and slot.status == SlotStatus.AVAILABLE
                and (slot_date is None or slot.slot_date == slot_date)
            ]
