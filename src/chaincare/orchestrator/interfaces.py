"""
Service Interfaces

Typed handles the orchestrator holds for each ledger. Any object with
these operations can stand in, e.g. a fake in tests.
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Protocol

from chaincare.core.capabilities import Capability


class IdentityService(Protocol):
    def verify(self, entity: str) -> Any: ...

    def is_authorized(self, entity: str, capability: Capability) -> bool: ...


class RecordService(Protocol):
    def is_registered(self, patient: str) -> bool: ...

    def record_exists(self, record_id: int) -> bool: ...

    def has_access(self, patient: str, accessor: str) -> bool: ...

    def grant_access(self, caller: str, grantee: str, role: str, expires_at: datetime | None = None) -> None: ...

    def create_record(
        self,
        caller: str,
        patient: str,
        payload_ref: str,
        category: str,
        attachments: list[str] | None = None,
        idempotency_key: str | None = None,
    ) -> int: ...

    def get_patient_records(self, caller: str, patient: str) -> list[int]: ...


class ClaimsService(Protocol):
    address: str

    def submit_claim(
        self,
        caller: str,
        policy_number: str,
        amount: int,
        diagnosis: str,
        treatment_code: str,
        documents: list[str] | None = None,
        is_emergency: bool = False,
        medical_record_id: int = 0,
    ) -> int: ...

    def get_claim(self, caller: str, claim_id: int) -> Any: ...

    def execute_payout(self, caller: str, claim_id: int) -> int: ...

    def mark_claim_as_paid(self, caller: str, claim_id: int, payment_id: int) -> None: ...

    def get_patient_claims(self, caller: str, patient: str) -> list[int]: ...


class PaymentService(Protocol):
    def get_claim_payment(self, claim_id: int) -> int: ...

    def get_user_payments(self, caller: str, user: str) -> list[int]: ...


class SchedulingService(Protocol):
    def book_appointment(
        self,
        caller: str,
        doctor: str,
        slot_id: int,
        appointment_type: Any = ...,
        symptoms: str = "",
        notes: str = "",
        attachments: list[str] | None = None,
        is_emergency: bool = False,
    ) -> int: ...

    def get_appointment(self, caller: str, appointment_id: int) -> Any: ...

    def start_consultation(self, caller: str, appointment_id: int) -> int: ...

    def complete_consultation(
        self,
        caller: str,
        appointment_id: int,
        diagnosis: str,
        prescription: str = "",
        notes: str = "",
        follow_up_required: bool = False,
        follow_up_date: date | None = None,
        medical_record_id: int = 0,
    ) -> int: ...

    def get_patient_appointments(self, caller: str, patient: str) -> list[int]: ...


class SupplyService(Protocol):
    def dispense(self, caller: str, lot_id: int, quantity: int, patient: str, prescription_ref: str) -> int: ...


@dataclass
class ServiceRegistry:
    """Handles resolved once at construction."""
    identity: IdentityService
    records: RecordService
    claims: ClaimsService
    payments: PaymentService
    scheduling: SchedulingService
    supply: SupplyService
