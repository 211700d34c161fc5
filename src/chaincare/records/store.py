"""
Record Store

Features:
- Patient self-registration with an encrypted profile reference
- Consent grants (optionally time-limited) and revocation
- Records authored by the patient or a current grantee
- Idempotent record creation keyed by the author's idempotency key
- Break-glass emergency access, journaled with actor and reason
"""

from datetime import datetime

import structlog

from chaincare.core.capabilities import Capability
from chaincare.core.clock import Clock
from chaincare.core.events import EventBus
from chaincare.core.ledger import Ledger, atomic
from chaincare.errors import AlreadyExists, InvalidArgument, InvalidStateTransition, NotFound, Unauthorized
from chaincare.records.models import AccessGrant, AccessLogEntry, MedicalRecord, PatientProfile

logger = structlog.get_logger(__name__)


class RecordStore(Ledger):
    """
    Consent-gated store of medical record references.

    When an identity registry is supplied, emergency access also honours
    the EMERGENCY_ACCESS capability it derives for verified clinicians.
    """

    name = "records"

    def __init__(
        self,
        address: str,
        admin: str,
        clock: Clock | None = None,
        events: EventBus | None = None,
        identity=None,
    ):
        super().__init__(address, admin, clock, events)
        self.identity = identity

        self._patients: dict[str, PatientProfile] = {}
        self._grants: dict[tuple[str, str], AccessGrant] = {}
        self._records: dict[int, MedicalRecord] = {}
        self._records_by_patient: dict[str, list[int]] = {}
        self._idempotency: dict[tuple[str, str, str], int] = {}
        self._access_log: dict[str, list[AccessLogEntry]] = {}

    # =========================================================================
    # Registration & consent
    # =========================================================================

    @atomic
    def register_patient(self, caller: str, encrypted_info_ref: str, emergency_contact: str | None = None) -> None:
        if caller in self._patients:
            raise AlreadyExists(f"Patient {caller} already registered")
        if not encrypted_info_ref:
            raise InvalidArgument("encrypted_info_ref is required")
        profile = PatientProfile(
            address=caller,
            encrypted_info_ref=encrypted_info_ref,
            emergency_contact=emergency_contact,
            registered_at=self._now(),
        )
        self._patients[caller] = profile
        self._records_by_patient[caller] = []
        self._commit("patient", profile, "patient.registered", caller)
        logger.info("Patient registered", patient=caller)

    @atomic
    def update_patient_info(self, caller: str, encrypted_info_ref: str) -> None:
        profile = self._lookup(self._patients, caller, "patient")
        profile.encrypted_info_ref = encrypted_info_ref
        profile.updated_at = self._now()
        self._commit("patient", profile, "patient.updated", caller)

    @atomic
    def grant_access(self, caller: str, grantee: str, role: str, expires_at: datetime | None = None) -> None:
        self._lookup(self._patients, caller, "patient")
        if grantee == caller:
            raise InvalidArgument("Patients always have access to their own records")
        if expires_at is not None and expires_at <= self._now():
            raise InvalidArgument("Grant expiry must be in the future")
        grant = AccessGrant(
            patient=caller,
            grantee=grantee,
            role=role,
            granted_at=self._now(),
            expires_at=expires_at,
        )
        self._grants[(caller, grantee)] = grant
        self._commit("access_grant", grant, "access.granted", caller, entity_id=f"{caller}:{grantee}", grantee=grantee, role=role)
        logger.info("Record access granted", patient=caller, grantee=grantee, role=role)

    @atomic
    def revoke_access(self, caller: str, grantee: str) -> None:
        grant = self._grants.get((caller, grantee))
        if grant is None or not grant.is_active:
            raise NotFound(f"No active grant from {caller} to {grantee}")
        grant.is_active = False
        self._commit("access_grant", grant, "access.revoked", caller, entity_id=f"{caller}:{grantee}", grantee=grantee)
        logger.info("Record access revoked", patient=caller, grantee=grantee)

    def has_access(self, patient: str, accessor: str) -> bool:
        """Owner or current grantee."""
        with self._lock:
            if patient == accessor:
                return patient in self._patients
            grant = self._grants.get((patient, accessor))
            return grant is not None and grant.is_current(self._now())

    def is_registered(self, patient: str) -> bool:
        with self._lock:
            return patient in self._patients

    # =========================================================================
    # Records
    # =========================================================================

    @atomic
    def create_record(
        self,
        caller: str,
        patient: str,
        payload_ref: str,
        category: str,
        attachments: list[str] | None = None,
        idempotency_key: str | None = None,
    ) -> int:
        """
        Create a record authored by the caller.

        Returns:
            The new record id, or the existing id for a repeated idempotency key
        """
        self._lookup(self._patients, patient, "patient")
        if not self.has_access(patient, caller):
            raise Unauthorized(f"{caller} may not write records for {patient}", detail={"patient": patient, "author": caller})
        if not payload_ref:
            raise InvalidArgument("payload_ref is required")

        if idempotency_key:
            existing = self._idempotency.get((caller, patient, idempotency_key))
            if existing is not None:
                logger.info("Record already created for key", record_id=existing, idempotency_key=idempotency_key)
                return existing

        record = MedicalRecord(
            id=self._next_id("record"),
            patient=patient,
            author=caller,
            payload_ref=payload_ref,
            category=category,
            attachments=list(attachments or []),
            created_at=self._now(),
            idempotency_key=idempotency_key,
        )
        self._records[record.id] = record
        self._records_by_patient[patient].append(record.id)
        if idempotency_key:
            self._idempotency[(caller, patient, idempotency_key)] = record.id

        self._commit("record", record, "record.created", caller, patient=patient, category=category)
        logger.info("Medical record created", record_id=record.id, patient=patient, author=caller)
        return record.id

    @atomic
    def deactivate_record(self, caller: str, record_id: int) -> None:
        record = self._lookup(self._records, record_id, "record")
        if caller not in (record.patient, record.author):
            raise Unauthorized(f"{caller} may not deactivate record {record_id}")
        if not record.is_active:
            raise InvalidStateTransition(f"Record {record_id} already inactive")
        record.is_active = False
        self._commit("record", record, "record.deactivated", caller)

    def get_patient_records(self, caller: str, patient: str) -> list[int]:
        with self._lock:
            self._lookup(self._patients, patient, "patient")
            if not self.has_access(patient, caller):
                raise Unauthorized(f"{caller} may not read records of {patient}")
            return list(self._records_by_patient[patient])

    def get_record(self, caller: str, record_id: int) -> MedicalRecord:
        with self._lock:
            record = self._lookup(self._records, record_id, "record")
            if not self.has_access(record.patient, caller):
                raise Unauthorized(f"{caller} may not read record {record_id}")
            if not record.is_active and caller != record.patient:
                raise NotFound(f"record {record_id} is inactive")
            return self._view(record)

    def record_exists(self, record_id: int) -> bool:
        """Weak-reference validation; reveals nothing about content."""
        with self._lock:
            record = self._records.get(record_id)
            return record is not None and record.is_active

    # =========================================================================
    # Emergency access
    # =========================================================================

    @atomic
    def emergency_access(self, caller: str, record_id: int, reason: str) -> MedicalRecord:
        """
        Break-glass read bypassing consent.

        Fails closed: without the emergency capability the attempt is
        logged and Unauthorized is raised.
        """
        record = self._lookup(self._records, record_id, "record")
        if not reason:
            raise InvalidArgument("Emergency access requires a reason")

        if not self._holds_emergency_access(caller):
            logger.warning("Emergency access denied", actor=caller, record_id=record_id, reason=reason)
            self._publish("record", record_id, "record.emergency_denied", caller, reason=reason)
            raise Unauthorized(
                f"{caller} lacks emergency access capability",
                detail={"record_id": record_id, "actor": caller},
            )

        entry = AccessLogEntry(
            id=self._next_id("access_log"),
            record_id=record_id,
            patient=record.patient,
            actor=caller,
            reason=reason,
            accessed_at=self._now(),
        )
        self._access_log.setdefault(record.patient, []).append(entry)
        self._commit("access_log", entry, "record.emergency_accessed", caller, record_id=record_id, reason=reason)
        logger.warning("Emergency access granted", actor=caller, record_id=record_id, patient=record.patient, reason=reason)
        return self._view(record)

    def _holds_emergency_access(self, actor: str) -> bool:
        if self.capabilities.has(actor, Capability.EMERGENCY_ACCESS):
            return True
        return self.identity is not None and self.identity.is_authorized(actor, Capability.EMERGENCY_ACCESS)

    def get_access_log(self, caller: str, patient: str) -> list[AccessLogEntry]:
        with self._lock:
            self._lookup(self._patients, patient, "patient")
            if caller != patient and not self.capabilities.has(caller, Capability.ADMIN):
                raise Unauthorized(f"{caller} may not read the access log of {patient}")
            return [self._view(e) for e in self._access_log.get(patient, [])]
