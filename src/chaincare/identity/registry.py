"""
Identity Registry

Features:
- One pending verification request per applicant
- Capability set derived from entity type on approval
- Rejection purges the pending entity (no archive)
- Suspension / reactivation / revocation lifecycle
- Credential issuance and revocation
- verify() re-checks wall-clock expiry on every call
"""

from datetime import datetime, timedelta

import structlog

from chaincare.config import get_settings
from chaincare.core.capabilities import Capability
from chaincare.core.clock import Clock
from chaincare.core.events import EventBus
from chaincare.core.ledger import Ledger, atomic
from chaincare.errors import (
    AlreadyExists,
    DuplicateRequest,
    InvalidArgument,
    InvalidStateTransition,
    NotFound,
    Unauthorized,
)
from chaincare.identity.models import (
    ROLE_CAPABILITIES,
    Credential,
    EntityType,
    HealthcareEntity,
    RequestStatus,
    VerificationRequest,
    VerificationResult,
    VerificationStatus,
)

logger = structlog.get_logger(__name__)


class IdentityRegistry(Ledger):
    """
    Registry of verified healthcare participants.

    Usage:
        registry = IdentityRegistry(address="identity", admin="admin")
        request_id = registry.request_verification("0xdoc", EntityType.DOCTOR, "Dr. Smith", "MED12345")
        registry.process_verification("admin", request_id, approve=True, notes="ok")
        registry.verify("0xdoc").is_valid  # True
    """

    name = "identity"

    def __init__(
        self,
        address: str,
        admin: str,
        clock: Clock | None = None,
        events: EventBus | None = None,
        validity_days: int | None = None,
    ):
        super().__init__(address, admin, clock, events)
        self.capabilities.grant(admin, Capability.VERIFIER)
        self.validity = timedelta(days=validity_days or get_settings().identity.verification_validity_days)

        self._entities: dict[str, HealthcareEntity] = {}
        self._requests: dict[int, VerificationRequest] = {}
        self._pending_by_applicant: dict[str, int] = {}
        self._licenses: dict[str, str] = {}  # license_number -> address
        self._credentials: dict[int, Credential] = {}
        self._credentials_by_holder: dict[str, list[int]] = {}

    # =========================================================================
    # Verification workflow
    # =========================================================================

    @atomic
    def request_verification(
        self,
        caller: str,
        entity_type: EntityType,
        name: str,
        license_number: str,
        jurisdiction: str = "",
        documents: list[str] | None = None,
        contact_info_ref: str = "",
        experience_years: int = 0,
        specialization: str = "",
    ) -> int:
        """
        Open a verification request for the calling address.

        Returns:
            The request id
        """
        if not name or not license_number:
            raise InvalidArgument("name and license_number are required")
        if caller in self._pending_by_applicant:
            raise DuplicateRequest(
                f"{caller} already has a pending verification request",
                detail={"request_id": self._pending_by_applicant[caller]},
            )
        existing = self._entities.get(caller)
        if existing is not None:
            if existing.status == VerificationStatus.REVOKED:
                raise InvalidStateTransition(f"{caller} has been revoked", detail={"status": existing.status.value})
            raise AlreadyExists(f"{caller} is already registered", detail={"status": existing.status.value})
        if license_number in self._licenses:
            raise AlreadyExists(f"License {license_number} is already registered", detail={"license_number": license_number})

        now = self._now()
        entity = HealthcareEntity(
            address=caller,
            entity_type=entity_type,
            name=name,
            license_number=license_number,
            jurisdiction=jurisdiction,
            documents=list(documents or []),
            contact_info_ref=contact_info_ref,
            experience_years=experience_years,
            specialization=specialization,
            requested_at=now,
        )
        request = VerificationRequest(
            id=self._next_id("verification_request"),
            applicant=caller,
            entity_type=entity_type,
            documents=entity.documents,
            requested_at=now,
        )

        self._entities[caller] = entity
        self._licenses[license_number] = caller
        self._requests[request.id] = request
        self._pending_by_applicant[caller] = request.id

        self._commit("entity", entity, "entity.requested", caller, request_id=request.id)
        self._commit("verification_request", request, "request.opened", caller)
        logger.info("Verification requested", applicant=caller, entity_type=entity_type.value, request_id=request.id)
        return request.id

    @atomic
    def process_verification(
        self,
        caller: str,
        request_id: int,
        approve: bool,
        notes: str = "",
        certifications: list[str] | None = None,
    ) -> None:
        """Approve or reject a pending request."""
        self._require_authority(caller, Capability.VERIFIER)
        request = self._lookup(self._requests, request_id, "verification_request")
        if request.status != RequestStatus.PENDING:
            raise InvalidStateTransition(
                f"Request {request_id} already processed",
                detail={"status": request.status.value},
            )

        now = self._now()
        entity = self._entities[request.applicant]
        request.processed_at = now
        request.processed_by = caller
        request.notes = notes
        del self._pending_by_applicant[request.applicant]

        if approve:
            request.status = RequestStatus.APPROVED
            entity.status = VerificationStatus.VERIFIED
            entity.is_active = True
            entity.verified_at = now
            entity.verified_by = caller
            entity.expires_at = now + self.validity
            entity.certifications = list(certifications or [])
            for capability in ROLE_CAPABILITIES[entity.entity_type]:
                self.capabilities.grant(entity.address, capability)
            self._commit("entity", entity, "entity.verified", caller, request_id=request_id)
            logger.info("Entity verified", entity=entity.address, entity_type=entity.entity_type.value)
        else:
            request.status = RequestStatus.REJECTED
            del self._entities[entity.address]
            del self._licenses[entity.license_number]
            self._publish("entity", entity.address, "entity.purged", caller, request_id=request_id)
            logger.info("Verification rejected", entity=entity.address, request_id=request_id)

        self._commit("verification_request", request, f"request.{request.status.value}", caller)

    @atomic
    def suspend(self, caller: str, entity: str, reason: str = "") -> None:
        self._require_authority(caller, Capability.ADMIN, Capability.REGULATOR)
        record = self._lookup(self._entities, entity, "entity")
        self._transition(record, VerificationStatus.VERIFIED, VerificationStatus.SUSPENDED)
        record.is_active = False
        record.status_reason = reason
        self._commit("entity", record, "entity.suspended", caller, reason=reason)
        logger.warning("Entity suspended", entity=entity, by=caller, reason=reason)

    @atomic
    def reactivate(self, caller: str, entity: str) -> None:
        self._require_authority(caller, Capability.ADMIN, Capability.REGULATOR)
        record = self._lookup(self._entities, entity, "entity")
        self._transition(record, VerificationStatus.SUSPENDED, VerificationStatus.VERIFIED)
        record.is_active = True
        record.status_reason = None
        self._commit("entity", record, "entity.reactivated", caller)
        logger.info("Entity reactivated", entity=entity, by=caller)

    @atomic
    def revoke_entity(self, caller: str, entity: str, reason: str = "") -> None:
        """Terminally revoke a pending entity; its license stays reserved."""
        self._require_authority(caller, Capability.ADMIN, Capability.REGULATOR)
        record = self._lookup(self._entities, entity, "entity")
        self._transition(record, VerificationStatus.PENDING, VerificationStatus.REVOKED)
        record.is_active = False
        record.status_reason = reason

        request_id = self._pending_by_applicant.pop(entity, None)
        if request_id is not None:
            request = self._requests[request_id]
            request.status = RequestStatus.REJECTED
            request.processed_at = self._now()
            request.processed_by = caller
            request.notes = reason
            self._commit("verification_request", request, "request.rejected", caller)

        self._commit("entity", record, "entity.revoked", caller, reason=reason)
        logger.warning("Entity revoked", entity=entity, by=caller, reason=reason)

    @atomic
    def renew_verification(self, caller: str, entity: str) -> datetime:
        """Extend a verified entity's expiry from now."""
        self._require_authority(caller, Capability.VERIFIER)
        record = self._lookup(self._entities, entity, "entity")
        if record.status != VerificationStatus.VERIFIED:
            raise InvalidStateTransition(
                f"Cannot renew {entity} in status {record.status.value}",
                detail={"status": record.status.value},
            )
        record.expires_at = self._now() + self.validity
        self._commit("entity", record, "entity.renewed", caller)
        return record.expires_at

    # =========================================================================
    # Credentials
    # =========================================================================

    @atomic
    def issue_credential(
        self,
        caller: str,
        holder: str,
        credential_type: str,
        document_ref: str,
        expires_at: datetime,
        revocable: bool = True,
    ) -> int:
        self._require_authority(caller, Capability.VERIFIER)
        record = self._entities.get(holder)
        if record is None or record.status != VerificationStatus.VERIFIED:
            raise NotFound(f"{holder} is not a registered entity", detail={"holder": holder})
        now = self._now()
        if expires_at <= now:
            raise InvalidArgument("Credential expiry must be in the future", detail={"expires_at": expires_at.isoformat()})

        credential = Credential(
            id=self._next_id("credential"),
            holder=holder,
            credential_type=credential_type,
            issuer=caller,
            document_ref=document_ref,
            issued_at=now,
            expires_at=expires_at,
            revocable=revocable,
        )
        self._credentials[credential.id] = credential
        self._credentials_by_holder.setdefault(holder, []).append(credential.id)
        self._commit("credential", credential, "credential.issued", caller, holder=holder)
        logger.info("Credential issued", credential_id=credential.id, holder=holder, credential_type=credential_type)
        return credential.id

    @atomic
    def revoke_credential(self, caller: str, credential_id: int) -> None:
        credential = self._lookup(self._credentials, credential_id, "credential")
        if caller != credential.issuer:
            self._require_authority(caller, Capability.ADMIN)
        if not credential.revocable:
            raise InvalidStateTransition(f"Credential {credential_id} is not revocable")
        if credential.status != VerificationStatus.VERIFIED:
            raise InvalidStateTransition(
                f"Credential {credential_id} is {credential.status.value}",
                detail={"status": credential.status.value},
            )
        credential.status = VerificationStatus.REVOKED
        credential.revoked_at = self._now()
        self._commit("credential", credential, "credential.revoked", caller)

    def verify_credential(self, credential_id: int) -> bool:
        with self._lock:
            credential = self._credentials.get(credential_id)
            if credential is None:
                return False
            return credential.status == VerificationStatus.VERIFIED and self._now() < credential.expires_at

    # =========================================================================
    # Verification checks
    # =========================================================================

    def verify(self, entity: str) -> VerificationResult:
        """
        Current validity of an entity.

        An entity past its expiry is never valid, whatever its stored status.
        """
        with self._lock:
            record = self._entities.get(entity)
            if record is None:
                return VerificationResult(False, None, None)
            is_valid = (
                record.status == VerificationStatus.VERIFIED
                and record.is_active
                and record.expires_at is not None
                and self._now() < record.expires_at
            )
            return VerificationResult(is_valid, record.status, record.expires_at)

    def has_capability(self, entity: str, capability: Capability) -> bool:
        return self.capabilities.has(entity, capability)

    def is_authorized(self, entity: str, capability: Capability) -> bool:
        """Valid right now AND holding the capability."""
        return self.verify(entity).is_valid and self.has_capability(entity, capability)

    def _require_authority(self, caller: str, *capabilities: Capability) -> None:
        self.capabilities.require(caller, *capabilities)
        if caller != self.admin and not self.verify(caller).is_valid:
            raise Unauthorized(f"{caller} is not currently verified", detail={"entity": caller})

    @staticmethod
    def _transition(record: HealthcareEntity, expected: VerificationStatus, target: VerificationStatus) -> None:
        if record.status != expected:
            raise InvalidStateTransition(
                f"{record.address} cannot move {record.status.value} -> {target.value}",
                detail={"status": record.status.value, "target": target.value},
            )
        record.status = target

    # =========================================================================
    # Reads
    # =========================================================================

    def get_entity(self, entity: str) -> HealthcareEntity:
        with self._lock:
            return self._view(self._lookup(self._entities, entity, "entity"))

    def get_request(self, request_id: int) -> VerificationRequest:
        with self._lock:
            return self._view(self._lookup(self._requests, request_id, "verification_request"))

    def get_credential(self, credential_id: int) -> Credential:
        with self._lock:
            return self._view(self._lookup(self._credentials, credential_id, "credential"))

    def get_holder_credentials(self, holder: str) -> list[int]:
        with self._lock:
            return list(self._credentials_by_holder.get(holder, []))

    def get_entities_by_type(self, entity_type: EntityType, verified_only: bool = True) -> list[str]:
        with self._lock:
            addresses = [e.address for e in self._entities.values() if e.entity_type == entity_type]
        if verified_only:
            addresses = [a for a in addresses if self.verify(a).is_valid]
        return addresses

    def is_registered(self, entity: str) -> bool:
        with self._lock:
            record = self._entities.get(entity)
            return record is not None and record.status in (VerificationStatus.VERIFIED, VerificationStatus.SUSPENDED)
