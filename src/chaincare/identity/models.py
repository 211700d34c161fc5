"""
Identity Domain Models

Healthcare entities, verification requests and credentials.
"""

from datetime import datetime
from enum import Enum
from typing import NamedTuple

from pydantic import BaseModel, Field

from chaincare.core.capabilities import Capability


class EntityType(str, Enum):
    """Kinds of participants in the network."""
    PATIENT = "patient"
    DOCTOR = "doctor"
    NURSE = "nurse"
    HOSPITAL = "hospital"
    PHARMACY = "pharmacy"
    LAB = "lab"
    INSURER = "insurer"
    REGULATOR = "regulator"


class VerificationStatus(str, Enum):
    """Entity and credential status."""
    PENDING = "pending"
    VERIFIED = "verified"
    SUSPENDED = "suspended"
    REVOKED = "revoked"


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# Capability set assigned on approval, derived only from the entity type
ROLE_CAPABILITIES: dict[EntityType, frozenset[Capability]] = {
    EntityType.PATIENT: frozenset({Capability.PATIENT}),
    EntityType.DOCTOR: frozenset({Capability.DOCTOR, Capability.PROVIDER, Capability.EMERGENCY_ACCESS}),
    EntityType.NURSE: frozenset({Capability.NURSE, Capability.PROVIDER, Capability.EMERGENCY_ACCESS}),
    EntityType.HOSPITAL: frozenset({Capability.HOSPITAL, Capability.PROVIDER}),
    EntityType.PHARMACY: frozenset({Capability.PHARMACY, Capability.PROVIDER}),
    EntityType.LAB: frozenset({Capability.LAB, Capability.PROVIDER}),
    EntityType.INSURER: frozenset({Capability.INSURER}),
    EntityType.REGULATOR: frozenset({Capability.REGULATOR, Capability.VERIFIER}),
}


class HealthcareEntity(BaseModel):
    """
    A registered (or pending) participant.

    Keyed by address; license numbers are unique across the registry.
    """

    address: str
    entity_type: EntityType
    name: str
    license_number: str
    jurisdiction: str = ""
    documents: list[str] = Field(default_factory=list, description="Content-addressed proof references")
    contact_info_ref: str = ""
    experience_years: int = 0
    specialization: str = ""
    certifications: list[str] = Field(default_factory=list)

    status: VerificationStatus = VerificationStatus.PENDING
    is_active: bool = False
    requested_at: datetime
    verified_at: datetime | None = None
    verified_by: str | None = None
    expires_at: datetime | None = None
    status_reason: str | None = None


class VerificationRequest(BaseModel):
    """A pending or processed verification request."""

    id: int
    applicant: str
    entity_type: EntityType
    documents: list[str] = Field(default_factory=list)
    status: RequestStatus = RequestStatus.PENDING
    requested_at: datetime
    processed_at: datetime | None = None
    processed_by: str | None = None
    notes: str = ""


class Credential(BaseModel):
    """A credential issued by a verifier to a registered holder."""

    id: int
    holder: str
    credential_type: str
    issuer: str
    document_ref: str
    issued_at: datetime
    expires_at: datetime
    status: VerificationStatus = VerificationStatus.VERIFIED
    revocable: bool = True
    revoked_at: datetime | None = None


class VerificationResult(NamedTuple):
    """Answer to verify(entity)."""
    is_valid: bool
    status: VerificationStatus | None
    expiry: datetime | None
