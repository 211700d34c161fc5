"""
Medical Record Models

Patient profiles, consent grants, record references and the
emergency access log. Payloads are opaque encrypted references.
"""

from datetime import datetime

from pydantic import BaseModel, Field


class PatientProfile(BaseModel):
    """A patient registered with the record store."""

    address: str
    encrypted_info_ref: str
    emergency_contact: str | None = None
    registered_at: datetime
    updated_at: datetime | None = None
    is_active: bool = True


class AccessGrant(BaseModel):
    """Consent from a patient to one grantee."""

    patient: str
    grantee: str
    role: str
    granted_at: datetime
    expires_at: datetime | None = None
    is_active: bool = True

    def is_current(self, now: datetime) -> bool:
        return self.is_active and (self.expires_at is None or now < self.expires_at)


class MedicalRecord(BaseModel):
    """
    An immutable reference to an encrypted record payload.

    Records are never deleted, only deactivated.
    """

    id: int
    patient: str
    author: str
    payload_ref: str
    category: str
    attachments: list[str] = Field(default_factory=list)
    created_at: datetime
    is_active: bool = True
    idempotency_key: str | None = None


class AccessLogEntry(BaseModel):
    """A break-glass read of a record."""

    id: int
    record_id: int
    patient: str
    actor: str
    reason: str
    accessed_at: datetime
