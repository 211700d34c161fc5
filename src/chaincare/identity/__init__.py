"""
Identity Registry

Entity registration, verification workflow and credential lifecycle.
"""

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
from chaincare.identity.registry import IdentityRegistry

__all__ = [
    "IdentityRegistry",
    "ROLE_CAPABILITIES",
    "Credential",
    "EntityType",
    "HealthcareEntity",
    "RequestStatus",
    "VerificationRequest",
    "VerificationResult",
    "VerificationStatus",
]
