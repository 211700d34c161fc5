"""
Insurance Claims Ledger

Policies, claim submission with auto-adjudication, manual review,
disputes and payout settlement.
"""

from chaincare.claims.ledger import ClaimsLedger
from chaincare.claims.models import (
    DISPUTABLE_STATUSES,
    REVIEWABLE_STATUSES,
    AuthorizedProvider,
    Claim,
    ClaimStatus,
    InsurancePolicy,
    ValidationRule,
)

__all__ = [
    "ClaimsLedger",
    "DISPUTABLE_STATUSES",
    "REVIEWABLE_STATUSES",
    "AuthorizedProvider",
    "Claim",
    "ClaimStatus",
    "InsurancePolicy",
    "ValidationRule",
]
