"""
Insurance Claims Models
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class ClaimStatus(str, Enum):
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"
    DISPUTED = "disputed"


DISPUTABLE_STATUSES = frozenset({ClaimStatus.APPROVED, ClaimStatus.REJECTED})
REVIEWABLE_STATUSES = frozenset({ClaimStatus.SUBMITTED, ClaimStatus.UNDER_REVIEW})


class InsurancePolicy(BaseModel):
    """
    Coverage issued by an insurer to a holder.

    0 <= remaining_coverage <= coverage_amount at all times.
    """

    id: int
    policy_number: str
    holder: str
    insurer: str
    coverage_amount: int
    deductible: int = 0
    remaining_coverage: int
    expiry_date: datetime
    covered_conditions: list[str] = Field(default_factory=list)
    is_active: bool = True
    created_at: datetime


class Claim(BaseModel):
    id: int
    policy_id: int
    policy_number: str
    patient: str
    provider: str
    insurer: str

    claimed_amount: int
    approved_amount: int = 0
    diagnosis: str = ""
    treatment_code: str = ""
    documents: list[str] = Field(default_factory=list)
    is_emergency: bool = False
    medical_record_id: int = 0  # weak reference into the record store

    status: ClaimStatus = ClaimStatus.SUBMITTED
    auto_adjudicated: bool = False
    submitted_at: datetime
    processed_at: datetime | None = None
    processed_by: str | None = None
    review_notes: str = ""
    dispute_reason: str | None = None
    payment_id: int = 0
    paid_at: datetime | None = None


class ValidationRule(BaseModel):
    """Auto-adjudication rule for one treatment code."""

    treatment_code: str
    min_experience_months: int = 0
    auto_approval_threshold: int = 0
    is_active: bool = True
    set_by: str
    updated_at: datetime


class AuthorizedProvider(BaseModel):
    address: str
    experience_months: int = 0
    authorized_by: str
    authorized_at: datetime
    is_active: bool = True
