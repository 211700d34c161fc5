"""
Payment Models
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel


class PaymentType(str, Enum):
    CONSULTATION = "consultation"
    CLAIM_PAYOUT = "claim_payout"
    PHARMACY = "pharmacy"
    LAB_TEST = "lab_test"
    PREMIUM = "premium"
    ESCROW_RELEASE = "escrow_release"
    OTHER = "other"


class EscrowStatus(str, Enum):
    ACTIVE = "active"
    RELEASED = "released"
    CANCELLED = "cancelled"


class Payment(BaseModel):
    """Completed settlement; immutable once recorded."""

    id: int
    payer: str
    recipient: str
    amount: int
    fee: int
    net_amount: int
    token: str
    payment_type: PaymentType
    linked_claim_id: int = 0
    escrow_id: int = 0
    fee_collector: str
    created_at: datetime


class Escrow(BaseModel):
    """Funds held by the payment ledger until release or cancellation."""

    id: int
    payer: str
    recipient: str
    amount: int
    token: str
    release_date: datetime
    condition: str = ""
    status: EscrowStatus = EscrowStatus.ACTIVE
    created_at: datetime
    settled_at: datetime | None = None
    settled_by: str | None = None
    payment_id: int = 0  # set on release
