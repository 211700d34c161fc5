"""
Pharmaceutical Supply Chain Models

Lots, their chain-of-custody status and the append-only transactions
linked from each lot's history.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field


class LotStatus(str, Enum):
    MANUFACTURED = "manufactured"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    DISPENSED = "dispensed"
    RECALLED = "recalled"
    EXPIRED = "expired"


# Absorbing states: nothing affects quantity once reached
TERMINAL_STATUSES = frozenset({LotStatus.RECALLED, LotStatus.EXPIRED})


class TransactionType(str, Enum):
    MANUFACTURING = "manufacturing"
    SHIPMENT = "shipment"
    DELIVERY = "delivery"
    DISPENSING = "dispensing"
    RECALL = "recall"
    QUALITY_CHECK = "quality_check"
    EXPIRY = "expiry"


class PharmaceuticalLot(BaseModel):
    """A manufactured batch tracked as one quantity-bearing entity."""

    id: int
    batch_number: str
    drug_name: str
    generic_name: str = ""
    quantity: int
    manufactured_quantity: int
    shipped_quantity: int = 0
    dispensed_quantity: int = 0

    manufactured_at: datetime
    expiry_date: datetime
    facility: str = ""
    certifications: list[str] = Field(default_factory=list)
    unit_price: Decimal = Decimal("0")
    storage_conditions: str = ""

    manufacturer: str
    current_holder: str
    pending_recipient: str | None = None

    status: LotStatus = LotStatus.MANUFACTURED
    is_recalled: bool = False
    recall_reason: str | None = None
    history: list[int] = Field(default_factory=list, description="SupplyTransaction ids in commit order")


class SupplyTransaction(BaseModel):
    """Immutable chain-of-custody event."""

    id: int
    lot_id: int
    transaction_type: TransactionType
    from_party: str
    to_party: str
    quantity: int = 0
    timestamp: datetime
    reference: str = ""  # tracking number, prescription ref, recall reason
    notes: str = ""
    passed: bool | None = None  # quality checks only
    stakeholders: list[str] = Field(default_factory=list)


class AuthenticityReport(BaseModel):
    """Answer to verify_authenticity(batch)."""

    batch_number: str
    is_authentic: bool
    lot_id: int = 0
    manufacturer: str | None = None
    status: LotStatus | None = None
    is_recalled: bool = False
    is_expired: bool = False
