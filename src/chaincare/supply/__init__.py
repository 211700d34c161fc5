"""
Supply Chain Ledger

Pharmaceutical lot tracking with chain-of-custody history.
"""

from chaincare.supply.ledger import SupplyChainLedger
from chaincare.supply.models import (
    TERMINAL_STATUSES,
    AuthenticityReport,
    LotStatus,
    PharmaceuticalLot,
    SupplyTransaction,
    TransactionType,
)

__all__ = [
    "SupplyChainLedger",
    "TERMINAL_STATUSES",
    "AuthenticityReport",
    "LotStatus",
    "PharmaceuticalLot",
    "SupplyTransaction",
    "TransactionType",
]
