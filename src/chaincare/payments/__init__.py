"""
Payment Ledger

Stablecoin payments, claim payouts and escrow.
"""

from chaincare.payments.ledger import BPS_DENOMINATOR, PaymentLedger
from chaincare.payments.models import Escrow, EscrowStatus, Payment, PaymentType
from chaincare.payments.tokens import StablecoinToken

__all__ = [
    "BPS_DENOMINATOR",
    "PaymentLedger",
    "Escrow",
    "EscrowStatus",
    "Payment",
    "PaymentType",
    "StablecoinToken",
]
