"""
Payment Ledger

Stablecoin settlement with platform fee extraction:
    fee = floor(amount * fee_rate_bps / 10000), net = amount - fee

Net-to-recipient and fee-to-collector move in one StablecoinToken.settle()
call, so a payment is recorded only when both legs landed.

Escrow funds sit in the ledger's own token account between creation and
release/cancellation. Release takes the fee; cancellation refunds in full.
"""

from datetime import datetime

import structlog

from chaincare.config import MAX_FEE_RATE_BPS, get_settings
from chaincare.core.capabilities import Capability
from chaincare.core.clock import Clock
from chaincare.core.events import EventBus
from chaincare.core.ids import NO_ID
from chaincare.core.ledger import Ledger, atomic
from chaincare.errors import (
    AlreadyExists,
    Expired,
    InvalidArgument,
    InvalidStateTransition,
    NotFound,
    Unauthorized,
)
from chaincare.payments.models import Escrow, EscrowStatus, Payment, PaymentType
from chaincare.payments.tokens import StablecoinToken

logger = structlog.get_logger(__name__)

BPS_DENOMINATOR = 10_000


class PaymentLedger(Ledger):
    """
    Usage:
        payments = PaymentLedger("payments", "admin", tokens=[usdc])
        usdc.approve("patient", "payments", 1_000)
        payment_id = payments.process_payment("patient", "clinic", 1_000, "USDC", PaymentType.CONSULTATION)
    """

    name = "payments"

    def __init__(
        self,
        address: str,
        admin: str,
        clock: Clock | None = None,
        events: EventBus | None = None,
        tokens: list[StablecoinToken] | None = None,
        fee_collector: str | None = None,
        fee_rate_bps: int | None = None,
    ):
        super().__init__(address, admin, clock, events)
        settings = get_settings().payments
        self.default_token = settings.default_stablecoin
        self.fee_collector = fee_collector or settings.fee_collector
        self.fee_rate_bps = settings.fee_rate_bps if fee_rate_bps is None else fee_rate_bps
        if not 0 <= self.fee_rate_bps <= MAX_FEE_RATE_BPS:
            raise InvalidArgument(f"Fee rate must be within 0..{MAX_FEE_RATE_BPS} bps")

        self._tokens: dict[str, StablecoinToken] = {t.symbol: t for t in tokens or []}
        self._payments: dict[int, Payment] = {}
        self._escrows: dict[int, Escrow] = {}
        self._claim_payments: dict[int, int] = {}
        self._user_payments: dict[str, list[int]] = {}

    # =========================================================================
    # Administration
    # =========================================================================

    @atomic
    def add_supported_token(self, caller: str, token: StablecoinToken) -> None:
        self.capabilities.require(caller, Capability.ADMIN)
        if token.symbol in self._tokens:
            raise AlreadyExists(f"Token {token.symbol} already supported")
        self._tokens[token.symbol] = token
        self._publish("token", token.symbol, "token.added", caller)

    @atomic
    def remove_supported_token(self, caller: str, symbol: str) -> None:
        self.capabilities.require(caller, Capability.ADMIN)
        self._lookup(self._tokens, symbol, "token")
        if any(e.token == symbol and e.status == EscrowStatus.ACTIVE for e in self._escrows.values()):
            raise InvalidStateTransition(f"Token {symbol} still backs active escrows")
        del self._tokens[symbol]
        self._publish("token", symbol, "token.removed", caller)

    @atomic
    def set_fee_rate(self, caller: str, fee_rate_bps: int) -> None:
        self.capabilities.require(caller, Capability.ADMIN)
        if not 0 <= fee_rate_bps <= MAX_FEE_RATE_BPS:
            raise InvalidArgument(
                f"Fee rate must be within 0..{MAX_FEE_RATE_BPS} bps",
                detail={"fee_rate_bps": fee_rate_bps},
            )
        previous, self.fee_rate_bps = self.fee_rate_bps, fee_rate_bps
        self._publish("config", "fee_rate", "fee_rate.updated", caller, previous=previous, current=fee_rate_bps)
        logger.info("Fee rate updated", previous=previous, current=fee_rate_bps)

    @atomic
    def set_fee_collector(self, caller: str, collector: str) -> None:
        self.capabilities.require(caller, Capability.ADMIN)
        if not collector:
            raise InvalidArgument("Fee collector is required")
        previous, self.fee_collector = self.fee_collector, collector
        self._publish("config", "fee_collector", "fee_collector.updated", caller, previous=previous, current=collector)

    def is_supported(self, symbol: str) -> bool:
        return symbol in self._tokens

    def calculate_fee(self, amount: int) -> int:
        return amount * self.fee_rate_bps // BPS_DENOMINATOR

    # =========================================================================
    # Payments
    # =========================================================================

    @atomic
    def process_payment(
        self,
        caller: str,
        recipient: str,
        amount: int,
        token: str | None = None,
        payment_type: PaymentType = PaymentType.OTHER,
        linked_claim_id: int = NO_ID,
    ) -> int:
        """
        Pay `recipient` from the caller's balance via the ledger's allowance.

        Returns:
            The payment id
        """
        return self._settle_payment(caller, caller, recipient, amount, token, payment_type, linked_claim_id)

    @atomic
    def execute_claim_payout(
        self,
        caller: str,
        claim_id: int,
        payer: str,
        recipient: str,
        amount: int,
        token: str | None = None,
    ) -> int:
        """
        Pay out an approved claim. Claims component only; one payout per claim.

        Raises:
            InvalidStateTransition: the claim was already paid out
        """
        self.capabilities.require(caller, Capability.CLAIMS_COMPONENT)
        if claim_id in self._claim_payments:
            raise InvalidStateTransition(
                f"Claim {claim_id} already paid out",
                detail={"claim_id": claim_id, "payment_id": self._claim_payments[claim_id]},
            )
        payment_id = self._settle_payment(caller, payer, recipient, amount, token, PaymentType.CLAIM_PAYOUT, claim_id)
        self._claim_payments[claim_id] = payment_id
        logger.info("Claim payout executed", claim_id=claim_id, payment_id=payment_id, amount=amount)
        return payment_id

    def _settle_payment(
        self,
        actor: str,
        payer: str,
        recipient: str,
        amount: int,
        token: str | None,
        payment_type: PaymentType,
        linked_claim_id: int = NO_ID,
        source: str | None = None,
        escrow_id: int = NO_ID,
    ) -> int:
        """Move funds and record the payment. Caller holds the ledger lock."""
        if amount <= 0:
            raise InvalidArgument("Payment amount must be positive", detail={"amount": amount})
        if not recipient:
            raise InvalidArgument("Recipient is required")
        stablecoin = self._token(token)
        fee = self.calculate_fee(amount)
        net = amount - fee

        # One settlement: either both legs land or neither does
        stablecoin.settle(self.address, source or payer, [(recipient, net), (self.fee_collector, fee)])

        payment = Payment(
            id=self._next_id("payment"),
            payer=payer,
            recipient=recipient,
            amount=amount,
            fee=fee,
            net_amount=net,
            token=stablecoin.symbol,
            payment_type=payment_type,
            linked_claim_id=linked_claim_id,
            escrow_id=escrow_id,
            fee_collector=self.fee_collector,
            created_at=self._now(),
        )
        self._payments[payment.id] = payment
        self._user_payments.setdefault(payer, []).append(payment.id)
        if recipient != payer:
            self._user_payments.setdefault(recipient, []).append(payment.id)
        self._commit("payment", payment, "payment.completed", actor, amount=amount, fee=fee)
        logger.info(
            "Payment processed",
            payment_id=payment.id,
            payment_type=payment_type.value,
            amount=amount,
            fee=fee,
        )
        return payment.id

    def _token(self, symbol: str | None) -> StablecoinToken:
        symbol = symbol or self.default_token
        token = self._tokens.get(symbol)
        if token is None:
            raise InvalidArgument(f"Token {symbol} is not supported", detail={"token": symbol})
        return token

    # =========================================================================
    # Escrow
    # =========================================================================

    @atomic
    def create_escrow(
        self,
        caller: str,
        recipient: str,
        amount: int,
        release_date: datetime,
        token: str | None = None,
        condition: str = "",
    ) -> int:
        if amount <= 0:
            raise InvalidArgument("Escrow amount must be positive")
        if not recipient or recipient == caller:
            raise InvalidArgument("Escrow needs a distinct recipient")
        stablecoin = self._token(token)
        stablecoin.settle(self.address, caller, [(self.address, amount)])

        escrow = Escrow(
            id=self._next_id("escrow"),
            payer=caller,
            recipient=recipient,
            amount=amount,
            token=stablecoin.symbol,
            release_date=release_date,
            condition=condition,
            created_at=self._now(),
        )
        self._escrows[escrow.id] = escrow
        self._commit("escrow", escrow, "escrow.created", caller, amount=amount)
        logger.info("Escrow created", escrow_id=escrow.id, payer=caller, recipient=recipient, amount=amount)
        return escrow.id

    @atomic
    def release_escrow(self, caller: str, escrow_id: int) -> int:
        """
        Release held funds to the recipient, less the fee.

        Returns:
            The id of the release payment
        """
        escrow = self._lookup(self._escrows, escrow_id, "escrow")
        if caller not in (escrow.payer, escrow.recipient) and not self.capabilities.has(
            caller, Capability.PAYMENT_PROCESSOR
        ):
            raise Unauthorized(f"{caller} may not release escrow {escrow_id}")
        self._require_active(escrow)
        now = self._now()
        if now < escrow.release_date:
            raise Expired(
                f"Escrow {escrow_id} not releasable before {escrow.release_date.isoformat()}",
                detail={"release_date": escrow.release_date.isoformat()},
            )

        payment_id = self._settle_payment(
            caller,
            escrow.payer,
            escrow.recipient,
            escrow.amount,
            escrow.token,
            PaymentType.ESCROW_RELEASE,
            source=self.address,
            escrow_id=escrow.id,
        )
        escrow.status = EscrowStatus.RELEASED
        escrow.settled_at = now
        escrow.settled_by = caller
        escrow.payment_id = payment_id
        self._commit("escrow", escrow, "escrow.released", caller, payment_id=payment_id)
        return payment_id

    @atomic
    def cancel_escrow(self, caller: str, escrow_id: int) -> None:
        """Refund the payer in full. No fee is taken."""
        escrow = self._lookup(self._escrows, escrow_id, "escrow")
        is_processor = self.capabilities.has(caller, Capability.PAYMENT_PROCESSOR)
        if caller != escrow.payer and not is_processor:
            raise Unauthorized(f"{caller} may not cancel escrow {escrow_id}")
        self._require_active(escrow)
        now = self._now()
        if not is_processor and now >= escrow.release_date:
            raise Expired(
                f"Escrow {escrow_id} passed its release date",
                detail={"release_date": escrow.release_date.isoformat()},
            )

        self._token(escrow.token).settle(self.address, self.address, [(escrow.payer, escrow.amount)])
        escrow.status = EscrowStatus.CANCELLED
        escrow.settled_at = now
        escrow.settled_by = caller
        self._commit("escrow", escrow, "escrow.cancelled", caller, refunded=escrow.amount)
        logger.info("Escrow cancelled", escrow_id=escrow_id, by=caller)

    @staticmethod
    def _require_active(escrow: Escrow) -> None:
        if escrow.status != EscrowStatus.ACTIVE:
            raise InvalidStateTransition(
                f"Escrow {escrow.id} is {escrow.status.value}",
                detail={"status": escrow.status.value},
            )

    # =========================================================================
    # Reads
    # =========================================================================

    def _can_view(self, caller: str, *parties: str) -> bool:
        return caller in parties or self.capabilities.has_any(
            caller, Capability.ADMIN, Capability.PAYMENT_PROCESSOR, Capability.CLAIMS_COMPONENT
        )

    def get_payment(self, caller: str, payment_id: int) -> Payment:
        with self._lock:
            payment = self._lookup(self._payments, payment_id, "payment")
            if not self._can_view(caller, payment.payer, payment.recipient):
                raise Unauthorized(f"{caller} may not view payment {payment_id}")
            return self._view(payment)

    def get_escrow(self, caller: str, escrow_id: int) -> Escrow:
        with self._lock:
            escrow = self._lookup(self._escrows, escrow_id, "escrow")
            if not self._can_view(caller, escrow.payer, escrow.recipient):
                raise Unauthorized(f"{caller} may not view escrow {escrow_id}")
            return self._view(escrow)

    def get_claim_payment(self, claim_id: int) -> int:
        """Payment id of the claim's payout, or NO_ID when unpaid."""
        with self._lock:
            return self._claim_payments.get(claim_id, NO_ID)

    def get_user_payments(self, caller: str, user: str) -> list[int]:
        with self._lock:
            if not self._can_view(caller, user):
                raise Unauthorized(f"{caller} may not list payments of {user}")
            return list(self._user_payments.get(user, []))

    # =========================================================================
    # History reconstruction
    # =========================================================================

    def reconstruct_payments(self) -> dict[int, Payment]:
        """Rebuild every payment from the journal alone."""
        return {int(k): Payment.model_validate(v) for k, v in self.journal.reconstruct("payment").items()}

    def reconstruct_escrows(self) -> dict[int, Escrow]:
        """Rebuild every escrow's latest state from the journal alone."""
        return {int(k): Escrow.model_validate(v) for k, v in self.journal.reconstruct("escrow").items()}

    def escrow_history(self, escrow_id: int) -> list[Escrow]:
        if escrow_id not in self._escrows:
            raise NotFound(f"escrow {escrow_id} not found")
        return [Escrow.model_validate(e.snapshot) for e in self.journal.history("escrow", escrow_id)]
