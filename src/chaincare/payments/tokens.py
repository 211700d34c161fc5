"""
Stablecoin Token

In-process fungible token used as the settlement asset. Amounts are
integers in the token's base units (e.g. 6 decimals for USDC).

settle() is the single multi-party primitive the payment ledger uses:
every leg is validated before any balance moves, so a payment either
lands on all of its recipients or on none.
"""

from typing import Iterable
import threading

import structlog

from chaincare.errors import ExternalTransferFailed, InvalidArgument, Unauthorized

logger = structlog.get_logger(__name__)


class StablecoinToken:
    """
    Usage:
        usdc = StablecoinToken("USDC", issuer="treasury")
        usdc.mint("treasury", "insurer", 1_000_000)
        usdc.approve("insurer", "payments", 500_000)
    """

    def __init__(self, symbol: str, decimals: int = 6, issuer: str = "issuer"):
        self.symbol = symbol
        self.decimals = decimals
        self.issuer = issuer
        self.total_supply = 0

        self._balances: dict[str, int] = {}
        self._allowances: dict[tuple[str, str], int] = {}
        self._frozen: set[str] = set()
        self._lock = threading.Lock()

    # =========================================================================
    # Issuer controls
    # =========================================================================

    def mint(self, caller: str, to: str, amount: int) -> None:
        if caller != self.issuer:
            raise Unauthorized(f"{caller} is not the {self.symbol} issuer")
        if amount <= 0:
            raise InvalidArgument("Mint amount must be positive")
        with self._lock:
            self._balances[to] = self._balances.get(to, 0) + amount
            self.total_supply += amount
        logger.debug("Minted", token=self.symbol, to=to, amount=amount)

    def freeze(self, caller: str, account: str) -> None:
        if caller != self.issuer:
            raise Unauthorized(f"{caller} is not the {self.symbol} issuer")
        with self._lock:
            self._frozen.add(account)
        logger.warning("Account frozen", token=self.symbol, account=account)

    def unfreeze(self, caller: str, account: str) -> None:
        if caller != self.issuer:
            raise Unauthorized(f"{caller} is not the {self.symbol} issuer")
        with self._lock:
            self._frozen.discard(account)

    # =========================================================================
    # Holder operations
    # =========================================================================

    def approve(self, owner: str, spender: str, amount: int) -> None:
        if amount < 0:
            raise InvalidArgument("Allowance cannot be negative")
        with self._lock:
            self._allowances[(owner, spender)] = amount

    def transfer(self, sender: str, to: str, amount: int) -> None:
        self.settle(sender, sender, [(to, amount)])

    def settle(self, spender: str, payer: str, legs: Iterable[tuple[str, int]]) -> None:
        """
        Move funds from `payer` to every (recipient, amount) leg at once.

        When spender != payer the spender's allowance covers the total.

        Raises:
            ExternalTransferFailed: any leg would fail; nothing is applied
        """
        legs = [(recipient, amount) for recipient, amount in legs if amount]
        if any(amount < 0 for _, amount in legs):
            raise InvalidArgument("Transfer legs cannot be negative")
        total = sum(amount for _, amount in legs)

        with self._lock:
            self._validate(spender, payer, legs, total)

            self._balances[payer] = self._balances.get(payer, 0) - total
            if spender != payer:
                self._allowances[(payer, spender)] = self._allowances.get((payer, spender), 0) - total
            for recipient, amount in legs:
                self._balances[recipient] = self._balances.get(recipient, 0) + amount

        logger.debug("Settled", token=self.symbol, payer=payer, legs=len(legs), total=total)

    def _validate(self, spender: str, payer: str, legs: list[tuple[str, int]], total: int) -> None:
        detail = {"token": self.symbol, "payer": payer, "total": total}
        if payer in self._frozen:
            raise ExternalTransferFailed(f"{payer} is frozen", detail=detail)
        for recipient, _ in legs:
            if recipient in self._frozen:
                raise ExternalTransferFailed(f"Recipient {recipient} is frozen", detail={**detail, "recipient": recipient})
        balance = self._balances.get(payer, 0)
        if balance < total:
            raise ExternalTransferFailed("Insufficient balance", detail={**detail, "balance": balance})
        if spender != payer:
            allowance = self._allowances.get((payer, spender), 0)
            if allowance < total:
                raise ExternalTransferFailed("Insufficient allowance", detail={**detail, "allowance": allowance})

    # =========================================================================
    # Reads
    # =========================================================================

    def balance_of(self, account: str) -> int:
        with self._lock:
            return self._balances.get(account, 0)

    def allowance(self, owner: str, spender: str) -> int:
        with self._lock:
            return self._allowances.get((owner, spender), 0)

    def is_frozen(self, account: str) -> bool:
        with self._lock:
            return account in self._frozen
