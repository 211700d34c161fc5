"""
Supply Chain Ledger

State machine per lot:
    MANUFACTURED -> IN_TRANSIT -> DELIVERED -> DISPENSED
    RECALLED / EXPIRED reachable from any non-terminal state (absorbing)

Features:
- Quantity only ever decreases (ship, dispense) and never goes negative
- Every mutating operation appends a SupplyTransaction linked from the lot
- Expiry is re-checked against the clock on every quantity-affecting call
- Quality checks are advisory audit entries and never gate shipment
"""

from datetime import datetime
from decimal import Decimal

import structlog

from chaincare.core.capabilities import Capability
from chaincare.core.clock import Clock
from chaincare.core.events import EventBus
from chaincare.core.ledger import Ledger, atomic
from chaincare.errors import (
    AlreadyExists,
    InvalidArgument,
    InvalidStateTransition,
    InvariantViolation,
    LotExpired,
    LotRecalled,
    NotFound,
    Unauthorized,
)
from chaincare.supply.models import (
    AuthenticityReport,
    LotStatus,
    PharmaceuticalLot,
    SupplyTransaction,
    TransactionType,
)

logger = structlog.get_logger(__name__)


SUPPLY_ROLES = (
    Capability.MANUFACTURER,
    Capability.DISTRIBUTOR,
    Capability.PHARMACY,
    Capability.REGULATOR,
)

SHIPPABLE_STATUSES = frozenset({LotStatus.MANUFACTURED, LotStatus.IN_TRANSIT, LotStatus.DELIVERED})


class SupplyChainLedger(Ledger):
    """
    Chain-of-custody ledger for pharmaceutical lots.

    Usage:
        supply.authorize_entity("admin", "pharma-co", Capability.MANUFACTURER)
        lot_id = supply.manufacture("pharma-co", "BATCH001", "Amoxicillin", 1000, expiry)
        supply.dispense("pharmacy", lot_id, 10, "patient", "RX-123")
    """

    name = "supply"

    def __init__(self, address: str, admin: str, clock: Clock | None = None, events: EventBus | None = None):
        super().__init__(address, admin, clock, events)
        self._lots: dict[int, PharmaceuticalLot] = {}
        self._lots_by_batch: dict[str, int] = {}
        self._transactions: dict[int, SupplyTransaction] = {}

    # =========================================================================
    # Participants
    # =========================================================================

    @atomic
    def authorize_entity(self, caller: str, entity: str, role: Capability) -> None:
        self.capabilities.require(caller, Capability.ADMIN)
        if role not in SUPPLY_ROLES:
            raise InvalidArgument(f"{role.value} is not a supply chain role")
        self.capabilities.grant(entity, role)
        self._publish("participant", entity, "participant.authorized", caller, role=role.value)
        logger.info("Supply chain participant authorized", entity=entity, role=role.value)

    @atomic
    def deauthorize_entity(self, caller: str, entity: str, role: Capability) -> None:
        self.capabilities.require(caller, Capability.ADMIN)
        self.capabilities.revoke(entity, role)
        self._publish("participant", entity, "participant.deauthorized", caller, role=role.value)

    def is_participant(self, entity: str) -> bool:
        return self.capabilities.has_any(entity, *SUPPLY_ROLES)

    # =========================================================================
    # Lot lifecycle
    # =========================================================================

    @atomic
    def manufacture(
        self,
        caller: str,
        batch_number: str,
        drug_name: str,
        quantity: int,
        expiry_date: datetime,
        generic_name: str = "",
        facility: str = "",
        certifications: list[str] | None = None,
        unit_price: Decimal | int | str = 0,
        storage_conditions: str = "",
    ) -> int:
        """
        Register a newly manufactured lot.

        Returns:
            The lot id
        """
        self.capabilities.require(caller, Capability.MANUFACTURER)
        if batch_number in self._lots_by_batch:
            raise AlreadyExists(f"Batch {batch_number} already exists", detail={"lot_id": self._lots_by_batch[batch_number]})
        if quantity <= 0:
            raise InvalidArgument("Quantity must be positive", detail={"quantity": quantity})
        now = self._now()
        if expiry_date <= now:
            raise InvalidArgument("Expiry date must be in the future", detail={"expiry_date": expiry_date.isoformat()})

        lot = PharmaceuticalLot(
            id=self._next_id("lot"),
            batch_number=batch_number,
            drug_name=drug_name,
            generic_name=generic_name,
            quantity=quantity,
            manufactured_quantity=quantity,
            manufactured_at=now,
            expiry_date=expiry_date,
            facility=facility,
            certifications=list(certifications or []),
            unit_price=Decimal(str(unit_price)),
            storage_conditions=storage_conditions,
            manufacturer=caller,
            current_holder=caller,
        )
        self._lots[lot.id] = lot
        self._lots_by_batch[batch_number] = lot.id
        self._append_transaction(lot, TransactionType.MANUFACTURING, caller, caller, quantity, reference=facility)
        self._commit("lot", lot, "lot.manufactured", caller, batch_number=batch_number, quantity=quantity)
        logger.info("Lot manufactured", lot_id=lot.id, batch_number=batch_number, quantity=quantity)
        return lot.id

    @atomic
    def ship(self, caller: str, lot_id: int, to: str, quantity: int, tracking_ref: str = "") -> int:
        """
        Ship part of a lot to an authorized participant.

        Returns:
            The shipment transaction id
        """
        lot = self._lookup(self._lots, lot_id, "lot")
        self._ensure_quantity_operable(lot)
        if caller not in (lot.current_holder, lot.manufacturer):
            raise Unauthorized(f"{caller} does not hold lot {lot_id}", detail={"holder": lot.current_holder})
        if not self.is_participant(to):
            raise Unauthorized(f"Recipient {to} is not an authorized participant", detail={"recipient": to})
        if lot.status not in SHIPPABLE_STATUSES:
            raise InvalidStateTransition(
                f"Lot {lot_id} cannot be shipped from {lot.status.value}",
                detail={"status": lot.status.value},
            )
        self._decrement(lot, quantity)

        lot.shipped_quantity += quantity
        lot.pending_recipient = to
        lot.status = LotStatus.IN_TRANSIT
        tx = self._append_transaction(lot, TransactionType.SHIPMENT, caller, to, quantity, reference=tracking_ref)
        self._commit("lot", lot, "lot.shipped", caller, to=to, quantity=quantity)
        logger.info("Lot shipped", lot_id=lot_id, to=to, quantity=quantity, remaining=lot.quantity)
        return tx.id

    @atomic
    def confirm_delivery(self, caller: str, lot_id: int) -> int:
        lot = self._lookup(self._lots, lot_id, "lot")
        self._ensure_not_terminal(lot)
        if lot.status != LotStatus.IN_TRANSIT:
            raise InvalidStateTransition(f"Lot {lot_id} is not in transit", detail={"status": lot.status.value})
        if caller != lot.pending_recipient:
            raise Unauthorized(f"{caller} is not the shipment recipient", detail={"recipient": lot.pending_recipient})

        sender = lot.current_holder
        lot.current_holder = caller
        lot.pending_recipient = None
        lot.status = LotStatus.DELIVERED
        tx = self._append_transaction(lot, TransactionType.DELIVERY, sender, caller, 0)
        self._commit("lot", lot, "lot.delivered", caller)
        return tx.id

    @atomic
    def dispense(self, caller: str, lot_id: int, quantity: int, patient: str, prescription_ref: str) -> int:
        """
        Dispense to a patient against a prescription.

        Returns:
            The dispensing transaction id
        """
        self.capabilities.require(caller, Capability.PHARMACY)
        lot = self._lookup(self._lots, lot_id, "lot")
        self._ensure_quantity_operable(lot)
        if not prescription_ref:
            raise InvalidArgument("A prescription reference is required")
        self._decrement(lot, quantity)

        lot.dispensed_quantity += quantity
        lot.status = LotStatus.DISPENSED
        tx = self._append_transaction(lot, TransactionType.DISPENSING, caller, patient, quantity, reference=prescription_ref)
        self._commit("lot", lot, "lot.dispensed", caller, patient=patient, quantity=quantity)
        logger.info("Lot dispensed", lot_id=lot_id, quantity=quantity, remaining=lot.quantity)
        return tx.id

    @atomic
    def recall(
        self,
        caller: str,
        lot_id: int,
        reason: str,
        affected_quantity: int = 0,
        stakeholders: list[str] | None = None,
    ) -> int:
        """Permanently recall a lot. Quantity is not restored."""
        lot = self._lookup(self._lots, lot_id, "lot")
        if caller != lot.manufacturer and not self.capabilities.has(caller, Capability.REGULATOR):
            raise Unauthorized(f"{caller} may not recall lot {lot_id}")
        self._ensure_not_terminal(lot)
        if not reason:
            raise InvalidArgument("A recall reason is required")
        if affected_quantity < 0 or affected_quantity > lot.manufactured_quantity:
            raise InvalidArgument("Affected quantity out of range", detail={"affected_quantity": affected_quantity})

        lot.status = LotStatus.RECALLED
        lot.is_recalled = True
        lot.recall_reason = reason
        tx = self._append_transaction(
            lot,
            TransactionType.RECALL,
            caller,
            lot.current_holder,
            affected_quantity,
            reference=reason,
            stakeholders=list(stakeholders or []),
        )
        self._commit("lot", lot, "lot.recalled", caller, reason=reason, affected_quantity=affected_quantity)
        logger.warning("Lot recalled", lot_id=lot_id, by=caller, reason=reason)
        return tx.id

    @atomic
    def mark_expired(self, caller: str, lot_id: int) -> int:
        lot = self._lookup(self._lots, lot_id, "lot")
        self._ensure_not_terminal(lot)
        if self._now() < lot.expiry_date:
            raise InvalidStateTransition(f"Lot {lot_id} has not expired yet", detail={"expiry_date": lot.expiry_date.isoformat()})
        lot.status = LotStatus.EXPIRED
        tx = self._append_transaction(lot, TransactionType.EXPIRY, caller, lot.current_holder, lot.quantity)
        self._commit("lot", lot, "lot.expired", caller)
        logger.info("Lot expired", lot_id=lot_id)
        return tx.id

    @atomic
    def record_quality_check(self, caller: str, lot_id: int, passed: bool, notes: str = "") -> int:
        """Advisory quality check; never changes status or quantity."""
        self.capabilities.require(caller, Capability.REGULATOR, Capability.MANUFACTURER)
        lot = self._lookup(self._lots, lot_id, "lot")
        tx = self._append_transaction(
            lot,
            TransactionType.QUALITY_CHECK,
            caller,
            lot.current_holder,
            0,
            notes=notes,
            passed=passed,
        )
        self._commit("lot", lot, "lot.quality_checked", caller, passed=passed)
        if not passed:
            logger.warning("Quality check failed", lot_id=lot_id, inspector=caller, notes=notes)
        return tx.id

    # =========================================================================
    # Internals
    # =========================================================================

    def _ensure_not_terminal(self, lot: PharmaceuticalLot) -> None:
        if lot.status == LotStatus.RECALLED:
            raise LotRecalled(f"Lot {lot.id} has been recalled", detail={"lot_id": lot.id, "reason": lot.recall_reason})
        if lot.status == LotStatus.EXPIRED:
            raise LotExpired(f"Lot {lot.id} has expired", detail={"lot_id": lot.id})

    def _ensure_quantity_operable(self, lot: PharmaceuticalLot) -> None:
        self._ensure_not_terminal(lot)
        if self._now() >= lot.expiry_date:
            raise LotExpired(
                f"Lot {lot.id} is past its expiry date",
                detail={"lot_id": lot.id, "expiry_date": lot.expiry_date.isoformat()},
            )

    @staticmethod
    def _decrement(lot: PharmaceuticalLot, quantity: int) -> None:
        if quantity <= 0:
            raise InvalidArgument("Quantity must be positive", detail={"quantity": quantity})
        if quantity > lot.quantity:
            raise InvariantViolation(
                f"Lot {lot.id} holds {lot.quantity}, cannot remove {quantity}",
                detail={"lot_id": lot.id, "available": lot.quantity, "requested": quantity},
            )
        lot.quantity -= quantity

    def _append_transaction(
        self,
        lot: PharmaceuticalLot,
        transaction_type: TransactionType,
        from_party: str,
        to_party: str,
        quantity: int,
        **fields,
    ) -> SupplyTransaction:
        tx = SupplyTransaction(
            id=self._next_id("supply_transaction"),
            lot_id=lot.id,
            transaction_type=transaction_type,
            from_party=from_party,
            to_party=to_party,
            quantity=quantity,
            timestamp=self._now(),
            **fields,
        )
        self._transactions[tx.id] = tx
        lot.history.append(tx.id)
        self.journal.append("supply_transaction", tx.id, transaction_type.value, from_party, tx.timestamp, tx.model_dump(mode="json"))
        return tx

    # =========================================================================
    # Reads
    # =========================================================================

    def get_lot(self, lot_id: int) -> PharmaceuticalLot:
        with self._lock:
            return self._view(self._lookup(self._lots, lot_id, "lot"))

    def get_transaction(self, transaction_id: int) -> SupplyTransaction:
        with self._lock:
            return self._view(self._lookup(self._transactions, transaction_id, "supply_transaction"))

    def get_lot_history(self, lot_id: int) -> list[SupplyTransaction]:
        """Chain-of-custody transactions in commit order."""
        with self._lock:
            lot = self._lookup(self._lots, lot_id, "lot")
            return [self._view(self._transactions[tx_id]) for tx_id in lot.history]

    def find_lot_by_batch(self, batch_number: str) -> int:
        with self._lock:
            lot_id = self._lots_by_batch.get(batch_number)
            if lot_id is None:
                raise NotFound(f"Batch {batch_number} not found")
            return lot_id

    def verify_authenticity(self, batch_number: str) -> AuthenticityReport:
        with self._lock:
            lot_id = self._lots_by_batch.get(batch_number)
            if lot_id is None:
                return AuthenticityReport(batch_number=batch_number, is_authentic=False)
            lot = self._lots[lot_id]
            return AuthenticityReport(
                batch_number=batch_number,
                is_authentic=True,
                lot_id=lot.id,
                manufacturer=lot.manufacturer,
                status=lot.status,
                is_recalled=lot.is_recalled,
                is_expired=lot.status == LotStatus.EXPIRED or self._now() >= lot.expiry_date,
            )
