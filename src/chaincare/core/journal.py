"""
Immutable Ledger Journal

Append-only transaction log with cryptographic integrity verification.
Pairs with each ledger's current-state tables so any entity's history
can be rebuilt from the log alone.

Features:
- Append-only storage (no update/delete operations)
- Per-record SHA-256 hash plus cumulative chain hash
- History and latest-snapshot reconstruction per entity type
- Tamper detection via verify_integrity()
"""

from typing import Any
from datetime import datetime
import hashlib
import json
import threading

import structlog
from pydantic import BaseModel, ConfigDict, Field

logger = structlog.get_logger(__name__)


class JournalEntry(BaseModel):
    """One committed state transition."""

    model_config = ConfigDict(frozen=True)

    sequence: int
    ledger: str
    entity_type: str
    entity_id: int | str
    kind: str
    actor: str
    timestamp: datetime
    snapshot: dict[str, Any] = Field(default_factory=dict)

    # Integrity fields
    previous_hash: str = ""
    record_hash: str = ""
    chain_hash: str = ""

    def hashable(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "ledger": self.ledger,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "kind": self.kind,
            "actor": self.actor,
            "timestamp": self.timestamp.isoformat(),
            "snapshot": self.snapshot,
            "previous_hash": self.previous_hash,
        }


class Journal:
    """
    Append-only, hash-chained journal for a single ledger.

    Implements audit logging where records cannot be modified or
    deleted once written.
    """

    def __init__(self, ledger: str):
        self.ledger = ledger
        self._entries: list[JournalEntry] = []
        self._lock = threading.Lock()

    @staticmethod
    def _calculate_record_hash(entry_data: dict[str, Any]) -> str:
        """SHA-256 over a deterministic JSON representation."""
        record_json = json.dumps(entry_data, sort_keys=True, default=str)
        return hashlib.sha256(record_json.encode()).hexdigest()

    @staticmethod
    def _calculate_chain_hash(record_hash: str, previous_chain_hash: str | None) -> str:
        """Chain hash = SHA256(record_hash + previous_chain_hash)."""
        chain_data = f"{record_hash}{previous_chain_hash}" if previous_chain_hash else record_hash
        return hashlib.sha256(chain_data.encode()).hexdigest()

    def append(
        self,
        entity_type: str,
        entity_id: int | str,
        kind: str,
        actor: str,
        timestamp: datetime,
        snapshot: dict[str, Any],
    ) -> JournalEntry:
        with self._lock:
            previous_chain_hash = self._entries[-1].chain_hash if self._entries else ""
            draft = JournalEntry(
                sequence=len(self._entries) + 1,
                ledger=self.ledger,
                entity_type=entity_type,
                entity_id=entity_id,
                kind=kind,
                actor=actor,
                timestamp=timestamp,
                snapshot=snapshot,
                previous_hash=previous_chain_hash,
            )
            record_hash = self._calculate_record_hash(draft.hashable())
            entry = draft.model_copy(update={
                "record_hash": record_hash,
                "chain_hash": self._calculate_chain_hash(record_hash, previous_chain_hash),
            })
            self._entries.append(entry)
            return entry

    # =========================================================================
    # Reads
    # =========================================================================

    def entries(self, entity_type: str | None = None, kind: str | None = None) -> list[JournalEntry]:
        with self._lock:
            entries = list(self._entries)
        if entity_type:
            entries = [e for e in entries if e.entity_type == entity_type]
        if kind:
            entries = [e for e in entries if e.kind == kind]
        return entries

    def history(self, entity_type: str, entity_id: int | str) -> list[JournalEntry]:
        """All entries for one entity, in commit order."""
        return [e for e in self.entries(entity_type) if e.entity_id == entity_id]

    def reconstruct(self, entity_type: str) -> dict[int | str, dict[str, Any]]:
        """Latest snapshot per entity id, rebuilt from the log alone."""
        state: dict[int | str, dict[str, Any]] = {}
        for entry in self.entries(entity_type):
            state[entry.entity_id] = entry.snapshot
        return state

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # =========================================================================
    # Integrity
    # =========================================================================

    def verify_integrity(self) -> dict[str, Any]:
        """
        Verify the hash chain.

        Returns:
            Dict with verification results and any detected tampering
        """
        with self._lock:
            entries = list(self._entries)

        tampered_records = []
        previous_chain_hash = ""

        for entry in entries:
            expected_record_hash = self._calculate_record_hash(entry.hashable())
            expected_chain_hash = self._calculate_chain_hash(expected_record_hash, previous_chain_hash)

            if entry.previous_hash != previous_chain_hash:
                tampered_records.append({"sequence": entry.sequence, "issue": "broken_link"})
            if expected_record_hash != entry.record_hash:
                tampered_records.append({"sequence": entry.sequence, "issue": "record_hash_mismatch"})
            if expected_chain_hash != entry.chain_hash:
                tampered_records.append({"sequence": entry.sequence, "issue": "chain_hash_mismatch"})

            previous_chain_hash = entry.chain_hash

        if tampered_records:
            logger.warning("Journal integrity check failed", ledger=self.ledger, issues=len(tampered_records))

        return {
            "verified": not tampered_records,
            "total_records": len(entries),
            "tampered_records": tampered_records,
            "last_chain_hash": previous_chain_hash or None,
        }
