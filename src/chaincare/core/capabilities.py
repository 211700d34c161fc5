"""
Capability Sets

Named permissions granted to entities and checked explicitly at each
protected operation. Each ledger owns its own CapabilitySet; there is
no role hierarchy and no inheritance between capabilities.
"""

from enum import Enum
import threading

import structlog

from chaincare.errors import Unauthorized

logger = structlog.get_logger(__name__)


class Capability(str, Enum):
    """Capabilities used across the ledgers."""
    # Administration
    ADMIN = "admin"
    VERIFIER = "verifier"
    REGULATOR = "regulator"

    # Identity-derived roles
    PATIENT = "patient"
    PROVIDER = "provider"
    DOCTOR = "doctor"
    NURSE = "nurse"
    HOSPITAL = "hospital"
    PHARMACY = "pharmacy"
    LAB = "lab"
    INSURER = "insurer"
    EMERGENCY_ACCESS = "emergency_access"

    # Supply chain
    MANUFACTURER = "manufacturer"
    DISTRIBUTOR = "distributor"

    # Inter-component
    CLAIMS_COMPONENT = "claims_component"
    PAYMENT_PROCESSOR = "payment_processor"
    CLAIM_SETTLER = "claim_settler"


class CapabilitySet:
    """
    Mapping of (entity, capability) -> granted.

    Usage:
        caps = CapabilitySet(owner="payments")
        caps.grant("claims-ledger", Capability.CLAIMS_COMPONENT)
        caps.require("claims-ledger", Capability.CLAIMS_COMPONENT)
    """

    def __init__(self, owner: str):
        self.owner = owner
        self._grants: dict[tuple[str, Capability], bool] = {}
        self._lock = threading.Lock()

    def grant(self, entity: str, capability: Capability) -> None:
        with self._lock:
            self._grants[(entity, capability)] = True
        logger.debug("Capability granted", ledger=self.owner, entity=entity, capability=capability.value)

    def revoke(self, entity: str, capability: Capability) -> None:
        with self._lock:
            self._grants.pop((entity, capability), None)
        logger.debug("Capability revoked", ledger=self.owner, entity=entity, capability=capability.value)

    def has(self, entity: str, capability: Capability) -> bool:
        with self._lock:
            return self._grants.get((entity, capability), False)

    def has_any(self, entity: str, *capabilities: Capability) -> bool:
        return any(self.has(entity, c) for c in capabilities)

    def require(self, entity: str, *capabilities: Capability) -> None:
        """Raise Unauthorized unless the entity holds at least one of the capabilities."""
        if not self.has_any(entity, *capabilities):
            raise Unauthorized(
                f"{entity} lacks {' or '.join(c.value for c in capabilities)} on {self.owner}",
                detail={
                    "ledger": self.owner,
                    "entity": entity,
                    "required": [c.value for c in capabilities],
                },
            )

    def holders(self, capability: Capability) -> list[str]:
        with self._lock:
            return [entity for (entity, cap), granted in self._grants.items() if cap == capability and granted]

    def capabilities_of(self, entity: str) -> set[Capability]:
        with self._lock:
            return {cap for (ent, cap), granted in self._grants.items() if ent == entity and granted}
