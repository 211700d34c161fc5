"""
Ledger Base

Shared plumbing for every component ledger:
- One re-entrant lock serialising all mutating operations
- Per-entity-type id allocation
- Journal append + event publish on every committed transition
- Capability administration
"""

from functools import wraps
from typing import Any, Callable, TypeVar
import threading

import structlog
from pydantic import BaseModel

from chaincare.core.capabilities import Capability, CapabilitySet
from chaincare.core.clock import Clock, SystemClock
from chaincare.core.events import EventBus, LedgerEvent
from chaincare.core.ids import IdAllocator
from chaincare.core.journal import Journal
from chaincare.errors import NotFound

logger = structlog.get_logger(__name__)

M = TypeVar("M", bound=BaseModel)


def atomic(method: Callable) -> Callable:
    """Run a ledger operation to completion under the ledger lock."""

    @wraps(method)
    def wrapper(self: "Ledger", *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)

    return wrapper


class Ledger:
    """
    Base class for component ledgers.

    Subclasses own their entity tables exclusively; other components
    interact only through public operations.
    """

    name = "ledger"

    def __init__(
        self,
        address: str,
        admin: str,
        clock: Clock | None = None,
        events: EventBus | None = None,
    ):
        self.address = address
        self.admin = admin
        self.clock = clock or SystemClock()
        self.events = events or EventBus()
        self.journal = Journal(self.name)
        self.capabilities = CapabilitySet(owner=self.name)
        self.capabilities.grant(admin, Capability.ADMIN)

        self._ids = IdAllocator()
        self._lock = threading.RLock()

    # =========================================================================
    # Capability administration
    # =========================================================================

    @atomic
    def grant_capability(self, caller: str, entity: str, capability: Capability) -> None:
        self.capabilities.require(caller, Capability.ADMIN)
        self.capabilities.grant(entity, capability)
        self._publish("capability", entity, "capability.granted", caller, capability=capability.value)

    @atomic
    def revoke_capability(self, caller: str, entity: str, capability: Capability) -> None:
        self.capabilities.require(caller, Capability.ADMIN)
        self.capabilities.revoke(entity, capability)
        self._publish("capability", entity, "capability.revoked", caller, capability=capability.value)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _now(self):
        return self.clock.now()

    def _next_id(self, entity_type: str) -> int:
        return self._ids.next(entity_type)

    @staticmethod
    def _lookup(table: dict[Any, M], key: Any, entity_type: str) -> M:
        entity = table.get(key)
        if entity is None:
            raise NotFound(f"{entity_type} {key} not found", detail={"entity_type": entity_type, "id": key})
        return entity

    @staticmethod
    def _view(entity: M) -> M:
        """Detached copy handed to callers so ledger state is never shared."""
        return entity.model_copy(deep=True)

    def _commit(
        self,
        entity_type: str,
        entity: BaseModel,
        transition: str,
        actor: str,
        entity_id: int | str | None = None,
        **data,
    ) -> None:
        """Journal the entity's new snapshot and notify subscribers."""
        if entity_id is None:
            entity_id = getattr(entity, "id", None)
            if entity_id is None:
                entity_id = entity.address
        self.journal.append(
            entity_type=entity_type,
            entity_id=entity_id,
            kind=transition,
            actor=actor,
            timestamp=self._now(),
            snapshot=entity.model_dump(mode="json"),
        )
        self._publish(entity_type, entity_id, transition, actor, **data)

    def _publish(self, entity_type: str, entity_id: int | str, transition: str, actor: str, **data) -> None:
        self.events.publish(LedgerEvent(
            ledger=self.name,
            entity_type=entity_type,
            entity_id=entity_id,
            transition=transition,
            actor=actor,
            timestamp=self._now(),
            data=data,
        ))
