"""
Event Bus

Notification stream for every ledger state transition, consumed by
off-band audit and indexing collaborators:
- Publish/subscribe pattern
- Event filtering by ledger and transition
- Event history and replay
- Dead letter handling

Ledger correctness never depends on delivery: a failing subscriber is
logged and dead-lettered, and the publishing operation still commits.
"""

from typing import Any, Callable
from datetime import datetime, timezone
import fnmatch
import json
import threading
import uuid

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)


# =============================================================================
# Event Models
# =============================================================================

class LedgerEvent(BaseModel):
    """A single state-transition notification."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))

    # Source
    ledger: str
    entity_type: str
    entity_id: int | str

    # What happened
    transition: str  # e.g. "claim.approved", "lot.shipped"
    actor: str

    # Payload
    data: dict[str, Any] = Field(default_factory=dict)

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    correlation_id: str | None = None  # Links events from one workflow run

    def to_json(self) -> str:
        """Serialize to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, json_str: str) -> "LedgerEvent":
        """Deserialize from JSON."""
        return cls.model_validate(json.loads(json_str))


class Subscription(BaseModel):
    """Event handler registration."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    handler_name: str
    transition_pattern: str = "*"  # fnmatch pattern, e.g. "claim.*"
    ledger: str | None = None


# =============================================================================
# Event Bus
# =============================================================================

class EventBus:
    """
    In-process event bus shared by all ledgers.

    Usage:
        bus = EventBus()
        bus.subscribe(indexer.on_event, transition_pattern="lot.*")
    """

    def __init__(self, max_history: int = 10000):
        self._handlers: dict[str, tuple[Subscription, Callable[[LedgerEvent], None]]] = {}
        self._event_history: list[LedgerEvent] = []
        self._max_history = max_history
        self._dead_letters: list[tuple[LedgerEvent, str]] = []
        self._lock = threading.Lock()

    # =========================================================================
    # Publishing
    # =========================================================================

    def publish(self, event: LedgerEvent) -> LedgerEvent:
        """Record and dispatch an event."""
        with self._lock:
            self._event_history.append(event)
            if len(self._event_history) > self._max_history:
                self._event_history = self._event_history[-self._max_history:]
            handlers = list(self._handlers.values())

        self._dispatch(event, handlers)

        logger.debug(
            "Published event",
            transition=event.transition,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            actor=event.actor,
        )
        return event

    def _dispatch(self, event: LedgerEvent, handlers: list[tuple[Subscription, Callable]]) -> None:
        for registration, handler in handlers:
            if registration.ledger and registration.ledger != event.ledger:
                continue
            if not fnmatch.fnmatch(event.transition, registration.transition_pattern):
                continue

            try:
                handler(event)
            except Exception as e:
                logger.error(
                    "Handler failed",
                    handler=registration.handler_name,
                    event_id=event.id,
                    error=str(e),
                )
                with self._lock:
                    self._dead_letters.append((event, str(e)))

    # =========================================================================
    # Subscribing
    # =========================================================================

    def subscribe(
        self,
        handler: Callable[[LedgerEvent], None],
        transition_pattern: str = "*",
        ledger: str | None = None,
        handler_name: str | None = None,
    ) -> str:
        """Subscribe to events."""
        registration = Subscription(
            handler_name=handler_name or getattr(handler, "__name__", "handler"),
            transition_pattern=transition_pattern,
            ledger=ledger,
        )
        with self._lock:
            self._handlers[registration.id] = (registration, handler)

        logger.info(
            "Subscribed to events",
            handler=registration.handler_name,
            pattern=transition_pattern,
            ledger=ledger,
        )
        return registration.id

    def unsubscribe(self, handler_id: str) -> None:
        with self._lock:
            self._handlers.pop(handler_id, None)

    # =========================================================================
    # Event History & Replay
    # =========================================================================

    def get_history(
        self,
        transition_pattern: str = "*",
        ledger: str | None = None,
        entity_id: int | str | None = None,
        limit: int = 100,
    ) -> list[LedgerEvent]:
        """Get event history."""
        with self._lock:
            events = list(self._event_history)

        events = [e for e in events if fnmatch.fnmatch(e.transition, transition_pattern)]
        if ledger:
            events = [e for e in events if e.ledger == ledger]
        if entity_id is not None:
            events = [e for e in events if e.entity_id == entity_id]

        return events[-limit:]

    def replay(self, events: list[LedgerEvent], handler_ids: list[str] | None = None) -> None:
        """Replay events to handlers."""
        with self._lock:
            handlers = [
                entry for hid, entry in self._handlers.items()
                if handler_ids is None or hid in handler_ids
            ]
        for event in events:
            self._dispatch(event, handlers)

    @property
    def dead_letters(self) -> list[tuple[LedgerEvent, str]]:
        with self._lock:
            return list(self._dead_letters)
