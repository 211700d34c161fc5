"""
Identifier Allocation

One monotonically increasing counter per entity type. Identifiers start
at 1 and are never reused; 0 means "absent".
"""

from collections import defaultdict
import threading


NO_ID = 0


class IdAllocator:
    """Per-entity-type id arena."""

    def __init__(self):
        self._counters: dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    def next(self, entity_type: str) -> int:
        with self._lock:
            self._counters[entity_type] += 1
            return self._counters[entity_type]

    def current(self, entity_type: str) -> int:
        """Last id handed out for the type (0 if none)."""
        with self._lock:
            return self._counters[entity_type]
