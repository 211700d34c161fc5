"""
Ledger Clocks

Wall-clock time is read at call time by every time-gated operation
(identity expiry, lot expiry, escrow release); nothing caches "now".
"""

from datetime import datetime, timedelta, timezone
from typing import Protocol
import threading


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """UTC wall clock."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock:
    """
    Settable clock for tests and simulations.

    Usage:
        clock = ManualClock()
        clock.advance(days=30)
    """

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, **delta) -> datetime:
        with self._lock:
            self._now = self._now + timedelta(**delta)
            return self._now

    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = value
