"""
ChainCare Core

Ledger infrastructure shared by every component: clocks, id allocation,
capability sets, the event bus and the hash-chained journal.
"""

from chaincare.core.capabilities import Capability, CapabilitySet
from chaincare.core.clock import Clock, ManualClock, SystemClock
from chaincare.core.events import EventBus, LedgerEvent
from chaincare.core.ids import NO_ID, IdAllocator
from chaincare.core.journal import Journal, JournalEntry
from chaincare.core.ledger import Ledger, atomic

__all__ = [
    "Capability",
    "CapabilitySet",
    "Clock",
    "ManualClock",
    "SystemClock",
    "EventBus",
    "LedgerEvent",
    "NO_ID",
    "IdAllocator",
    "Journal",
    "JournalEntry",
    "Ledger",
    "atomic",
]
