"""
ChainCare Ledger

Multi-party healthcare coordination ledgers: identity, records, supply
chain, scheduling, claims and payments, composed by a central orchestrator.
"""

__version__ = "0.1.0"
