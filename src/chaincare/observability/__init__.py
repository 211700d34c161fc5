"""
ChainCare Observability

Structured logging configuration for the ledgers and the orchestrator.
"""

from chaincare.observability.logging import configure_logging, redaction_processor

__all__ = [
    "configure_logging",
    "redaction_processor",
]
