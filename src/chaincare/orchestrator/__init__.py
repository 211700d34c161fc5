"""
Care Orchestrator

Cross-ledger workflows and network assembly.
"""

from chaincare.orchestrator.hub import CareOrchestrator, content_ref
from chaincare.orchestrator.interfaces import ServiceRegistry
from chaincare.orchestrator.models import (
    MaintenanceState,
    PatientOverview,
    StepRecord,
    StepStatus,
    WorkflowResult,
    WorkflowStatus,
)
from chaincare.orchestrator.network import CareNetwork, build_network

__all__ = [
    "CareOrchestrator",
    "content_ref",
    "ServiceRegistry",
    "MaintenanceState",
    "PatientOverview",
    "StepRecord",
    "StepStatus",
    "WorkflowResult",
    "WorkflowStatus",
    "CareNetwork",
    "build_network",
]
