"""
Orchestrator Models

Execution records for cross-ledger workflows. A WorkflowResult is
returned on success and attached to WorkflowStepError on failure, so the
caller can always see which steps committed and which ids they produced.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any
import uuid

from pydantic import BaseModel, Field


class WorkflowStatus(str, Enum):
    """Status of a workflow execution."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    """Status of a single workflow step."""
    RUNNING = "running"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


class StepRecord(BaseModel):
    """Execution record for a single step."""
    name: str
    status: StepStatus = StepStatus.RUNNING

    started_at: datetime
    completed_at: datetime | None = None

    output: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    error_code: str | None = None


class WorkflowResult(BaseModel):
    """A single execution of a workflow."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow: str
    caller: str

    status: WorkflowStatus = WorkflowStatus.RUNNING

    # Timing
    started_at: datetime
    completed_at: datetime | None = None

    # Ids produced by committed steps, e.g. {"claim_id": 3, "payment_id": 7}
    outputs: dict[str, Any] = Field(default_factory=dict)

    # Trace
    steps: list[StepRecord] = Field(default_factory=list)

    def step(self, name: str) -> StepRecord | None:
        for record in self.steps:
            if record.name == name:
                return record
        return None

    @property
    def completed_steps(self) -> list[str]:
        return [s.name for s in self.steps if s.status == StepStatus.COMPLETED]

    @property
    def failed_step(self) -> str | None:
        for record in self.steps:
            if record.status == StepStatus.FAILED:
                return record.name
        return None

    def state_summary(self) -> dict[str, Any]:
        """Compact view of what committed before a failure."""
        return {
            "workflow": self.workflow,
            "status": self.status.value,
            "completed_steps": self.completed_steps,
            "failed_step": self.failed_step,
            "outputs": dict(self.outputs),
        }


class PatientOverview(BaseModel):
    """Read-only aggregation across ledgers for one patient."""
    patient: str
    identity_valid: bool
    records: list[int] = Field(default_factory=list)
    appointments: list[int] = Field(default_factory=list)
    claims: list[int] = Field(default_factory=list)
    payments: list[int] = Field(default_factory=list)


@dataclass
class MaintenanceState:
    """System-wide maintenance flag."""
    enabled: bool = False
    changed_by: str | None = None
    changed_at: datetime | None = None
    reason: str | None = None
