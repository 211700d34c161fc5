"""
Ledger Error Taxonomy

Every ledger raises one of these synchronously to its immediate caller.
Each error carries:
- code:    machine-readable kind (NOT_FOUND, UNAUTHORIZED, ...)
- message: human-readable description
- detail:  optional dict with the entity ids and states involved
"""

from typing import Any


class LedgerError(Exception):
    """Base class for all ledger errors."""

    code = "LEDGER_ERROR"

    def __init__(self, message: str, detail: dict[str, Any] | None = None, code: str | None = None):
        self.message = message
        self.detail = detail or {}
        if code is not None:
            self.code = code
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "detail": self.detail}


class NotFound(LedgerError):
    """Identifier does not exist."""
    code = "NOT_FOUND"


class Unauthorized(LedgerError):
    """Caller lacks the required capability or ownership."""
    code = "UNAUTHORIZED"


class InvalidStateTransition(LedgerError):
    """Operation not valid from the entity's current status."""
    code = "INVALID_STATE_TRANSITION"


class InvariantViolation(LedgerError):
    """Operation would break a ledger invariant."""
    code = "INVARIANT_VIOLATION"


class AlreadyExists(LedgerError):
    """Duplicate unique key."""
    code = "ALREADY_EXISTS"


class Expired(LedgerError):
    """Time-based precondition failed."""
    code = "EXPIRED"


class ExternalTransferFailed(LedgerError):
    """A payment leg could not be settled."""
    code = "EXTERNAL_TRANSFER_FAILED"


class InvalidArgument(LedgerError):
    """Malformed or missing input."""
    code = "INVALID_ARGUMENT"


class DuplicateRequest(AlreadyExists):
    """Applicant already has a pending verification request."""
    code = "DUPLICATE_REQUEST"


class InsufficientCoverage(InvariantViolation):
    """Approval would exceed the policy's remaining coverage."""
    code = "INSUFFICIENT_COVERAGE"


class LotRecalled(InvalidStateTransition):
    """Lot has been recalled; no further quantity-affecting operation."""
    code = "LOT_RECALLED"


class LotExpired(Expired):
    """Lot is past its expiry date."""
    code = "LOT_EXPIRED"


class SystemPaused(InvalidStateTransition):
    """The orchestrator is in maintenance mode."""
    code = "SYSTEM_PAUSED"


class WorkflowStepError(LedgerError):
    """
    A workflow step failed after earlier steps committed.

    Prior steps are not rolled back. `result` holds the partial
    WorkflowResult (completed steps and the ids they produced) so the
    caller can inspect the safe-to-retry state. The failing sub-call's
    error is chained as __cause__ and exposed as `cause`.
    """

    code = "WORKFLOW_STEP_FAILED"

    def __init__(self, workflow: str, step: str, cause: Exception, result: Any = None):
        self.workflow = workflow
        self.step = step
        self.cause = cause
        self.result = result
        detail = {
            "workflow": workflow,
            "step": step,
            "cause_code": getattr(cause, "code", type(cause).__name__),
        }
        if result is not None:
            detail["state"] = result.state_summary()
        super().__init__(f"{workflow} failed at step '{step}': {cause}", detail=detail)
