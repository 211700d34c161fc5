"""
Care Orchestrator

Composes the ledgers into multi-step workflows. Each step is a public
call into one ledger; the orchestrator never touches ledger storage.

Semantics:
- Identity is re-verified before every mutating step, never cached
- A failed step raises WorkflowStepError naming the step; earlier steps
  stay committed (no compensation) and the attached WorkflowResult shows
  the safe-to-retry state
- Retries are idempotent: payouts are reused per claim and records are
  keyed per appointment
- While maintenance is enabled every workflow fails with SystemPaused
"""

from dataclasses import replace
from datetime import date
from typing import Any, Callable
import hashlib
import json
import threading

import structlog

from chaincare.claims.models import ClaimStatus
from chaincare.core.capabilities import Capability
from chaincare.core.clock import Clock, SystemClock
from chaincare.core.events import EventBus, LedgerEvent
from chaincare.errors import (
    InvalidStateTransition,
    LedgerError,
    NotFound,
    SystemPaused,
    Unauthorized,
    WorkflowStepError,
)
from chaincare.orchestrator.interfaces import ServiceRegistry
from chaincare.orchestrator.models import (
    MaintenanceState,
    PatientOverview,
    StepRecord,
    StepStatus,
    WorkflowResult,
    WorkflowStatus,
)
from chaincare.scheduling.models import OPEN_STATUSES, AppointmentType

logger = structlog.get_logger(__name__)


def content_ref(payload: dict[str, Any]) -> str:
    """Content-addressed reference for a record payload."""
    digest = hashlib.sha256(json.dumps(payload, sort_keys=True, default=str).encode()).hexdigest()
    return f"sha256:{digest}"


class CareOrchestrator:
    """
    Workflow hub over the component ledgers.

    The orchestrator's own address holds CLAIM_SETTLER on the claims
    ledger and PAYMENT_PROCESSOR on the payment ledger (see build_network).

    Usage:
        hub = CareOrchestrator("chaincare-hub", "admin", services)
        result = hub.submit_claim_with_record("doctor", "POL-1", 500, "Pneumonia", "J18.9")
        result.outputs["payment_id"]
    """

    name = "orchestrator"

    def __init__(
        self,
        address: str,
        admin: str,
        services: ServiceRegistry,
        clock: Clock | None = None,
        events: EventBus | None = None,
    ):
        self.address = address
        self.admin = admin
        self.services = services
        self.clock = clock or SystemClock()
        self.events = events or EventBus()

        self._maintenance = MaintenanceState()
        self._lock = threading.Lock()

    # =========================================================================
    # Maintenance
    # =========================================================================

    def set_maintenance(self, caller: str, enabled: bool, reason: str | None = None) -> MaintenanceState:
        if caller != self.admin:
            raise Unauthorized(f"{caller} may not change maintenance mode")
        with self._lock:
            self._maintenance = MaintenanceState(
                enabled=enabled,
                changed_by=caller,
                changed_at=self._now(),
                reason=reason,
            )
            state = replace(self._maintenance)

        transition = "system.maintenance_enabled" if enabled else "system.maintenance_disabled"
        self._publish("system", "maintenance", transition, caller, reason=reason)
        if enabled:
            logger.warning("MAINTENANCE ENABLED", changed_by=caller, reason=reason)
        else:
            logger.info("Maintenance disabled", changed_by=caller)
        return state

    @property
    def maintenance(self) -> MaintenanceState:
        with self._lock:
            return replace(self._maintenance)

    def _check_maintenance(self) -> None:
        with self._lock:
            state = self._maintenance
        if state.enabled:
            raise SystemPaused(
                "System is in maintenance mode",
                detail={"reason": state.reason, "since": state.changed_at.isoformat() if state.changed_at else None},
            )

    # =========================================================================
    # Claims workflows
    # =========================================================================

    def submit_claim_with_record(
        self,
        caller: str,
        policy_number: str,
        amount: int,
        diagnosis: str,
        treatment_code: str,
        documents: list[str] | None = None,
        is_emergency: bool = False,
        medical_record_id: int = 0,
    ) -> WorkflowResult:
        """
        verify provider -> validate record -> submit claim -> read claim
        -> (approved) execute payout -> mark paid.

        A payout failure leaves the claim APPROVED and unpaid; use
        retry_claim_payout to finish it.
        """
        claims = self.services.claims
        result = self._begin("submit_claim_with_record", caller)

        self._run(result, "verify_provider", lambda: self._authorize(caller, Capability.PROVIDER))
        if medical_record_id:
            self._run(result, "validate_record", lambda: self._validate_record(medical_record_id))
        else:
            self._skip(result, "validate_record", "no medical record referenced")

        def submit() -> int:
            self._authorize(caller, Capability.PROVIDER)
            return claims.submit_claim(
                caller,
                policy_number,
                amount,
                diagnosis,
                treatment_code,
                documents=documents,
                is_emergency=is_emergency,
                medical_record_id=medical_record_id,
            )

        claim_id = self._run(result, "submit_claim", submit, output_key="claim_id")

        def read_claim() -> Any:
            self._authorize(caller, Capability.PROVIDER)
            return claims.get_claim(self.address, claim_id)

        claim = self._run(result, "read_claim", read_claim)
        result.outputs["claim_status"] = claim.status.value
        result.outputs["approved_amount"] = claim.approved_amount

        if claim.status == ClaimStatus.APPROVED:
            self._settle_claim(result, claim)
        else:
            reason = f"claim is {claim.status.value}"
            self._skip(result, "execute_payout", reason)
            self._skip(result, "mark_paid", reason)

        return self._finish(result)

    def retry_claim_payout(self, caller: str, claim_id: int) -> WorkflowResult:
        """
        Finish an APPROVED-but-unpaid claim without re-adjudicating it.

        An existing payout for the claim is reused, so funds move at most once.
        """
        result = self._begin("retry_claim_payout", caller)
        result.outputs["claim_id"] = claim_id
        claim = self._run(result, "read_claim", lambda: self.services.claims.get_claim(caller, claim_id))

        def check_status() -> None:
            if claim.status != ClaimStatus.APPROVED:
                raise InvalidStateTransition(
                    f"Claim {claim_id} is {claim.status.value}, nothing to pay out",
                    detail={"status": claim.status.value},
                )

        self._run(result, "check_status", check_status)
        self._settle_claim(result, claim)
        return self._finish(result)

    def _settle_claim(self, result: WorkflowResult, claim: Any) -> None:
        claims, payments = self.services.claims, self.services.payments
        reused = False

        def payout() -> int:
            nonlocal reused
            self._authorize(claim.provider, Capability.PROVIDER)
            existing = payments.get_claim_payment(claim.id)
            if not existing:
                try:
                    return claims.execute_payout(self.address, claim.id)
                except InvalidStateTransition:
                    # A concurrent settlement of the same claim won the race
                    existing = payments.get_claim_payment(claim.id)
                    if not existing:
                        raise
            reused = True
            return existing

        def mark_paid() -> None:
            self._authorize(claim.provider, Capability.PROVIDER)
            claims.mark_claim_as_paid(self.address, claim.id, payment_id)

        payment_id = self._run(result, "execute_payout", payout, output_key="payment_id")
        result.outputs["payout_reused"] = reused
        self._run(result, "mark_paid", mark_paid)
        result.outputs["claim_status"] = ClaimStatus.PAID.value

    def _validate_record(self, record_id: int) -> None:
        if not self.services.records.record_exists(record_id):
            raise NotFound(f"record {record_id} not found", detail={"entity_type": "record", "id": record_id})

    # =========================================================================
    # Scheduling workflows
    # =========================================================================

    def book_consultation_and_create_record(
        self,
        caller: str,
        doctor: str,
        slot_id: int,
        appointment_type: AppointmentType = AppointmentType.GENERAL_CONSULTATION,
        symptoms: str = "",
        notes: str = "",
        attachments: list[str] | None = None,
        is_emergency: bool = False,
    ) -> WorkflowResult:
        """
        verify patient -> book -> grant doctor record access -> linkage event.

        Access is granted only when the patient has a record profile and
        the doctor is a verified provider.
        """
        records = self.services.records
        result = self._begin("book_consultation_and_create_record", caller)

        self._run(result, "verify_patient", lambda: self._authorize(caller, Capability.PATIENT))

        def book() -> int:
            self._authorize(caller, Capability.PATIENT)
            return self.services.scheduling.book_appointment(
                caller,
                doctor,
                slot_id,
                appointment_type=appointment_type,
                symptoms=symptoms,
                notes=notes,
                attachments=attachments,
                is_emergency=is_emergency,
            )

        appointment_id = self._run(result, "book_appointment", book, output_key="appointment_id")

        if not records.is_registered(caller):
            self._skip(result, "grant_record_access", "patient has no record profile")
        elif not self.services.identity.is_authorized(doctor, Capability.PROVIDER):
            self._skip(result, "grant_record_access", "doctor is not a verified provider")
        elif records.has_access(caller, doctor):
            self._skip(result, "grant_record_access", "doctor already has access")
        else:
            def grant() -> None:
                self._authorize(caller, Capability.PATIENT)
                records.grant_access(caller, doctor, "doctor")

            self._run(result, "grant_record_access", grant)

        self._run(
            result,
            "link",
            lambda: self._publish(
                "appointment",
                appointment_id,
                "workflow.consultation_booked",
                caller,
                correlation_id=result.id,
                doctor=doctor,
                slot_id=slot_id,
            ),
        )
        return self._finish(result)

    def complete_consultation_with_record(
        self,
        caller: str,
        appointment_id: int,
        diagnosis: str,
        prescription: str = "",
        notes: str = "",
        follow_up_required: bool = False,
        follow_up_date: date | None = None,
        category: str = "consultation",
    ) -> WorkflowResult:
        """
        verify doctor -> fetch appointment -> create record -> complete consultation.

        The record is keyed by appointment, so a retry after a failed
        completion reuses it instead of writing a duplicate.
        """
        scheduling, records = self.services.scheduling, self.services.records
        result = self._begin("complete_consultation_with_record", caller)
        result.outputs["appointment_id"] = appointment_id

        self._run(result, "verify_doctor", lambda: self._authorize(caller, Capability.DOCTOR))
        appointment = self._run(
            result,
            "fetch_appointment",
            lambda: scheduling.get_appointment(caller, appointment_id),
        )

        if appointment.status in OPEN_STATUSES:
            def start() -> int:
                self._authorize(caller, Capability.DOCTOR)
                return scheduling.start_consultation(caller, appointment_id)

            self._run(result, "start_consultation", start, output_key="consultation_id")
        else:
            self._skip(result, "start_consultation", f"appointment is {appointment.status.value}")

        payload_ref = content_ref({
            "appointment_id": appointment_id,
            "diagnosis": diagnosis,
            "prescription": prescription,
            "notes": notes,
        })

        def create() -> int:
            self._authorize(caller, Capability.DOCTOR)
            return records.create_record(
                caller,
                appointment.patient,
                payload_ref,
                category,
                idempotency_key=f"appointment:{appointment_id}",
            )

        record_id = self._run(result, "create_record", create, output_key="record_id")

        def complete() -> int:
            self._authorize(caller, Capability.DOCTOR)
            return scheduling.complete_consultation(
                caller,
                appointment_id,
                diagnosis,
                prescription=prescription,
                notes=notes,
                follow_up_required=follow_up_required,
                follow_up_date=follow_up_date,
                medical_record_id=record_id,
            )

        self._run(result, "complete_consultation", complete, output_key="consultation_id")
        return self._finish(result)

    # =========================================================================
    # Pharmacy workflow
    # =========================================================================

    def dispense_prescription(
        self,
        caller: str,
        lot_id: int,
        quantity: int,
        patient: str,
        prescription_ref: str,
    ) -> WorkflowResult:
        """verify pharmacy -> dispense -> dispensing record (when the pharmacy has access)."""
        records = self.services.records
        result = self._begin("dispense_prescription", caller)

        self._run(result, "verify_pharmacy", lambda: self._authorize(caller, Capability.PHARMACY))

        def dispense() -> int:
            self._authorize(caller, Capability.PHARMACY)
            return self.services.supply.dispense(caller, lot_id, quantity, patient, prescription_ref)

        transaction_id = self._run(result, "dispense", dispense, output_key="transaction_id")

        if not records.is_registered(patient):
            self._skip(result, "create_record", "patient has no record profile")
        elif not records.has_access(patient, caller):
            self._skip(result, "create_record", "pharmacy has no record access")
        else:
            def create() -> int:
                self._authorize(caller, Capability.PHARMACY)
                payload_ref = content_ref({
                    "lot_id": lot_id,
                    "transaction_id": transaction_id,
                    "quantity": quantity,
                    "prescription_ref": prescription_ref,
                })
                return records.create_record(
                    caller,
                    patient,
                    payload_ref,
                    "dispensing",
                    idempotency_key=f"dispense:{transaction_id}",
                )

            self._run(result, "create_record", create, output_key="record_id")

        return self._finish(result)

    # =========================================================================
    # Read-only aggregation
    # =========================================================================

    def patient_overview(self, caller: str) -> PatientOverview:
        """Everything the caller can see about themselves, using each ledger's own authorisation."""
        self._check_maintenance()
        services = self.services
        records = services.records.get_patient_records(caller, caller) if services.records.is_registered(caller) else []
        return PatientOverview(
            patient=caller,
            identity_valid=services.identity.verify(caller).is_valid,
            records=records,
            appointments=services.scheduling.get_patient_appointments(caller, caller),
            claims=services.claims.get_patient_claims(caller, caller),
            payments=services.payments.get_user_payments(caller, caller),
        )

    # =========================================================================
    # Step execution
    # =========================================================================

    def _authorize(self, entity: str, capability: Capability) -> None:
        if not self.services.identity.is_authorized(entity, capability):
            raise Unauthorized(
                f"{entity} is not a verified {capability.value}",
                detail={"entity": entity, "capability": capability.value},
            )

    def _begin(self, workflow: str, caller: str) -> WorkflowResult:
        self._check_maintenance()
        result = WorkflowResult(workflow=workflow, caller=caller, started_at=self._now())
        self._publish("workflow", result.id, "workflow.started", caller, correlation_id=result.id, workflow=workflow)
        return result

    def _run(
        self,
        result: WorkflowResult,
        name: str,
        operation: Callable[[], Any],
        output_key: str | None = None,
    ) -> Any:
        record = StepRecord(name=name, started_at=self._now())
        result.steps.append(record)
        try:
            value = operation()
        except LedgerError as e:
            record.status = StepStatus.FAILED
            record.error = e.message
            record.error_code = e.code
            record.completed_at = self._now()
            result.status = WorkflowStatus.FAILED
            result.completed_at = record.completed_at
            logger.warning(
                "Workflow step failed",
                workflow=result.workflow,
                step=name,
                error=e.message,
                completed_steps=result.completed_steps,
            )
            self._publish(
                "workflow",
                result.id,
                "workflow.failed",
                result.caller,
                correlation_id=result.id,
                step=name,
                error_code=e.code,
            )
            raise WorkflowStepError(result.workflow, name, e, result) from e

        record.status = StepStatus.COMPLETED
        record.completed_at = self._now()
        if output_key:
            result.outputs[output_key] = value
            record.output = {output_key: value}
        return value

    def _skip(self, result: WorkflowResult, name: str, reason: str) -> None:
        now = self._now()
        result.steps.append(StepRecord(
            name=name,
            status=StepStatus.SKIPPED,
            started_at=now,
            completed_at=now,
            output={"reason": reason},
        ))

    def _finish(self, result: WorkflowResult) -> WorkflowResult:
        result.status = WorkflowStatus.COMPLETED
        result.completed_at = self._now()
        self._publish(
            "workflow",
            result.id,
            "workflow.completed",
            result.caller,
            correlation_id=result.id,
            workflow=result.workflow,
            outputs=dict(result.outputs),
        )
        logger.info("Workflow completed", workflow=result.workflow, caller=result.caller, outputs=result.outputs)
        return result

    def _now(self):
        return self.clock.now()

    def _publish(
        self,
        entity_type: str,
        entity_id: int | str,
        transition: str,
        actor: str,
        correlation_id: str | None = None,
        **data,
    ) -> None:
        self.events.publish(LedgerEvent(
            ledger=self.name,
            entity_type=entity_type,
            entity_id=entity_id,
            transition=transition,
            actor=actor,
            timestamp=self._now(),
            correlation_id=correlation_id,
            data=data,
        ))
