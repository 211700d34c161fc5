from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
import itertools
import threading

import pytest

from chaincare.claims import ClaimStatus
from chaincare.core import Capability
from chaincare.errors import (
    ExternalTransferFailed,
    InvalidStateTransition,
    NotFound,
    SystemPaused,
    Unauthorized,
    WorkflowStepError,
)
from chaincare.orchestrator import StepStatus, WorkflowStatus
from chaincare.scheduling import AppointmentStatus

from conftest import ADMIN, DOCTOR, INSURER, MANUFACTURER, PATIENT, PHARMACY

FEE_COLLECTOR = "fee-collector"


@pytest.fixture
def hub(network, care):
    return network.orchestrator


def _patient_record(network):
    return network.records.create_record(PATIENT, PATIENT, "ipfs://chest-xray", "imaging")


def _claim(hub, amount=500, **kwargs):
    return hub.submit_claim_with_record(
        DOCTOR,
        "POL123456",
        amount,
        "Pneumonia",
        "J18.9",
        documents=["ipfs://chest-xray"],
        **kwargs,
    )


def test_claim_is_adjudicated_paid_and_marked(hub, network):
    record_id = _patient_record(network)

    result = _claim(hub, medical_record_id=record_id)

    assert result.status == WorkflowStatus.COMPLETED
    assert result.completed_steps == [
        "verify_provider",
        "validate_record",
        "submit_claim",
        "read_claim",
        "execute_payout",
        "mark_paid",
    ]
    assert result.outputs["claim_status"] == "paid"
    assert result.outputs["payout_reused"] is False

    claim = network.claims.get_claim(DOCTOR, result.outputs["claim_id"])
    assert claim.status == ClaimStatus.PAID
    assert claim.payment_id == result.outputs["payment_id"]
    assert network.token.balance_of(DOCTOR) == 488
    assert network.token.balance_of(FEE_COLLECTOR) == 12
    assert network.token.balance_of(INSURER) == 1_000_000 - 500


def test_emergency_claim_pays_approved_share(hub, network):
    result = _claim(hub, is_emergency=True)

    assert result.outputs["approved_amount"] == 400
    assert result.step("validate_record").status == StepStatus.SKIPPED
    assert network.token.balance_of(DOCTOR) == 390


def test_claim_under_review_skips_settlement(hub, network):
    result = _claim(hub, amount=1_500)

    assert result.status == WorkflowStatus.COMPLETED
    assert result.outputs["claim_status"] == "under_review"
    assert result.step("execute_payout").status == StepStatus.SKIPPED
    assert result.step("mark_paid").status == StepStatus.SKIPPED
    assert network.token.balance_of(DOCTOR) == 0


def test_payout_failure_leaves_claim_approved_then_retry_finishes(hub, network):
    network.token.freeze(ADMIN, DOCTOR)

    with pytest.raises(WorkflowStepError) as exc_info:
        _claim(hub)

    error = exc_info.value
    assert error.step == "execute_payout"
    assert isinstance(error.cause, ExternalTransferFailed)
    assert isinstance(error.__cause__, ExternalTransferFailed)
    assert error.result.status == WorkflowStatus.FAILED
    assert error.detail["state"]["completed_steps"] == ["verify_provider", "submit_claim", "read_claim"]
    claim_id = error.result.outputs["claim_id"]
    assert network.claims.get_claim(DOCTOR, claim_id).status == ClaimStatus.APPROVED
    assert network.token.balance_of(INSURER) == 1_000_000

    network.token.unfreeze(ADMIN, DOCTOR)
    retry = hub.retry_claim_payout(DOCTOR, claim_id)
    assert retry.outputs["claim_status"] == "paid"
    assert network.claims.get_claim(DOCTOR, claim_id).status == ClaimStatus.PAID
    assert network.token.balance_of(DOCTOR) == 488

    with pytest.raises(WorkflowStepError) as again:
        hub.retry_claim_payout(DOCTOR, claim_id)
    assert again.value.step == "check_status"
    assert isinstance(again.value.cause, InvalidStateTransition)
    assert network.token.balance_of(DOCTOR) == 488


def test_retry_reuses_payout_when_mark_paid_was_missed(hub, network):
    record_id = _patient_record(network)
    claim_id = network.claims.submit_claim(DOCTOR, "POL123456", 500, "Pneumonia", "J18.9", medical_record_id=record_id)
    payment_id = network.claims.execute_payout(hub.address, claim_id)

    result = hub.retry_claim_payout(DOCTOR, claim_id)

    assert result.outputs["payout_reused"] is True
    assert result.outputs["payment_id"] == payment_id
    assert network.token.balance_of(DOCTOR) == 488


def test_concurrent_retries_share_one_payout(hub, network, monkeypatch):
    network.token.freeze(ADMIN, DOCTOR)
    with pytest.raises(WorkflowStepError) as exc_info:
        _claim(hub)
    claim_id = exc_info.value.result.outputs["claim_id"]
    network.token.unfreeze(ADMIN, DOCTOR)

    # Both retries look up the payout before either one has paid
    barrier = threading.Barrier(2)
    lookups = itertools.count()
    lookup = network.payments.get_claim_payment

    def racing_lookup(cid):
        if next(lookups) < 2:
            barrier.wait(timeout=5)
        return lookup(cid)

    monkeypatch.setattr(network.payments, "get_claim_payment", racing_lookup)

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(lambda _: hub.retry_claim_payout(DOCTOR, claim_id), range(2)))

    assert [r.status for r in results] == [WorkflowStatus.COMPLETED, WorkflowStatus.COMPLETED]
    assert results[0].outputs["payment_id"] == results[1].outputs["payment_id"]
    assert sorted(r.outputs["payout_reused"] for r in results) == [False, True]
    assert network.claims.get_claim(DOCTOR, claim_id).status == ClaimStatus.PAID
    assert network.token.balance_of(DOCTOR) == 488


def test_provider_suspended_after_payout_is_not_marked_paid(hub, network):
    def suspend_provider(event):
        network.identity.suspend(ADMIN, DOCTOR, reason="license review")

    handler_id = network.events.subscribe(suspend_provider, "claim.payout_executed")
    with pytest.raises(WorkflowStepError) as exc_info:
        _claim(hub)

    error = exc_info.value
    assert error.step == "mark_paid"
    assert isinstance(error.cause, Unauthorized)
    claim_id = error.result.outputs["claim_id"]
    payment_id = error.result.outputs["payment_id"]
    assert network.claims.get_claim(INSURER, claim_id).status == ClaimStatus.APPROVED

    network.events.unsubscribe(handler_id)
    network.identity.reactivate(ADMIN, DOCTOR)
    retry = hub.retry_claim_payout(DOCTOR, claim_id)
    assert retry.outputs["payout_reused"] is True
    assert retry.outputs["payment_id"] == payment_id
    assert network.token.balance_of(DOCTOR) == 488


def test_unknown_record_stops_before_submission(hub, network):
    with pytest.raises(WorkflowStepError) as exc_info:
        _claim(hub, medical_record_id=999)

    assert exc_info.value.step == "validate_record"
    assert isinstance(exc_info.value.cause, NotFound)
    assert network.claims.get_provider_claims(DOCTOR, DOCTOR) == []


def test_unverified_or_suspended_provider_is_rejected(hub, network):
    with pytest.raises(WorkflowStepError) as exc_info:
        hub.submit_claim_with_record("walk-in-clinic", "POL123456", 100, "Flu", "J18.9")
    assert exc_info.value.step == "verify_provider"
    assert isinstance(exc_info.value.cause, Unauthorized)

    network.identity.suspend(ADMIN, DOCTOR, reason="license review")
    with pytest.raises(WorkflowStepError) as exc_info:
        _claim(hub)
    assert exc_info.value.step == "verify_provider"


def test_identity_expiry_is_rechecked_on_every_run(hub, network, clock):
    _claim(hub)
    clock.advance(days=366)
    with pytest.raises(WorkflowStepError) as exc_info:
        _claim(hub)
    assert exc_info.value.step == "verify_provider"


def test_maintenance_pauses_every_workflow(hub, network):
    with pytest.raises(Unauthorized):
        hub.set_maintenance(DOCTOR, True)

    state = hub.set_maintenance(ADMIN, True, reason="ledger upgrade")
    assert state.enabled and state.changed_by == ADMIN

    with pytest.raises(SystemPaused):
        _claim(hub)
    with pytest.raises(SystemPaused):
        hub.patient_overview(PATIENT)
    assert network.claims.get_provider_claims(DOCTOR, DOCTOR) == []

    hub.set_maintenance(ADMIN, False)
    assert _claim(hub).status == WorkflowStatus.COMPLETED
    transitions = [e.transition for e in network.events.get_history("system.*")]
    assert transitions == ["system.maintenance_enabled", "system.maintenance_disabled"]


def test_booking_grants_doctor_record_access(hub, network, care):
    result = hub.book_consultation_and_create_record(
        PATIENT, DOCTOR, care.slot_ids[0], symptoms="Chest pain and shortness of breath"
    )

    assert result.completed_steps == ["verify_patient", "book_appointment", "grant_record_access", "link"]
    assert network.records.has_access(PATIENT, DOCTOR)
    linked = network.events.get_history("workflow.consultation_booked")
    assert linked[0].entity_id == result.outputs["appointment_id"]
    assert linked[0].correlation_id == result.id

    second = hub.book_consultation_and_create_record(PATIENT, DOCTOR, care.slot_ids[1])
    assert second.step("grant_record_access").status == StepStatus.SKIPPED


def test_booking_requires_verified_patient(hub, network, care):
    with pytest.raises(WorkflowStepError) as exc_info:
        hub.book_consultation_and_create_record("walk-in", DOCTOR, care.slot_ids[0])
    assert exc_info.value.step == "verify_patient"
    assert network.scheduling.get_slot(care.slot_ids[0]).appointment_id == 0


def test_completion_writes_one_record_per_appointment(hub, network, care):
    booking = hub.book_consultation_and_create_record(PATIENT, DOCTOR, care.slot_ids[0], symptoms="cough")
    appointment_id = booking.outputs["appointment_id"]

    result = hub.complete_consultation_with_record(
        DOCTOR, appointment_id, "Pneumonia", prescription="Amoxicillin 500mg", follow_up_required=True
    )

    assert result.completed_steps == [
        "verify_doctor",
        "fetch_appointment",
        "start_consultation",
        "create_record",
        "complete_consultation",
    ]
    record_id = result.outputs["record_id"]
    assert network.records.get_record(PATIENT, record_id).payload_ref.startswith("sha256:")
    assert network.scheduling.get_appointment(PATIENT, appointment_id).status == AppointmentStatus.COMPLETED
    consultation = network.scheduling.get_consultation(PATIENT, result.outputs["consultation_id"])
    assert consultation.medical_record_id == record_id

    with pytest.raises(WorkflowStepError) as exc_info:
        hub.complete_consultation_with_record(DOCTOR, appointment_id, "Pneumonia")
    assert exc_info.value.step == "complete_consultation"
    assert exc_info.value.result.outputs["record_id"] == record_id
    assert network.records.get_patient_records(PATIENT, PATIENT) == [record_id]


def test_dispense_records_when_pharmacy_has_access(hub, network, clock):
    supply = network.supply
    supply.authorize_entity(ADMIN, MANUFACTURER, Capability.MANUFACTURER)
    supply.authorize_entity(ADMIN, PHARMACY, Capability.PHARMACY)
    lot_id = supply.manufacture(MANUFACTURER, "BATCH001", "Amoxicillin", 1000, clock.now() + timedelta(days=365))

    first = hub.dispense_prescription(PHARMACY, lot_id, 10, PATIENT, "PRESCRIPTION123")
    assert first.step("create_record").status == StepStatus.SKIPPED

    network.records.grant_access(PATIENT, PHARMACY, "pharmacy")
    second = hub.dispense_prescription(PHARMACY, lot_id, 10, PATIENT, "PRESCRIPTION124")
    record = network.records.get_record(PATIENT, second.outputs["record_id"])
    assert record.category == "dispensing" and record.author == PHARMACY
    assert supply.get_lot(lot_id).quantity == 980

    supply.recall(MANUFACTURER, lot_id, "contamination")
    with pytest.raises(WorkflowStepError) as exc_info:
        hub.dispense_prescription(PHARMACY, lot_id, 1, PATIENT, "PRESCRIPTION125")
    assert exc_info.value.step == "dispense"


def test_patient_overview_uses_each_ledgers_authorization(hub, network, care):
    booking = hub.book_consultation_and_create_record(PATIENT, DOCTOR, care.slot_ids[0])
    record_id = _patient_record(network)
    claim = _claim(hub, medical_record_id=record_id)

    overview = hub.patient_overview(PATIENT)

    assert overview.identity_valid
    assert overview.records == [record_id]
    assert overview.appointments == [booking.outputs["appointment_id"]]
    assert overview.claims == [claim.outputs["claim_id"]]
    assert overview.payments == []

    assert hub.patient_overview("walk-in").identity_valid is False


def test_end_to_end_care_journey(hub, network, care):
    booking = hub.book_consultation_and_create_record(
        PATIENT, DOCTOR, care.slot_ids[0], symptoms="Fever and cough for three days"
    )
    completion = hub.complete_consultation_with_record(
        DOCTOR, booking.outputs["appointment_id"], "Pneumonia", prescription="Amoxicillin 500mg"
    )
    claim = _claim(hub, medical_record_id=completion.outputs["record_id"])

    assert claim.outputs["claim_status"] == "paid"
    policy = network.claims.get_policy(PATIENT, care.policy_id)
    assert policy.remaining_coverage == 9_500
    assert network.token.balance_of(DOCTOR) + network.token.balance_of(FEE_COLLECTOR) == 500

    for result in (booking, completion, claim):
        events = [e for e in network.events.get_history("workflow.*") if e.correlation_id == result.id]
        assert [e.transition for e in events][0] == "workflow.started"
        assert [e.transition for e in events][-1] == "workflow.completed"
    for ledger in network.ledgers:
        assert ledger.journal.verify_integrity()["verified"]
