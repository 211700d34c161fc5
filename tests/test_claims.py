from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from chaincare.claims import ClaimStatus
from chaincare.core import Capability
from chaincare.errors import (
    AlreadyExists,
    Expired,
    InsufficientCoverage,
    InvalidArgument,
    InvalidStateTransition,
    InvariantViolation,
    Unauthorized,
)

from conftest import ADMIN, DOCTOR, INSURER, PATIENT


@pytest.fixture
def claims(network, care):
    return network.claims


def _submit(claims, amount, treatment_code="J18.9", is_emergency=False, provider=DOCTOR):
    return claims.submit_claim(
        provider,
        "POL123456",
        amount,
        "Pneumonia",
        treatment_code,
        documents=["ipfs://chest-xray", "ipfs://lab-results"],
        is_emergency=is_emergency,
        medical_record_id=1,
    )


def test_emergency_claim_scenario(claims, care):
    claim_id = _submit(claims, 500, is_emergency=True)

    claim = claims.get_claim(INSURER, claim_id)
    assert claim.status == ClaimStatus.APPROVED
    assert claim.approved_amount == 400
    assert claims.get_policy(PATIENT, care.policy_id).remaining_coverage == 9_600


def test_emergency_approval_capped_by_remaining_coverage(claims, care):
    _submit(claims, 11_000, is_emergency=True)  # 8,800 approved
    claim_id = _submit(claims, 5_000, is_emergency=True)

    assert claims.get_claim(INSURER, claim_id).approved_amount == 1_200
    assert claims.get_policy(INSURER, care.policy_id).remaining_coverage == 0


def test_rule_auto_approval_within_threshold(claims, care):
    claim_id = _submit(claims, 500)
    claim = claims.get_claim(DOCTOR, claim_id)
    assert claim.status == ClaimStatus.APPROVED and claim.approved_amount == 500
    assert claim.auto_adjudicated
    assert claims.get_provider_claims(DOCTOR, DOCTOR) == [claim_id]


def test_amount_above_threshold_goes_to_review(claims):
    claim_id = _submit(claims, 1_500)
    assert claims.get_claim(INSURER, claim_id).status == ClaimStatus.UNDER_REVIEW


def test_experience_gate_precedes_amount_gate(claims):
    claims.authorize_provider(ADMIN, "junior-doctor", 6)
    claim_id = _submit(claims, 10, provider="junior-doctor")
    assert claims.get_claim(INSURER, claim_id).status == ClaimStatus.UNDER_REVIEW


def test_unknown_treatment_code_goes_to_review(claims):
    claim_id = _submit(claims, 10, treatment_code="Z99.9")
    assert claims.get_claim(INSURER, claim_id).status == ClaimStatus.UNDER_REVIEW


def test_manual_review_debits_at_review_time(claims, care):
    claim_id = _submit(claims, 2_000)
    assert claims.get_policy(INSURER, care.policy_id).remaining_coverage == 10_000

    with pytest.raises(Unauthorized):
        claims.review_claim(DOCTOR, claim_id, approve=True, approved_amount=1_500)
    with pytest.raises(InvalidArgument):
        claims.review_claim(INSURER, claim_id, approve=True, approved_amount=2_500)

    claims.review_claim(INSURER, claim_id, approve=True, approved_amount=1_500, notes="partial")
    assert claims.get_claim(INSURER, claim_id).approved_amount == 1_500
    assert claims.get_policy(INSURER, care.policy_id).remaining_coverage == 8_500


def test_review_beyond_remaining_coverage_fails(claims, care):
    _submit(claims, 11_000, is_emergency=True)  # leaves 1,200
    claim_id = _submit(claims, 2_000)
    with pytest.raises(InsufficientCoverage):
        claims.review_claim(INSURER, claim_id, approve=True, approved_amount=2_000)
    assert claims.get_policy(INSURER, care.policy_id).remaining_coverage == 1_200


def test_rejection_requires_reason_and_leaves_coverage(claims, care):
    claim_id = _submit(claims, 2_000)
    with pytest.raises(InvalidArgument):
        claims.review_claim(INSURER, claim_id, approve=False)
    claims.review_claim(INSURER, claim_id, approve=False, notes="not medically necessary")
    assert claims.get_claim(PATIENT, claim_id).status == ClaimStatus.REJECTED
    assert claims.get_policy(INSURER, care.policy_id).remaining_coverage == 10_000


def test_dispute_is_status_only(claims, care):
    claim_id = _submit(claims, 500)
    claims.dispute_claim(PATIENT, claim_id, reason="amount too low")

    assert claims.get_claim(PATIENT, claim_id).status == ClaimStatus.DISPUTED
    assert claims.get_policy(PATIENT, care.policy_id).remaining_coverage == 9_500
    with pytest.raises(InvalidStateTransition):
        claims.dispute_claim(DOCTOR, claim_id, reason="again")

    pending = _submit(claims, 2_000)
    with pytest.raises(InvalidStateTransition):
        claims.dispute_claim(DOCTOR, pending, reason="too slow")


def test_top_up_is_bounded_by_coverage_amount(claims, care):
    _submit(claims, 500)
    with pytest.raises(InvariantViolation):
        claims.top_up_coverage(INSURER, care.policy_id, 501)
    assert claims.top_up_coverage(INSURER, care.policy_id, 500) == 10_000


def test_policy_preconditions(claims, network, clock):
    with pytest.raises(AlreadyExists):
        claims.create_policy(INSURER, "POL123456", PATIENT, 1_000, 0, clock.now() + timedelta(days=30))
    with pytest.raises(Unauthorized):
        claims.create_policy(DOCTOR, "POL-X", PATIENT, 1_000, 0, clock.now() + timedelta(days=30))
    with pytest.raises(Unauthorized):
        claims.submit_claim("unauthorized-clinic", "POL123456", 100, "Flu", "J18.9")

    clock.advance(days=366)
    with pytest.raises(Expired):
        _submit(claims, 100)


def test_payout_and_mark_paid_require_settler(claims, network):
    claim_id = _submit(claims, 500)
    with pytest.raises(Unauthorized):
        claims.execute_payout(DOCTOR, claim_id)

    settler = network.orchestrator.address
    payment_id = claims.execute_payout(settler, claim_id)
    with pytest.raises(InvariantViolation):
        claims.mark_claim_as_paid(settler, claim_id, payment_id + 1)
    claims.mark_claim_as_paid(settler, claim_id, payment_id)
    claims.mark_claim_as_paid(settler, claim_id, payment_id)

    claim = claims.get_claim(PATIENT, claim_id)
    assert claim.status == ClaimStatus.PAID and claim.payment_id == payment_id
    with pytest.raises(InvalidStateTransition):
        claims.execute_payout(settler, claim_id)


def test_concurrent_approvals_never_overdraw_coverage(claims, care):
    claims.set_validation_rule(ADMIN, "J18.9", min_experience_months=0, auto_approval_threshold=1_000)

    with ThreadPoolExecutor(max_workers=8) as pool:
        claim_ids = list(pool.map(lambda _: _submit(claims, 700), range(20)))

    approved = [
        c for c in (claims.get_claim(INSURER, cid) for cid in claim_ids) if c.status == ClaimStatus.APPROVED
    ]
    policy = claims.get_policy(INSURER, care.policy_id)
    assert len(approved) == 14
    assert 0 <= policy.remaining_coverage <= policy.coverage_amount
    assert policy.remaining_coverage == 10_000 - sum(c.approved_amount for c in approved)


def test_insurer_capability_is_local(claims, clock):
    claims.revoke_capability(ADMIN, INSURER, Capability.INSURER)
    with pytest.raises(Unauthorized):
        claims.create_policy(INSURER, "POL-NEW", PATIENT, 1_000, 0, clock.now() + timedelta(days=30))
