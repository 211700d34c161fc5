from datetime import timedelta

import pytest

from chaincare.core import Capability, EventBus, ManualClock
from chaincare.errors import (
    AlreadyExists,
    Expired,
    ExternalTransferFailed,
    InvalidArgument,
    InvalidStateTransition,
    Unauthorized,
)
from chaincare.payments import EscrowStatus, PaymentLedger, PaymentType, StablecoinToken

ADMIN = "admin"
ISSUER = "treasury"
COLLECTOR = "fee-collector"
PATIENT = "patient-1"
CLINIC = "clinic-1"


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def usdc():
    token = StablecoinToken("USDC", issuer=ISSUER)
    token.mint(ISSUER, PATIENT, 100_000)
    return token


@pytest.fixture
def payments(usdc, clock):
    ledger = PaymentLedger(
        "payments", ADMIN, clock, EventBus(), tokens=[usdc], fee_collector=COLLECTOR, fee_rate_bps=250
    )
    usdc.approve(PATIENT, "payments", 100_000)
    return ledger


def test_fee_split(payments, usdc):
    payment_id = payments.process_payment(PATIENT, CLINIC, 1_000, "USDC", PaymentType.CONSULTATION)

    payment = payments.get_payment(PATIENT, payment_id)
    assert (payment.amount, payment.fee, payment.net_amount) == (1_000, 25, 975)
    assert usdc.balance_of(CLINIC) == 975
    assert usdc.balance_of(COLLECTOR) == 25
    assert usdc.balance_of(PATIENT) == 99_000
    assert payments.get_user_payments(CLINIC, CLINIC) == [payment_id]


def test_fee_rounds_down(payments, usdc):
    payments.process_payment(PATIENT, CLINIC, 39, "USDC")
    assert usdc.balance_of(COLLECTOR) == 0
    assert usdc.balance_of(CLINIC) == 39


def test_frozen_fee_collector_fails_whole_payment(payments, usdc):
    usdc.freeze(ISSUER, COLLECTOR)
    with pytest.raises(ExternalTransferFailed):
        payments.process_payment(PATIENT, CLINIC, 1_000, "USDC")

    assert usdc.balance_of(CLINIC) == 0
    assert usdc.balance_of(PATIENT) == 100_000
    assert payments.get_user_payments(PATIENT, PATIENT) == []


def test_insufficient_allowance(payments, usdc):
    usdc.approve(PATIENT, "payments", 10)
    with pytest.raises(ExternalTransferFailed):
        payments.process_payment(PATIENT, CLINIC, 11, "USDC")


def test_unsupported_token(payments):
    with pytest.raises(InvalidArgument):
        payments.process_payment(PATIENT, CLINIC, 100, "DAI")


def test_fee_rate_admin_and_cap(payments, usdc):
    with pytest.raises(Unauthorized):
        payments.set_fee_rate(PATIENT, 100)
    with pytest.raises(InvalidArgument):
        payments.set_fee_rate(ADMIN, 1_001)

    payments.set_fee_rate(ADMIN, 1_000)
    payments.set_fee_collector(ADMIN, "new-collector")
    payments.process_payment(PATIENT, CLINIC, 1_000, "USDC")
    assert usdc.balance_of("new-collector") == 100


def test_token_registry(payments):
    dai = StablecoinToken("DAI", decimals=18, issuer=ISSUER)
    payments.add_supported_token(ADMIN, dai)
    assert payments.is_supported("DAI")
    with pytest.raises(AlreadyExists):
        payments.add_supported_token(ADMIN, dai)
    payments.remove_supported_token(ADMIN, "DAI")
    assert not payments.is_supported("DAI")


def test_claim_payout_is_component_only_and_once(payments, usdc):
    insurer = "insurer-1"
    usdc.mint(ISSUER, insurer, 10_000)
    usdc.approve(insurer, "payments", 10_000)

    with pytest.raises(Unauthorized):
        payments.execute_claim_payout("claims-ledger", 1, insurer, CLINIC, 400)

    payments.grant_capability(ADMIN, "claims-ledger", Capability.CLAIMS_COMPONENT)
    payment_id = payments.execute_claim_payout("claims-ledger", 1, insurer, CLINIC, 400)
    assert payments.get_claim_payment(1) == payment_id
    assert payments.get_claim_payment(2) == 0

    with pytest.raises(InvalidStateTransition):
        payments.execute_claim_payout("claims-ledger", 1, insurer, CLINIC, 400)
    assert usdc.balance_of(insurer) == 9_600


def test_escrow_release_after_date_takes_fee(payments, usdc, clock):
    escrow_id = payments.create_escrow(PATIENT, CLINIC, 2_000, clock.now() + timedelta(days=7), "USDC", "surgery completed")
    assert usdc.balance_of("payments") == 2_000

    with pytest.raises(Expired):
        payments.release_escrow(CLINIC, escrow_id)
    with pytest.raises(Unauthorized):
        payments.release_escrow("stranger", escrow_id)

    clock.advance(days=7)
    payment_id = payments.release_escrow(CLINIC, escrow_id)

    escrow = payments.get_escrow(PATIENT, escrow_id)
    assert escrow.status == EscrowStatus.RELEASED and escrow.payment_id == payment_id
    assert usdc.balance_of(CLINIC) == 1_950
    assert usdc.balance_of(COLLECTOR) == 50
    assert usdc.balance_of("payments") == 0
    with pytest.raises(InvalidStateTransition):
        payments.cancel_escrow(PATIENT, escrow_id)


def test_escrow_cancel_refunds_in_full(payments, usdc, clock):
    escrow_id = payments.create_escrow(PATIENT, CLINIC, 2_000, clock.now() + timedelta(days=7))
    payments.cancel_escrow(PATIENT, escrow_id)

    assert usdc.balance_of(PATIENT) == 100_000
    assert usdc.balance_of(COLLECTOR) == 0
    with pytest.raises(InvalidStateTransition):
        payments.release_escrow(PATIENT, escrow_id)


def test_escrow_cancel_after_release_date_needs_processor(payments, usdc, clock):
    escrow_id = payments.create_escrow(PATIENT, CLINIC, 2_000, clock.now() + timedelta(days=7))
    clock.advance(days=8)
    with pytest.raises(Expired):
        payments.cancel_escrow(PATIENT, escrow_id)

    payments.grant_capability(ADMIN, "processor", Capability.PAYMENT_PROCESSOR)
    payments.cancel_escrow("processor", escrow_id)
    assert payments.get_escrow("processor", escrow_id).status == EscrowStatus.CANCELLED


def test_history_reconstructs_from_journal(payments, clock):
    payment_id = payments.process_payment(PATIENT, CLINIC, 1_000, "USDC")
    escrow_id = payments.create_escrow(PATIENT, CLINIC, 500, clock.now() + timedelta(days=1))
    payments.cancel_escrow(PATIENT, escrow_id)

    rebuilt = payments.reconstruct_payments()
    assert rebuilt[payment_id] == payments.get_payment(ADMIN, payment_id)
    assert payments.reconstruct_escrows()[escrow_id].status == EscrowStatus.CANCELLED
    assert [e.status for e in payments.escrow_history(escrow_id)] == [EscrowStatus.ACTIVE, EscrowStatus.CANCELLED]
    assert payments.journal.verify_integrity()["verified"]
