import pytest
from pydantic import ValidationError

from chaincare.config import ClaimsSettings, LedgerSettings, PaymentSettings
from chaincare.observability import redaction_processor
from chaincare.observability.logging import REDACTED


def test_payment_settings_defaults():
    settings = PaymentSettings()
    assert settings.default_stablecoin == "USDC"
    assert settings.fee_rate_bps == 250


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("PAYMENT_FEE_RATE_BPS", "100")
    monkeypatch.setenv("CLAIMS_EMERGENCY_APPROVAL_PCT", "70")
    monkeypatch.setenv("CHAINCARE_ENV", "production")

    assert PaymentSettings().fee_rate_bps == 100
    assert ClaimsSettings().emergency_approval_pct == 70
    assert LedgerSettings().env == "production"


def test_fee_rate_above_cap_is_rejected(monkeypatch):
    monkeypatch.setenv("PAYMENT_FEE_RATE_BPS", "1500")
    with pytest.raises(ValidationError):
        PaymentSettings()


def test_redaction_masks_encrypted_references():
    event = redaction_processor(None, "info", {
        "event": "Patient registered",
        "patient": "patient-1",
        "encrypted_info_ref": "ipfs://secret",
        "emergency_contact": "ipfs://contact",
        "payload_ref": "sha256:abc",
    })
    assert event["patient"] == "patient-1"
    assert event["encrypted_info_ref"] == REDACTED
    assert event["emergency_contact"] == REDACTED
    assert event["payload_ref"] == REDACTED
