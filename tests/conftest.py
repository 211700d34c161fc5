from datetime import date, timedelta
from types import SimpleNamespace

import pytest

from chaincare.core import Capability, ManualClock
from chaincare.identity import EntityType
from chaincare.orchestrator import build_network

ADMIN = "admin"
PATIENT = "patient-1"
DOCTOR = "doctor-1"
HOSPITAL = "hospital-1"
PHARMACY = "pharmacy-1"
INSURER = "insurer-1"
MANUFACTURER = "pharma-co"
REGULATOR = "regulator-1"

CONSULTATION_DATE = date(2025, 10, 15)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def network(clock):
    return build_network(clock=clock)


@pytest.fixture
def onboard(network):
    def _onboard(address, entity_type, license_number=None):
        request_id = network.identity.request_verification(
            address, entity_type, f"{address} name", license_number or f"LIC-{address}"
        )
        network.identity.process_verification(ADMIN, request_id, approve=True, notes="documents checked")
        return address

    return _onboard


@pytest.fixture
def care(network, onboard, clock):
    """Verified participants, a clinic with bookable slots, a funded policy."""
    onboard(PATIENT, EntityType.PATIENT)
    onboard(DOCTOR, EntityType.DOCTOR)
    onboard(HOSPITAL, EntityType.HOSPITAL)
    onboard(PHARMACY, EntityType.PHARMACY)
    onboard(INSURER, EntityType.INSURER)

    network.records.register_patient(PATIENT, "ipfs://patient-profile", emergency_contact="ipfs://contact")

    scheduling = network.scheduling
    clinic_id = scheduling.register_clinic(
        HOSPITAL,
        "City General Hospital",
        "123 Medical St",
        ["General Medicine", "Emergency Care"],
        working_days=["Monday", "Tuesday", "Wednesday"],
        consultation_fee=100,
        accepts_insurance=True,
    )
    scheduling.register_doctor(
        HOSPITAL,
        DOCTOR,
        clinic_id,
        "Dr. Jane Smith",
        "General Medicine",
        "MED67890",
        consultation_fee=100,
        experience_years=8,
    )
    slot_ids = scheduling.create_time_slots(DOCTOR, DOCTOR, CONSULTATION_DATE, ["09:00", "10:00", "11:00"], 30, 100)

    claims = network.claims
    claims.grant_capability(ADMIN, INSURER, Capability.INSURER)
    policy_id = claims.create_policy(
        INSURER,
        "POL123456",
        PATIENT,
        coverage_amount=10_000,
        deductible=100,
        expiry_date=clock.now() + timedelta(days=365),
        covered_conditions=["General Medicine", "Emergency Care"],
    )
    claims.authorize_provider(ADMIN, DOCTOR, 60)
    claims.set_validation_rule(ADMIN, "J18.9", min_experience_months=24, auto_approval_threshold=1_000)

    network.token.mint(ADMIN, INSURER, 1_000_000)
    network.token.approve(INSURER, network.payments.address, 1_000_000)

    return SimpleNamespace(clinic_id=clinic_id, slot_ids=slot_ids, policy_id=policy_id)
