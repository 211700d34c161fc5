from datetime import timedelta

import pytest

from chaincare.core import Capability
from chaincare.errors import AlreadyExists, DuplicateRequest, InvalidStateTransition, Unauthorized
from chaincare.identity import EntityType, VerificationStatus

from conftest import ADMIN, DOCTOR


def test_approval_grants_role_capabilities(network):
    identity = network.identity
    request_id = identity.request_verification(DOCTOR, EntityType.DOCTOR, "Dr. Smith", "MED12345")
    assert identity.verify(DOCTOR).is_valid is False

    identity.process_verification(ADMIN, request_id, approve=True, notes="ok")

    result = identity.verify(DOCTOR)
    assert result.is_valid is True
    assert result.status == VerificationStatus.VERIFIED
    assert identity.is_authorized(DOCTOR, Capability.PROVIDER)
    assert identity.is_authorized(DOCTOR, Capability.EMERGENCY_ACCESS)
    assert not identity.is_authorized(DOCTOR, Capability.INSURER)


def test_one_pending_request_per_applicant(network):
    network.identity.request_verification(DOCTOR, EntityType.DOCTOR, "Dr. Smith", "MED12345")
    with pytest.raises(DuplicateRequest):
        network.identity.request_verification(DOCTOR, EntityType.DOCTOR, "Dr. Smith", "MED99999")


def test_license_numbers_are_unique(network):
    network.identity.request_verification(DOCTOR, EntityType.DOCTOR, "Dr. Smith", "MED12345")
    with pytest.raises(AlreadyExists):
        network.identity.request_verification("doctor-2", EntityType.DOCTOR, "Dr. Jones", "MED12345")


def test_rejection_purges_entity_so_resubmission_starts_clean(network):
    identity = network.identity
    request_id = identity.request_verification(DOCTOR, EntityType.DOCTOR, "Dr. Smith", "MED12345")
    identity.process_verification(ADMIN, request_id, approve=False, notes="license not found")

    assert identity.verify(DOCTOR).status is None
    assert not identity.is_registered(DOCTOR)

    second = identity.request_verification(DOCTOR, EntityType.DOCTOR, "Dr. Smith", "MED12345")
    assert second != request_id


def test_expiry_gate_overrides_stored_status(network, onboard, clock):
    onboard(DOCTOR, EntityType.DOCTOR)
    clock.advance(days=366)

    result = network.identity.verify(DOCTOR)
    assert result.status == VerificationStatus.VERIFIED
    assert result.is_valid is False
    assert not network.identity.is_authorized(DOCTOR, Capability.PROVIDER)


def test_renewal_restores_validity(network, onboard, clock):
    onboard(DOCTOR, EntityType.DOCTOR)
    clock.advance(days=300)
    network.identity.renew_verification(ADMIN, DOCTOR)
    clock.advance(days=300)
    assert network.identity.verify(DOCTOR).is_valid


def test_suspend_and_reactivate(network, onboard):
    onboard(DOCTOR, EntityType.DOCTOR)
    network.identity.suspend(ADMIN, DOCTOR, reason="complaint under investigation")
    assert network.identity.verify(DOCTOR).status == VerificationStatus.SUSPENDED
    assert not network.identity.verify(DOCTOR).is_valid

    network.identity.reactivate(ADMIN, DOCTOR)
    assert network.identity.verify(DOCTOR).is_valid


def test_revoke_only_from_pending(network, onboard):
    identity = network.identity
    identity.request_verification("nurse-1", EntityType.NURSE, "Nurse Joy", "RN-1")
    identity.revoke_entity(ADMIN, "nurse-1", reason="fraudulent documents")
    assert identity.verify("nurse-1").status == VerificationStatus.REVOKED
    with pytest.raises(InvalidStateTransition):
        identity.request_verification("nurse-1", EntityType.NURSE, "Nurse Joy", "RN-2")

    onboard(DOCTOR, EntityType.DOCTOR)
    with pytest.raises(InvalidStateTransition):
        identity.revoke_entity(ADMIN, DOCTOR)


def test_only_verifiers_process_requests(network):
    request_id = network.identity.request_verification(DOCTOR, EntityType.DOCTOR, "Dr. Smith", "MED12345")
    with pytest.raises(Unauthorized):
        network.identity.process_verification("mallory", request_id, approve=True)


def test_credential_lifecycle(network, onboard, clock):
    onboard(DOCTOR, EntityType.DOCTOR)
    identity = network.identity

    revocable = identity.issue_credential(ADMIN, DOCTOR, "board_certification", "ipfs://cert", clock.now() + timedelta(days=90))
    permanent = identity.issue_credential(
        ADMIN, DOCTOR, "medical_degree", "ipfs://degree", clock.now() + timedelta(days=3650), revocable=False
    )
    assert identity.get_holder_credentials(DOCTOR) == [revocable, permanent]
    assert identity.verify_credential(revocable)

    identity.revoke_credential(ADMIN, revocable)
    assert not identity.verify_credential(revocable)
    with pytest.raises(InvalidStateTransition):
        identity.revoke_credential(ADMIN, revocable)
    with pytest.raises(InvalidStateTransition):
        identity.revoke_credential(ADMIN, permanent)


def test_entities_by_type_only_lists_valid(network, onboard, clock):
    onboard(DOCTOR, EntityType.DOCTOR)
    onboard("doctor-2", EntityType.DOCTOR)
    network.identity.suspend(ADMIN, "doctor-2")

    assert network.identity.get_entities_by_type(EntityType.DOCTOR) == [DOCTOR]
    assert sorted(network.identity.get_entities_by_type(EntityType.DOCTOR, verified_only=False)) == [DOCTOR, "doctor-2"]
