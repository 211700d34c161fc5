"""
Insurance Claims Ledger

Claim state machine:
    SUBMITTED -> UNDER_REVIEW | APPROVED | REJECTED
    UNDER_REVIEW -> APPROVED | REJECTED   (manual review)
    APPROVED -> PAID
    APPROVED | REJECTED -> DISPUTED

Adjudication on submission:
1. Emergency: approve min(claimed * pct / 100, remaining_coverage)
2. No active rule for the treatment code: UNDER_REVIEW
3. Provider experience below the rule minimum: UNDER_REVIEW
4. claimed <= threshold and claimed <= remaining_coverage: APPROVED in full
5. Otherwise: UNDER_REVIEW

Every coverage debit runs under the ledger lock, so concurrent approvals
against one policy serialise on compare-and-debit.
"""

from datetime import datetime

import structlog

from chaincare.claims.models import (
    DISPUTABLE_STATUSES,
    REVIEWABLE_STATUSES,
    AuthorizedProvider,
    Claim,
    ClaimStatus,
    InsurancePolicy,
    ValidationRule,
)
from chaincare.config import get_settings
from chaincare.core.capabilities import Capability
from chaincare.core.clock import Clock
from chaincare.core.events import EventBus
from chaincare.core.ids import NO_ID
from chaincare.core.ledger import Ledger, atomic
from chaincare.errors import (
    AlreadyExists,
    Expired,
    InsufficientCoverage,
    InvalidArgument,
    InvalidStateTransition,
    InvariantViolation,
    NotFound,
    Unauthorized,
)

logger = structlog.get_logger(__name__)


class ClaimsLedger(Ledger):
    """
    Policies, claims and auto-adjudication.

    `payments` is the payment ledger handle used by execute_payout; the
    claims ledger's own address must hold CLAIMS_COMPONENT there.
    """

    name = "claims"

    def __init__(
        self,
        address: str,
        admin: str,
        clock: Clock | None = None,
        events: EventBus | None = None,
        payments=None,
        emergency_approval_pct: int | None = None,
    ):
        super().__init__(address, admin, clock, events)
        self.payments = payments
        if emergency_approval_pct is None:
            emergency_approval_pct = get_settings().claims.emergency_approval_pct
        if not 0 <= emergency_approval_pct <= 100:
            raise InvalidArgument("Emergency approval percentage must be within 0..100")
        self.emergency_approval_pct = emergency_approval_pct

        self._policies: dict[int, InsurancePolicy] = {}
        self._policy_numbers: dict[str, int] = {}
        self._claims: dict[int, Claim] = {}
        self._rules: dict[str, ValidationRule] = {}
        self._providers: dict[str, AuthorizedProvider] = {}
        self._patient_claims: dict[str, list[int]] = {}
        self._provider_claims: dict[str, list[int]] = {}

    # =========================================================================
    # Policies
    # =========================================================================

    @atomic
    def create_policy(
        self,
        caller: str,
        policy_number: str,
        holder: str,
        coverage_amount: int,
        deductible: int,
        expiry_date: datetime,
        covered_conditions: list[str] | None = None,
    ) -> int:
        self.capabilities.require(caller, Capability.INSURER)
        if policy_number in self._policy_numbers:
            raise AlreadyExists(f"Policy {policy_number} already exists")
        if coverage_amount <= 0:
            raise InvalidArgument("Coverage amount must be positive")
        if deductible < 0:
            raise InvalidArgument("Deductible cannot be negative")
        if expiry_date <= self._now():
            raise InvalidArgument("Policy expiry must be in the future")

        policy = InsurancePolicy(
            id=self._next_id("policy"),
            policy_number=policy_number,
            holder=holder,
            insurer=caller,
            coverage_amount=coverage_amount,
            deductible=deductible,
            remaining_coverage=coverage_amount,
            expiry_date=expiry_date,
            covered_conditions=list(covered_conditions or []),
            created_at=self._now(),
        )
        self._policies[policy.id] = policy
        self._policy_numbers[policy_number] = policy.id
        self._commit("policy", policy, "policy.created", caller, holder=holder, coverage_amount=coverage_amount)
        logger.info("Policy created", policy_id=policy.id, policy_number=policy_number, insurer=caller)
        return policy.id

    @atomic
    def top_up_coverage(self, caller: str, policy_id: int, amount: int) -> int:
        """
        Restore remaining coverage, never beyond the coverage amount.

        Returns:
            The new remaining coverage
        """
        policy = self._lookup(self._policies, policy_id, "policy")
        if caller != policy.insurer:
            raise Unauthorized(f"{caller} is not the insurer of policy {policy_id}")
        if amount <= 0:
            raise InvalidArgument("Top-up amount must be positive")
        if policy.remaining_coverage + amount > policy.coverage_amount:
            raise InvariantViolation(
                "Top-up would exceed the coverage amount",
                detail={
                    "remaining_coverage": policy.remaining_coverage,
                    "coverage_amount": policy.coverage_amount,
                    "amount": amount,
                },
            )
        policy.remaining_coverage += amount
        self._commit("policy", policy, "policy.topped_up", caller, amount=amount)
        return policy.remaining_coverage

    @atomic
    def deactivate_policy(self, caller: str, policy_id: int) -> None:
        policy = self._lookup(self._policies, policy_id, "policy")
        if caller != policy.insurer and not self.capabilities.has(caller, Capability.ADMIN):
            raise Unauthorized(f"{caller} may not deactivate policy {policy_id}")
        if not policy.is_active:
            raise InvalidStateTransition(f"Policy {policy_id} already inactive")
        policy.is_active = False
        self._commit("policy", policy, "policy.deactivated", caller)

    # =========================================================================
    # Providers & rules
    # =========================================================================

    @atomic
    def authorize_provider(self, caller: str, provider: str, experience_months: int) -> None:
        self.capabilities.require(caller, Capability.ADMIN, Capability.INSURER)
        if experience_months < 0:
            raise InvalidArgument("Experience cannot be negative")
        record = AuthorizedProvider(
            address=provider,
            experience_months=experience_months,
            authorized_by=caller,
            authorized_at=self._now(),
        )
        self._providers[provider] = record
        self._commit("provider", record, "provider.authorized", caller, experience_months=experience_months)

    @atomic
    def deauthorize_provider(self, caller: str, provider: str) -> None:
        self.capabilities.require(caller, Capability.ADMIN, Capability.INSURER)
        record = self._lookup(self._providers, provider, "provider")
        record.is_active = False
        self._commit("provider", record, "provider.deauthorized", caller)

    @atomic
    def set_validation_rule(
        self,
        caller: str,
        treatment_code: str,
        min_experience_months: int,
        auto_approval_threshold: int,
        is_active: bool = True,
    ) -> None:
        self.capabilities.require(caller, Capability.ADMIN, Capability.INSURER)
        if not treatment_code:
            raise InvalidArgument("Treatment code is required")
        if min_experience_months < 0 or auto_approval_threshold < 0:
            raise InvalidArgument("Rule bounds cannot be negative")
        rule = ValidationRule(
            treatment_code=treatment_code,
            min_experience_months=min_experience_months,
            auto_approval_threshold=auto_approval_threshold,
            is_active=is_active,
            set_by=caller,
            updated_at=self._now(),
        )
        self._rules[treatment_code] = rule
        self._commit("validation_rule", rule, "rule.set", caller, entity_id=treatment_code)

    # =========================================================================
    # Claims
    # =========================================================================

    @atomic
    def submit_claim(
        self,
        caller: str,
        policy_number: str,
        amount: int,
        diagnosis: str,
        treatment_code: str,
        documents: list[str] | None = None,
        is_emergency: bool = False,
        medical_record_id: int = NO_ID,
    ) -> int:
        """
        Submit and adjudicate a claim.

        Returns:
            The claim id; read the claim back for the adjudication outcome
        """
        provider = self._providers.get(caller)
        if provider is None or not provider.is_active:
            raise Unauthorized(f"{caller} is not an authorized provider")
        policy_id = self._policy_numbers.get(policy_number)
        if policy_id is None:
            raise NotFound(f"Policy {policy_number} not found")
        policy = self._policies[policy_id]
        if not policy.is_active:
            raise InvalidStateTransition(f"Policy {policy_number} is inactive")
        if self._now() >= policy.expiry_date:
            raise Expired(f"Policy {policy_number} has expired", detail={"expiry_date": policy.expiry_date.isoformat()})
        if amount <= 0:
            raise InvalidArgument("Claim amount must be positive", detail={"amount": amount})

        claim = Claim(
            id=self._next_id("claim"),
            policy_id=policy.id,
            policy_number=policy_number,
            patient=policy.holder,
            provider=caller,
            insurer=policy.insurer,
            claimed_amount=amount,
            diagnosis=diagnosis,
            treatment_code=treatment_code,
            documents=list(documents or []),
            is_emergency=is_emergency,
            medical_record_id=medical_record_id,
            submitted_at=self._now(),
        )
        self._claims[claim.id] = claim
        self._patient_claims.setdefault(claim.patient, []).append(claim.id)
        self._provider_claims.setdefault(caller, []).append(claim.id)
        self._commit("claim", claim, "claim.submitted", caller, amount=amount, is_emergency=is_emergency)

        self._adjudicate(claim, policy, provider)
        return claim.id

    def _adjudicate(self, claim: Claim, policy: InsurancePolicy, provider: AuthorizedProvider) -> None:
        if claim.is_emergency:
            approved = min(claim.claimed_amount * self.emergency_approval_pct // 100, policy.remaining_coverage)
            if approved > 0:
                self._approve(claim, policy, approved, actor=self.address, notes="emergency fast path")
                return
            self._route_to_review(claim, "no coverage remaining for emergency approval")
            return

        rule = self._rules.get(claim.treatment_code)
        if rule is None or not rule.is_active:
            self._route_to_review(claim, "no validation rule for treatment code")
        elif provider.experience_months < rule.min_experience_months:
            self._route_to_review(claim, "provider experience below rule minimum")
        elif claim.claimed_amount <= rule.auto_approval_threshold and claim.claimed_amount <= policy.remaining_coverage:
            self._approve(claim, policy, claim.claimed_amount, actor=self.address, notes="auto-approved")
        else:
            self._route_to_review(claim, "amount above auto-approval threshold or remaining coverage")

    def _approve(self, claim: Claim, policy: InsurancePolicy, amount: int, actor: str, notes: str) -> None:
        """Compare-and-debit coverage, then approve. Caller holds the ledger lock."""
        if amount > claim.claimed_amount:
            raise InvalidArgument(
                "Approved amount exceeds claimed amount",
                detail={"approved_amount": amount, "claimed_amount": claim.claimed_amount},
            )
        if amount > policy.remaining_coverage:
            raise InsufficientCoverage(
                f"Policy {policy.policy_number} cannot cover {amount}",
                detail={"remaining_coverage": policy.remaining_coverage, "approved_amount": amount},
            )
        policy.remaining_coverage -= amount
        claim.approved_amount = amount
        claim.status = ClaimStatus.APPROVED
        claim.auto_adjudicated = actor == self.address
        claim.processed_at = self._now()
        claim.processed_by = actor
        claim.review_notes = notes

        self._commit("policy", policy, "policy.coverage_debited", actor, claim_id=claim.id, amount=amount)
        self._commit("claim", claim, "claim.approved", actor, approved_amount=amount)
        logger.info(
            "Claim approved",
            claim_id=claim.id,
            approved_amount=amount,
            remaining_coverage=policy.remaining_coverage,
            auto=claim.auto_adjudicated,
        )

    def _route_to_review(self, claim: Claim, reason: str) -> None:
        claim.status = ClaimStatus.UNDER_REVIEW
        claim.review_notes = reason
        self._commit("claim", claim, "claim.under_review", self.address, reason=reason)
        logger.info("Claim routed to manual review", claim_id=claim.id, reason=reason)

    @atomic
    def review_claim(
        self,
        caller: str,
        claim_id: int,
        approve: bool,
        approved_amount: int = 0,
        notes: str = "",
    ) -> None:
        claim = self._lookup(self._claims, claim_id, "claim")
        if caller != claim.insurer:
            raise Unauthorized(f"{caller} is not the insurer of claim {claim_id}")
        if claim.status not in REVIEWABLE_STATUSES:
            raise InvalidStateTransition(
                f"Claim {claim_id} is {claim.status.value}, not reviewable",
                detail={"status": claim.status.value},
            )

        if approve:
            if approved_amount <= 0:
                raise InvalidArgument("Approved amount must be positive")
            self._approve(claim, self._policies[claim.policy_id], approved_amount, actor=caller, notes=notes)
            return

        if not notes:
            raise InvalidArgument("A rejection reason is required")
        claim.status = ClaimStatus.REJECTED
        claim.processed_at = self._now()
        claim.processed_by = caller
        claim.review_notes = notes
        self._commit("claim", claim, "claim.rejected", caller, reason=notes)
        logger.info("Claim rejected", claim_id=claim_id, reason=notes)

    @atomic
    def dispute_claim(self, caller: str, claim_id: int, reason: str) -> None:
        """Status-only dispute; already-moved funds are not reversed."""
        claim = self._lookup(self._claims, claim_id, "claim")
        if caller not in (claim.patient, claim.provider):
            raise Unauthorized(f"{caller} may not dispute claim {claim_id}")
        if not reason:
            raise InvalidArgument("A dispute reason is required")
        if claim.status not in DISPUTABLE_STATUSES:
            raise InvalidStateTransition(
                f"Claim {claim_id} cannot be disputed from {claim.status.value}",
                detail={"status": claim.status.value},
            )
        claim.status = ClaimStatus.DISPUTED
        claim.dispute_reason = reason
        self._commit("claim", claim, "claim.disputed", caller, reason=reason)
        logger.warning("Claim disputed", claim_id=claim_id, by=caller)

    # =========================================================================
    # Settlement
    # =========================================================================

    @atomic
    def execute_payout(self, caller: str, claim_id: int) -> int:
        """
        Move the approved amount from insurer to provider.

        Leaves the claim APPROVED; mark_claim_as_paid records the outcome.

        Returns:
            The payout payment id
        """
        self.capabilities.require(caller, Capability.CLAIM_SETTLER)
        claim = self._lookup(self._claims, claim_id, "claim")
        if claim.status != ClaimStatus.APPROVED:
            raise InvalidStateTransition(
                f"Claim {claim_id} is {claim.status.value}, not approved",
                detail={"status": claim.status.value},
            )
        if self.payments is None:
            raise InvalidStateTransition("No payment ledger configured")
        payment_id = self.payments.execute_claim_payout(
            self.address,
            claim_id,
            payer=claim.insurer,
            recipient=claim.provider,
            amount=claim.approved_amount,
        )
        self._publish("claim", claim_id, "claim.payout_executed", caller, payment_id=payment_id)
        return payment_id

    @atomic
    def mark_claim_as_paid(self, caller: str, claim_id: int, payment_id: int) -> None:
        self.capabilities.require(caller, Capability.CLAIM_SETTLER)
        claim = self._lookup(self._claims, claim_id, "claim")
        if claim.status == ClaimStatus.PAID and claim.payment_id == payment_id:
            return
        if claim.status != ClaimStatus.APPROVED:
            raise InvalidStateTransition(
                f"Claim {claim_id} is {claim.status.value}, not approved",
                detail={"status": claim.status.value},
            )
        if self.payments is not None:
            recorded = self.payments.get_claim_payment(claim_id)
            if recorded != payment_id:
                raise InvariantViolation(
                    f"Payment {payment_id} is not the payout of claim {claim_id}",
                    detail={"recorded_payment_id": recorded, "payment_id": payment_id},
                )
        claim.status = ClaimStatus.PAID
        claim.payment_id = payment_id
        claim.paid_at = self._now()
        self._commit("claim", claim, "claim.paid", caller, payment_id=payment_id)
        logger.info("Claim marked as paid", claim_id=claim_id, payment_id=payment_id)

    # =========================================================================
    # Reads
    # =========================================================================

    def _is_privileged(self, caller: str) -> bool:
        return self.capabilities.has_any(caller, Capability.ADMIN, Capability.CLAIM_SETTLER)

    def get_claim(self, caller: str, claim_id: int) -> Claim:
        with self._lock:
            claim = self._lookup(self._claims, claim_id, "claim")
            if caller not in (claim.patient, claim.provider, claim.insurer) and not self._is_privileged(caller):
                raise Unauthorized(f"{caller} may not view claim {claim_id}")
            return self._view(claim)

    def get_policy(self, caller: str, policy_id: int) -> InsurancePolicy:
        with self._lock:
            policy = self._lookup(self._policies, policy_id, "policy")
            if caller not in (policy.holder, policy.insurer) and not self._is_privileged(caller):
                raise Unauthorized(f"{caller} may not view policy {policy_id}")
            return self._view(policy)

    def find_policy(self, policy_number: str) -> int:
        with self._lock:
            policy_id = self._policy_numbers.get(policy_number)
            if policy_id is None:
                raise NotFound(f"Policy {policy_number} not found")
            return policy_id

    def get_patient_claims(self, caller: str, patient: str) -> list[int]:
        with self._lock:
            if caller != patient and not self._is_privileged(caller):
                raise Unauthorized(f"{caller} may not list claims of {patient}")
            return list(self._patient_claims.get(patient, []))

    def get_provider_claims(self, caller: str, provider: str) -> list[int]:
        with self._lock:
            if caller != provider and not self._is_privileged(caller):
                raise Unauthorized(f"{caller} may not list claims of {provider}")
            return list(self._provider_claims.get(provider, []))

    def get_validation_rule(self, treatment_code: str) -> ValidationRule:
        with self._lock:
            return self._view(self._lookup(self._rules, treatment_code, "validation_rule"))

    def get_provider(self, provider: str) -> AuthorizedProvider:
        with self._lock:
            return self._view(self._lookup(self._providers, provider, "provider"))
