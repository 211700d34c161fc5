"""
Network Assembly

Builds every ledger on one clock and one event bus, wires the typed
handles into the orchestrator and grants the inter-component
capabilities:
- claims ledger address  -> CLAIMS_COMPONENT on payments
- orchestrator address   -> CLAIM_SETTLER on claims
- orchestrator address   -> PAYMENT_PROCESSOR on payments
"""

from dataclasses import dataclass

import structlog

from chaincare.claims.ledger import ClaimsLedger
from chaincare.config import Settings, get_settings
from chaincare.core.capabilities import Capability
from chaincare.core.clock import Clock, SystemClock
from chaincare.core.events import EventBus
from chaincare.identity.registry import IdentityRegistry
from chaincare.orchestrator.hub import CareOrchestrator
from chaincare.orchestrator.interfaces import ServiceRegistry
from chaincare.payments.ledger import PaymentLedger
from chaincare.payments.tokens import StablecoinToken
from chaincare.records.store import RecordStore
from chaincare.scheduling.ledger import SchedulingLedger
from chaincare.supply.ledger import SupplyChainLedger

logger = structlog.get_logger(__name__)


@dataclass
class CareNetwork:
    """All components of one deployment."""
    settings: Settings
    clock: Clock
    events: EventBus
    token: StablecoinToken
    identity: IdentityRegistry
    records: RecordStore
    supply: SupplyChainLedger
    scheduling: SchedulingLedger
    claims: ClaimsLedger
    payments: PaymentLedger
    orchestrator: CareOrchestrator

    @property
    def admin(self) -> str:
        return self.settings.ledger.admin_address

    @property
    def ledgers(self) -> list:
        return [self.identity, self.records, self.supply, self.scheduling, self.claims, self.payments]


def build_network(settings: Settings | None = None, clock: Clock | None = None) -> CareNetwork:
    """
    Deploy and wire a complete network.

    Args:
        settings: Defaults to get_settings()
        clock: Defaults to SystemClock(); tests pass a ManualClock

    Returns:
        CareNetwork with every component and the default stablecoin
    """
    settings = settings or get_settings()
    clock = clock or SystemClock()
    events = EventBus()
    admin = settings.ledger.admin_address

    token = StablecoinToken(
        settings.payments.default_stablecoin,
        decimals=settings.payments.stablecoin_decimals,
        issuer=admin,
    )

    identity = IdentityRegistry(
        "identity-registry",
        admin,
        clock,
        events,
        validity_days=settings.identity.verification_validity_days,
    )
    records = RecordStore("record-store", admin, clock, events, identity=identity)
    supply = SupplyChainLedger("supply-chain", admin, clock, events)
    scheduling = SchedulingLedger("scheduling", admin, clock, events)
    payments = PaymentLedger(
        "payment-ledger",
        admin,
        clock,
        events,
        tokens=[token],
        fee_collector=settings.payments.fee_collector,
        fee_rate_bps=settings.payments.fee_rate_bps,
    )
    claims = ClaimsLedger(
        "claims-ledger",
        admin,
        clock,
        events,
        payments=payments,
        emergency_approval_pct=settings.claims.emergency_approval_pct,
    )

    services = ServiceRegistry(
        identity=identity,
        records=records,
        claims=claims,
        payments=payments,
        scheduling=scheduling,
        supply=supply,
    )
    orchestrator = CareOrchestrator(settings.ledger.orchestrator_address, admin, services, clock, events)

    payments.grant_capability(admin, claims.address, Capability.CLAIMS_COMPONENT)
    payments.grant_capability(admin, orchestrator.address, Capability.PAYMENT_PROCESSOR)
    claims.grant_capability(admin, orchestrator.address, Capability.CLAIM_SETTLER)

    logger.info(
        "Network deployed",
        admin=admin,
        orchestrator=orchestrator.address,
        token=token.symbol,
        fee_rate_bps=payments.fee_rate_bps,
    )
    return CareNetwork(
        settings=settings,
        clock=clock,
        events=events,
        token=token,
        identity=identity,
        records=records,
        supply=supply,
        scheduling=scheduling,
        claims=claims,
        payments=payments,
        orchestrator=orchestrator,
    )
