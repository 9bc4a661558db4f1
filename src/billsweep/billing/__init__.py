"""
BILLSWEEP - Billing Module

Hourly usage billing against prepaid wallets.
- Sweeps due resources and charges whole elapsed hours
- Charges the first hour when a resource is provisioned
- Stops accrual when a resource is deleted
- Append-only ledger with statements and timeline verification
"""

from dataclasses import dataclass
from typing import Dict, Optional

from ..config import BillingConfig
from ..core.clock import Clock, SystemClock
from ..core.rates import RateCalculator
from ..core.resources import BillableResourceSource, ResourceKind
from ..persistence.catalog import default_catalogs
from ..persistence.database import Database, get_database
from ..persistence.repository import LedgerRepository
from .executor import BillingExecutor, ChargeOutcome, ChargeState
from .ledger import LedgerWriter, PendingCharge
from .lifecycle import CreationChargeResult, LifecycleHooks
from .statements import BalanceCheck, BillingStatements, BillingSummary, ResourceSpending, TimelineReport
from .sweep import ResourceError, SweepOrchestrator, SweepResult
from .wallet import (
    PaymentTransactionLookup,
    SqlPaymentTransactionLookup,
    SqlWalletGateway,
    WalletGateway,
    WalletGatewayError,
)


@dataclass
class BillingEngine:
    """Wired billing services sharing one database and clock."""
    config: BillingConfig
    db: Database
    clock: Clock
    rates: RateCalculator
    catalogs: Dict[ResourceKind, BillableResourceSource]
    wallet: WalletGateway
    repository: LedgerRepository
    ledger: LedgerWriter
    executor: BillingExecutor
    orchestrator: SweepOrchestrator
    lifecycle: LifecycleHooks
    statements: BillingStatements


def build_engine(
    config: Optional[BillingConfig] = None,
    db: Optional[Database] = None,
    clock: Optional[Clock] = None,
    wallet: Optional[WalletGateway] = None,
    payment_lookup: Optional[PaymentTransactionLookup] = None,
) -> BillingEngine:
    """Build every billing service from configuration."""
    config = config or BillingConfig.from_env()
    db = db or get_database()
    clock = clock or SystemClock()
    rates = config.rate_calculator()
    catalogs = default_catalogs(db)
    wallet = wallet or SqlWalletGateway(db, clock)
    if payment_lookup is None:
        payment_lookup = SqlPaymentTransactionLookup(db)

    repository = LedgerRepository(db)
    ledger = LedgerWriter(repository, clock)
    executor = BillingExecutor(
        db,
        ledger,
        wallet,
        rates,
        payment_lookup=payment_lookup,
        clock=clock,
        low_balance_threshold=config.low_balance_threshold,
    )

    return BillingEngine(
        config=config,
        db=db,
        clock=clock,
        rates=rates,
        catalogs=catalogs,
        wallet=wallet,
        repository=repository,
        ledger=ledger,
        executor=executor,
        orchestrator=SweepOrchestrator(
            db,
            catalogs,
            executor,
            clock=clock,
            billing_interval=config.billing_interval,
            max_workers=config.max_workers,
        ),
        lifecycle=LifecycleHooks(db, catalogs, wallet, ledger, rates, clock),
        statements=BillingStatements(repository, catalogs, rates, clock, config.hours_per_month, wallet=wallet),
    )


__all__ = [
    "BillingEngine",
    "build_engine",
    "BillingExecutor",
    "ChargeOutcome",
    "ChargeState",
    "LedgerWriter",
    "PendingCharge",
    "CreationChargeResult",
    "LifecycleHooks",
    "BalanceCheck",
    "BillingStatements",
    "BillingSummary",
    "ResourceSpending",
    "TimelineReport",
    "ResourceError",
    "SweepOrchestrator",
    "SweepResult",
    "PaymentTransactionLookup",
    "SqlPaymentTransactionLookup",
    "SqlWalletGateway",
    "WalletGateway",
    "WalletGatewayError",
]
