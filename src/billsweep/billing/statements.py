"""
Billing Statements

Read-only views over the ledger and the resource catalogs: owner history,
a spend summary with a monthly estimate, per-resource spend, a pre-flight
balance check and timeline verification.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from ..core.clock import Clock, SystemClock, format_instant
from ..core.errors import ResourceNotFoundError, UnknownResourceKindError
from ..core.rates import HOURS_PER_MONTH, RateCalculator, round_amount, to_decimal
from ..core.resources import BillableResourceSource, ResourceKind
from ..persistence.models import LedgerEntry
from ..persistence.repository import LedgerRepository
from .wallet import WalletGateway


@dataclass
class BillingSummary:
    owner_id: str
    spent_this_month: Decimal
    spent_all_time: Decimal
    active_resources: Dict[str, int]
    monthly_estimate: Decimal
    billed_entries: int = 0
    failed_entries: int = 0
    generated_at: Optional[datetime] = None

    @property
    def active_total(self) -> int:
        return sum(self.active_resources.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner_id": self.owner_id,
            "spent_this_month": str(self.spent_this_month),
            "spent_all_time": str(self.spent_all_time),
            "active_resources": dict(self.active_resources),
            "active_total": self.active_total,
            "monthly_estimate": str(self.monthly_estimate),
            "billed_entries": self.billed_entries,
            "failed_entries": self.failed_entries,
            "generated_at": format_instant(self.generated_at),
        }


@dataclass
class TimelineReport:
    resource_id: str
    valid: bool
    billed_entries: int
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource_id": self.resource_id,
            "valid": self.valid,
            "billed_entries": self.billed_entries,
            "error": self.error,
        }


@dataclass
class ResourceSpending:
    resource_id: str
    kind: ResourceKind
    spent_this_month: Decimal
    spent_all_time: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource_id": self.resource_id,
            "kind": self.kind.value,
            "spent_this_month": str(self.spent_this_month),
            "spent_all_time": str(self.spent_all_time),
        }


@dataclass
class BalanceCheck:
    """Whether an owner can cover the next `hours` of a resource."""
    owner_id: str
    resource_id: str
    balance: Decimal
    required: Decimal
    wallet_found: bool = True

    @property
    def sufficient(self) -> bool:
        return self.wallet_found and self.balance >= self.required

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner_id": self.owner_id,
            "resource_id": self.resource_id,
            "sufficient": self.sufficient,
            "balance": str(self.balance),
            "required": str(self.required),
            "wallet_found": self.wallet_found,
        }


def month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class BillingStatements:
    """Owner-facing reporting."""

    def __init__(
        self,
        repository: LedgerRepository,
        catalogs: Dict[ResourceKind, BillableResourceSource],
        rates: RateCalculator,
        clock: Optional[Clock] = None,
        hours_per_month: Decimal = HOURS_PER_MONTH,
        wallet: Optional[WalletGateway] = None,
    ):
        self.repository = repository
        self.catalogs = catalogs
        self.rates = rates
        self.clock = clock or SystemClock()
        self.hours_per_month = to_decimal(hours_per_month)
        self.wallet = wallet

    def history(self, owner_id: str, limit: int = 50, offset: int = 0) -> List[LedgerEntry]:
        """Ledger entries for an owner, newest first."""
        limit = max(1, min(int(limit), 500))
        offset = max(0, int(offset))
        return self.repository.history(owner_id, limit=limit, offset=offset)

    def summary(self, owner_id: str) -> BillingSummary:
        now = self.clock.now()

        active: Dict[str, int] = {}
        hourly = Decimal("0")
        for kind, catalog in self.catalogs.items():
            resources = catalog.list_active_for_owner(owner_id)
            active[kind.value] = len(resources)
            for resource in resources:
                hourly += self.rates.calculate(kind.value, resource.rate_inputs, resource_id=resource.id).total_hourly

        counts = self.repository.summary_row(owner_id)
        return BillingSummary(
            owner_id=owner_id,
            spent_this_month=self.repository.billed_total(owner_id, since=month_start(now)),
            spent_all_time=self.repository.billed_total(owner_id),
            active_resources=active,
            monthly_estimate=round_amount(hourly * self.hours_per_month),
            billed_entries=counts["billed_entries"],
            failed_entries=counts["failed_entries"],
            generated_at=now,
        )

    def verify_timeline(self, resource_id: str) -> TimelineReport:
        valid, error, count = self.repository.verify_timeline(resource_id)
        return TimelineReport(resource_id=resource_id, valid=valid, billed_entries=count, error=error)

    def _catalog(self, kind: ResourceKind) -> BillableResourceSource:
        catalog = self.catalogs.get(kind)
        if catalog is None:
            raise UnknownResourceKindError(f"No catalog registered for {kind.value}")
        return catalog

    def resource_spending(self, kind: ResourceKind, resource_id: str) -> ResourceSpending:
        """Billed spend of one resource; terminated resources keep their history."""
        self._catalog(kind)
        since = month_start(self.clock.now())
        return ResourceSpending(
            resource_id=resource_id,
            kind=kind,
            spent_this_month=self.repository.resource_billed_total(kind.value, resource_id, since=since),
            spent_all_time=self.repository.resource_billed_total(kind.value, resource_id),
        )

    def check_sufficient_balance(self, kind: ResourceKind, resource_id: str, hours: int = 1) -> BalanceCheck:
        """
        Compare the owner's balance with the cost of the next `hours` hours.

        Advisory only: sweeps and creation charges make their own decision
        under lock.
        """
        resource = self._catalog(kind).get(resource_id)
        if resource is None:
            raise ResourceNotFoundError(kind.value, resource_id)

        components = self.rates.calculate(kind.value, resource.rate_inputs, resource_id=resource.id)
        balance = self.wallet.get_balance(resource.owner_id) if self.wallet is not None else None
        return BalanceCheck(
            owner_id=resource.owner_id,
            resource_id=resource.id,
            balance=balance if balance is not None else Decimal("0"),
            required=components.amount_for(max(1, int(hours))),
            wallet_found=balance is not None,
        )
