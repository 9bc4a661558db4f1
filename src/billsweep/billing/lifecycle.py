"""
Lifecycle Hooks

Entry points called synchronously by the provisioning flow.

- Creation charges the first hour right away. On success the checkpoint is
  stamped with the creation-time instant; on failure it stays empty so the
  next sweep bills from `created_at`. Billing problems are reported, never
  raised: provisioning must not be blocked by them.
- Termination stamps the checkpoint and `terminated_at`, after which no sweep
  selects the resource again. Stopping (powering off) is not termination;
  reserved capacity keeps accruing until the resource is deleted.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
import structlog

from ..core.clock import Clock, SystemClock, format_instant
from ..core.errors import FailureReason, ResourceNotFoundError, UnknownResourceKindError
from ..core.rates import RateCalculator
from ..core.resources import BillableResourceSource, ResourceKind
from ..persistence.database import Database
from .ledger import LedgerWriter, PendingCharge
from .wallet import WalletGateway, WalletGatewayError

logger = structlog.get_logger()


@dataclass
class CreationChargeResult:
    """Outcome of a first-hour charge."""
    resource_id: str
    kind: ResourceKind
    charged: bool
    amount: Decimal = Decimal("0")
    checkpoint: Optional[datetime] = None
    reason: Optional[FailureReason] = None
    payment_reference: Optional[str] = None
    already_billed: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource_id": self.resource_id,
            "kind": self.kind.value,
            "charged": self.charged,
            "amount": str(self.amount),
            "checkpoint": format_instant(self.checkpoint),
            "reason": self.reason.value if self.reason else None,
            "payment_reference": self.payment_reference,
            "already_billed": self.already_billed,
            "error": self.error,
        }


class LifecycleHooks:
    """Creation and termination billing hooks."""

    def __init__(
        self,
        db: Database,
        catalogs: Dict[ResourceKind, BillableResourceSource],
        wallet: WalletGateway,
        ledger: LedgerWriter,
        rates: RateCalculator,
        clock: Optional[Clock] = None,
    ):
        self.db = db
        self.catalogs = catalogs
        self.wallet = wallet
        self.ledger = ledger
        self.rates = rates
        self.clock = clock or SystemClock()

    def _catalog(self, kind: ResourceKind) -> BillableResourceSource:
        catalog = self.catalogs.get(kind)
        if catalog is None:
            raise UnknownResourceKindError(f"No catalog registered for {kind.value}")
        return catalog

    def on_resource_created(self, kind: ResourceKind, resource_id: str) -> CreationChargeResult:
        """
        Charge the first hour of a freshly provisioned resource.

        Raises ResourceNotFoundError if the catalog has no such resource;
        every billing failure is returned in the result instead.
        """
        catalog = self._catalog(kind)
        if catalog.get(resource_id) is None:
            raise ResourceNotFoundError(kind.value, resource_id)

        try:
            with self.db.transaction():
                return self._charge_first_hour(catalog, kind, resource_id)
        except Exception as e:
            logger.error("creation_billing_error", kind=kind.value, resource_id=resource_id, error=str(e))
            return CreationChargeResult(
                resource_id=resource_id,
                kind=kind,
                charged=False,
                reason=FailureReason.UNEXPECTED_ERROR,
                error=str(e),
            )

    def _charge_first_hour(
        self,
        catalog: BillableResourceSource,
        kind: ResourceKind,
        resource_id: str,
    ) -> CreationChargeResult:
        now = self.clock.now()
        resource = catalog.lock(resource_id)
        if resource is None:
            raise ResourceNotFoundError(kind.value, resource_id)

        if resource.checkpoint is not None:
            # A sweep or an earlier creation call already billed it
            logger.info("creation_already_billed", kind=kind.value, resource_id=resource_id)
            return CreationChargeResult(
                resource_id=resource_id,
                kind=kind,
                charged=False,
                checkpoint=resource.checkpoint,
                already_billed=True,
            )

        components = self.rates.calculate(kind.value, resource.rate_inputs, resource_id=resource_id)
        charge = PendingCharge.for_creation(resource, components, now)
        logger.info(
            "creation_billing_started",
            kind=kind.value,
            resource_id=resource_id,
            hourly_rate=str(components.total_hourly),
        )

        reason: Optional[FailureReason] = None
        reference: Optional[str] = None

        balance = self.wallet.get_balance(resource.owner_id)
        if balance is None:
            reason = FailureReason.WALLET_MISSING
        elif balance < charge.amount:
            reason = FailureReason.INSUFFICIENT_BALANCE
        elif charge.amount > 0:
            try:
                reference = self.wallet.debit(resource.owner_id, charge.amount, charge.description)
            except WalletGatewayError as e:
                logger.error("wallet_debit_error", resource_id=resource_id, error=str(e))
            if not reference:
                reason = FailureReason.WALLET_DEDUCTION_FAILED

        if reason is not None:
            self.ledger.record_failed(charge, reason)
            return CreationChargeResult(
                resource_id=resource_id,
                kind=kind,
                charged=False,
                amount=charge.amount,
                reason=reason,
            )

        catalog.stamp_checkpoint(resource_id, now)
        self.ledger.record_billed(charge, payment_reference=reference)

        logger.info("creation_billed", kind=kind.value, resource_id=resource_id, amount=str(charge.amount))
        return CreationChargeResult(
            resource_id=resource_id,
            kind=kind,
            charged=True,
            amount=charge.amount,
            checkpoint=now,
            payment_reference=reference,
        )

    def on_resource_terminated(self, kind: ResourceKind, resource_id: str) -> bool:
        """
        Stop accrual for a deleted resource. Best-effort: failures are logged
        and reported as False.
        """
        now = self.clock.now()
        try:
            catalog = self._catalog(kind)
            with self.db.transaction():
                stamped = catalog.stamp_checkpoint(resource_id, now, terminate=True)
        except Exception as e:
            logger.warning("termination_stamp_failed", kind=kind.value, resource_id=resource_id, error=str(e))
            return False

        if not stamped:
            logger.warning("termination_resource_missing", kind=kind.value, resource_id=resource_id)
            return False

        logger.info("billing_stopped", kind=kind.value, resource_id=resource_id, at=now.isoformat())
        return True
