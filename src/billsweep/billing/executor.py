"""
Billing Executor

Charges one resource for the whole hours elapsed since its checkpoint.

State machine:

    Selected -> HoursComputed -> NoChargeDue
                              -> RateComputed -> InsufficientFunds
                                              -> DebitFailed
                                              -> Billed

Everything runs in a single database transaction. The resource row is
re-read under a lock first, so a sweep that lost a race sees the checkpoint
the winner committed and finds nothing to charge. The checkpoint moves only
on Billed, and only to `period_start + hours`, never to "now".

Debits are never retried here. A failed pass leaves the checkpoint where it
was and the next sweep collects the same hours.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
import structlog

from ..core.clock import Clock, SystemClock, format_instant
from ..core.errors import FailureReason
from ..core.rates import RateCalculator
from ..core.resources import BillableResource, BillableResourceSource, ResourceKind
from ..persistence.database import Database
from .ledger import LedgerWriter, PendingCharge
from .wallet import PaymentTransactionLookup, WalletGateway, WalletGatewayError

logger = structlog.get_logger()


class ChargeState(Enum):
    """Terminal states of one charge attempt."""
    NO_CHARGE_DUE = "no_charge_due"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    DEBIT_FAILED = "debit_failed"
    BILLED = "billed"


@dataclass
class ChargeOutcome:
    """Result of one executor run for one resource."""
    resource_id: str
    kind: ResourceKind
    owner_id: str
    state: ChargeState
    hours: int = 0
    amount: Decimal = Decimal("0")
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    reason: Optional[FailureReason] = None
    ledger_entry_id: Optional[str] = None
    payment_reference: Optional[str] = None
    balance_after: Optional[Decimal] = None
    low_balance: bool = False
    label: str = ""

    @property
    def billed(self) -> bool:
        return self.state == ChargeState.BILLED

    @property
    def failed(self) -> bool:
        return self.state in (ChargeState.INSUFFICIENT_FUNDS, ChargeState.DEBIT_FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource_id": self.resource_id,
            "kind": self.kind.value,
            "owner_id": self.owner_id,
            "state": self.state.value,
            "hours": self.hours,
            "amount": str(self.amount),
            "period_start": format_instant(self.period_start),
            "period_end": format_instant(self.period_end),
            "reason": self.reason.value if self.reason else None,
            "ledger_entry_id": self.ledger_entry_id,
            "payment_reference": self.payment_reference,
            "balance_after": str(self.balance_after) if self.balance_after is not None else None,
            "low_balance": self.low_balance,
            "label": self.label,
        }


class BillingExecutor:
    """
    Stateless per-resource charge runner.

    All collaborators are injected; the executor keeps no state between
    calls and is safe to share across worker threads.
    """

    def __init__(
        self,
        db: Database,
        ledger: LedgerWriter,
        wallet: WalletGateway,
        rates: RateCalculator,
        payment_lookup: Optional[PaymentTransactionLookup] = None,
        clock: Optional[Clock] = None,
        low_balance_threshold: Optional[Decimal] = None,
    ):
        self.db = db
        self.ledger = ledger
        self.wallet = wallet
        self.rates = rates
        self.payment_lookup = payment_lookup
        self.clock = clock or SystemClock()
        self.low_balance_threshold = low_balance_threshold

    def execute(self, source: BillableResourceSource, resource_id: str) -> ChargeOutcome:
        """
        Run one charge attempt for `resource_id`.

        The row is read and parsed only under the lock, so a malformed row
        fails this resource alone. Raises only on unexpected errors, after
        rolling the transaction back.
        """
        with self.db.transaction():
            return self._charge(source, resource_id)

    def _charge(self, source: BillableResourceSource, resource_id: str) -> ChargeOutcome:
        now = self.clock.now()

        resource = source.lock(resource_id)
        if resource is None or resource.is_terminated:
            logger.info("resource_not_billable", resource_id=resource_id, kind=source.kind.value)
            return ChargeOutcome(
                resource_id=resource_id,
                kind=source.kind,
                owner_id=resource.owner_id if resource else "",
                state=ChargeState.NO_CHARGE_DUE,
                label=resource.label if resource else "",
            )

        hours = resource.elapsed_hours(now)
        if hours < 1:
            return self._outcome(resource, ChargeState.NO_CHARGE_DUE)

        components = self.rates.calculate(resource.kind.value, resource.rate_inputs, resource_id=resource.id)
        charge = PendingCharge.for_usage(resource, hours, components)

        balance = self.wallet.get_balance(resource.owner_id)
        if balance is None:
            entry = self.ledger.record_failed(charge, FailureReason.WALLET_MISSING)
            return self._outcome(resource, ChargeState.DEBIT_FAILED, charge, FailureReason.WALLET_MISSING, entry.id)

        if balance < charge.amount:
            entry = self.ledger.record_failed(charge, FailureReason.INSUFFICIENT_BALANCE)
            return self._outcome(
                resource, ChargeState.INSUFFICIENT_FUNDS, charge, FailureReason.INSUFFICIENT_BALANCE, entry.id
            )

        reference: Optional[str] = None
        if charge.amount > 0:
            try:
                reference = self.wallet.debit(resource.owner_id, charge.amount, charge.description)
            except WalletGatewayError as e:
                logger.error("wallet_debit_error", resource_id=resource.id, owner_id=resource.owner_id, error=str(e))
                reference = None

            if not reference:
                entry = self.ledger.record_failed(charge, FailureReason.WALLET_DEDUCTION_FAILED)
                return self._outcome(
                    resource, ChargeState.DEBIT_FAILED, charge, FailureReason.WALLET_DEDUCTION_FAILED, entry.id
                )

            reference = self._lookup_payment(resource, charge) or reference

        entry = self.ledger.record_billed(charge, source=source, payment_reference=reference)

        outcome = self._outcome(resource, ChargeState.BILLED, charge, ledger_entry_id=entry.id)
        outcome.payment_reference = reference
        outcome.balance_after = balance - charge.amount
        if self.low_balance_threshold is not None and outcome.balance_after <= self.low_balance_threshold:
            outcome.low_balance = True
            logger.warning(
                "wallet_balance_low",
                owner_id=resource.owner_id,
                balance=str(outcome.balance_after),
                threshold=str(self.low_balance_threshold),
            )
        return outcome

    def _lookup_payment(self, resource: BillableResource, charge: PendingCharge) -> Optional[str]:
        """Best-effort link to the gateway's payment transaction."""
        if self.payment_lookup is None:
            return None
        try:
            # A failed statement must not poison the charge's transaction
            with self.db.savepoint():
                return self.payment_lookup.find_recent_transaction(resource.owner_id, charge.description)
        except Exception as e:
            logger.warning(
                "payment_lookup_failed",
                resource_id=resource.id,
                owner_id=resource.owner_id,
                error=str(e),
            )
            return None

    def _outcome(
        self,
        resource: BillableResource,
        state: ChargeState,
        charge: Optional[PendingCharge] = None,
        reason: Optional[FailureReason] = None,
        ledger_entry_id: Optional[str] = None,
    ) -> ChargeOutcome:
        outcome = ChargeOutcome(
            resource_id=resource.id,
            kind=resource.kind,
            owner_id=resource.owner_id,
            state=state,
            reason=reason,
            ledger_entry_id=ledger_entry_id,
            label=resource.label,
        )
        if charge is not None:
            outcome.hours = charge.hours
            outcome.amount = charge.amount
            outcome.period_start = charge.period_start
            outcome.period_end = charge.period_end
        return outcome
