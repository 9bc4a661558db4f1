"""
Ledger Writer

Appends one immutable ledger entry per charge attempt and, for billed usage,
advances the resource checkpoint to the end of the billed period. Both writes
happen in the caller's transaction, so an entry and its checkpoint move
together or not at all.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional
import structlog

from ..core.clock import Clock, SystemClock
from ..core.errors import FailureReason
from ..core.rates import RateComponents
from ..core.resources import BillableResource, BillableResourceSource
from ..persistence.models import EntryType, LedgerEntry, LedgerOutcome
from ..persistence.repository import LedgerRepository

logger = structlog.get_logger()


@dataclass
class PendingCharge:
    """A priced but not yet settled charge for one resource."""
    resource: BillableResource
    hours: int
    period_start: datetime
    period_end: datetime
    components: RateComponents
    amount: Decimal
    description: str
    entry_type: EntryType = EntryType.USAGE

    @classmethod
    def for_usage(cls, resource: BillableResource, hours: int, components: RateComponents) -> "PendingCharge":
        period_start = resource.billing_anchor
        return cls(
            resource=resource,
            hours=hours,
            period_start=period_start,
            period_end=period_start + timedelta(hours=hours),
            components=components,
            amount=components.amount_for(hours),
            description=f"{resource.kind.display_name} Hourly Billing - {resource.label or resource.id} ({hours}h)",
        )

    @classmethod
    def for_creation(cls, resource: BillableResource, components: RateComponents, now: datetime) -> "PendingCharge":
        # Creation charges sit at a single instant, outside the usage timeline
        return cls(
            resource=resource,
            hours=1,
            period_start=now,
            period_end=now,
            components=components,
            amount=components.amount_for(1),
            description=f"{resource.kind.display_name} Creation - {resource.label or resource.id} (Initial Hour)",
            entry_type=EntryType.CREATION,
        )


class LedgerWriter:
    """Writes ledger entries and the checkpoint advance that goes with a billed one."""

    def __init__(self, repository: LedgerRepository, clock: Optional[Clock] = None):
        self.repository = repository
        self.clock = clock or SystemClock()

    def _entry(
        self,
        charge: PendingCharge,
        outcome: LedgerOutcome,
        reason: Optional[FailureReason] = None,
        payment_reference: Optional[str] = None,
    ) -> LedgerEntry:
        entry = LedgerEntry(
            resource_id=charge.resource.id,
            resource_kind=charge.resource.kind.value,
            owner_id=charge.resource.owner_id,
            period_start=charge.period_start,
            period_end=charge.period_end,
            hours_charged=charge.hours,
            rate_components=charge.components,
            amount=charge.amount,
            outcome=outcome,
            failure_reason=reason,
            payment_reference=payment_reference,
            description=charge.description,
            entry_type=charge.entry_type,
            created_at=self.clock.now(),
        )
        if not entry.period_consistent:
            raise ValueError(
                f"{entry.entry_type.value} entry for {entry.resource_id} covers "
                f"{entry.period_start.isoformat()}..{entry.period_end.isoformat()} but charges {entry.hours_charged}h"
            )
        return entry

    def record_failed(self, charge: PendingCharge, reason: FailureReason) -> LedgerEntry:
        """Append a failed entry. The checkpoint is left alone."""
        entry = self.repository.create(self._entry(charge, LedgerOutcome.FAILED, reason=reason))
        logger.warning(
            "charge_failed",
            resource_id=charge.resource.id,
            kind=charge.resource.kind.value,
            owner_id=charge.resource.owner_id,
            reason=reason.value,
            hours=charge.hours,
            amount=str(charge.amount),
            entry_id=entry.id,
        )
        return entry

    def record_billed(
        self,
        charge: PendingCharge,
        source: Optional[BillableResourceSource] = None,
        payment_reference: Optional[str] = None,
    ) -> LedgerEntry:
        """
        Append a billed entry.

        For usage charges the checkpoint of `source` advances to the period
        end, which is always the previous checkpoint plus whole hours.
        """
        entry = self.repository.create(
            self._entry(charge, LedgerOutcome.BILLED, payment_reference=payment_reference)
        )

        if charge.entry_type == EntryType.USAGE:
            if source is None:
                raise ValueError("A billed usage entry needs the resource source to advance its checkpoint")
            source.advance_checkpoint(charge.resource.id, charge.period_end)

        logger.info(
            "charge_recorded",
            resource_id=charge.resource.id,
            kind=charge.resource.kind.value,
            entry_type=charge.entry_type.value,
            hours=charge.hours,
            amount=str(charge.amount),
            period_end=charge.period_end.isoformat(),
            entry_id=entry.id,
        )
        return entry
