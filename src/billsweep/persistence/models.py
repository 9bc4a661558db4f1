"""
Data Models for Persistence Layer

Ledger entries as stored in `billing_ledger`. Entries are write-once: there
is no update path for them anywhere in the code base.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
import json
import uuid

from ..core.clock import format_instant, parse_instant
from ..core.errors import FailureReason
from ..core.rates import RateComponents, to_decimal


class LedgerOutcome(Enum):
    BILLED = "billed"
    FAILED = "failed"


class EntryType(Enum):
    """USAGE entries form the per-resource timeline; CREATION records first-hour charges."""
    USAGE = "usage"
    CREATION = "creation"


def new_entry_id() -> str:
    return f"BL-{uuid.uuid4().hex[:20]}"


@dataclass
class LedgerEntry:
    """
    Persisted billing attempt.

    Usage entries cover `period_start` to `period_end`, exactly
    `hours_charged` hours. Creation entries are the exception: the first
    hour is charged at the creation stamp, so `period_start == period_end`
    with `hours_charged == 1`, and they stay out of the usage timeline.
    """
    resource_id: str
    resource_kind: str
    owner_id: str
    period_start: datetime
    period_end: datetime
    hours_charged: int
    rate_components: RateComponents
    amount: Decimal
    outcome: LedgerOutcome
    created_at: datetime
    entry_type: EntryType = EntryType.USAGE
    failure_reason: Optional[FailureReason] = None
    payment_reference: Optional[str] = None
    description: Optional[str] = None
    id: str = field(default_factory=new_entry_id)

    def __post_init__(self):
        if (self.outcome == LedgerOutcome.FAILED) != (self.failure_reason is not None):
            raise ValueError("failure_reason must be set exactly when outcome is failed")

    @property
    def billed(self) -> bool:
        return self.outcome == LedgerOutcome.BILLED

    @property
    def period_consistent(self) -> bool:
        if self.entry_type == EntryType.CREATION:
            return self.period_start == self.period_end and self.hours_charged == 1
        return self.period_end - self.period_start == timedelta(hours=self.hours_charged)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "resource_id": self.resource_id,
            "resource_kind": self.resource_kind,
            "owner_id": self.owner_id,
            "entry_type": self.entry_type.value,
            "period_start": format_instant(self.period_start),
            "period_end": format_instant(self.period_end),
            "hours_charged": self.hours_charged,
            "rate_components": self.rate_components.to_dict(),
            "amount": str(self.amount),
            "outcome": self.outcome.value,
            "failure_reason": self.failure_reason.value if self.failure_reason else None,
            "payment_reference": self.payment_reference,
            "description": self.description,
            "created_at": format_instant(self.created_at),
        }

    def to_db_tuple(self) -> tuple:
        """Convert to database insert tuple."""
        return (
            self.id,
            self.resource_id,
            self.resource_kind,
            self.owner_id,
            self.entry_type.value,
            format_instant(self.period_start),
            format_instant(self.period_end),
            self.hours_charged,
            json.dumps(self.rate_components.to_dict()),
            str(self.amount),
            self.outcome.value,
            self.failure_reason.value if self.failure_reason else None,
            self.payment_reference,
            self.description,
            format_instant(self.created_at),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "LedgerEntry":
        components = row["rate_components"]
        if isinstance(components, str):
            components = json.loads(components)

        reason = row.get("failure_reason")

        return cls(
            id=row["id"],
            resource_id=row["resource_id"],
            resource_kind=row["resource_kind"],
            owner_id=row["owner_id"],
            entry_type=EntryType(row.get("entry_type") or "usage"),
            period_start=parse_instant(row["period_start"]),
            period_end=parse_instant(row["period_end"]),
            hours_charged=int(row["hours_charged"]),
            rate_components=RateComponents.from_dict(components),
            amount=to_decimal(row["amount"]),
            outcome=LedgerOutcome(row["outcome"]),
            failure_reason=FailureReason(reason) if reason else None,
            payment_reference=row.get("payment_reference"),
            description=row.get("description"),
            created_at=parse_instant(row["created_at"]),
        )
