"""
Billable Resources

A uniform view over VMs, managed applications and add-on subscriptions, and
the capability interface each kind's catalog implements. The billing executor
only ever talks to this interface.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .clock import format_instant
from .rates import RateInputs

HOUR = timedelta(hours=1)


class ResourceKind(Enum):
    """Billable resource kinds."""
    VM = "vm"
    MANAGED_APP = "managed_app"
    ADDON = "addon"

    @property
    def display_name(self) -> str:
        return {
            ResourceKind.VM: "VPS",
            ResourceKind.MANAGED_APP: "PaaS",
            ResourceKind.ADDON: "Add-on",
        }[self]


@dataclass
class BillableResource:
    """
    One billable row.

    `checkpoint` is the instant up to which the resource has been billed;
    None means it has never been billed and accrues from `created_at`.
    """
    id: str
    owner_id: str
    kind: ResourceKind
    created_at: datetime
    checkpoint: Optional[datetime] = None
    label: str = ""
    terminated_at: Optional[datetime] = None
    rate_inputs: RateInputs = field(default_factory=RateInputs)

    @property
    def billing_anchor(self) -> datetime:
        """Where the next billing period starts."""
        return self.checkpoint if self.checkpoint is not None else self.created_at

    @property
    def is_terminated(self) -> bool:
        return self.terminated_at is not None

    def elapsed_hours(self, now: datetime) -> int:
        """Whole hours between the billing anchor and `now`; never negative."""
        elapsed = now - self.billing_anchor
        if elapsed <= timedelta(0):
            return 0
        return int(elapsed // HOUR)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "kind": self.kind.value,
            "label": self.label,
            "created_at": format_instant(self.created_at),
            "checkpoint": format_instant(self.checkpoint),
            "terminated_at": format_instant(self.terminated_at),
        }


class BillableResourceSource(ABC):
    """
    Catalog capability for one resource kind.

    Write methods (`lock`, `advance_checkpoint`, `stamp_checkpoint`) are
    called inside the caller's database transaction.
    """

    kind: ResourceKind

    @abstractmethod
    def schema_requirements(self) -> Tuple[str, List[str]]:
        """(table, columns) that must exist before this catalog can be swept."""

    @abstractmethod
    def due_resources(self, now: datetime, interval: timedelta = HOUR) -> List[BillableResource]:
        """Unterminated resources never billed or last billed at least `interval` ago, oldest first."""

    @abstractmethod
    def due_ids(self, now: datetime, interval: timedelta = HOUR) -> List[str]:
        """Ids of the rows `due_resources` would return, without parsing them."""

    @abstractmethod
    def get(self, resource_id: str) -> Optional[BillableResource]:
        """Fetch a resource without locking it."""

    @abstractmethod
    def lock(self, resource_id: str) -> Optional[BillableResource]:
        """Re-read a resource under a row lock held until the transaction ends."""

    @abstractmethod
    def advance_checkpoint(self, resource_id: str, checkpoint: datetime) -> None:
        """Move the checkpoint to the end of a billed period."""

    @abstractmethod
    def stamp_checkpoint(self, resource_id: str, instant: datetime, terminate: bool = False) -> bool:
        """Set the checkpoint to `instant` (lifecycle hooks only). Returns False if no row matched."""

    @abstractmethod
    def list_active_for_owner(self, owner_id: str) -> List[BillableResource]:
        """Unterminated resources owned by `owner_id`."""
