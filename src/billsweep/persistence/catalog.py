"""
Resource Catalog Adapters

One adapter per resource kind, each exposing the `BillableResourceSource`
capability over its own table. Plans are resolved separately from the
resource row so a missing plan degrades to a fallback rate instead of hiding
the resource from billing.
"""

from abc import abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
import structlog

from ..core.clock import format_instant, parse_instant
from ..core.rates import AddOnFrequency, AddOnPricing, PlanPricing, RateInputs, to_decimal
from ..core.resources import HOUR, BillableResource, BillableResourceSource, ResourceKind
from .database import Database, get_database

logger = structlog.get_logger()


class SqlResourceCatalog(BillableResourceSource):
    """
    Shared SQL plumbing for catalog adapters.

    Subclasses name their table and translate (resource row, plan row) into
    rate inputs.
    """

    kind: ResourceKind
    table: str = ""
    checkpoint_column = "last_billed_at"
    base_columns = ["id", "owner_id", "created_at", "last_billed_at", "terminated_at"]

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def schema_requirements(self) -> Tuple[str, List[str]]:
        return (self.table, list(self.base_columns))

    # -- plan resolution -------------------------------------------------

    @abstractmethod
    def _load_plan(self, plan_id: Optional[str]) -> Optional[Dict[str, Any]]:
        """Plan row for `plan_id`, or None when it cannot be resolved."""

    @abstractmethod
    def _rate_inputs(self, row: Dict[str, Any], plan: Optional[Dict[str, Any]]) -> RateInputs:
        """Translate a resource row and its plan into rate inputs."""

    def _to_resource(self, row: Dict[str, Any]) -> BillableResource:
        plan = self._load_plan(row.get("plan_id"))
        legacy = row.get("hourly_rate")
        inputs = self._rate_inputs(row, plan)
        inputs.legacy_hourly_rate = to_decimal(legacy) if legacy not in (None, "") else None

        return BillableResource(
            id=str(row["id"]),
            owner_id=str(row["owner_id"]),
            kind=self.kind,
            created_at=parse_instant(row["created_at"]),
            checkpoint=parse_instant(row.get(self.checkpoint_column)),
            label=row.get("label") or "",
            terminated_at=parse_instant(row.get("terminated_at")),
            rate_inputs=inputs,
        )

    # -- BillableResourceSource --------------------------------------------

    def _due_rows(self, now: datetime, interval: timedelta, columns: str) -> List[Dict[str, Any]]:
        return self.db.execute(
            f"""SELECT {columns} FROM {self.table}
                WHERE terminated_at IS NULL
                  AND ({self.checkpoint_column} IS NULL OR {self.checkpoint_column} <= ?)
                ORDER BY created_at ASC""",
            (format_instant(now - interval),)
        )

    def due_ids(self, now: datetime, interval: timedelta = HOUR) -> List[str]:
        return [str(r["id"]) for r in self._due_rows(now, interval, "id")]

    def due_resources(self, now: datetime, interval: timedelta = HOUR) -> List[BillableResource]:
        return [self._to_resource(r) for r in self._due_rows(now, interval, "*")]

    def get(self, resource_id: str) -> Optional[BillableResource]:
        rows = self.db.execute(
            f"SELECT * FROM {self.table} WHERE id = ?",
            (resource_id,)
        )
        return self._to_resource(rows[0]) if rows else None

    def lock(self, resource_id: str) -> Optional[BillableResource]:
        if not self.db.in_transaction:
            raise RuntimeError("lock() must be called inside a database transaction")
        rows = self.db.execute(
            f"SELECT * FROM {self.table} WHERE id = ?{self.db.row_lock_clause}",
            (resource_id,)
        )
        return self._to_resource(rows[0]) if rows else None

    def advance_checkpoint(self, resource_id: str, checkpoint: datetime) -> None:
        updated = self.db.execute_rowcount(
            f"UPDATE {self.table} SET {self.checkpoint_column} = ? WHERE id = ?",
            (format_instant(checkpoint), resource_id)
        )
        if updated != 1:
            raise RuntimeError(f"Checkpoint advance matched {updated} rows for {self.kind.value} {resource_id}")
        logger.debug("checkpoint_advanced", kind=self.kind.value, resource_id=resource_id, checkpoint=checkpoint.isoformat())

    def stamp_checkpoint(self, resource_id: str, instant: datetime, terminate: bool = False) -> bool:
        stamp = format_instant(instant)
        if terminate:
            updated = self.db.execute_rowcount(
                f"UPDATE {self.table} SET {self.checkpoint_column} = ?, terminated_at = ? WHERE id = ?",
                (stamp, stamp, resource_id)
            )
        else:
            updated = self.db.execute_rowcount(
                f"UPDATE {self.table} SET {self.checkpoint_column} = ? WHERE id = ?",
                (stamp, resource_id)
            )
        return updated > 0

    def list_active_for_owner(self, owner_id: str) -> List[BillableResource]:
        rows = self.db.execute(
            f"SELECT * FROM {self.table} WHERE owner_id = ? AND terminated_at IS NULL ORDER BY created_at ASC",
            (owner_id,)
        )
        return [self._to_resource(r) for r in rows]


class VMCatalog(SqlResourceCatalog):
    """VM instances priced from `vm_plans` plus an optional backup tier."""

    kind = ResourceKind.VM
    table = "vm_instances"

    def _load_plan(self, plan_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not plan_id:
            return None
        # Instances may reference either our plan id or the provider's plan id
        rows = self.db.execute(
            "SELECT * FROM vm_plans WHERE id = ? OR provider_plan_id = ? LIMIT 1",
            (plan_id, plan_id)
        )
        return rows[0] if rows else None

    def _rate_inputs(self, row: Dict[str, Any], plan: Optional[Dict[str, Any]]) -> RateInputs:
        frequency = AddOnFrequency.parse(row.get("backup_frequency"))
        if plan is None:
            return RateInputs(frequency=frequency, plan_found=False)

        return RateInputs(
            plan=PlanPricing(
                base_price=to_decimal(plan.get("base_price")),
                markup_price=to_decimal(plan.get("markup_price")),
            ),
            add_on=AddOnPricing(
                base_hourly=to_decimal(plan.get("backup_price_hourly")),
                upcharge_hourly=to_decimal(plan.get("backup_upcharge_hourly")),
            ),
            frequency=frequency,
        )


class ManagedAppCatalog(SqlResourceCatalog):
    """Managed applications; the plan's base rate is multiplied by replicas."""

    kind = ResourceKind.MANAGED_APP
    table = "managed_apps"

    def _load_plan(self, plan_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not plan_id:
            return None
        rows = self.db.execute("SELECT * FROM app_plans WHERE id = ?", (plan_id,))
        return rows[0] if rows else None

    def _rate_inputs(self, row: Dict[str, Any], plan: Optional[Dict[str, Any]]) -> RateInputs:
        replicas = max(1, int(row.get("replicas") or 1))
        if plan is None:
            return RateInputs(replicas=replicas, plan_found=False)

        return RateInputs(
            plan=PlanPricing(
                base_price=to_decimal(plan.get("base_price")),
                markup_price=to_decimal(plan.get("markup_price")),
            ),
            replicas=replicas,
        )


class AddOnCatalog(SqlResourceCatalog):
    """Add-on subscriptions priced hourly from `addon_plans`."""

    kind = ResourceKind.ADDON
    table = "addon_subscriptions"

    def _load_plan(self, plan_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not plan_id:
            return None
        rows = self.db.execute("SELECT * FROM addon_plans WHERE id = ?", (plan_id,))
        return rows[0] if rows else None

    def _rate_inputs(self, row: Dict[str, Any], plan: Optional[Dict[str, Any]]) -> RateInputs:
        frequency = AddOnFrequency.parse(row.get("frequency"))
        if plan is None:
            return RateInputs(frequency=frequency, plan_found=False)

        return RateInputs(
            add_on=AddOnPricing(
                base_hourly=to_decimal(plan.get("base_price_hourly")),
                upcharge_hourly=to_decimal(plan.get("upcharge_hourly")),
            ),
            frequency=frequency,
        )


def default_catalogs(db: Optional[Database] = None) -> Dict[ResourceKind, SqlResourceCatalog]:
    """One catalog per kind, in sweep order."""
    db = db or get_database()
    return {
        ResourceKind.VM: VMCatalog(db),
        ResourceKind.MANAGED_APP: ManagedAppCatalog(db),
        ResourceKind.ADDON: AddOnCatalog(db),
    }
