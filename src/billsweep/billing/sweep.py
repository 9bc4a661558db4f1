"""
Sweep Orchestrator

Pulls due resource ids kind by kind and runs the executor on each one. Rows
are parsed only under the executor's lock, so a failure on one resource,
malformed row included, is recorded against that resource and the sweep
moves on. Only the schema pre-flight can stop a sweep, and it does so before
any resource is read.
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional
import structlog

from ..core.clock import Clock, SystemClock, format_instant
from ..core.errors import FailureReason, UnknownResourceKindError
from ..core.resources import HOUR, BillableResourceSource, ResourceKind
from ..persistence.database import Database
from .executor import BillingExecutor, ChargeOutcome, ChargeState

logger = structlog.get_logger()


@dataclass
class ResourceError:
    """One failed resource in a sweep."""
    resource_id: Optional[str]
    kind: ResourceKind
    reason: FailureReason
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource_id": self.resource_id,
            "kind": self.kind.value,
            "reason": self.reason.value,
            "message": self.message,
        }


@dataclass
class SweepResult:
    """Summary of one sweep over one resource kind. Not persisted."""
    kind: ResourceKind
    started_at: datetime
    finished_at: Optional[datetime] = None
    billed: int = 0
    failed: int = 0
    skipped: int = 0
    total_amount: Decimal = Decimal("0")
    total_hours: int = 0
    errors: List[ResourceError] = field(default_factory=list)
    low_balance_owners: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def failed_resources(self) -> List[str]:
        return [e.resource_id for e in self.errors if e.resource_id is not None]

    def record(self, outcome: ChargeOutcome, label: str = "") -> None:
        if outcome.state == ChargeState.BILLED:
            self.billed += 1
            self.total_amount += outcome.amount
            self.total_hours += outcome.hours
            if outcome.low_balance and outcome.owner_id not in self.low_balance_owners:
                self.low_balance_owners.append(outcome.owner_id)
        elif outcome.state == ChargeState.NO_CHARGE_DUE:
            self.skipped += 1
        else:
            self.record_error(
                outcome.resource_id,
                outcome.reason or FailureReason.UNEXPECTED_ERROR,
                f"Failed to bill {self.kind.display_name} {label or outcome.resource_id} "
                f"({outcome.resource_id}): {outcome.reason.value if outcome.reason else outcome.state.value}",
            )

    def record_error(self, resource_id: Optional[str], reason: FailureReason, message: str) -> None:
        if resource_id is not None:
            self.failed += 1
        self.errors.append(ResourceError(resource_id, self.kind, reason, message))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "success": self.success,
            "started_at": format_instant(self.started_at),
            "finished_at": format_instant(self.finished_at),
            "billed": self.billed,
            "failed": self.failed,
            "skipped": self.skipped,
            "total_amount": str(self.total_amount),
            "total_hours": self.total_hours,
            "errors": [e.to_dict() for e in self.errors],
            "low_balance_owners": list(self.low_balance_owners),
        }


class SweepOrchestrator:
    """
    Runs billing sweeps.

    Usage:
        orchestrator = SweepOrchestrator(db, catalogs, executor)
        result = orchestrator.run(ResourceKind.VM)
        results = orchestrator.run_all()
    """

    def __init__(
        self,
        db: Database,
        catalogs: Dict[ResourceKind, BillableResourceSource],
        executor: BillingExecutor,
        clock: Optional[Clock] = None,
        billing_interval: timedelta = HOUR,
        max_workers: int = 1,
    ):
        self.db = db
        self.catalogs = catalogs
        self.executor = executor
        self.clock = clock or SystemClock()
        self.billing_interval = billing_interval
        self.max_workers = max(1, max_workers)
        self._schema_verified = False
        self._schema_lock = Lock()

    def ensure_schema(self) -> None:
        """Pre-flight once per orchestrator; raises SchemaUnavailableError."""
        if self._schema_verified:
            return
        with self._schema_lock:
            if self._schema_verified:
                return
            self.db.verify_schema(c.schema_requirements() for c in self.catalogs.values())
            self._schema_verified = True

    def catalog_for(self, kind: ResourceKind) -> BillableResourceSource:
        catalog = self.catalogs.get(kind)
        if catalog is None:
            raise UnknownResourceKindError(f"No catalog registered for {kind.value}")
        return catalog

    def run(self, kind: ResourceKind) -> SweepResult:
        """Sweep one resource kind."""
        catalog = self.catalog_for(kind)
        self.ensure_schema()

        now = self.clock.now()
        result = SweepResult(kind=kind, started_at=now)
        logger.info("sweep_started", kind=kind.value, at=now.isoformat())

        try:
            due = catalog.due_ids(now, self.billing_interval)
        except Exception as e:
            logger.error("sweep_selection_failed", kind=kind.value, error=str(e))
            result.record_error(None, FailureReason.UNEXPECTED_ERROR, f"Critical billing error: {e}")
            result.finished_at = self.clock.now()
            return result

        logger.info("sweep_resources_selected", kind=kind.value, count=len(due))

        if self.max_workers > 1 and len(due) > 1:
            self._run_parallel(catalog, due, result)
        else:
            for resource_id in due:
                self._process(catalog, resource_id, result)

        result.finished_at = self.clock.now()
        logger.info(
            "sweep_completed",
            kind=kind.value,
            billed=result.billed,
            failed=result.failed,
            skipped=result.skipped,
            total_hours=result.total_hours,
            total_amount=str(result.total_amount),
        )
        return result

    def run_all(self, kinds: Optional[Iterable[ResourceKind]] = None) -> Dict[ResourceKind, SweepResult]:
        """Sweep every registered kind in turn (add-ons last)."""
        self.ensure_schema()
        order = list(kinds) if kinds is not None else list(self.catalogs.keys())
        return {kind: self.run(kind) for kind in order}

    def _charge(self, catalog: BillableResourceSource, resource_id: str) -> ChargeOutcome:
        return self.executor.execute(catalog, resource_id)

    def _record_exception(self, kind: ResourceKind, resource_id: str, error: Exception, result: SweepResult) -> None:
        logger.error(
            "resource_billing_error",
            resource_id=resource_id,
            kind=kind.value,
            error=str(error),
            exc_info=error,
        )
        result.record_error(
            resource_id,
            FailureReason.UNEXPECTED_ERROR,
            f"Error billing {kind.display_name} {resource_id}: {error}",
        )

    def _record_outcome(self, outcome: ChargeOutcome, result: SweepResult) -> None:
        result.record(outcome, label=outcome.label)
        if outcome.billed:
            logger.info(
                "resource_billed",
                resource_id=outcome.resource_id,
                kind=outcome.kind.value,
                hours=outcome.hours,
                amount=str(outcome.amount),
            )

    def _process(self, catalog: BillableResourceSource, resource_id: str, result: SweepResult) -> None:
        try:
            outcome = self._charge(catalog, resource_id)
        except Exception as e:
            self._record_exception(catalog.kind, resource_id, e, result)
            return
        self._record_outcome(outcome, result)

    def _run_parallel(
        self,
        catalog: BillableResourceSource,
        due: List[str],
        result: SweepResult,
    ) -> None:
        # Outcomes are folded into the result on this thread only
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="billsweep") as pool:
            futures = {pool.submit(self._charge, catalog, resource_id): resource_id for resource_id in due}
            for future in as_completed(futures):
                resource_id = futures[future]
                try:
                    outcome = future.result()
                except Exception as e:
                    self._record_exception(catalog.kind, resource_id, e, result)
                    continue
                self._record_outcome(outcome, result)
