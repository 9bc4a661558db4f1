"""
Repository Layer

Append and query operations for the billing ledger.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
import structlog

from ..core.clock import format_instant
from .database import Database, get_database
from .models import EntryType, LedgerEntry, LedgerOutcome

logger = structlog.get_logger()


class LedgerRepository:
    """Repository for billing ledger entries."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create(self, entry: LedgerEntry) -> LedgerEntry:
        """Append a ledger entry."""
        self.db.execute(
            """INSERT INTO billing_ledger
               (id, resource_id, resource_kind, owner_id, entry_type,
                period_start, period_end, hours_charged, rate_components,
                amount, outcome, failure_reason, payment_reference,
                description, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            entry.to_db_tuple()
        )
        logger.debug(
            "ledger_entry_created",
            entry_id=entry.id,
            resource_id=entry.resource_id,
            outcome=entry.outcome.value,
        )
        return entry

    def get(self, entry_id: str) -> Optional[LedgerEntry]:
        results = self.db.execute(
            "SELECT * FROM billing_ledger WHERE id = ?",
            (entry_id,)
        )
        return LedgerEntry.from_row(results[0]) if results else None

    def get_by_resource(self, resource_id: str, entry_type: Optional[EntryType] = None) -> List[LedgerEntry]:
        """All entries for a resource, oldest period first."""
        if entry_type is None:
            results = self.db.execute(
                "SELECT * FROM billing_ledger WHERE resource_id = ? ORDER BY period_start ASC, created_at ASC",
                (resource_id,)
            )
        else:
            results = self.db.execute(
                """SELECT * FROM billing_ledger WHERE resource_id = ? AND entry_type = ?
                   ORDER BY period_start ASC, created_at ASC""",
                (resource_id, entry_type.value)
            )
        return [LedgerEntry.from_row(r) for r in results]

    def history(self, owner_id: str, limit: int = 50, offset: int = 0) -> List[LedgerEntry]:
        """Ledger entries for an owner, newest first."""
        results = self.db.execute(
            "SELECT * FROM billing_ledger WHERE owner_id = ? ORDER BY created_at DESC LIMIT ? OFFSET ?",
            (owner_id, limit, offset)
        )
        return [LedgerEntry.from_row(r) for r in results]

    def billed_total(self, owner_id: str, since: Optional[datetime] = None) -> Decimal:
        """Sum of billed amounts for an owner, optionally from `since` on."""
        return self._billed_sum("owner_id = ?", (owner_id,), since)

    def resource_billed_total(self, resource_kind: str, resource_id: str, since: Optional[datetime] = None) -> Decimal:
        """Sum of billed amounts for one resource, creation charges included."""
        return self._billed_sum("resource_kind = ? AND resource_id = ?", (resource_kind, resource_id), since)

    def _billed_sum(self, where: str, params: tuple, since: Optional[datetime]) -> Decimal:
        query = f"SELECT amount FROM billing_ledger WHERE {where} AND outcome = ?"
        params = params + (LedgerOutcome.BILLED.value,)
        if since is not None:
            query += " AND created_at >= ?"
            params = params + (format_instant(since),)
        results = self.db.execute(query, params)
        # Summed in Python: SQLite stores amounts as text
        return sum((Decimal(str(r["amount"])) for r in results), Decimal("0"))

    def verify_timeline(self, resource_id: str) -> Tuple[bool, Optional[str], int]:
        """
        Verify the billed usage timeline of a resource.

        Billed usage entries must be contiguous (each starts where the previous
        ended) and each must span exactly `hours_charged` hours.

        Returns (is_valid, error_message, billed_entry_count)
        """
        entries = [
            e for e in self.get_by_resource(resource_id, EntryType.USAGE)
            if e.outcome == LedgerOutcome.BILLED
        ]

        if not entries:
            return (True, None, 0)

        prev_end = None
        for i, entry in enumerate(entries):
            if not entry.period_consistent:
                return (False, f"Period length mismatch at position {i}", i)

            if prev_end is not None and entry.period_start != prev_end:
                kind = "Overlap" if entry.period_start < prev_end else "Gap"
                return (False, f"{kind} in billed timeline at position {i}", i)

            prev_end = entry.period_end

        return (True, None, len(entries))

    def summary_row(self, owner_id: str) -> Dict[str, Any]:
        """Entry counts per outcome for an owner."""
        results = self.db.execute(
            "SELECT outcome, COUNT(*) as cnt FROM billing_ledger WHERE owner_id = ? GROUP BY outcome",
            (owner_id,)
        )
        counts = {r["outcome"]: r["cnt"] for r in results}
        return {
            "owner_id": owner_id,
            "billed_entries": counts.get(LedgerOutcome.BILLED.value, 0),
            "failed_entries": counts.get(LedgerOutcome.FAILED.value, 0),
        }
