"""
Tests for Ledger Repository and Billing Statements

History, spend summary and timeline verification.
"""

from datetime import timedelta
from decimal import Decimal
import pytest

from billsweep.billing import PendingCharge
from billsweep.billing.statements import month_start
from billsweep.core.errors import FailureReason, ResourceNotFoundError
from billsweep.core.rates import RateComponents
from billsweep.core.resources import ResourceKind
from billsweep.persistence.models import EntryType, LedgerEntry, LedgerOutcome


def usage_entry(start, hours, amount="0.01", outcome=LedgerOutcome.BILLED, owner_id="owner-1", created_at=None):
    return LedgerEntry(
        resource_id="vm-1",
        resource_kind="vm",
        owner_id=owner_id,
        period_start=start,
        period_end=start + timedelta(hours=hours),
        hours_charged=hours,
        rate_components=RateComponents(
            base_hourly=Decimal("0.01"),
            add_on_hourly=Decimal("0"),
            multiplier=Decimal("1"),
        ),
        amount=Decimal(amount),
        outcome=outcome,
        failure_reason=FailureReason.INSUFFICIENT_BALANCE if outcome == LedgerOutcome.FAILED else None,
        created_at=created_at or start + timedelta(hours=hours),
    )


class TestLedgerEntry:

    def test_failed_entry_requires_reason(self, clock):
        with pytest.raises(ValueError):
            LedgerEntry(
                resource_id="vm-1",
                resource_kind="vm",
                owner_id="owner-1",
                period_start=clock.now(),
                period_end=clock.now() + timedelta(hours=1),
                hours_charged=1,
                rate_components=RateComponents(Decimal("0"), Decimal("0"), Decimal("1")),
                amount=Decimal("0"),
                outcome=LedgerOutcome.FAILED,
                created_at=clock.now(),
            )

    def test_usage_period_must_match_hours(self, clock):
        entry = usage_entry(clock.now(), 2)

        assert entry.period_consistent
        entry.hours_charged = 3
        assert not entry.period_consistent

    def test_creation_entry_sits_at_one_instant(self, engine, seed, clock):
        seed.vm_plan()
        seed.vm("vm-1")
        resource = engine.catalogs[ResourceKind.VM].get("vm-1")
        components = engine.rates.calculate("vm", resource.rate_inputs)

        entry = engine.ledger.record_failed(
            PendingCharge.for_creation(resource, components, clock.now()), FailureReason.WALLET_MISSING
        )

        assert entry.entry_type == EntryType.CREATION
        assert entry.period_start == entry.period_end
        assert entry.hours_charged == 1
        assert entry.period_consistent

    def test_writer_rejects_inconsistent_period(self, engine, seed, clock):
        seed.vm_plan()
        seed.vm("vm-1", created_at=clock.now() - timedelta(hours=4))
        resource = engine.catalogs[ResourceKind.VM].get("vm-1")
        charge = PendingCharge.for_usage(resource, 2, engine.rates.calculate("vm", resource.rate_inputs))
        charge.period_end = charge.period_start + timedelta(hours=3)

        with pytest.raises(ValueError):
            engine.ledger.record_failed(charge, FailureReason.INSUFFICIENT_BALANCE)

        assert engine.repository.get_by_resource("vm-1") == []

    def test_stored_entry_reads_back(self, engine, clock):
        entry = engine.repository.create(usage_entry(clock.now(), 2, amount="0.0200"))
        loaded = engine.repository.get(entry.id)

        assert loaded.id.startswith("BL-")
        assert loaded.amount == Decimal("0.0200")
        assert loaded.period_end == clock.now() + timedelta(hours=2)


class TestTimelineVerification:

    def test_contiguous_timeline_valid(self, engine, clock):
        start = clock.now()
        engine.repository.create(usage_entry(start, 2))
        engine.repository.create(usage_entry(start + timedelta(hours=2), 1))
        engine.repository.create(usage_entry(start + timedelta(hours=3), 4))

        report = engine.statements.verify_timeline("vm-1")

        assert report.valid
        assert report.billed_entries == 3

    def test_failed_entries_ignored(self, engine, clock):
        start = clock.now()
        engine.repository.create(usage_entry(start, 2))
        engine.repository.create(usage_entry(start + timedelta(hours=2), 3, outcome=LedgerOutcome.FAILED))
        engine.repository.create(usage_entry(start + timedelta(hours=2), 3))

        assert engine.statements.verify_timeline("vm-1").valid

    def test_gap_detected(self, engine, clock):
        start = clock.now()
        engine.repository.create(usage_entry(start, 1))
        engine.repository.create(usage_entry(start + timedelta(hours=2), 1))

        report = engine.statements.verify_timeline("vm-1")

        assert not report.valid
        assert report.error.startswith("Gap")

    def test_overlap_detected(self, engine, clock):
        start = clock.now()
        engine.repository.create(usage_entry(start, 2))
        engine.repository.create(usage_entry(start + timedelta(hours=1), 2))

        report = engine.statements.verify_timeline("vm-1")

        assert not report.valid
        assert report.error.startswith("Overlap")

    def test_span_mismatch_detected(self, engine, clock):
        entry = usage_entry(clock.now(), 2)
        entry.hours_charged = 3
        engine.repository.create(entry)

        report = engine.statements.verify_timeline("vm-1")

        assert not report.valid
        assert "mismatch" in report.error

    def test_empty_timeline_valid(self, engine):
        assert engine.statements.verify_timeline("vm-none").to_dict() == {
            "resource_id": "vm-none",
            "valid": True,
            "billed_entries": 0,
            "error": None,
        }


class TestHistory:

    def test_newest_first_with_paging(self, engine, clock):
        start = clock.now() - timedelta(hours=10)
        for i in range(5):
            engine.repository.create(usage_entry(start + timedelta(hours=i), 1))

        page = engine.statements.history("owner-1", limit=2)
        rest = engine.statements.history("owner-1", limit=10, offset=2)

        assert [e.period_start for e in page] == [start + timedelta(hours=4), start + timedelta(hours=3)]
        assert len(rest) == 3

    def test_other_owners_excluded(self, engine, clock):
        engine.repository.create(usage_entry(clock.now(), 1, owner_id="owner-2"))

        assert engine.statements.history("owner-1") == []


class TestSummary:

    def test_spend_and_estimate(self, engine, seed, clock):
        now = clock.now()
        seed.vm_plan()
        seed.app_plan()
        seed.vm("vm-1", created_at=now - timedelta(hours=5))
        seed.app("app-1", replicas=2, created_at=now - timedelta(hours=5))
        seed.wallet()
        # Billed last month, counted only in the all-time total
        engine.repository.create(
            usage_entry(now - timedelta(days=40), 1, amount="1.0000", created_at=now - timedelta(days=40))
        )

        engine.orchestrator.run_all()
        summary = engine.statements.summary("owner-1")

        this_month = Decimal("0.1370") + Decimal("0.1000")
        assert summary.spent_this_month == this_month
        assert summary.spent_all_time == this_month + Decimal("1.0000")
        assert summary.active_resources == {"vm": 1, "managed_app": 1, "addon": 0}
        assert summary.active_total == 2
        # (20.002 + 2 * 7.30) / 730 * 730
        assert summary.monthly_estimate == Decimal("34.6020")
        assert summary.billed_entries == 3
        assert summary.failed_entries == 0

    def test_failed_charges_not_counted_as_spend(self, engine, seed, clock):
        seed.vm_plan()
        seed.vm("vm-1", created_at=clock.now() - timedelta(hours=5))
        seed.wallet(balance="0")

        engine.orchestrator.run(ResourceKind.VM)
        summary = engine.statements.summary("owner-1")

        assert summary.spent_all_time == Decimal("0")
        assert summary.failed_entries == 1

    def test_month_start(self, clock):
        start = month_start(clock.now())

        assert (start.day, start.hour, start.minute) == (1, 0, 0)
        assert start.month == clock.now().month


class TestResourceSpending:

    def test_creation_and_usage_counted(self, engine, seed, clock):
        seed.vm_plan(plan_id="plan-40", base_price="29.2")
        seed.vm("vm-1", plan_id="plan-40")
        seed.vm("vm-2", plan_id="plan-40")
        seed.wallet()
        engine.lifecycle.on_resource_created(ResourceKind.VM, "vm-1")
        engine.lifecycle.on_resource_created(ResourceKind.VM, "vm-2")
        clock.advance(hours=3)
        engine.orchestrator.run(ResourceKind.VM)

        spending = engine.statements.resource_spending(ResourceKind.VM, "vm-1")

        assert spending.spent_all_time == Decimal("0.0400") + Decimal("0.1200")
        assert spending.spent_this_month == spending.spent_all_time
        assert spending.to_dict()["kind"] == "vm"

    def test_failed_and_older_charges(self, engine, clock):
        engine.repository.create(usage_entry(clock.now() - timedelta(days=40), 1, amount="1.0000"))
        engine.repository.create(usage_entry(clock.now() - timedelta(hours=2), 1, amount="0.5000"))
        engine.repository.create(
            usage_entry(clock.now() - timedelta(hours=1), 1, amount="0.2500", outcome=LedgerOutcome.FAILED)
        )

        spending = engine.statements.resource_spending(ResourceKind.VM, "vm-1")

        assert spending.spent_this_month == Decimal("0.5000")
        assert spending.spent_all_time == Decimal("1.5000")

    def test_other_kind_with_same_id_excluded(self, engine, clock):
        engine.repository.create(usage_entry(clock.now(), 1, amount="0.5000"))

        assert engine.statements.resource_spending(ResourceKind.ADDON, "vm-1").spent_all_time == Decimal("0")


class TestBalanceCheck:

    def test_sufficient(self, engine, seed):
        seed.vm_plan(plan_id="plan-40", base_price="29.2")
        seed.vm("vm-1", plan_id="plan-40")
        seed.wallet(balance="0.10")

        check = engine.statements.check_sufficient_balance(ResourceKind.VM, "vm-1", hours=2)

        assert check.sufficient
        assert check.required == Decimal("0.0800")
        assert check.balance == Decimal("0.10")

    def test_insufficient(self, engine, seed):
        seed.vm_plan(plan_id="plan-40", base_price="29.2")
        seed.vm("vm-1", plan_id="plan-40")
        seed.wallet(balance="0.10")

        assert not engine.statements.check_sufficient_balance(ResourceKind.VM, "vm-1", hours=3).sufficient

    def test_wallet_missing(self, engine, seed):
        seed.vm_plan()
        seed.vm("vm-1", owner_id="no-wallet")

        check = engine.statements.check_sufficient_balance(ResourceKind.VM, "vm-1")

        assert not check.sufficient
        assert check.to_dict()["wallet_found"] is False
        assert check.balance == Decimal("0")

    def test_unknown_resource(self, engine):
        with pytest.raises(ResourceNotFoundError):
            engine.statements.check_sufficient_balance(ResourceKind.VM, "vm-missing")
