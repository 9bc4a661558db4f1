"""
Tests for Lifecycle Hooks

First-hour charge on creation and accrual stop on termination.
"""

from datetime import timedelta
from decimal import Decimal
import pytest

from billsweep.billing import SqlWalletGateway, build_engine
from billsweep.core.errors import FailureReason, ResourceNotFoundError
from billsweep.core.resources import ResourceKind
from billsweep.persistence.models import EntryType, LedgerOutcome


class BrokenWallet(SqlWalletGateway):
    def debit(self, owner_id, amount, description):
        raise RuntimeError("connection reset")


@pytest.fixture
def vm(seed, clock):
    seed.vm_plan(plan_id="plan-40", base_price="29.2")
    return seed.vm("vm-1", plan_id="plan-40", created_at=clock.now(), label="db-01")


class TestCreationCharge:

    def test_first_hour_charged(self, engine, seed, clock, vm):
        seed.wallet(balance="10.00")

        result = engine.lifecycle.on_resource_created(ResourceKind.VM, vm)

        assert result.charged
        assert result.amount == Decimal("0.0400")
        assert result.checkpoint == clock.now()
        assert result.payment_reference.startswith("txn_")
        assert seed.balance() == Decimal("9.9600")
        assert seed.checkpoint("vm_instances", vm) == clock.now()

    def test_creation_entry_outside_usage_timeline(self, engine, seed, clock, vm):
        seed.wallet()
        engine.lifecycle.on_resource_created(ResourceKind.VM, vm)

        entries = engine.repository.get_by_resource(vm)
        assert len(entries) == 1
        entry = entries[0]
        assert entry.entry_type == EntryType.CREATION
        assert entry.outcome == LedgerOutcome.BILLED
        assert entry.hours_charged == 1
        assert entry.period_start == entry.period_end == clock.now()
        assert entry.description == "VPS Creation - db-01 (Initial Hour)"
        assert engine.repository.verify_timeline(vm) == (True, None, 0)

    def test_next_sweep_bills_from_creation_stamp(self, engine, seed, clock, vm):
        seed.wallet()
        created_at = clock.now()
        engine.lifecycle.on_resource_created(ResourceKind.VM, vm)

        clock.advance(hours=1, minutes=5)
        result = engine.orchestrator.run(ResourceKind.VM)

        assert result.billed == 1
        assert result.total_hours == 1
        assert seed.checkpoint("vm_instances", vm) == created_at + timedelta(hours=1)
        assert seed.balance() == Decimal("9.9200")

    def test_second_call_does_not_charge_again(self, engine, seed, vm):
        seed.wallet()

        first = engine.lifecycle.on_resource_created(ResourceKind.VM, vm)
        second = engine.lifecycle.on_resource_created(ResourceKind.VM, vm)

        assert first.charged
        assert not second.charged
        assert second.already_billed
        assert seed.balance() == Decimal("9.9600")

    def test_insufficient_balance_leaves_checkpoint_empty(self, engine, seed, clock, vm):
        seed.wallet(balance="0.01")

        result = engine.lifecycle.on_resource_created(ResourceKind.VM, vm)

        assert not result.charged
        assert result.reason == FailureReason.INSUFFICIENT_BALANCE
        assert seed.checkpoint("vm_instances", vm) is None

        entries = engine.repository.get_by_resource(vm)
        assert [e.outcome for e in entries] == [LedgerOutcome.FAILED]
        assert entries[0].entry_type == EntryType.CREATION

    def test_failed_creation_collected_by_sweep(self, engine, seed, clock, vm):
        seed.wallet(balance="0.01")
        created_at = clock.now()
        engine.lifecycle.on_resource_created(ResourceKind.VM, vm)

        engine.wallet.top_up("owner-1", Decimal("1"))
        clock.advance(hours=2)
        result = engine.orchestrator.run(ResourceKind.VM)

        assert result.total_hours == 2
        assert seed.checkpoint("vm_instances", vm) == created_at + timedelta(hours=2)

    def test_wallet_missing(self, engine, vm):
        result = engine.lifecycle.on_resource_created(ResourceKind.VM, vm)

        assert not result.charged
        assert result.reason == FailureReason.WALLET_MISSING

    def test_unknown_resource_raises(self, engine):
        with pytest.raises(ResourceNotFoundError):
            engine.lifecycle.on_resource_created(ResourceKind.VM, "vm-missing")

    def test_unexpected_error_reported_not_raised(self, db, clock, config, seed, vm):
        engine = build_engine(config=config, db=db, clock=clock, wallet=BrokenWallet(db, clock))
        seed.wallet()

        result = engine.lifecycle.on_resource_created(ResourceKind.VM, vm)

        assert not result.charged
        assert result.reason == FailureReason.UNEXPECTED_ERROR
        assert "connection reset" in result.error
        assert engine.repository.get_by_resource(vm) == []
        assert seed.checkpoint("vm_instances", vm) is None


class TestTermination:

    def test_termination_stops_accrual(self, engine, seed, clock, db, vm):
        seed.wallet()
        clock.advance(minutes=50)

        assert engine.lifecycle.on_resource_terminated(ResourceKind.VM, vm) is True

        rows = db.execute("SELECT last_billed_at, terminated_at FROM vm_instances WHERE id = ?", (vm,))
        assert rows[0]["terminated_at"] is not None
        assert rows[0]["last_billed_at"] == rows[0]["terminated_at"]

        clock.advance(hours=10)
        result = engine.orchestrator.run(ResourceKind.VM)

        assert result.billed == 0
        assert seed.balance() == Decimal("10.00")

    def test_terminating_unknown_resource(self, engine):
        assert engine.lifecycle.on_resource_terminated(ResourceKind.ADDON, "sub-missing") is False

    def test_terminated_resource_excluded_from_summary(self, engine, seed, vm):
        engine.lifecycle.on_resource_terminated(ResourceKind.VM, vm)

        summary = engine.statements.summary("owner-1")

        assert summary.active_resources[ResourceKind.VM.value] == 0
