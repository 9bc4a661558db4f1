"""
Pytest Configuration and Fixtures
"""

import os
import sys
from datetime import datetime, timezone
from decimal import Decimal
import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["API_KEY"] = "test-key-12345"

from billsweep.billing import build_engine
from billsweep.config import BillingConfig
from billsweep.core.clock import FixedClock, format_instant
from billsweep.persistence.database import Database


NOW = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)


class CatalogSeeder:
    """Inserts plans, resources and wallets straight into the test database."""

    def __init__(self, db: Database, clock: FixedClock):
        self.db = db
        self.clock = clock

    def vm_plan(self, plan_id="plan-small", base_price="20.002", markup_price="0",
                backup_price_hourly="0", backup_upcharge_hourly="0", provider_plan_id=None):
        self.db.execute(
            """INSERT INTO vm_plans (id, provider_plan_id, name, base_price, markup_price,
                                     backup_price_hourly, backup_upcharge_hourly)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (plan_id, provider_plan_id, plan_id, base_price, markup_price,
             backup_price_hourly, backup_upcharge_hourly)
        )
        return plan_id

    def vm(self, vm_id, owner_id="owner-1", plan_id="plan-small", created_at=None,
           last_billed_at=None, label=None, backup_frequency="none", hourly_rate=None):
        self.db.execute(
            """INSERT INTO vm_instances (id, owner_id, label, plan_id, backup_frequency,
                                         hourly_rate, created_at, last_billed_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (vm_id, owner_id, label or vm_id, plan_id, backup_frequency, hourly_rate,
             format_instant(created_at or self.clock.now()), format_instant(last_billed_at))
        )
        return vm_id

    def app_plan(self, plan_id="app-basic", base_price="7.30", markup_price="0"):
        self.db.execute(
            "INSERT INTO app_plans (id, name, base_price, markup_price) VALUES (?, ?, ?, ?)",
            (plan_id, plan_id, base_price, markup_price)
        )
        return plan_id

    def app(self, app_id, owner_id="owner-1", plan_id="app-basic", replicas=1,
            created_at=None, last_billed_at=None, hourly_rate=None):
        self.db.execute(
            """INSERT INTO managed_apps (id, owner_id, label, plan_id, replicas, hourly_rate,
                                         created_at, last_billed_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (app_id, owner_id, app_id, plan_id, replicas, hourly_rate,
             format_instant(created_at or self.clock.now()), format_instant(last_billed_at))
        )
        return app_id

    def addon_plan(self, plan_id="addon-backup", base_price_hourly="0.01", upcharge_hourly="0"):
        self.db.execute(
            "INSERT INTO addon_plans (id, name, base_price_hourly, upcharge_hourly) VALUES (?, ?, ?, ?)",
            (plan_id, plan_id, base_price_hourly, upcharge_hourly)
        )
        return plan_id

    def addon(self, sub_id, owner_id="owner-1", plan_id="addon-backup", frequency="metered",
              created_at=None, last_billed_at=None):
        self.db.execute(
            """INSERT INTO addon_subscriptions (id, owner_id, label, plan_id, frequency,
                                                created_at, last_billed_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (sub_id, owner_id, sub_id, plan_id, frequency,
             format_instant(created_at or self.clock.now()), format_instant(last_billed_at))
        )
        return sub_id

    def wallet(self, owner_id="owner-1", balance="10.00"):
        self.db.execute(
            "INSERT INTO wallets (owner_id, balance, currency, updated_at) VALUES (?, ?, ?, ?)",
            (owner_id, str(balance), "USD", format_instant(self.clock.now()))
        )
        return owner_id

    def balance(self, owner_id="owner-1") -> Decimal:
        rows = self.db.execute("SELECT balance FROM wallets WHERE owner_id = ?", (owner_id,))
        return Decimal(str(rows[0]["balance"]))

    def checkpoint(self, table, resource_id):
        rows = self.db.execute(f"SELECT last_billed_at FROM {table} WHERE id = ?", (resource_id,))
        value = rows[0]["last_billed_at"]
        return datetime.fromisoformat(value) if value else None


@pytest.fixture
def db(tmp_path):
    """A fresh SQLite database file with the schema applied."""
    database = Database(f"sqlite:///{tmp_path / 'billing.db'}")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def seed(db, clock):
    return CatalogSeeder(db, clock)


@pytest.fixture
def config():
    return BillingConfig()


@pytest.fixture
def engine(db, clock, config):
    return build_engine(config=config, db=db, clock=clock)
