"""
Database Connection Layer

Supports SQLite (dev) and PostgreSQL (production). Schema is created once at
startup by `initialize()`; sweeps only run the cheap `verify_schema()` pre-flight.

Transactions:
    with db.transaction():
        ...  # every db.execute() on this thread joins the transaction

SQLite transactions start with BEGIN IMMEDIATE, which takes the database write
lock up front, so two sweeps can never both be inside a charge for the same
resource. PostgreSQL uses row locks (SELECT ... FOR UPDATE) instead.
"""

import os
import sqlite3
from contextlib import contextmanager
from typing import Optional, Generator, Any, Dict, Iterable, List, Tuple
from datetime import datetime, timezone
import threading
import structlog

from ..core.errors import SchemaUnavailableError

logger = structlog.get_logger()

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- VM plans (monthly base/markup, hourly backup prices)
CREATE TABLE IF NOT EXISTS vm_plans (
    id TEXT PRIMARY KEY,
    provider_plan_id TEXT,
    name TEXT,
    base_price TEXT NOT NULL DEFAULT '0',
    markup_price TEXT NOT NULL DEFAULT '0',
    backup_price_hourly TEXT NOT NULL DEFAULT '0',
    backup_upcharge_hourly TEXT NOT NULL DEFAULT '0'
);

-- VM instances
CREATE TABLE IF NOT EXISTS vm_instances (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    label TEXT NOT NULL DEFAULT '',
    plan_id TEXT,
    backup_frequency TEXT NOT NULL DEFAULT 'none',
    hourly_rate TEXT,  -- legacy rate, fallback only
    status TEXT NOT NULL DEFAULT 'running',
    created_at TEXT NOT NULL,
    last_billed_at TEXT,
    terminated_at TEXT
);

-- Managed application plans
CREATE TABLE IF NOT EXISTS app_plans (
    id TEXT PRIMARY KEY,
    name TEXT,
    base_price TEXT NOT NULL DEFAULT '0',
    markup_price TEXT NOT NULL DEFAULT '0'
);

-- Managed applications
CREATE TABLE IF NOT EXISTS managed_apps (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    label TEXT NOT NULL DEFAULT '',
    plan_id TEXT,
    replicas INTEGER NOT NULL DEFAULT 1,
    hourly_rate TEXT,
    status TEXT NOT NULL DEFAULT 'running',
    created_at TEXT NOT NULL,
    last_billed_at TEXT,
    terminated_at TEXT
);

-- Add-on plans (hourly prices)
CREATE TABLE IF NOT EXISTS addon_plans (
    id TEXT PRIMARY KEY,
    name TEXT,
    base_price_hourly TEXT NOT NULL DEFAULT '0',
    upcharge_hourly TEXT NOT NULL DEFAULT '0'
);

-- Add-on subscriptions
CREATE TABLE IF NOT EXISTS addon_subscriptions (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    label TEXT NOT NULL DEFAULT '',
    plan_id TEXT,
    attached_to TEXT,
    frequency TEXT NOT NULL DEFAULT 'metered',
    hourly_rate TEXT,
    created_at TEXT NOT NULL,
    last_billed_at TEXT,
    terminated_at TEXT
);

-- Prepaid wallets (owned by the wallet gateway)
CREATE TABLE IF NOT EXISTS wallets (
    owner_id TEXT PRIMARY KEY,
    balance TEXT NOT NULL DEFAULT '0',
    currency TEXT NOT NULL DEFAULT 'USD',
    updated_at TEXT NOT NULL
);

-- Wallet debits
CREATE TABLE IF NOT EXISTS payment_transactions (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    amount TEXT NOT NULL,
    description TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'completed',
    created_at TEXT NOT NULL
);

-- Billing ledger (append-only)
CREATE TABLE IF NOT EXISTS billing_ledger (
    id TEXT PRIMARY KEY,
    resource_id TEXT NOT NULL,
    resource_kind TEXT NOT NULL,
    owner_id TEXT NOT NULL,
    entry_type TEXT NOT NULL DEFAULT 'usage',
    period_start TEXT NOT NULL,
    period_end TEXT NOT NULL,
    hours_charged INTEGER NOT NULL,
    rate_components TEXT NOT NULL,  -- JSON object
    amount TEXT NOT NULL,
    outcome TEXT NOT NULL,
    failure_reason TEXT,
    payment_reference TEXT,
    description TEXT,
    created_at TEXT NOT NULL
);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_vm_instances_last_billed ON vm_instances(last_billed_at);
CREATE INDEX IF NOT EXISTS idx_vm_instances_owner ON vm_instances(owner_id);
CREATE INDEX IF NOT EXISTS idx_managed_apps_last_billed ON managed_apps(last_billed_at);
CREATE INDEX IF NOT EXISTS idx_managed_apps_owner ON managed_apps(owner_id);
CREATE INDEX IF NOT EXISTS idx_addon_subscriptions_last_billed ON addon_subscriptions(last_billed_at);
CREATE INDEX IF NOT EXISTS idx_addon_subscriptions_owner ON addon_subscriptions(owner_id);
CREATE INDEX IF NOT EXISTS idx_payment_transactions_owner ON payment_transactions(owner_id, created_at);
CREATE INDEX IF NOT EXISTS idx_ledger_resource ON billing_ledger(resource_id, period_start);
CREATE INDEX IF NOT EXISTS idx_ledger_owner ON billing_ledger(owner_id, created_at);
"""

POSTGRES_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS vm_plans (
    id TEXT PRIMARY KEY,
    provider_plan_id TEXT,
    name TEXT,
    base_price NUMERIC(14, 4) NOT NULL DEFAULT 0,
    markup_price NUMERIC(14, 4) NOT NULL DEFAULT 0,
    backup_price_hourly NUMERIC(14, 6) NOT NULL DEFAULT 0,
    backup_upcharge_hourly NUMERIC(14, 6) NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS vm_instances (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    label TEXT NOT NULL DEFAULT '',
    plan_id TEXT,
    backup_frequency TEXT NOT NULL DEFAULT 'none',
    hourly_rate NUMERIC(14, 6),
    status TEXT NOT NULL DEFAULT 'running',
    created_at TIMESTAMPTZ NOT NULL,
    last_billed_at TIMESTAMPTZ,
    terminated_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS app_plans (
    id TEXT PRIMARY KEY,
    name TEXT,
    base_price NUMERIC(14, 4) NOT NULL DEFAULT 0,
    markup_price NUMERIC(14, 4) NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS managed_apps (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    label TEXT NOT NULL DEFAULT '',
    plan_id TEXT,
    replicas INTEGER NOT NULL DEFAULT 1,
    hourly_rate NUMERIC(14, 6),
    status TEXT NOT NULL DEFAULT 'running',
    created_at TIMESTAMPTZ NOT NULL,
    last_billed_at TIMESTAMPTZ,
    terminated_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS addon_plans (
    id TEXT PRIMARY KEY,
    name TEXT,
    base_price_hourly NUMERIC(14, 6) NOT NULL DEFAULT 0,
    upcharge_hourly NUMERIC(14, 6) NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS addon_subscriptions (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    label TEXT NOT NULL DEFAULT '',
    plan_id TEXT,
    attached_to TEXT,
    frequency TEXT NOT NULL DEFAULT 'metered',
    hourly_rate NUMERIC(14, 6),
    created_at TIMESTAMPTZ NOT NULL,
    last_billed_at TIMESTAMPTZ,
    terminated_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS wallets (
    owner_id TEXT PRIMARY KEY,
    balance NUMERIC(14, 4) NOT NULL DEFAULT 0,
    currency TEXT NOT NULL DEFAULT 'USD',
    updated_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS payment_transactions (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    amount NUMERIC(14, 4) NOT NULL,
    description TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'completed',
    created_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS billing_ledger (
    id TEXT PRIMARY KEY,
    resource_id TEXT NOT NULL,
    resource_kind TEXT NOT NULL,
    owner_id TEXT NOT NULL,
    entry_type TEXT NOT NULL DEFAULT 'usage',
    period_start TIMESTAMPTZ NOT NULL,
    period_end TIMESTAMPTZ NOT NULL,
    hours_charged INTEGER NOT NULL,
    rate_components JSONB NOT NULL,
    amount NUMERIC(14, 4) NOT NULL,
    outcome TEXT NOT NULL,
    failure_reason TEXT,
    payment_reference TEXT,
    description TEXT,
    created_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_vm_instances_last_billed ON vm_instances(last_billed_at);
CREATE INDEX IF NOT EXISTS idx_vm_instances_owner ON vm_instances(owner_id);
CREATE INDEX IF NOT EXISTS idx_managed_apps_last_billed ON managed_apps(last_billed_at);
CREATE INDEX IF NOT EXISTS idx_managed_apps_owner ON managed_apps(owner_id);
CREATE INDEX IF NOT EXISTS idx_addon_subscriptions_last_billed ON addon_subscriptions(last_billed_at);
CREATE INDEX IF NOT EXISTS idx_addon_subscriptions_owner ON addon_subscriptions(owner_id);
CREATE INDEX IF NOT EXISTS idx_payment_transactions_owner ON payment_transactions(owner_id, created_at);
CREATE INDEX IF NOT EXISTS idx_ledger_resource ON billing_ledger(resource_id, period_start);
CREATE INDEX IF NOT EXISTS idx_ledger_owner ON billing_ledger(owner_id, created_at);
"""


class Database:
    """
    Database connection manager with SQLite and PostgreSQL support.

    Usage:
        db = Database()  # Uses DATABASE_URL env or defaults to SQLite
        db.initialize()
        rows = db.execute("SELECT * FROM billing_ledger WHERE owner_id = ?", ("org-1",))
    """

    _instance: Optional["Database"] = None
    _lock = threading.Lock()

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.environ.get(
            "DATABASE_URL",
            "sqlite:///billsweep.db"
        )
        self.is_postgres = self.database_url.startswith("postgres")
        self._local = threading.local()
        self._init_lock = threading.Lock()
        self._initialized = False

    @classmethod
    def get_instance(cls, database_url: Optional[str] = None) -> "Database":
        """Get singleton database instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls(database_url)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the singleton (tests and CLI re-configuration)."""
        with cls._lock:
            if cls._instance is not None:
                cls._instance.close()
            cls._instance = None

    @property
    def placeholder(self) -> str:
        return "%s" if self.is_postgres else "?"

    @property
    def row_lock_clause(self) -> str:
        """Suffix that row-locks a SELECT for the rest of the transaction."""
        # SQLite holds the database write lock from BEGIN IMMEDIATE instead
        return " FOR UPDATE" if self.is_postgres else ""

    def _get_sqlite_path(self) -> str:
        """Extract SQLite file path from URL."""
        if self.database_url.startswith("sqlite:///"):
            return self.database_url[10:]
        return "billsweep.db"

    def _sql(self, query: str) -> str:
        if self.is_postgres:
            return query.replace("?", "%s")
        return query

    def _sqlite_conn(self) -> sqlite3.Connection:
        if getattr(self._local, "conn", None) is None:
            db_path = self._get_sqlite_path()
            conn = sqlite3.connect(
                db_path,
                check_same_thread=False,
                timeout=30.0,
                isolation_level=None,  # transactions are explicit
            )
            conn.row_factory = sqlite3.Row
            # Enable WAL mode for better concurrency
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA foreign_keys=ON")
            self._local.conn = conn
        return self._local.conn

    def _postgres_connect(self) -> Any:
        try:
            import psycopg2
            from psycopg2.extras import RealDictCursor
        except ImportError:
            raise ImportError("psycopg2 required for PostgreSQL. Install with: pip install psycopg2-binary")

        return psycopg2.connect(self.database_url, cursor_factory=RealDictCursor)

    @property
    def in_transaction(self) -> bool:
        return getattr(self._local, "tx_depth", 0) > 0

    @contextmanager
    def connection(self) -> Generator[Any, None, None]:
        """
        Get a database connection (thread-safe).

        Inside `transaction()` this is the transaction's connection and nothing
        is committed here.
        """
        if self.in_transaction:
            yield self._local.tx_conn
            return

        if self.is_postgres:
            conn = self._postgres_connect()
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()
        else:
            # Autocommit connection: each statement is its own transaction
            yield self._sqlite_conn()

    @contextmanager
    def transaction(self) -> Generator[Any, None, None]:
        """
        Run a block in one transaction on this thread.

        Nested calls join the outer transaction. Any exception rolls back
        everything and propagates.
        """
        if self.in_transaction:
            self._local.tx_depth += 1
            try:
                yield self._local.tx_conn
            finally:
                self._local.tx_depth -= 1
            return

        if self.is_postgres:
            conn = self._postgres_connect()
        else:
            conn = self._sqlite_conn()
            conn.execute("BEGIN IMMEDIATE")

        self._local.tx_conn = conn
        self._local.tx_depth = 1
        try:
            yield conn
            if self.is_postgres:
                conn.commit()
            else:
                conn.execute("COMMIT")
        except Exception:
            if self.is_postgres:
                conn.rollback()
            else:
                conn.execute("ROLLBACK")
            raise
        finally:
            self._local.tx_depth = 0
            self._local.tx_conn = None
            if self.is_postgres:
                conn.close()

    @contextmanager
    def savepoint(self) -> Generator[None, None, None]:
        """
        Scope a block inside the current transaction.

        On error only the block's statements are rolled back and the
        transaction stays usable (PostgreSQL otherwise refuses every later
        statement). Outside a transaction there is nothing to protect and the
        block runs as is.
        """
        if not self.in_transaction:
            yield
            return

        self._local.savepoint_seq = getattr(self._local, "savepoint_seq", 0) + 1
        name = f"billsweep_sp_{self._local.savepoint_seq}"
        self.execute(f"SAVEPOINT {name}")
        try:
            yield
        except Exception:
            self.execute(f"ROLLBACK TO SAVEPOINT {name}")
            self.execute(f"RELEASE SAVEPOINT {name}")
            raise
        self.execute(f"RELEASE SAVEPOINT {name}")

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._init_lock:
            if self._initialized:
                return

            schema = POSTGRES_SCHEMA_SQL if self.is_postgres else SCHEMA_SQL

            with self.connection() as conn:
                # Record schema version
                now = datetime.now(timezone.utc).isoformat()
                if self.is_postgres:
                    cursor = conn.cursor()
                    cursor.execute(schema)
                    cursor.execute(
                        "INSERT INTO schema_version (version, applied_at) VALUES (%s, %s) ON CONFLICT (version) DO NOTHING",
                        (SCHEMA_VERSION, now)
                    )
                else:
                    conn.executescript(schema)
                    conn.execute(
                        "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                        (SCHEMA_VERSION, now)
                    )

            self._initialized = True
            logger.info("database_initialized", url=self.database_url[:20] + "...", is_postgres=self.is_postgres)

    def table_columns(self, table: str) -> List[str]:
        """Column names of `table`; empty if the table does not exist."""
        if self.is_postgres:
            rows = self.execute(
                "SELECT column_name FROM information_schema.columns WHERE table_name = ?",
                (table,)
            )
            return [r["column_name"] for r in rows]

        rows = self.execute(f"PRAGMA table_info({table})")
        return [r["name"] for r in rows]

    def verify_schema(self, requirements: Iterable[Tuple[str, List[str]]]) -> None:
        """
        Pre-flight check that every (table, columns) pair exists.

        Raises SchemaUnavailableError listing every missing table.column.
        Read-only: nothing is created or altered here.
        """
        missing: List[str] = []
        try:
            for table, columns in requirements:
                existing = set(self.table_columns(table))
                if not existing:
                    missing.append(table)
                    continue
                missing.extend(f"{table}.{c}" for c in columns if c not in existing)
        except SchemaUnavailableError:
            raise
        except Exception as e:
            logger.error("schema_check_failed", error=str(e))
            raise SchemaUnavailableError([f"schema check error: {e}"]) from e

        if missing:
            logger.error("schema_unavailable", missing=missing)
            raise SchemaUnavailableError(missing)

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a query and return results as list of dicts."""
        with self.connection() as conn:
            if self.is_postgres:
                cursor = conn.cursor()
                cursor.execute(self._sql(query), params)
                if cursor.description:
                    return [dict(row) for row in cursor.fetchall()]
                return []
            else:
                cursor = conn.execute(query, params)
                if cursor.description:
                    return [dict(row) for row in cursor.fetchall()]
                return []

    def execute_rowcount(self, query: str, params: tuple = ()) -> int:
        """Execute a write and return the number of affected rows."""
        with self.connection() as conn:
            if self.is_postgres:
                cursor = conn.cursor()
                cursor.execute(self._sql(query), params)
                return cursor.rowcount
            cursor = conn.execute(query, params)
            return cursor.rowcount

    def execute_many(self, query: str, params_list: List[tuple]) -> int:
        """Execute a query with multiple parameter sets."""
        with self.connection() as conn:
            if self.is_postgres:
                cursor = conn.cursor()
                cursor.executemany(self._sql(query), params_list)
                return cursor.rowcount
            else:
                cursor = conn.executemany(query, params_list)
                return cursor.rowcount

    def close(self) -> None:
        """Close database connections."""
        if getattr(self._local, "conn", None) is not None:
            self._local.conn.close()
            self._local.conn = None


def get_database(database_url: Optional[str] = None) -> Database:
    """Get the database singleton instance."""
    db = Database.get_instance(database_url)
    db.initialize()
    return db
