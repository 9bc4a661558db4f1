"""
Wallet Gateway

The prepaid wallet is owned by an external service. The billing engine only
asks two things of it: what is the balance, and debit this amount. A third,
best-effort lookup links ledger entries to the payment transaction the debit
created.

`SqlWalletGateway` is the gateway implementation backed by the platform's
`wallets` / `payment_transactions` tables. When it shares the engine's
database, debits join the executor's transaction.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional
import uuid
import structlog

from ..core.clock import Clock, SystemClock, format_instant
from ..core.errors import TransientLookupFailure
from ..core.rates import round_amount, to_decimal
from ..persistence.database import Database, get_database

logger = structlog.get_logger()


class WalletGatewayError(Exception):
    """Raised by a gateway when a debit was attempted and definitely did not happen."""
    pass


class WalletGateway(ABC):
    """Prepaid balance service consumed by the billing engine."""

    @abstractmethod
    def get_balance(self, owner_id: str) -> Optional[Decimal]:
        """Current balance, or None when the owner has no wallet."""

    @abstractmethod
    def debit(self, owner_id: str, amount: Decimal, description: str) -> Optional[str]:
        """
        Atomically debit `amount`.

        Returns a payment reference on success and None when the gateway
        refused the debit. Callers must not retry.
        """


class PaymentTransactionLookup(ABC):
    """Best-effort lookup of the transaction a debit produced."""

    @abstractmethod
    def find_recent_transaction(self, owner_id: str, description_match: str) -> Optional[str]:
        """Most recent completed transaction id whose description contains `description_match`."""


class SqlWalletGateway(WalletGateway):
    """Wallet gateway over the `wallets` and `payment_transactions` tables."""

    def __init__(self, db: Optional[Database] = None, clock: Optional[Clock] = None):
        self.db = db or get_database()
        self.clock = clock or SystemClock()

    def get_balance(self, owner_id: str) -> Optional[Decimal]:
        rows = self.db.execute(
            "SELECT balance FROM wallets WHERE owner_id = ?",
            (owner_id,)
        )
        if not rows:
            return None
        return to_decimal(rows[0]["balance"])

    def debit(self, owner_id: str, amount: Decimal, description: str) -> Optional[str]:
        amount = round_amount(to_decimal(amount))
        if amount <= 0:
            logger.warning("wallet_debit_rejected", owner_id=owner_id, amount=str(amount), reason="non_positive_amount")
            return None

        with self.db.transaction():
            rows = self.db.execute(
                f"SELECT balance FROM wallets WHERE owner_id = ?{self.db.row_lock_clause}",
                (owner_id,)
            )
            if not rows:
                logger.warning("wallet_debit_rejected", owner_id=owner_id, reason="wallet_missing")
                return None

            balance = to_decimal(rows[0]["balance"])
            if balance < amount:
                logger.warning(
                    "wallet_debit_rejected",
                    owner_id=owner_id,
                    reason="insufficient_balance",
                    balance=str(balance),
                    amount=str(amount),
                )
                return None

            now = format_instant(self.clock.now())
            reference = f"txn_{uuid.uuid4().hex[:24]}"

            self.db.execute(
                "UPDATE wallets SET balance = ?, updated_at = ? WHERE owner_id = ?",
                (str(round_amount(balance - amount)), now, owner_id)
            )
            self.db.execute(
                """INSERT INTO payment_transactions (id, owner_id, amount, description, status, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (reference, owner_id, str(amount), description, "completed", now)
            )

        logger.info("wallet_debited", owner_id=owner_id, amount=str(amount), reference=reference)
        return reference

    def open_wallet(self, owner_id: str, balance: Decimal = Decimal("0"), currency: str = "USD") -> None:
        """Create a wallet (platform onboarding; not used by billing itself)."""
        self.db.execute(
            "INSERT INTO wallets (owner_id, balance, currency, updated_at) VALUES (?, ?, ?, ?)",
            (owner_id, str(round_amount(to_decimal(balance))), currency, format_instant(self.clock.now()))
        )
        logger.info("wallet_opened", owner_id=owner_id, balance=str(balance))

    def top_up(self, owner_id: str, amount: Decimal) -> Decimal:
        """Credit a wallet and return the new balance."""
        with self.db.transaction():
            current = self.get_balance(owner_id)
            if current is None:
                raise WalletGatewayError(f"No wallet for owner {owner_id}")
            new_balance = round_amount(current + to_decimal(amount))
            self.db.execute(
                "UPDATE wallets SET balance = ?, updated_at = ? WHERE owner_id = ?",
                (str(new_balance), format_instant(self.clock.now()), owner_id)
            )
        logger.info("wallet_topped_up", owner_id=owner_id, amount=str(amount), balance=str(new_balance))
        return new_balance


def escape_like(value: str) -> str:
    """Make `value` match literally inside a LIKE pattern (escape char: backslash)."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class SqlPaymentTransactionLookup(PaymentTransactionLookup):
    """Finds payment transactions by description match."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def find_recent_transaction(self, owner_id: str, description_match: str) -> Optional[str]:
        try:
            rows = self.db.execute(
                """SELECT id FROM payment_transactions
                   WHERE owner_id = ?
                     AND description LIKE ? ESCAPE '\\'
                     AND status = 'completed'
                   ORDER BY created_at DESC
                   LIMIT 1""",
                (owner_id, f"%{escape_like(description_match)}%")
            )
        except Exception as e:
            raise TransientLookupFailure(f"Payment transaction lookup failed: {e}") from e
        return rows[0]["id"] if rows else None
