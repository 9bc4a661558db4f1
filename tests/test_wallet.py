"""
Tests for the SQL Wallet Gateway and Payment Lookup
"""

from decimal import Decimal
import pytest

from billsweep.billing import SqlPaymentTransactionLookup, SqlWalletGateway, WalletGatewayError


@pytest.fixture
def wallet(db, clock):
    return SqlWalletGateway(db, clock)


class TestWalletGateway:

    def test_balance_of_missing_wallet(self, wallet):
        assert wallet.get_balance("nobody") is None

    def test_open_and_debit(self, wallet, db):
        wallet.open_wallet("owner-1", Decimal("2.50"))

        reference = wallet.debit("owner-1", Decimal("0.75"), "VPS Hourly Billing - web (1h)")

        assert reference.startswith("txn_")
        assert wallet.get_balance("owner-1") == Decimal("1.75")
        rows = db.execute("SELECT * FROM payment_transactions WHERE id = ?", (reference,))
        assert rows[0]["status"] == "completed"
        assert Decimal(rows[0]["amount"]) == Decimal("0.75")

    def test_debit_refused_when_short(self, wallet):
        wallet.open_wallet("owner-1", Decimal("0.10"))

        assert wallet.debit("owner-1", Decimal("0.50"), "charge") is None
        assert wallet.get_balance("owner-1") == Decimal("0.10")

    def test_debit_refused_without_wallet(self, wallet):
        assert wallet.debit("nobody", Decimal("0.50"), "charge") is None

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-1")])
    def test_non_positive_debit_refused(self, wallet, amount):
        wallet.open_wallet("owner-1", Decimal("5"))

        assert wallet.debit("owner-1", amount, "charge") is None
        assert wallet.get_balance("owner-1") == Decimal("5")

    def test_top_up(self, wallet):
        wallet.open_wallet("owner-1", Decimal("1"))

        assert wallet.top_up("owner-1", Decimal("2.5")) == Decimal("3.5")

    def test_top_up_without_wallet(self, wallet):
        with pytest.raises(WalletGatewayError):
            wallet.top_up("nobody", Decimal("1"))


class TestPaymentLookup:

    def test_finds_transaction_by_description(self, wallet, db, clock):
        wallet.open_wallet("owner-1", Decimal("5"))
        wallet.debit("owner-1", Decimal("0.10"), "PaaS Hourly Billing - api (1h)")
        clock.advance(hours=1)
        latest = wallet.debit("owner-1", Decimal("0.10"), "PaaS Hourly Billing - api (1h)")

        lookup = SqlPaymentTransactionLookup(db)

        assert lookup.find_recent_transaction("owner-1", "PaaS Hourly Billing - api") == latest
        assert lookup.find_recent_transaction("owner-2", "PaaS Hourly Billing - api") is None

    @pytest.mark.parametrize("label", ["web_1", "web%"])
    def test_wildcards_in_description_match_literally(self, wallet, db, label):
        wallet.open_wallet("owner-1", Decimal("5"))
        other = wallet.debit("owner-1", Decimal("0.10"), "VPS Hourly Billing - webX1 (1h)")

        lookup = SqlPaymentTransactionLookup(db)

        assert other is not None
        assert lookup.find_recent_transaction("owner-1", f"VPS Hourly Billing - {label} (1h)") is None

        own = wallet.debit("owner-1", Decimal("0.10"), f"VPS Hourly Billing - {label} (1h)")
        assert lookup.find_recent_transaction("owner-1", f"VPS Hourly Billing - {label} (1h)") == own
