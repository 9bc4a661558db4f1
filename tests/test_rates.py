"""
Tests for Rate Calculator

Covers the per-kind formulas, add-on multipliers and the missing-plan fallback.
"""

from decimal import Decimal
import pytest

from billsweep.core.rates import (
    AddOnFrequency,
    AddOnPricing,
    PlanPricing,
    RateCalculator,
    RateComponents,
    RateFallback,
    RateInputs,
    round_amount,
)


@pytest.fixture
def calculator():
    return RateCalculator()


class TestVMRate:
    """VM base rate plus optional backup tier."""

    def test_monthly_plan_divided_by_730(self, calculator):
        inputs = RateInputs(plan=PlanPricing(base_price=Decimal("20.002")))
        components = calculator.calculate("vm", inputs)

        assert components.base_hourly == Decimal("0.0274")
        assert components.add_on_hourly == Decimal("0")
        assert components.amount_for(5) == Decimal("0.1370")

    def test_markup_added_to_base(self, calculator):
        inputs = RateInputs(plan=PlanPricing(base_price=Decimal("7.30"), markup_price=Decimal("7.30")))
        components = calculator.calculate("vm", inputs)

        assert components.total_hourly == Decimal("0.02")

    def test_daily_backup_costs_one_and_a_half(self, calculator):
        inputs = RateInputs(
            plan=PlanPricing(base_price=Decimal("7.30")),
            add_on=AddOnPricing(base_hourly=Decimal("0.004"), upcharge_hourly=Decimal("0.002")),
            frequency=AddOnFrequency.DAILY,
        )
        components = calculator.calculate("vm", inputs)

        assert components.multiplier == Decimal("1.5")
        # 0.01 + 0.006 * 1.5
        assert components.total_hourly == Decimal("0.019")

    def test_weekly_backup_standard_multiplier(self, calculator):
        inputs = RateInputs(
            plan=PlanPricing(base_price=Decimal("7.30")),
            add_on=AddOnPricing(base_hourly=Decimal("0.004")),
            frequency=AddOnFrequency.WEEKLY,
        )
        components = calculator.calculate("vm", inputs)

        assert components.multiplier == Decimal("1.0")
        assert components.total_hourly == Decimal("0.014")

    def test_backup_ignored_without_tier(self, calculator):
        inputs = RateInputs(
            plan=PlanPricing(base_price=Decimal("7.30")),
            add_on=AddOnPricing(base_hourly=Decimal("0.004")),
            frequency=AddOnFrequency.NONE,
        )
        components = calculator.calculate("vm", inputs)

        assert components.add_on_hourly == Decimal("0")
        assert components.total_hourly == Decimal("0.01")


class TestManagedAppRate:

    def test_replicas_multiply_base(self, calculator):
        inputs = RateInputs(plan=PlanPricing(base_price=Decimal("7.30")), replicas=3)
        components = calculator.calculate("managed_app", inputs)

        assert components.replicas == 3
        assert components.total_hourly == Decimal("0.03")


class TestAddOnRate:

    def test_metered_subscription(self, calculator):
        inputs = RateInputs(
            add_on=AddOnPricing(base_hourly=Decimal("0.01"), upcharge_hourly=Decimal("0.005")),
            frequency=AddOnFrequency.METERED,
        )
        components = calculator.calculate("addon", inputs)

        assert components.base_hourly == Decimal("0")
        assert components.total_hourly == Decimal("0.015")

    def test_daily_subscription(self, calculator):
        inputs = RateInputs(add_on=AddOnPricing(base_hourly=Decimal("0.01")), frequency=AddOnFrequency.DAILY)
        components = calculator.calculate("addon", inputs)

        assert components.total_hourly == Decimal("0.015")

    def test_unset_frequency_bills_as_metered(self, calculator):
        inputs = RateInputs(add_on=AddOnPricing(base_hourly=Decimal("0.01")))
        components = calculator.calculate("addon", inputs)

        assert components.frequency == AddOnFrequency.METERED
        assert components.total_hourly == Decimal("0.01")


class TestFallback:
    """A missing plan never fails billing."""

    def test_legacy_rate_preferred(self, calculator):
        inputs = RateInputs(plan_found=False, legacy_hourly_rate=Decimal("0.05"))
        components = calculator.calculate("vm", inputs, resource_id="vm-1")

        assert components.fallback == RateFallback.LEGACY_RATE
        assert components.used_fallback
        assert components.total_hourly == Decimal("0.05")

    def test_default_rate_when_no_legacy_rate(self, calculator):
        components = calculator.calculate("managed_app", RateInputs(plan_found=False))

        assert components.fallback == RateFallback.DEFAULT_RATE
        assert components.total_hourly == Decimal("0.027")

    def test_zero_legacy_rate_uses_default(self, calculator):
        inputs = RateInputs(plan_found=False, legacy_hourly_rate=Decimal("0"))
        components = calculator.calculate("addon", inputs)

        assert components.fallback == RateFallback.DEFAULT_RATE

    def test_configured_default_rate(self):
        calculator = RateCalculator(default_hourly_rate=Decimal("0.1"))
        components = calculator.calculate("vm", RateInputs(plan_found=False))

        assert components.total_hourly == Decimal("0.1")


class TestAmounts:

    def test_unknown_kind_rejected(self, calculator):
        with pytest.raises(ValueError):
            calculator.calculate("database", RateInputs())

    def test_rounded_once_half_up(self):
        assert round_amount(Decimal("0.00005")) == Decimal("0.0001")
        assert round_amount(Decimal("0.123449")) == Decimal("0.1234")

    def test_rounding_applies_to_total_not_hourly(self):
        # 0.00004/h rounds to 0 per hour, but 3 hours is 0.00012 -> 0.0001
        components = RateComponents(
            base_hourly=Decimal("0.00004"),
            add_on_hourly=Decimal("0"),
            multiplier=Decimal("1"),
        )
        assert components.amount_for(3) == Decimal("0.0001")

    def test_components_survive_serialization(self, calculator):
        inputs = RateInputs(
            plan=PlanPricing(base_price=Decimal("7.30")),
            add_on=AddOnPricing(base_hourly=Decimal("0.004")),
            frequency=AddOnFrequency.DAILY,
        )
        components = calculator.calculate("vm", inputs)
        restored = RateComponents.from_dict(components.to_dict())

        assert restored.total_hourly == components.total_hourly
        assert restored.frequency == AddOnFrequency.DAILY


class TestFrequencyParsing:

    @pytest.mark.parametrize("raw,expected", [
        (None, AddOnFrequency.NONE),
        ("", AddOnFrequency.NONE),
        ("DAILY", AddOnFrequency.DAILY),
        ("weekly", AddOnFrequency.WEEKLY),
        ("hourly", AddOnFrequency.METERED),
    ])
    def test_parse(self, raw, expected):
        assert AddOnFrequency.parse(raw) == expected
