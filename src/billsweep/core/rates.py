"""
Rate Calculator

Turns a resource's plan snapshot into an hourly rate:

    total_hourly = base_hourly + add_on_hourly * multiplier

Base rates come from monthly plan prices divided by the canonical 730 hours
per month. Add-ons (backup tiers, add-on subscriptions) are priced hourly and
scaled by their frequency multiplier. Nothing is rounded here; amounts are
rounded once, to 4 places, when hours are applied.

A missing plan never raises. The calculator falls back to the resource's
legacy hourly rate, or to the platform default, and marks the result so the
substitution is visible in logs and in the ledger.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Callable, Dict, Optional
import structlog

logger = structlog.get_logger()

HOURS_PER_MONTH = Decimal("730")
DEFAULT_HOURLY_RATE = Decimal("0.027")
DAILY_MULTIPLIER = Decimal("1.5")
STANDARD_MULTIPLIER = Decimal("1.0")
AMOUNT_QUANTUM = Decimal("0.0001")


def to_decimal(value: Any) -> Decimal:
    """Convert a stored numeric (str, float, int, Decimal, None) to Decimal."""
    if value is None or value == "":
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_amount(value: Decimal) -> Decimal:
    """Round a monetary amount to the ledger's 4 decimal places."""
    return value.quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)


class AddOnFrequency(Enum):
    """Add-on tiers. DAILY costs 1.5x, WEEKLY and METERED 1x."""
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    METERED = "metered"

    @classmethod
    def parse(cls, value: Optional[str]) -> "AddOnFrequency":
        if not value:
            return cls.NONE
        try:
            return cls(str(value).lower())
        except ValueError:
            # Unknown tiers bill at the standard multiplier
            return cls.METERED


class RateFallback(Enum):
    """Which substitute rate was used when the plan could not be found."""
    NONE = "none"
    LEGACY_RATE = "legacy_rate"
    DEFAULT_RATE = "default_rate"


@dataclass
class PlanPricing:
    """Monthly plan prices."""
    base_price: Decimal
    markup_price: Decimal = Decimal("0")


@dataclass
class AddOnPricing:
    """Hourly add-on prices (backup tier or add-on subscription plan)."""
    base_hourly: Decimal
    upcharge_hourly: Decimal = Decimal("0")


@dataclass
class RateInputs:
    """
    Everything the calculator needs about one resource.

    `plan_found` is False when the catalog could not resolve the resource's
    plan; in that case plan pricing is ignored and a fallback rate is used.
    """
    plan: Optional[PlanPricing] = None
    add_on: Optional[AddOnPricing] = None
    frequency: AddOnFrequency = AddOnFrequency.NONE
    legacy_hourly_rate: Optional[Decimal] = None
    replicas: int = 1
    plan_found: bool = True


@dataclass
class RateComponents:
    """Hourly rate breakdown stored with every ledger entry."""
    base_hourly: Decimal
    add_on_hourly: Decimal
    multiplier: Decimal
    fallback: RateFallback = RateFallback.NONE
    frequency: AddOnFrequency = AddOnFrequency.NONE
    replicas: int = 1

    @property
    def total_hourly(self) -> Decimal:
        return self.base_hourly + self.add_on_hourly * self.multiplier

    @property
    def used_fallback(self) -> bool:
        return self.fallback != RateFallback.NONE

    def amount_for(self, hours: int) -> Decimal:
        """Price `hours` whole hours, rounded once to 4 places."""
        return round_amount(self.total_hourly * hours)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "base_hourly": str(self.base_hourly),
            "add_on_hourly": str(self.add_on_hourly),
            "multiplier": str(self.multiplier),
            "total_hourly": str(self.total_hourly),
            "fallback": self.fallback.value,
            "frequency": self.frequency.value,
            "replicas": self.replicas,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RateComponents":
        return cls(
            base_hourly=to_decimal(data.get("base_hourly")),
            add_on_hourly=to_decimal(data.get("add_on_hourly")),
            multiplier=to_decimal(data.get("multiplier", "1")),
            fallback=RateFallback(data.get("fallback", "none")),
            frequency=AddOnFrequency.parse(data.get("frequency")),
            replicas=int(data.get("replicas", 1)),
        )


class RateCalculator:
    """
    Per-kind hourly rate formulas.

    Each resource kind registers one formula; all of them share the fallback
    policy for missing plans.
    """

    def __init__(
        self,
        hours_per_month: Decimal = HOURS_PER_MONTH,
        default_hourly_rate: Decimal = DEFAULT_HOURLY_RATE,
        daily_multiplier: Decimal = DAILY_MULTIPLIER,
    ):
        self.hours_per_month = to_decimal(hours_per_month)
        self.default_hourly_rate = to_decimal(default_hourly_rate)
        self.daily_multiplier = to_decimal(daily_multiplier)

        self._formulas: Dict[str, Callable[[RateInputs], RateComponents]] = {
            "vm": self._vm_rate,
            "managed_app": self._managed_app_rate,
            "addon": self._addon_rate,
        }

    def calculate(self, kind: str, inputs: RateInputs, resource_id: Optional[str] = None) -> RateComponents:
        """Compute the hourly rate for a resource of `kind`."""
        formula = self._formulas.get(kind)
        if formula is None:
            raise ValueError(f"No rate formula for resource kind {kind!r}")

        if not inputs.plan_found:
            return self._fallback_rate(kind, inputs, resource_id)

        return formula(inputs)

    def multiplier_for(self, frequency: AddOnFrequency) -> Decimal:
        if frequency == AddOnFrequency.DAILY:
            return self.daily_multiplier
        return STANDARD_MULTIPLIER

    def monthly_base(self, plan: Optional[PlanPricing]) -> Decimal:
        if plan is None:
            return Decimal("0")
        return (to_decimal(plan.base_price) + to_decimal(plan.markup_price)) / self.hours_per_month

    def _add_on_hourly(self, inputs: RateInputs) -> Decimal:
        if inputs.add_on is None or inputs.frequency == AddOnFrequency.NONE:
            return Decimal("0")
        return to_decimal(inputs.add_on.base_hourly) + to_decimal(inputs.add_on.upcharge_hourly)

    def _vm_rate(self, inputs: RateInputs) -> RateComponents:
        return RateComponents(
            base_hourly=self.monthly_base(inputs.plan),
            add_on_hourly=self._add_on_hourly(inputs),
            multiplier=self.multiplier_for(inputs.frequency),
            frequency=inputs.frequency,
        )

    def _managed_app_rate(self, inputs: RateInputs) -> RateComponents:
        replicas = max(1, int(inputs.replicas or 1))
        return RateComponents(
            base_hourly=self.monthly_base(inputs.plan) * replicas,
            add_on_hourly=self._add_on_hourly(inputs),
            multiplier=self.multiplier_for(inputs.frequency),
            frequency=inputs.frequency,
            replicas=replicas,
        )

    def _addon_rate(self, inputs: RateInputs) -> RateComponents:
        # Subscriptions are always attached, so NONE bills at the metered tier
        frequency = inputs.frequency
        if frequency == AddOnFrequency.NONE:
            frequency = AddOnFrequency.METERED
        add_on = Decimal("0")
        if inputs.add_on is not None:
            add_on = to_decimal(inputs.add_on.base_hourly) + to_decimal(inputs.add_on.upcharge_hourly)
        return RateComponents(
            base_hourly=Decimal("0"),
            add_on_hourly=add_on,
            multiplier=self.multiplier_for(frequency),
            frequency=frequency,
        )

    def _fallback_rate(self, kind: str, inputs: RateInputs, resource_id: Optional[str]) -> RateComponents:
        if inputs.legacy_hourly_rate is not None and to_decimal(inputs.legacy_hourly_rate) > 0:
            rate = to_decimal(inputs.legacy_hourly_rate)
            fallback = RateFallback.LEGACY_RATE
        else:
            rate = self.default_hourly_rate
            fallback = RateFallback.DEFAULT_RATE

        logger.warning(
            "rate_fallback_applied",
            kind=kind,
            resource_id=resource_id,
            fallback=fallback.value,
            hourly_rate=str(rate),
        )

        return RateComponents(
            base_hourly=rate,
            add_on_hourly=Decimal("0"),
            multiplier=STANDARD_MULTIPLIER,
            fallback=fallback,
            frequency=inputs.frequency,
        )
