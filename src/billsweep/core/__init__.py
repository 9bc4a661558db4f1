"""
Billing core: clocks, billable resources, rate formulas and failure reasons.
"""

from .clock import Clock, SystemClock, FixedClock
from .errors import (
    FailureReason,
    BillingError,
    SchemaUnavailableError,
    TransientLookupFailure,
    ResourceNotFoundError,
    UnknownResourceKindError,
)
from .rates import (
    RateCalculator,
    RateComponents,
    RateInputs,
    RateFallback,
    AddOnFrequency,
    PlanPricing,
    AddOnPricing,
)
from .resources import BillableResource, BillableResourceSource, ResourceKind

__all__ = [
    "Clock",
    "SystemClock",
    "FixedClock",
    "FailureReason",
    "BillingError",
    "SchemaUnavailableError",
    "TransientLookupFailure",
    "ResourceNotFoundError",
    "UnknownResourceKindError",
    "RateCalculator",
    "RateComponents",
    "RateInputs",
    "RateFallback",
    "AddOnFrequency",
    "PlanPricing",
    "AddOnPricing",
    "BillableResource",
    "BillableResourceSource",
    "ResourceKind",
]
