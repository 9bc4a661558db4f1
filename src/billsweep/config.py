"""
Configuration

Billing constants with environment overrides (BILLSWEEP_* variables), plus
structlog setup shared by the CLI and the API server.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Optional
import structlog

from .core.rates import DAILY_MULTIPLIER, DEFAULT_HOURLY_RATE, HOURS_PER_MONTH, RateCalculator


@dataclass
class BillingConfig:
    """Configuration for the billing engine."""
    hours_per_month: Decimal = HOURS_PER_MONTH
    default_hourly_rate: Decimal = DEFAULT_HOURLY_RATE  # Used when a plan cannot be resolved
    daily_multiplier: Decimal = DAILY_MULTIPLIER
    billing_interval: timedelta = field(default_factory=lambda: timedelta(hours=1))
    low_balance_threshold: Decimal = Decimal("1.00")
    max_workers: int = 1  # >1 processes resources on a thread pool
    currency: str = "USD"

    @classmethod
    def from_env(cls) -> "BillingConfig":
        env = os.environ
        return cls(
            hours_per_month=Decimal(env.get("BILLSWEEP_HOURS_PER_MONTH", str(HOURS_PER_MONTH))),
            default_hourly_rate=Decimal(env.get("BILLSWEEP_DEFAULT_HOURLY_RATE", str(DEFAULT_HOURLY_RATE))),
            daily_multiplier=Decimal(env.get("BILLSWEEP_DAILY_MULTIPLIER", str(DAILY_MULTIPLIER))),
            billing_interval=timedelta(minutes=int(env.get("BILLSWEEP_INTERVAL_MINUTES", "60"))),
            low_balance_threshold=Decimal(env.get("BILLSWEEP_LOW_BALANCE_THRESHOLD", "1.00")),
            max_workers=max(1, int(env.get("BILLSWEEP_MAX_WORKERS", "1"))),
            currency=env.get("BILLSWEEP_CURRENCY", "USD"),
        )

    def rate_calculator(self) -> RateCalculator:
        return RateCalculator(
            hours_per_month=self.hours_per_month,
            default_hourly_rate=self.default_hourly_rate,
            daily_multiplier=self.daily_multiplier,
        )


def configure_logging(level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    """
    Configure structlog.

    LOG_LEVEL and LOG_FORMAT (console|json) are read when arguments are omitted.
    """
    level_name = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = os.environ.get("LOG_FORMAT", "console").lower() == "json"

    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        cache_logger_on_first_use=True,
    )
