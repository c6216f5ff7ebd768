"""Orchestrator configuration.

A single ``OrchestratorConfig`` is built at startup and passed to every
component that needs it. Values come from defaults, an optional YAML
file (validated against ``CONFIG_SCHEMA``) and a few environment
overrides.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from typing import Optional, Union

import jsonschema
import yaml

from .errors import ConfigError
from .money import quantize_money, to_decimal
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path.cwd() / "data"

_RETRY_SCHEMA = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "max_attempts": {"type": "integer", "minimum": 1},
        "initial_interval_seconds": {"type": "number", "minimum": 0},
        "backoff_coefficient": {"type": "number", "minimum": 1},
        "max_interval_seconds": {"type": "number", "minimum": 0},
    },
}

CONFIG_SCHEMA = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "data_dir": {"type": "string"},
        "reviews_required": {"type": "integer", "minimum": 0},
        "pricing": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "base_hourly_rate": {"type": "number", "exclusiveMinimum": 0},
                "currency": {"type": "string", "pattern": "^[A-Z]{3}$"},
                "urgency_multipliers": {
                    "type": "object",
                    "additionalProperties": {"type": "number", "exclusiveMinimum": 0},
                },
            },
        },
        "fees": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "platform_fee_percent": {"type": "number", "minimum": 0, "maximum": 100},
                "processing_fee_percent": {"type": "number", "minimum": 0, "maximum": 100},
                "processing_fee_fixed": {"type": "number", "minimum": 0},
            },
        },
        "timeouts": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "offer_decision_hours": {"type": "number", "exclusiveMinimum": 0},
                "review_window_days": {"type": "number", "exclusiveMinimum": 0},
                "authorization_expiry_days": {"type": "number", "exclusiveMinimum": 0},
            },
        },
        "matching": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "max_attempts": {"type": "integer", "minimum": 1},
                "backoff_step_minutes": {"type": "number", "minimum": 0},
                "selection_policy": {"type": "string"},
            },
        },
        "activity_retry": _RETRY_SCHEMA,
        "payment_retry": _RETRY_SCHEMA,
    },
}


@dataclass
class PricingConfig:
    """Inputs to the price calculation: rate x hours x urgency."""

    base_hourly_rate: Decimal = Decimal("25.00")
    currency: str = "USD"
    urgency_multipliers: dict[str, Decimal] = field(default_factory=lambda: {
        "low": Decimal("1.0"),
        "medium": Decimal("1.1"),
        "high": Decimal("1.3"),
        "urgent": Decimal("1.5"),
    })

    def multiplier_for(self, urgency: str) -> Decimal:
        return self.urgency_multipliers.get(urgency, Decimal("1.0"))


@dataclass
class FeeConfig:
    """Platform and card-processing fees deducted from the worker payout."""

    platform_fee_percent: Decimal = Decimal("10.0")
    processing_fee_percent: Decimal = Decimal("2.6")
    processing_fee_fixed: Decimal = Decimal("0.10")

    def platform_fee(self, amount: Decimal) -> Decimal:
        return quantize_money(amount * self.platform_fee_percent / 100)

    def processing_fee(self, amount: Decimal) -> Decimal:
        return quantize_money(amount * self.processing_fee_percent / 100 + self.processing_fee_fixed)

    def net_amount(self, amount: Decimal) -> tuple[Decimal, Decimal, Decimal]:
        """Return (net, platform_fee, processing_fee)."""
        platform = self.platform_fee(amount)
        processing = self.processing_fee(amount)
        return quantize_money(amount - platform - processing), platform, processing


@dataclass
class TimeoutConfig:
    offer_decision: timedelta = timedelta(hours=24)
    review_window: timedelta = timedelta(days=7)
    authorization_expiry: timedelta = timedelta(days=7)


@dataclass
class MatchingConfig:
    max_attempts: int = 5
    backoff_step: timedelta = timedelta(minutes=5)
    selection_policy: str = "highest_rating"

    def backoff_for(self, attempt_number: int) -> timedelta:
        """Attempt 1 waits one step, attempt 2 two steps, and so on."""
        return self.backoff_step * attempt_number


@dataclass
class OrchestratorConfig:
    """Top-level configuration passed to every component."""

    data_dir: Path = DEFAULT_DATA_DIR
    pricing: PricingConfig = field(default_factory=PricingConfig)
    fees: FeeConfig = field(default_factory=FeeConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    activity_retry: RetryPolicy = field(default_factory=RetryPolicy)
    payment_retry: RetryPolicy = field(
        default_factory=lambda: RetryPolicy(
            max_attempts=5, initial_interval=60.0, backoff_coefficient=2.0, max_interval=3600.0
        )
    )
    reviews_required: int = 2

    @classmethod
    def from_dict(cls, data: dict) -> "OrchestratorConfig":
        """Build a config from a validated mapping."""
        try:
            jsonschema.validate(instance=data, schema=CONFIG_SCHEMA)
        except jsonschema.ValidationError as e:
            location = ".".join(str(p) for p in e.absolute_path) or "<root>"
            raise ConfigError(f"Invalid configuration at {location}: {e.message}") from e

        config = cls()
        if "data_dir" in data:
            config.data_dir = Path(data["data_dir"])
        if "reviews_required" in data:
            config.reviews_required = data["reviews_required"]

        pricing = data.get("pricing", {})
        if "base_hourly_rate" in pricing:
            config.pricing.base_hourly_rate = to_decimal(pricing["base_hourly_rate"])
        if "currency" in pricing:
            config.pricing.currency = pricing["currency"]
        for urgency, multiplier in pricing.get("urgency_multipliers", {}).items():
            config.pricing.urgency_multipliers[urgency] = to_decimal(multiplier)

        fees = data.get("fees", {})
        if "platform_fee_percent" in fees:
            config.fees.platform_fee_percent = to_decimal(fees["platform_fee_percent"])
        if "processing_fee_percent" in fees:
            config.fees.processing_fee_percent = to_decimal(fees["processing_fee_percent"])
        if "processing_fee_fixed" in fees:
            config.fees.processing_fee_fixed = to_decimal(fees["processing_fee_fixed"])

        timeouts = data.get("timeouts", {})
        if "offer_decision_hours" in timeouts:
            config.timeouts.offer_decision = timedelta(hours=timeouts["offer_decision_hours"])
        if "review_window_days" in timeouts:
            config.timeouts.review_window = timedelta(days=timeouts["review_window_days"])
        if "authorization_expiry_days" in timeouts:
            config.timeouts.authorization_expiry = timedelta(days=timeouts["authorization_expiry_days"])

        matching = data.get("matching", {})
        if "max_attempts" in matching:
            config.matching.max_attempts = matching["max_attempts"]
        if "backoff_step_minutes" in matching:
            config.matching.backoff_step = timedelta(minutes=matching["backoff_step_minutes"])
        if "selection_policy" in matching:
            config.matching.selection_policy = matching["selection_policy"]

        if "activity_retry" in data:
            config.activity_retry = RetryPolicy.from_dict(data["activity_retry"])
        if "payment_retry" in data:
            config.payment_retry = RetryPolicy.from_dict(data["payment_retry"])

        return config


def apply_env_overrides(config: OrchestratorConfig) -> OrchestratorConfig:
    """Apply ORCHESTRATOR_DATA_DIR and PLATFORM_FEE_PERCENT."""
    data_dir = os.environ.get("ORCHESTRATOR_DATA_DIR")
    if data_dir:
        config.data_dir = Path(data_dir)

    fee = os.environ.get("PLATFORM_FEE_PERCENT")
    if fee:
        try:
            config.fees.platform_fee_percent = Decimal(fee)
        except ArithmeticError as e:
            raise ConfigError(f"PLATFORM_FEE_PERCENT is not a number: {fee!r}") from e
    return config


def load_config(path: Optional[Union[str, Path]] = None) -> OrchestratorConfig:
    """Load configuration from a YAML file plus environment overrides."""
    data: dict = {}
    if path is not None:
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        with open(path) as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Config file {path} is not valid YAML: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        logger.debug("Loaded configuration from %s", path)

    config = apply_env_overrides(OrchestratorConfig.from_dict(data))
    logger.info(
        "Configuration ready: data_dir=%s platform_fee=%s%%",
        config.data_dir, config.fees.platform_fee_percent,
    )
    return config
