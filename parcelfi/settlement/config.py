"""
PARCELFI Configuration System

Unified configuration for the settlement engine with YAML files,
environment variables, validation, and runtime updates.

Configuration Sources (in order of precedence):
    1. Environment variables (PARCELFI_*)
    2. Runtime overrides
    3. User config file (~/.parcelfi/config.yaml)
    4. Project config file (./parcelfi.yaml or ./config/parcelfi.yaml)
    5. Default values

Engine components receive their config group through the constructor;
`get_config()` is only a convenience for entry points such as the CLI.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

T = TypeVar("T")


class ConfigError(Exception):
    """Configuration error."""
    pass


class ConfigValidationError(ConfigError):
    """Configuration validation error."""
    pass


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding,
    validation, and change callbacks.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    secret: bool = False
    _value: Optional[T] = field(default=None, repr=False)
    _callbacks: List[Callable[[Optional[T], T], None]] = field(default_factory=list, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])

        return self._value if self._value is not None else self.default

    def set(self, value: Any) -> None:
        """Set the value with coercion and validation."""
        if isinstance(value, str) and not isinstance(self.default, str):
            value = self._coerce(value)
        elif isinstance(self.default, Decimal) and not isinstance(value, Decimal):
            value = Decimal(str(value))
        elif isinstance(self.default, float) and isinstance(value, int) and not isinstance(value, bool):
            value = float(value)

        if self.validator and not self.validator(value):
            raise ConfigValidationError(f"Invalid value for config: {value}")

        old_value = self._value
        self._value = value

        for callback in self._callbacks:
            callback(old_value, value)

    def reset(self) -> None:
        """Drop any runtime override."""
        self._value = None

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        if target_type == bool:
            return value.lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            return int(value)  # type: ignore
        elif target_type == float:
            return float(value)  # type: ignore
        elif target_type == Decimal:
            return Decimal(value)  # type: ignore
        elif target_type == list:
            return value.split(",")  # type: ignore
        else:
            return value  # type: ignore

    def on_change(self, callback: Callable[[Optional[T], T], None]) -> None:
        """Register a change callback."""
        self._callbacks.append(callback)


@dataclass
class SettlementConfig:
    """Configuration for the Settlement Verifier."""
    max_retries: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=20,
        env_var="PARCELFI_SETTLEMENT_MAX_RETRIES",
        description="Receipt polls before a confirmation is reported pending",
        validator=lambda x: 1 <= x <= 200,
    ))
    retry_delay_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=1.5,
        env_var="PARCELFI_SETTLEMENT_RETRY_DELAY",
        description="Fixed delay between receipt polls in seconds",
        validator=lambda x: 0 <= x <= 30,
    ))
    hard_timeout_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=45.0,
        env_var="PARCELFI_SETTLEMENT_HARD_TIMEOUT",
        description="Upper bound on a single confirmation wait in seconds",
        validator=lambda x: 0 < x <= 120,
    ))
    amount_tolerance: ConfigValue[Decimal] = field(default_factory=lambda: ConfigValue(
        default=Decimal("0.0001"),
        env_var="PARCELFI_SETTLEMENT_AMOUNT_TOLERANCE",
        description="Accepted |actual - expected| in accounting units",
        validator=lambda x: x >= 0,
    ))
    accept_unverified_amount: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=True,
        env_var="PARCELFI_SETTLEMENT_ACCEPT_UNVERIFIED",
        description="Confirm a successful receipt when the transfer record is unavailable",
    ))
    units_per_accounting_unit: ConfigValue[Decimal] = field(default_factory=lambda: ConfigValue(
        default=Decimal("1"),
        env_var="PARCELFI_SETTLEMENT_UNITS_PER_UNIT",
        description="Native network units per accounting unit",
        validator=lambda x: x > 0,
    ))
    pending_retry_after_seconds: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=30,
        env_var="PARCELFI_SETTLEMENT_RETRY_AFTER",
        description="Retry hint returned with a pending confirmation",
        validator=lambda x: x > 0,
    ))
    prefer_subscription: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=True,
        env_var="PARCELFI_SETTLEMENT_PREFER_SUBSCRIPTION",
        description="Await pushed receipts when the client supports it",
    ))
    platform_account: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="0.0.platform",
        env_var="PARCELFI_SETTLEMENT_PLATFORM_ACCOUNT",
        description="Settlement account that funds and collects express loans",
    ))


@dataclass
class CustodyConfig:
    """Configuration for the Collateral Custody Coordinator."""
    max_attempts: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=3,
        env_var="PARCELFI_CUSTODY_MAX_ATTEMPTS",
        description="Attempts per custody call when the network times out",
        validator=lambda x: 1 <= x <= 10,
    ))
    base_delay_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=2.0,
        env_var="PARCELFI_CUSTODY_BASE_DELAY",
        description="Base delay between custody retries in seconds",
        validator=lambda x: x >= 0,
    ))
    backoff: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="linear",
        env_var="PARCELFI_CUSTODY_BACKOFF",
        description="Backoff strategy (fixed, linear, exponential)",
        validator=lambda x: x in ("fixed", "linear", "exponential"),
    ))


@dataclass
class LoanPolicyConfig:
    """Bounds on loan terms."""
    min_principal: ConfigValue[Decimal] = field(default_factory=lambda: ConfigValue(
        default=Decimal("1000"),
        env_var="PARCELFI_POLICY_MIN_PRINCIPAL",
        description="Minimum principal",
        validator=lambda x: x > 0,
    ))
    max_principal: ConfigValue[Decimal] = field(default_factory=lambda: ConfigValue(
        default=Decimal("100000"),
        env_var="PARCELFI_POLICY_MAX_PRINCIPAL",
        description="Maximum principal",
        validator=lambda x: x > 0,
    ))
    min_rate_bps: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=500,
        env_var="PARCELFI_POLICY_MIN_RATE_BPS",
        description="Minimum annual rate in basis points",
        validator=lambda x: 0 <= x <= 10000,
    ))
    max_rate_bps: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=5000,
        env_var="PARCELFI_POLICY_MAX_RATE_BPS",
        description="Maximum annual rate in basis points",
        validator=lambda x: 0 <= x <= 10000,
    ))
    min_duration_months: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1,
        env_var="PARCELFI_POLICY_MIN_DURATION",
        description="Minimum duration in months",
        validator=lambda x: x >= 1,
    ))
    max_duration_months: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=60,
        env_var="PARCELFI_POLICY_MAX_DURATION",
        description="Maximum duration in months",
        validator=lambda x: x >= 1,
    ))
    min_ltv_bps: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=3000,
        env_var="PARCELFI_POLICY_MIN_LTV_BPS",
        description="Minimum loan-to-value cap in basis points",
        validator=lambda x: 0 <= x <= 10000,
    ))
    max_ltv_bps: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=8000,
        env_var="PARCELFI_POLICY_MAX_LTV_BPS",
        description="Maximum loan-to-value cap in basis points",
        validator=lambda x: 0 <= x <= 10000,
    ))
    express_max_ltv_bps: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=7000,
        env_var="PARCELFI_POLICY_EXPRESS_MAX_LTV_BPS",
        description="Loan-to-value cap for express loans",
        validator=lambda x: 0 <= x <= 10000,
    ))
    express_max_principal: ConfigValue[Decimal] = field(default_factory=lambda: ConfigValue(
        default=Decimal("50000"),
        env_var="PARCELFI_POLICY_EXPRESS_MAX_PRINCIPAL",
        description="Maximum principal for express loans",
        validator=lambda x: x > 0,
    ))
    express_rate_bps: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=600,
        env_var="PARCELFI_POLICY_EXPRESS_RATE_BPS",
        description="Fixed annual rate for express loans",
        validator=lambda x: 0 <= x <= 10000,
    ))
    express_duration_months: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=12,
        env_var="PARCELFI_POLICY_EXPRESS_DURATION",
        description="Fixed duration for express loans",
        validator=lambda x: x >= 1,
    ))
    days_per_month: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=30,
        env_var="PARCELFI_POLICY_DAYS_PER_MONTH",
        description="Days per month for due dates and elapsed-month interest",
        validator=lambda x: 28 <= x <= 31,
    ))


@dataclass
class ReputationConfig:
    """Reputation score deltas per lifecycle event."""
    funded_lender_delta: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=5,
        env_var="PARCELFI_REPUTATION_FUNDED_LENDER",
        description="Score added to the lender when a loan is funded",
    ))
    repaid_borrower_delta: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=10,
        env_var="PARCELFI_REPUTATION_REPAID_BORROWER",
        description="Score added to the borrower on repayment",
    ))
    repaid_lender_delta: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=5,
        env_var="PARCELFI_REPUTATION_REPAID_LENDER",
        description="Score added to the lender on repayment",
    ))
    liquidated_borrower_delta: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=-20,
        env_var="PARCELFI_REPUTATION_LIQUIDATED_BORROWER",
        description="Score added to the borrower on liquidation",
        validator=lambda x: x <= 0,
    ))


@dataclass
class LedgerConfig:
    """Configuration for the Ledger Publisher."""
    enabled: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=True,
        env_var="PARCELFI_LEDGER_ENABLED",
        description="Mirror lifecycle events to the public ledger",
    ))
    topic_id: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="0.0.lifecycle",
        env_var="PARCELFI_LEDGER_TOPIC",
        description="Ledger topic receiving lifecycle events",
        validator=lambda x: bool(x),
    ))
    publish_timeout_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=10.0,
        env_var="PARCELFI_LEDGER_TIMEOUT",
        description="Timeout for a single mirror submission",
        validator=lambda x: x > 0,
    ))
    source: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="parcelfi-settlement",
        env_var="PARCELFI_LEDGER_SOURCE",
        description="Source label stamped on mirrored envelopes",
    ))
    sign_events: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=True,
        env_var="PARCELFI_LEDGER_SIGN",
        description="Attach an Ed25519 proof when a signing key is configured",
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for Observability."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="PARCELFI_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="PARCELFI_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class LendingConfig:
    """
    Root configuration for the settlement engine.

    Aggregates all component configurations and provides
    loading/saving functionality.
    """
    settlement: SettlementConfig = field(default_factory=SettlementConfig)
    custody: CustodyConfig = field(default_factory=CustodyConfig)
    policy: LoanPolicyConfig = field(default_factory=LoanPolicyConfig)
    reputation: ReputationConfig = field(default_factory=ReputationConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary of plain values."""
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                value = obj.get()
                return str(value) if isinstance(value, Decimal) else value
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), default_flow_style=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LendingConfig":
        """Build a fresh config with the given overrides applied."""
        config = cls()
        apply_overrides(config, data)
        return config


def apply_overrides(config_obj: Any, values: Dict[str, Any], path: str = "") -> None:
    """Apply a nested dict onto a config tree, rejecting unknown keys."""
    for key, value in values.items():
        key_path = f"{path}.{key}" if path else key
        if not hasattr(config_obj, key):
            raise ConfigError(f"Unknown config key: {key_path}")
        attr = getattr(config_obj, key)
        if isinstance(attr, ConfigValue):
            attr.set(value)
        elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
            apply_overrides(attr, value, key_path)
        else:
            raise ConfigError(f"Invalid config value at {key_path}")


class ConfigManager:
    """
    Configuration manager with file loading and environment binding.

    Thread-safe singleton that manages configuration lifecycle.
    """

    _instance: Optional["ConfigManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "ConfigManager":
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._initialized = False
            return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._config = LendingConfig()
        self._config_paths: List[Path] = []
        self._watchers: List[Callable[[LendingConfig], None]] = []
        self._initialized = True

    @property
    def config(self) -> LendingConfig:
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)

        if data:
            if not isinstance(data, dict):
                raise ConfigError(f"Configuration file must contain a mapping: {path}")
            apply_overrides(self._config, data)
            if path not in self._config_paths:
                self._config_paths.append(path)

    def load_defaults(self) -> List[Path]:
        """Load default configuration files if they exist; returns the ones loaded."""
        default_paths = [
            Path("parcelfi.yaml"),
            Path("config/parcelfi.yaml"),
            Path.home() / ".parcelfi" / "config.yaml",
        ]

        loaded = []
        for path in default_paths:
            if path.exists():
                self.load_from_file(path)
                loaded.append(path)
        return loaded

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: config.set("settlement.max_retries", 10)
        """
        attr = self._resolve(path)
        if not isinstance(attr, ConfigValue):
            raise ConfigError(f"Invalid config path: {path}")
        attr.set(value)

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: config.get("settlement.amount_tolerance")
        """
        obj = self._resolve(path)
        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def _resolve(self, path: str) -> Any:
        obj: Any = self._config
        for part in path.split("."):
            if not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        return obj

    def watch(self, callback: Callable[[LendingConfig], None]) -> None:
        """Register a callback for configuration reloads."""
        self._watchers.append(callback)

    def reload(self) -> None:
        """Reload configuration from all loaded files."""
        for path in self._config_paths:
            if path.exists():
                self.load_from_file(path)

        for watcher in self._watchers:
            watcher(self._config)

    def reset(self) -> None:
        """Discard all runtime overrides and loaded files."""
        self._config = LendingConfig()
        self._config_paths = []

    def validate(self) -> List[str]:
        """
        Validate all configuration values, including cross-field bounds.

        Returns list of validation errors.
        """
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                    if obj.validator and not obj.validator(value):
                        errors.append(f"{path}: validation failed for value {value}")
                except Exception as e:
                    errors.append(f"{path}: {e}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)
        if errors:
            return errors

        policy = self._config.policy
        for low, high in (
            ("min_principal", "max_principal"),
            ("min_rate_bps", "max_rate_bps"),
            ("min_duration_months", "max_duration_months"),
            ("min_ltv_bps", "max_ltv_bps"),
        ):
            if getattr(policy, low).get() > getattr(policy, high).get():
                errors.append(f"policy.{low}: exceeds policy.{high}")

        settlement = self._config.settlement
        polling_budget = settlement.max_retries.get() * settlement.retry_delay_seconds.get()
        if polling_budget > 120:
            errors.append(
                f"settlement.max_retries: polling budget {polling_budget}s exceeds 120s"
            )
        return errors

    def export_schema(self) -> Dict[str, Any]:
        """Export configuration schema for documentation."""
        schema: Dict[str, Any] = {"properties": {}}

        def extract_schema(obj: Any, properties: Dict[str, Any]) -> None:
            if isinstance(obj, ConfigValue):
                properties["type"] = type(obj.default).__name__
                properties["default"] = "***" if obj.secret else str(obj.default)
                properties["description"] = obj.description
                if obj.env_var:
                    properties["env_var"] = obj.env_var
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    properties[field_name] = {}
                    extract_schema(getattr(obj, field_name), properties[field_name])

        extract_schema(self._config, schema["properties"])
        return schema


def get_config() -> LendingConfig:
    """Get the process-wide configuration."""
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    """Get the configuration manager instance."""
    return ConfigManager()
