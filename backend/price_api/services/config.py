"""Configuration management and validation service."""

import os
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field

import yaml

logger = logging.getLogger(__name__)


@dataclass
class ConfigValidationError:
    """Represents a configuration validation error."""
    path: str
    message: str


class ConfigValidationException(Exception):
    """Raised when config validation fails."""

    def __init__(self, errors: List[ConfigValidationError]):
        self.errors = errors
        messages = [f"{e.path}: {e.message}" for e in errors]
        super().__init__("Configuration validation failed:\n" + "\n".join(messages))


PROVIDER_SCHEMA = {
    "type": "dict",
    "required": False,
    "properties": {
        "enabled": {"type": "bool", "required": False},
        "base_url": {"type": "str", "required": False},
        "api_key": {"type": "str", "required": False},
        "vocabulary": {"type": "dict", "required": False},
        "contract_tokens": {"type": "dict", "required": False},
    }
}

# Configuration schema definition
CONFIG_SCHEMA = {
    "server": {
        "type": "dict",
        "required": False,
        "properties": {
            "host": {"type": "str", "required": False},
            "port": {"type": "int", "required": False, "min": 1, "max": 65535},
            "debug": {"type": "bool", "required": False},
            "cors_origins": {"type": "list", "required": False},
        }
    },
    "database": {
        "type": "dict",
        "required": False,
        "properties": {
            "url": {"type": "str", "required": False},
        }
    },
    "logging": {
        "type": "dict",
        "required": False,
        "properties": {
            "level": {"type": "str", "required": False, "options": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]},
            "format": {"type": "str", "required": False},
        }
    },
    "pricing": {
        "type": "dict",
        "required": False,
        "properties": {
            "margin_ngn": {"type": "float", "required": False, "min": 0},
            "fresh_threshold_seconds": {"type": "int", "required": False, "min": 1},
            "stale_threshold_seconds": {"type": "int", "required": False, "min": 1},
            "tracked_tokens": {"type": "list", "required": False},
            "emergency_defaults": {"type": "dict", "required": False},
        }
    },
    "scheduler": {
        "type": "dict",
        "required": False,
        "properties": {
            "refresh_interval_seconds": {"type": "int", "required": False, "min": 1},
            "min_request_interval_seconds": {"type": "int", "required": False, "min": 0},
            "base_backoff_seconds": {"type": "int", "required": False, "min": 1},
            "backoff_ceiling_seconds": {"type": "int", "required": False, "min": 1},
            "initial_retry_delay_seconds": {"type": "float", "required": False, "min": 0},
            "max_retries": {"type": "int", "required": False, "min": 0, "max": 10},
        }
    },
    "providers": {
        "type": "dict",
        "required": False,
        "properties": {
            "priority": {"type": "list", "required": False},
            "request_timeout_seconds": {"type": "float", "required": False, "min": 1, "max": 120},
            "coingecko": PROVIDER_SCHEMA,
            "coincap": PROVIDER_SCHEMA,
            "binance": PROVIDER_SCHEMA,
        }
    },
    "exchange_rate": {
        "type": "dict",
        "required": False,
        "properties": {
            "fallback_rate": {"type": "float", "required": False, "min": 0},
            "cache_ttl_seconds": {"type": "int", "required": False, "min": 0},
            "timeout_seconds": {"type": "float", "required": False, "min": 1},
            "sources": {"type": "list", "required": False},
        }
    },
}

KNOWN_PROVIDERS = ("coingecko", "coincap", "binance")


class ConfigService:
    """Service for loading and validating configuration."""

    def __init__(self, config_path: Optional[str] = None):
        """Initialize config service.

        Args:
            config_path: Path to config file. If None, uses default location.
        """
        if config_path is None:
            # Default config path relative to backend directory
            backend_dir = Path(__file__).parent.parent.parent
            config_path = str(backend_dir / "config.yaml")

        self.config_path = config_path
        self._config: Dict[str, Any] = {}

    @property
    def config(self) -> Dict[str, Any]:
        return self._config

    def load_and_validate(self) -> Dict[str, Any]:
        """Load and validate the configuration file.

        Returns:
            Validated configuration dictionary.

        Raises:
            ConfigValidationException: If validation fails.
        """
        errors: List[ConfigValidationError] = []

        # Check if file exists
        if not os.path.exists(self.config_path):
            logger.warning(f"Config file not found at {self.config_path}, using defaults")
            self._config = {}
            return self._config

        # Load YAML
        try:
            with open(self.config_path, 'r') as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            errors.append(ConfigValidationError(
                path="",
                message=f"Invalid YAML syntax: {str(e)}"
            ))
            raise ConfigValidationException(errors)

        return self.validate(config)

    def validate(self, config: Any) -> Dict[str, Any]:
        """Validate an already parsed configuration and keep it.

        Raises:
            ConfigValidationException: If validation fails.
        """
        if config is None:
            config = {}

        if not isinstance(config, dict):
            raise ConfigValidationException([ConfigValidationError(
                path="",
                message=f"Config must be a dictionary, got {type(config).__name__}"
            )])

        errors = self._validate_dict(config, CONFIG_SCHEMA, "")
        if not errors:
            errors.extend(self._validate_relations(config))

        if errors:
            raise ConfigValidationException(errors)

        self._config = config
        logger.info(f"Configuration loaded and validated from {self.config_path}")
        return config

    def _validate_dict(
        self,
        data: Dict[str, Any],
        schema: Dict[str, Any],
        path: str
    ) -> List[ConfigValidationError]:
        """Validate a dictionary against schema.

        Args:
            data: Data to validate
            schema: Schema to validate against
            path: Current path for error messages

        Returns:
            List of validation errors
        """
        errors = []

        # Check for unknown keys
        for key in data:
            if key not in schema:
                errors.append(ConfigValidationError(
                    path=f"{path}.{key}" if path else key,
                    message=f"Unknown configuration key '{key}'"
                ))

        # Validate each schema property
        for key, prop_schema in schema.items():
            current_path = f"{path}.{key}" if path else key

            if key not in data:
                if prop_schema.get("required", False):
                    errors.append(ConfigValidationError(
                        path=current_path,
                        message="Required field missing"
                    ))
                continue

            value = data[key]
            errors.extend(self._validate_value(value, prop_schema, current_path))

        return errors

    def _validate_value(
        self,
        value: Any,
        schema: Dict[str, Any],
        path: str
    ) -> List[ConfigValidationError]:
        """Validate a single value against schema.

        Args:
            value: Value to validate
            schema: Schema to validate against
            path: Current path for error messages

        Returns:
            List of validation errors
        """
        errors = []
        expected_type = schema.get("type")

        # Type validation
        type_map = {
            "str": str,
            "int": int,
            "float": (int, float),
            "bool": bool,
            "list": list,
            "dict": dict,
        }

        if expected_type == "dict":
            if not isinstance(value, dict):
                errors.append(ConfigValidationError(
                    path=path,
                    message=f"Expected dict, got {type(value).__name__}"
                ))
                return errors

            # Validate nested properties
            if "properties" in schema:
                errors.extend(self._validate_dict(value, schema["properties"], path))

        elif expected_type in type_map:
            expected = type_map[expected_type]
            # bool is an int subclass; reject it for numeric fields
            if not isinstance(value, expected) or (
                expected_type in ("int", "float") and isinstance(value, bool)
            ):
                errors.append(ConfigValidationError(
                    path=path,
                    message=f"Expected {expected_type}, got {type(value).__name__}"
                ))
                return errors

            # Numeric range validation
            if expected_type in ("int", "float"):
                if "min" in schema and value < schema["min"]:
                    errors.append(ConfigValidationError(
                        path=path,
                        message=f"Value {value} is below minimum {schema['min']}"
                    ))
                if "max" in schema and value > schema["max"]:
                    errors.append(ConfigValidationError(
                        path=path,
                        message=f"Value {value} is above maximum {schema['max']}"
                    ))

            # Options validation
            if "options" in schema and value not in schema["options"]:
                errors.append(ConfigValidationError(
                    path=path,
                    message=f"Value '{value}' not in allowed options: {schema['options']}"
                ))

        return errors

    def _validate_relations(self, config: Dict[str, Any]) -> List[ConfigValidationError]:
        """Checks that span more than one field."""
        errors = []
        defaults = PriceSettings()

        pricing = config.get("pricing", {})
        fresh = pricing.get("fresh_threshold_seconds", defaults.fresh_threshold_seconds)
        stale = pricing.get("stale_threshold_seconds", defaults.stale_threshold_seconds)
        if stale <= fresh:
            errors.append(ConfigValidationError(
                path="pricing.stale_threshold_seconds",
                message=f"Must be greater than fresh_threshold_seconds ({fresh})"
            ))

        scheduler = config.get("scheduler", {})
        base = scheduler.get("base_backoff_seconds", defaults.base_backoff_seconds)
        ceiling = scheduler.get("backoff_ceiling_seconds", defaults.backoff_ceiling_seconds)
        if ceiling < base:
            errors.append(ConfigValidationError(
                path="scheduler.backoff_ceiling_seconds",
                message=f"Must be at least base_backoff_seconds ({base})"
            ))

        priority = config.get("providers", {}).get("priority", [])
        for name in priority:
            if name not in KNOWN_PROVIDERS:
                errors.append(ConfigValidationError(
                    path="providers.priority",
                    message=f"Unknown provider '{name}'. Valid providers: {list(KNOWN_PROVIDERS)}"
                ))
        if "priority" in config.get("providers", {}) and not priority:
            errors.append(ConfigValidationError(
                path="providers.priority",
                message="At least one provider is required"
            ))

        return errors

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value.

        Args:
            key: Dot-notation key (e.g., "server.port")
            default: Default value if not found

        Returns:
            Configuration value
        """
        keys = key.split(".")
        value = self._config

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value


DEFAULT_TRACKED_TOKENS = [
    "tether",
    "usd-coin",
    "ethereum",
    "bitcoin",
    "binancecoin",
    "solana",
]

# USD prices served only when no cached data exists at all
DEFAULT_EMERGENCY_DEFAULTS = {
    "tether": 1.0,
    "usd-coin": 1.0,
    "ethereum": 3200.0,
}

DEFAULT_RATE_SOURCES = [
    {"name": "open.er-api.com", "url": "https://open.er-api.com/v6/latest/USD", "path": "rates.NGN"},
    {"name": "exchangerate-api.com", "url": "https://api.exchangerate-api.com/v4/latest/USD", "path": "rates.NGN"},
]


@dataclass
class ProviderSettings:
    """Settings for one upstream price provider."""
    enabled: bool = True
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    vocabulary: Dict[str, str] = field(default_factory=dict)
    contract_tokens: Dict[str, Dict[str, str]] = field(default_factory=dict)


@dataclass
class PriceSettings:
    """Typed view of every tunable of the price service."""
    # Pricing
    margin_ngn: float = 20.0
    fresh_threshold_seconds: int = 60 * 60
    stale_threshold_seconds: int = 48 * 60 * 60
    tracked_tokens: List[str] = field(default_factory=lambda: list(DEFAULT_TRACKED_TOKENS))
    emergency_defaults: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_EMERGENCY_DEFAULTS))

    # Scheduler
    refresh_interval_seconds: int = 20 * 60
    min_request_interval_seconds: int = 20 * 60
    base_backoff_seconds: int = 5 * 60
    backoff_ceiling_seconds: int = 2 * 60 * 60
    initial_retry_delay_seconds: float = 30.0
    max_retries: int = 3

    # Providers
    provider_priority: List[str] = field(default_factory=lambda: list(KNOWN_PROVIDERS))
    request_timeout_seconds: float = 45.0
    providers: Dict[str, ProviderSettings] = field(default_factory=dict)

    # Exchange rate
    fallback_rate: float = 1520.0
    rate_cache_ttl_seconds: int = 15 * 60
    rate_timeout_seconds: float = 10.0
    rate_sources: List[Dict[str, str]] = field(default_factory=lambda: [dict(s) for s in DEFAULT_RATE_SOURCES])

    # Server
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:5173", "http://localhost:3000"])

    def provider(self, name: str) -> ProviderSettings:
        """Settings for a provider, defaults when not configured."""
        return self.providers.get(name) or ProviderSettings()

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "PriceSettings":
        """Build settings from a validated configuration dictionary."""
        settings = cls()
        pricing = config.get("pricing", {})
        scheduler = config.get("scheduler", {})
        providers = config.get("providers", {})
        exchange_rate = config.get("exchange_rate", {})
        server = config.get("server", {})

        settings.margin_ngn = float(pricing.get("margin_ngn", settings.margin_ngn))
        settings.fresh_threshold_seconds = pricing.get("fresh_threshold_seconds", settings.fresh_threshold_seconds)
        settings.stale_threshold_seconds = pricing.get("stale_threshold_seconds", settings.stale_threshold_seconds)
        if "tracked_tokens" in pricing:
            settings.tracked_tokens = [str(t).strip().lower() for t in pricing["tracked_tokens"]]
        if "emergency_defaults" in pricing:
            settings.emergency_defaults = {
                str(k): float(v) for k, v in pricing["emergency_defaults"].items()
            }

        for key in (
            "refresh_interval_seconds",
            "min_request_interval_seconds",
            "base_backoff_seconds",
            "backoff_ceiling_seconds",
            "initial_retry_delay_seconds",
            "max_retries",
        ):
            if key in scheduler:
                setattr(settings, key, scheduler[key])

        if "priority" in providers:
            settings.provider_priority = list(providers["priority"])
        settings.request_timeout_seconds = float(
            providers.get("request_timeout_seconds", settings.request_timeout_seconds)
        )
        for name in KNOWN_PROVIDERS:
            provider_cfg = providers.get(name)
            if provider_cfg is None:
                continue
            settings.providers[name] = ProviderSettings(
                enabled=provider_cfg.get("enabled", True),
                base_url=provider_cfg.get("base_url"),
                api_key=provider_cfg.get("api_key") or None,
                vocabulary=dict(provider_cfg.get("vocabulary", {})),
                contract_tokens=dict(provider_cfg.get("contract_tokens", {})),
            )

        settings.fallback_rate = float(exchange_rate.get("fallback_rate", settings.fallback_rate))
        settings.rate_cache_ttl_seconds = exchange_rate.get("cache_ttl_seconds", settings.rate_cache_ttl_seconds)
        settings.rate_timeout_seconds = float(exchange_rate.get("timeout_seconds", settings.rate_timeout_seconds))
        if "sources" in exchange_rate:
            settings.rate_sources = list(exchange_rate["sources"])

        if "cors_origins" in server:
            settings.cors_origins = list(server["cors_origins"])

        return settings


# Global config service instance
config_service = ConfigService()
