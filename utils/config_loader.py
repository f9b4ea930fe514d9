"""
utils/config_loader.py

Handles configuration loading, validation, and management with support for:
- JSON configuration files
- .env files and environment variable overrides (HEALMON_ prefix)
- Runtime modifications
- Schema validation (jsonschema) and typed settings (pydantic)
"""

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import jsonschema
from deepmerge import always_merger
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from healing.exceptions import ConfigError

logger = logging.getLogger(__name__)

# Load environment variables from .env file if present (explicit)
dotenv_path = Path(".env")
if dotenv_path.exists():
    load_dotenv(dotenv_path=dotenv_path)
else:
    # Fallback to default behavior (searches for .env in parents)
    load_dotenv()


class MonitorSettings(BaseModel):
    """Scheduler defaults applied to every module registration."""

    model_config = {"protected_namespaces": ()}

    default_check_interval: float = Field(default=30.0, gt=0)
    default_timeout: float = Field(default=5.0, gt=0)
    default_failure_threshold: int = Field(default=3, ge=1)
    history_capacity: int = Field(default=500, ge=1)

    def module_defaults(self) -> Dict[str, Any]:
        return {
            "check_interval": self.default_check_interval,
            "timeout": self.default_timeout,
            "failure_threshold": self.default_failure_threshold,
        }


class AutoHealingConfig(BaseModel):
    """Auto-healing engine configuration."""

    model_config = ConfigDict(extra="forbid", protected_namespaces=())

    enabled: bool = True
    max_remediation_attempts: int = Field(default=5, ge=1)
    cooldown_between_attempts: float = Field(default=30.0, ge=0)
    escalation_threshold: int = Field(default=3, ge=1)
    auto_restart_services: bool = True
    notify_on_remediation: bool = True
    remediation_timeout: float = Field(default=30.0, gt=0)
    # Consecutive failures after which the circuit breaker handler opens;
    # None leaves the circuit breaker out of the handler chain.
    circuit_breaker_failures: Optional[int] = Field(default=None, ge=1)
    circuit_breaker_reset: float = Field(default=60.0, gt=0)


class IncidentSettings(BaseModel):
    """Incident aggregation configuration."""

    model_config = {"protected_namespaces": ()}

    correlation_window: float = Field(default=300.0, gt=0)
    resolved_history: int = Field(default=100, ge=1)


class WebhookSettings(BaseModel):
    """Webhook alert configuration."""

    model_config = {"protected_namespaces": ()}

    enabled: bool = False
    url: Optional[str] = None
    timeout: float = Field(default=10.0, gt=0)


class NotificationSettings(BaseModel):
    """Notification channels."""

    model_config = {"protected_namespaces": ()}

    webhook: WebhookSettings = Field(default_factory=WebhookSettings)


class LoggingSettings(BaseModel):
    """Logging configuration passed to utils.logger.setup_logging()."""

    model_config = {"protected_namespaces": ()}

    level: Optional[str] = None
    format: Optional[str] = None
    console: bool = True
    file_logging: bool = False
    log_file: str = "logs/healing.log"
    log_signals: bool = True


class ConfigModel(BaseModel):
    """Main configuration model."""

    model_config = {"protected_namespaces": ()}

    monitor: MonitorSettings = Field(default_factory=MonitorSettings)
    auto_healing: AutoHealingConfig = Field(default_factory=AutoHealingConfig)
    incidents: IncidentSettings = Field(default_factory=IncidentSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    modules: Dict[str, Dict[str, Any]] = Field(default_factory=dict)


class ConfigLoader:
    """
    Loads and manages configuration with environment variable support.
    Handles validation, defaults, and runtime modifications.
    """

    DEFAULT_CONFIG = {
        "monitor": {
            "default_check_interval": 30.0,
            "default_timeout": 5.0,
            "default_failure_threshold": 3,
            "history_capacity": 500,
        },
        "auto_healing": {
            "enabled": True,
            "max_remediation_attempts": 5,
            "cooldown_between_attempts": 30.0,
            "escalation_threshold": 3,
            "auto_restart_services": True,
            "notify_on_remediation": True,
            "remediation_timeout": 30.0,
            "circuit_breaker_failures": None,
            "circuit_breaker_reset": 60.0,
        },
        "incidents": {
            "correlation_window": 300.0,
            "resolved_history": 100,
        },
        "notifications": {
            "webhook": {"enabled": False, "url": None, "timeout": 10.0},
        },
        # level and format fall back to LOG_LEVEL / LOG_FORMAT when not configured
        "logging": {
            "level": None,
            "format": None,
            "console": True,
            "file_logging": False,
            "log_file": "logs/healing.log",
            "log_signals": True,
        },
        # Per-module overrides keyed by module name, e.g.
        # {"storage": {"failure_threshold": 5, "metadata": {"critical": true}}}
        "modules": {},
    }

    CONFIG_SCHEMA = {
        "type": "object",
        "properties": {
            "monitor": {
                "type": "object",
                "properties": {
                    "default_check_interval": {"type": "number", "exclusiveMinimum": 0},
                    "default_timeout": {"type": "number", "exclusiveMinimum": 0},
                    "default_failure_threshold": {"type": "integer", "minimum": 1},
                    "history_capacity": {"type": "integer", "minimum": 1, "maximum": 100000},
                },
            },
            "auto_healing": {
                "type": "object",
                "properties": {
                    "enabled": {"type": "boolean"},
                    "max_remediation_attempts": {"type": "integer", "minimum": 1},
                    "cooldown_between_attempts": {"type": "number", "minimum": 0},
                    "escalation_threshold": {"type": "integer", "minimum": 1},
                    "auto_restart_services": {"type": "boolean"},
                    "notify_on_remediation": {"type": "boolean"},
                    "remediation_timeout": {"type": "number", "exclusiveMinimum": 0},
                    "circuit_breaker_failures": {"type": ["integer", "null"], "minimum": 1},
                    "circuit_breaker_reset": {"type": "number", "exclusiveMinimum": 0},
                },
            },
            "incidents": {
                "type": "object",
                "properties": {
                    "correlation_window": {"type": "number", "exclusiveMinimum": 0},
                    "resolved_history": {"type": "integer", "minimum": 1},
                },
            },
            "notifications": {
                "type": "object",
                "properties": {
                    "webhook": {
                        "type": "object",
                        "properties": {
                            "enabled": {"type": "boolean"},
                            "url": {"type": ["string", "null"]},
                            "timeout": {"type": "number", "exclusiveMinimum": 0},
                        },
                    },
                },
            },
            "logging": {
                "type": "object",
                "properties": {
                    "level": {
                        "type": ["string", "null"],
                        "enum": ["DEBUG", "INFO", "HEAL", "WARNING", "ERROR", "CRITICAL", None],
                    },
                    "format": {"type": ["string", "null"], "enum": ["color", "pretty", "json", None]},
                    "file_logging": {"type": "boolean"},
                    "log_file": {"type": "string"},
                    "log_signals": {"type": "boolean"},
                },
            },
            "modules": {
                "type": "object",
                "additionalProperties": {"type": "object"},
            },
        },
    }

    def __init__(self):
        """Initialize the config loader."""
        # Use a deep copy to avoid accidental shared references between DEFAULT_CONFIG and runtime config
        self._config = copy.deepcopy(self.DEFAULT_CONFIG)
        self._original_config = None
        self._env_prefix = "HEALMON_"

    def load_config(self, config_path: str = "healmon.json") -> Dict[str, Any]:
        """
        Load configuration from file with environment variable overrides.

        Args:
            config_path: Path to JSON configuration file (optional on disk)

        Returns:
            Merged configuration dictionary

        Raises:
            ConfigError: If the merged configuration is invalid
        """
        config_file = Path(config_path)
        if config_file.exists():
            try:
                with open(config_file, "r", encoding="utf-8") as f:
                    file_config = json.load(f)
            except json.JSONDecodeError as e:
                logger.error(f"Invalid JSON in configuration file {config_path}: {e}")
                raise ConfigError(f"Invalid JSON in configuration file {config_path}: {e}") from e
            except OSError as e:
                logger.error(f"Failed to read configuration file {config_path}: {e}")
                raise
            self._config = always_merger.merge(self._config, file_config)

        self._apply_env_overrides()
        self._validate_config()

        # Keep original for reference (deep copy to preserve full structure)
        self._original_config = copy.deepcopy(self._config)

        logger.info("Configuration loaded successfully")
        return self._config

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides to the configuration.

        Environment variables are expected to be prefixed with HEALMON_ and use
        underscores instead of dots for nested keys. For example:
          - config key: auto_healing.max_remediation_attempts
          - env var name: HEALMON_AUTO_HEALING_MAX_REMEDIATION_ATTEMPTS
        """
        for key in self._flatten_config(self._config):
            env_key = f"{self._env_prefix}{key.upper().replace('.', '_')}"
            if env_key in os.environ:
                # Try to parse JSON values first (numbers, booleans, objects)
                try:
                    env_value = json.loads(os.environ[env_key])
                except json.JSONDecodeError:
                    env_value = os.environ[env_key]

                self._set_config_value(key, env_value)

    def _flatten_config(self, config: Dict[str, Any], parent_key: str = "") -> Dict[str, Any]:
        """Flatten nested configuration dictionary into dot-notated keys."""
        items: Dict[str, Any] = {}
        for key, value in config.items():
            new_key = f"{parent_key}.{key}" if parent_key else key
            if isinstance(value, dict) and value:
                items.update(self._flatten_config(value, new_key))
            else:
                items[new_key] = value
        return items

    def _set_config_value(self, key_path: str, value: Any) -> None:
        """Set a value in the nested config using dot notation."""
        keys = key_path.split(".")
        current = self._config

        for key in keys[:-1]:
            if key not in current or not isinstance(current[key], dict):
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def _validate_config(self) -> None:
        """Validate configuration against schema and models."""
        try:
            jsonschema.validate(instance=self._config, schema=self.CONFIG_SCHEMA)
        except jsonschema.ValidationError as e:
            path = ".".join(str(p) for p in e.absolute_path) or "__root__"
            logger.error(f"Configuration schema validation failed at {path}: {e.message}")
            raise ConfigError("Configuration schema validation failed", field_errors={path: e.message}) from e

        try:
            ConfigModel(**self._config)
        except ValidationError as e:
            logger.error(f"Configuration validation failed: {str(e)}")
            raise ConfigError.from_validation("Configuration validation failed", e) from e

    def settings(self) -> ConfigModel:
        """Typed view of the current configuration."""
        return ConfigModel(**self._config)

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value using dot notation.

        Args:
            key: Dot-separated key path (e.g., 'auto_healing.enabled')
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        current = self._config
        try:
            for part in key.split("."):
                current = current[part]
            return current
        except (KeyError, TypeError):
            return default

    def set(self, key: str, value: Any, validate: bool = True) -> None:
        """
        Set a configuration value at runtime.

        Args:
            key: Dot-separated key path
            value: Value to set
            validate: Whether to validate after setting
        """
        previous = copy.deepcopy(self._config)
        self._set_config_value(key, value)
        if validate:
            try:
                self._validate_config()
            except ConfigError:
                self._config = previous
                raise

    def reset(self) -> None:
        """Reset configuration to originally loaded values."""
        if self._original_config:
            self._config = copy.deepcopy(self._original_config)
            logger.info("Configuration reset to original values")

    def mask_sensitive(self, config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Return a copy of config with sensitive values (webhook URLs, tokens) masked.
        """
        cfg: Dict[str, Any] = copy.deepcopy(config or self._config)
        sensitive_keys = ["url", "token", "secret", "password"]

        def mask_dict(d: Dict[str, Any]) -> Dict[str, Any]:
            for k, v in d.items():
                if isinstance(v, dict):
                    mask_dict(v)
                elif k in sensitive_keys and v:
                    d[k] = "*****"
            return d

        return mask_dict(cfg)


# Global configuration loader instance
_config_loader = ConfigLoader()


def load_config(config_path: str = "healmon.json") -> Dict[str, Any]:
    """Load configuration using the global loader."""
    return _config_loader.load_config(config_path)


def get_config(key: str, default: Any = None) -> Any:
    """Get configuration value using the global loader."""
    return _config_loader.get(key, default)


def set_config(key: str, value: Any, validate: bool = True) -> None:
    """Set configuration value using the global loader."""
    _config_loader.set(key, value, validate)


def get_masked_config() -> Dict[str, Any]:
    """Get masked configuration using the global loader."""
    return _config_loader.mask_sensitive()
