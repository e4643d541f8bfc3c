"""Engine configuration: YAML loading, schema checks and derived settings."""

import os
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, fields

import yaml

logger = logging.getLogger(__name__)


@dataclass
class ConfigValidationError:
    """One problem found in the config file."""
    path: str
    message: str


class ConfigValidationException(Exception):
    """Raised when the config file cannot be used."""

    def __init__(self, errors: List[ConfigValidationError]):
        self.errors = errors
        lines = "\n".join(f"{e.path}: {e.message}" for e in errors)
        super().__init__(f"Configuration validation failed:\n{lines}")


def _field(kind: str, min=None, max=None, options=None) -> Dict[str, Any]:
    rule: Dict[str, Any] = {"type": kind}
    if min is not None:
        rule["min"] = min
    if max is not None:
        rule["max"] = max
    if options is not None:
        rule["options"] = options
    return rule


def _section(**properties) -> Dict[str, Any]:
    return {"type": "dict", "properties": properties}


# Every section and key is optional; anything not listed here is rejected
CONFIG_SCHEMA = {
    "server": _section(
        host=_field("str"),
        port=_field("int", min=1, max=65535),
        debug=_field("bool"),
    ),
    "database": _section(
        url=_field("str"),
    ),
    "engine": _section(
        monitor_interval_seconds=_field("float", min=1),
        signal_interval_seconds=_field("float", min=1),
        metrics_interval_seconds=_field("float", min=1),
        balance_sync_interval_seconds=_field("float", min=1),
        maintenance_interval_seconds=_field("float", min=1),
        signal_retention_days=_field("int", min=1),
        audit_retention_days=_field("int", min=1),
        orderbook_depth=_field("int", min=1, max=1000),
        parallel_exchange_groups=_field("bool"),
    ),
    "exchanges": _section(
        request_timeout_seconds=_field("float", min=1),
        allow_ccxt_fallback=_field("bool"),
        read_retry_count=_field("int", min=1, max=10),
        read_retry_delay=_field("float", min=0),
    ),
    "webhooks": _section(
        base_url=_field("str"),
    ),
    "logging": _section(
        level=_field("str", options=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]),
        format=_field("str"),
        bot_log_dir=_field("str"),
    ),
}

_PYTHON_TYPES = {
    "str": (str,),
    "int": (int,),
    "float": (int, float),
    "bool": (bool,),
}


def _check(value: Any, rule: Dict[str, Any], path: str, errors: List[ConfigValidationError]) -> None:
    """Append every problem with ``value`` to ``errors``."""
    kind = rule["type"]

    if kind == "dict":
        if not isinstance(value, dict):
            errors.append(ConfigValidationError(path, f"Expected dict, got {type(value).__name__}"))
            return
        properties = rule["properties"]
        for key, item in value.items():
            item_path = f"{path}.{key}" if path else key
            if key not in properties:
                errors.append(ConfigValidationError(item_path, f"Unknown configuration key '{key}'"))
            else:
                _check(item, properties[key], item_path, errors)
        return

    numeric = kind in ("int", "float")
    # bool is an int subclass; reject it for numeric fields
    if not isinstance(value, _PYTHON_TYPES[kind]) or (numeric and isinstance(value, bool)):
        errors.append(ConfigValidationError(path, f"Expected {kind}, got {type(value).__name__}"))
        return

    if numeric and "min" in rule and value < rule["min"]:
        errors.append(ConfigValidationError(path, f"Value {value} is below minimum {rule['min']}"))
    if numeric and "max" in rule and value > rule["max"]:
        errors.append(ConfigValidationError(path, f"Value {value} is above maximum {rule['max']}"))
    if "options" in rule and value not in rule["options"]:
        errors.append(ConfigValidationError(path, f"Value '{value}' not in allowed options: {rule['options']}"))


# EngineSettings attribute -> config key
_SETTING_KEYS = {
    "monitor_interval_seconds": "engine.monitor_interval_seconds",
    "signal_interval_seconds": "engine.signal_interval_seconds",
    "metrics_interval_seconds": "engine.metrics_interval_seconds",
    "balance_sync_interval_seconds": "engine.balance_sync_interval_seconds",
    "maintenance_interval_seconds": "engine.maintenance_interval_seconds",
    "signal_retention_days": "engine.signal_retention_days",
    "audit_retention_days": "engine.audit_retention_days",
    "orderbook_depth": "engine.orderbook_depth",
    "parallel_exchange_groups": "engine.parallel_exchange_groups",
    "request_timeout_seconds": "exchanges.request_timeout_seconds",
    "allow_ccxt_fallback": "exchanges.allow_ccxt_fallback",
    "read_retry_count": "exchanges.read_retry_count",
    "read_retry_delay": "exchanges.read_retry_delay",
    "bot_log_dir": "logging.bot_log_dir",
}


@dataclass
class EngineSettings:
    """Runtime knobs for the bot supervisor and its scheduled jobs."""
    monitor_interval_seconds: float = 10.0
    signal_interval_seconds: float = 60.0
    metrics_interval_seconds: float = 300.0
    balance_sync_interval_seconds: float = 3600.0
    maintenance_interval_seconds: float = 86400.0
    signal_retention_days: int = 30
    audit_retention_days: int = 90
    orderbook_depth: int = 100
    parallel_exchange_groups: bool = False
    request_timeout_seconds: float = 10.0
    allow_ccxt_fallback: bool = True
    read_retry_count: int = 3
    read_retry_delay: float = 1.0
    bot_log_dir: Optional[str] = None

    @classmethod
    def from_config(cls, config: "ConfigService") -> "EngineSettings":
        """Build settings from a loaded config, falling back to defaults."""
        defaults = cls()
        return cls(**{
            f.name: config.get(_SETTING_KEYS[f.name], getattr(defaults, f.name))
            for f in fields(cls)
        })


class ConfigService:
    """Loads config.yaml once at startup and answers dot-notation lookups."""

    def __init__(self, config_path: Optional[str] = None):
        """
        Args:
            config_path: Path to config file. If None, uses BOTENGINE_CONFIG
                or config.yaml in the backend directory.
        """
        if config_path is None:
            backend_dir = Path(__file__).parent.parent.parent
            config_path = os.environ.get("BOTENGINE_CONFIG", str(backend_dir / "config.yaml"))

        self.config_path = config_path
        self._config: Dict[str, Any] = {}

    def load_and_validate(self) -> Dict[str, Any]:
        """Read the file and check it against CONFIG_SCHEMA.

        A missing file is not an error; the engine runs on defaults.

        Raises:
            ConfigValidationException: Unreadable YAML or any schema problem.
        """
        if not os.path.exists(self.config_path):
            logger.warning(f"Config file not found at {self.config_path}, using defaults")
            self._config = {}
            return self._config

        try:
            with open(self.config_path, "r") as f:
                loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigValidationException([ConfigValidationError("", f"Invalid YAML syntax: {e}")])

        if not isinstance(loaded, dict):
            raise ConfigValidationException([
                ConfigValidationError("", f"Config must be a dictionary, got {type(loaded).__name__}")
            ])

        errors: List[ConfigValidationError] = []
        _check(loaded, {"type": "dict", "properties": CONFIG_SCHEMA}, "", errors)
        if errors:
            raise ConfigValidationException(errors)

        self._config = loaded
        logger.info(f"Configuration loaded and validated from {self.config_path}")
        return loaded

    def get(self, key: str, default: Any = None) -> Any:
        """Look up a dot-notation key such as "engine.monitor_interval_seconds"."""
        node: Any = self._config
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node


# Global config service instance
config_service = ConfigService()
