"""
Liveness Configuration Module - Centralized configuration management.

Provides:
1. Hierarchical configuration with defaults
2. Environment variable overrides (HBAVS_* prefix)
3. Config file loading (JSON/TOML/YAML)
4. Validation on startup

Configuration Hierarchy (highest to lowest priority):
1. Environment variables
2. Config file
3. Default values

Example:
    config = HBAVSConfig.load("monitor.yaml")
    print(config.monitor.poll_interval_seconds)

    # Override with environment
    # HBAVS_MONITOR_POLL_INTERVAL_SECONDS=5
    # HBAVS_MONITOR_OPERATORS=0xabc,0xdef
"""

from __future__ import annotations

import json
import logging
import os
import tomllib
from dataclasses import dataclass, field, asdict
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

logger = logging.getLogger(__name__)


class RemediationMode(Enum):
    """What the monitor does when an operator becomes overdue."""
    ALERT_ONLY = "alert-only"
    ALERT_AND_PENALIZE = "alert-and-penalize"


def _split_csv(value: Union[str, List[str], None]) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item).strip() for item in value if str(item).strip()]


# =============================================================================
# Configuration Sections
# =============================================================================

@dataclass
class LedgerConfig:
    """Ledger parameters and persistence."""
    interval: int = 30
    grace: int = 10
    escalation_threshold: int = 3
    one_penalty_per_window: bool = False
    snapshot_path: Optional[str] = None

    def __post_init__(self):
        if self.interval <= 0:
            raise ValueError("interval must be positive")
        if self.grace < 0:
            raise ValueError("grace must be non-negative")
        if self.escalation_threshold <= 0:
            raise ValueError("escalation_threshold must be positive")


@dataclass
class MonitorConfig:
    """Monitor cadence, timeouts and remediation policy."""
    operators: List[str] = field(default_factory=list)
    poll_interval_seconds: float = 15.0
    read_timeout_seconds: float = 5.0
    max_concurrent_reads: int = 16
    warning_resend_seconds: float = 300.0
    error_alert_cooldown_seconds: float = 300.0
    remediation: RemediationMode = RemediationMode.ALERT_ONLY
    status_host: str = "127.0.0.1"
    status_port: int = 0  # 0 disables the status endpoint

    def __post_init__(self):
        self.operators = [op.lower() for op in _split_csv(self.operators)]
        if isinstance(self.remediation, str):
            self.remediation = RemediationMode(self.remediation)
        if self.poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be positive")
        if self.read_timeout_seconds <= 0:
            raise ValueError("read_timeout_seconds must be positive")
        if self.max_concurrent_reads <= 0:
            raise ValueError("max_concurrent_reads must be positive")
        if self.warning_resend_seconds < 0 or self.error_alert_cooldown_seconds < 0:
            raise ValueError("alert cooldowns must be non-negative")


@dataclass
class AlertsConfig:
    """Alert delivery."""
    sink: str = "log"  # "log" or "telegram"
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    telegram_api_base: str = "https://api.telegram.org"
    timeout_seconds: float = 10.0

    def __post_init__(self):
        if self.sink not in ("log", "telegram"):
            raise ValueError(f"Invalid alert sink: {self.sink}")
        if self.telegram_chat_id is not None:
            self.telegram_chat_id = str(self.telegram_chat_id)


@dataclass
class ApiConfig:
    """Ledger HTTP API."""
    host: str = "127.0.0.1"
    port: int = 8545
    url: str = "http://127.0.0.1:8545"
    admin_api_key: Optional[str] = None
    slasher_api_key: Optional[str] = None
    # operator id -> key the operator presents (X-Operator-Key) with its proofs
    operator_api_keys: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if not isinstance(self.operator_api_keys, dict):
            raise ValueError("operator_api_keys must be a mapping of operator id to key")
        self.operator_api_keys = {
            str(op).strip().lower(): str(key) for op, key in self.operator_api_keys.items()
        }


@dataclass
class AgentConfig:
    """Operator proof agent."""
    operator: Optional[str] = None
    proof_interval_seconds: float = 30.0
    note: str = "All systems operational."
    api_key: Optional[str] = None  # this operator's proof key

    def __post_init__(self):
        if self.operator is not None:
            self.operator = self.operator.strip().lower()
        if self.proof_interval_seconds <= 0:
            raise ValueError("proof_interval_seconds must be positive")


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str = "text"  # "json" or "text"
    file: Optional[str] = None
    redact: bool = True


# =============================================================================
# Main Configuration
# =============================================================================

@dataclass
class HBAVSConfig:
    """
    Main configuration.

    Combines all configuration sections into a single object.
    """
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    alerts: AlertsConfig = field(default_factory=AlertsConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def load(
        cls,
        config_file: Optional[Union[str, Path]] = None,
        env_prefix: str = "HBAVS",
    ) -> "HBAVSConfig":
        """
        Load configuration with hierarchy: env vars > config file > defaults.

        Args:
            config_file: Path to config file (JSON, TOML or YAML)
            env_prefix: Prefix for environment variables

        Returns:
            Loaded and validated configuration
        """
        config_dict: Dict[str, Any] = {}

        if config_file:
            config_dict = cls._load_file(Path(config_file))

        config_dict = cls._apply_env_overrides(config_dict, env_prefix)

        config = cls._from_dict(config_dict)
        config.validate()
        return config

    @classmethod
    def _load_file(cls, path: Path) -> Dict[str, Any]:
        """Load configuration from file."""
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        content = path.read_text()

        if path.suffix == ".json":
            parsed = json.loads(content)
        elif path.suffix == ".toml":
            parsed = tomllib.loads(content)
        elif path.suffix in {".yaml", ".yml"}:
            parsed = yaml.safe_load(content)
        else:
            raise ValueError(f"Unknown config file format: {path.suffix}")

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise ValueError("Config file must be a mapping at top level")
        return parsed

    @classmethod
    def _apply_env_overrides(cls, config: Dict[str, Any], prefix: str) -> Dict[str, Any]:
        """Apply environment variable overrides."""
        for key, value in os.environ.items():
            if not key.startswith(f"{prefix}_"):
                continue

            # HBAVS_MONITOR_POLL_INTERVAL_SECONDS -> monitor.poll_interval_seconds
            parts = key[len(prefix) + 1:].lower().split("_")

            if len(parts) < 2:
                continue

            section = parts[0]
            field_name = "_".join(parts[1:])

            # HBAVS_LOG_* belongs to hbavs.logging, not to a config section
            if section not in cls.__dataclass_fields__:
                continue

            if section not in config or not isinstance(config[section], dict):
                config[section] = {}

            config[section][field_name] = cls._parse_env_value(value)

        return config

    @staticmethod
    def _parse_env_value(value: str) -> Any:
        """Parse environment variable value to appropriate type."""
        if value.lower() in ("true", "yes"):
            return True
        if value.lower() in ("false", "no"):
            return False

        try:
            return int(value)
        except ValueError:
            pass

        try:
            return float(value)
        except ValueError:
            pass

        return value

    @classmethod
    def _from_dict(cls, config_dict: Dict[str, Any]) -> "HBAVSConfig":
        """Build config object from dictionary."""
        return cls(
            ledger=LedgerConfig(**config_dict.get("ledger", {})),
            monitor=MonitorConfig(**config_dict.get("monitor", {})),
            alerts=AlertsConfig(**config_dict.get("alerts", {})),
            api=ApiConfig(**config_dict.get("api", {})),
            agent=AgentConfig(**config_dict.get("agent", {})),
            logging=LoggingConfig(**config_dict.get("logging", {})),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = asdict(self)
        data["monitor"]["remediation"] = self.monitor.remediation.value
        return data

    def to_json(self, indent: int = 2) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), indent=indent)

    def validate(self) -> None:
        """Validate cross-section configuration."""
        if self.alerts.sink == "telegram":
            if not self.alerts.telegram_bot_token or not self.alerts.telegram_chat_id:
                raise ValueError("telegram sink requires telegram_bot_token and telegram_chat_id")

        if self.logging.level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid logging level: {self.logging.level}")

        if self.logging.format not in ("json", "text"):
            raise ValueError(f"Invalid logging format: {self.logging.format}")


# =============================================================================
# Global Config Instance
# =============================================================================

_global_config: Optional[HBAVSConfig] = None


def get_config() -> HBAVSConfig:
    """Get global configuration instance."""
    global _global_config
    if _global_config is None:
        _global_config = HBAVSConfig.load()
    return _global_config


def set_config(config: HBAVSConfig) -> None:
    """Set global configuration instance."""
    global _global_config
    _global_config = config


def reset_config() -> None:
    """Reset global configuration to None (forces reload)."""
    global _global_config
    _global_config = None
