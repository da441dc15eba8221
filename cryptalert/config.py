"""
Configuration loading and validation.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

PROVIDERS = ("coingecko", "portal", "binance", "coinmarketcap")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigValidationError(Exception):
    """Raised when configuration is invalid."""

    pass


@dataclass
class DatabaseConfig:
    """Database configuration."""

    path: str = "data/cryptalert.db"


@dataclass
class MarketDataConfig:
    """Market data source configuration."""

    provider: str = "coingecko"
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    timeout: float = 10.0
    # coin id -> exchange symbol, for providers keyed by symbol
    symbols: dict[str, str] = field(default_factory=dict)


@dataclass
class AlertsConfig:
    """Alert evaluation configuration."""

    check_interval: float = 60
    fetch_timeout: float = 30
    max_alerts_per_user: int = 50
    max_history_items: int = 100


@dataclass
class BrowserNotificationConfig:
    """Browser push settings."""

    push_url: str = ""
    permission_granted: bool = False


@dataclass
class EmailNotificationConfig:
    """Email notification settings."""

    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    from_address: str = ""
    to_addresses: list[str] = field(default_factory=list)
    digest_interval: float = 86400


@dataclass
class RemoteNotificationConfig:
    """Portal server used for SMS and mobile delivery and status sync."""

    base_url: str = ""
    token: Optional[str] = None


@dataclass
class NotificationsConfig:
    """Notifications configuration."""

    group_similar_window: float = 300
    rate_limit_window: float = 60
    max_notifications_per_window: int = 5
    max_stored_notifications: int = 200
    browser: BrowserNotificationConfig = field(default_factory=BrowserNotificationConfig)
    email: EmailNotificationConfig = field(default_factory=EmailNotificationConfig)
    remote: RemoteNotificationConfig = field(default_factory=RemoteNotificationConfig)


@dataclass
class AdvancedConfig:
    """Advanced configuration."""

    log_level: str = "INFO"
    user_id: str = "default"


@dataclass
class AppConfig:
    """Main application configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    market_data: MarketDataConfig = field(default_factory=MarketDataConfig)
    alerts: AlertsConfig = field(default_factory=AlertsConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)
    advanced: AdvancedConfig = field(default_factory=AdvancedConfig)


def _substitute_env_vars(value: Any) -> Any:
    """Substitute environment variables in string values."""
    if isinstance(value, str):
        # Match ${VAR_NAME} pattern
        pattern = r"\$\{([^}]+)\}"
        matches = re.findall(pattern, value)
        for var_name in matches:
            env_value = os.environ.get(var_name, "")
            value = value.replace(f"${{{var_name}}}", env_value)
        return value
    elif isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def _require_positive(section: dict[str, Any], key: str, name: str) -> None:
    value = section.get(key)
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigValidationError(f"{name}.{key} must be a positive number")


def _validate_config(config_dict: dict[str, Any]) -> None:
    """Validate configuration values."""
    # Check database path is provided
    db_config = config_dict.get("database") or {}
    db_path = db_config.get("path")
    if not db_path:
        raise ConfigValidationError("Database path is required")

    if db_path != ":memory:":
        parent = Path(db_path).parent
        if parent.exists() and not os.access(parent, os.W_OK):
            raise ConfigValidationError(f"Database path not writable: {parent}")

    market_data = config_dict.get("market_data") or {}
    provider = market_data.get("provider", "coingecko")
    if provider not in PROVIDERS:
        raise ConfigValidationError(
            f"Unknown market data provider: {provider} (expected one of {', '.join(PROVIDERS)})"
        )
    if provider == "coinmarketcap" and not market_data.get("api_key"):
        raise ConfigValidationError("market_data.api_key is required for coinmarketcap")
    if provider == "portal" and not market_data.get("base_url"):
        raise ConfigValidationError("market_data.base_url is required for portal")
    _require_positive(market_data, "timeout", "market_data")

    alerts = config_dict.get("alerts") or {}
    for key in ("check_interval", "fetch_timeout", "max_alerts_per_user", "max_history_items"):
        _require_positive(alerts, key, "alerts")

    notifications = config_dict.get("notifications") or {}
    for key in (
        "group_similar_window",
        "rate_limit_window",
        "max_notifications_per_window",
        "max_stored_notifications",
    ):
        _require_positive(notifications, key, "notifications")

    advanced = config_dict.get("advanced") or {}
    log_level = str(advanced.get("log_level", "INFO")).upper()
    if log_level not in LOG_LEVELS:
        raise ConfigValidationError(f"Invalid log level: {log_level}")


def build_config(config_dict: dict[str, Any]) -> AppConfig:
    """
    Build and validate configuration from a plain dict.

    Raises:
        ConfigValidationError: If configuration is invalid
    """
    config_dict = _substitute_env_vars(config_dict)
    _validate_config(config_dict)

    try:
        database = DatabaseConfig(**(config_dict.get("database") or {}))
        market_data = MarketDataConfig(**(config_dict.get("market_data") or {}))
        alerts = AlertsConfig(**(config_dict.get("alerts") or {}))

        # Notifications
        notif_dict = dict(config_dict.get("notifications") or {})
        browser_dict = notif_dict.pop("browser", None) or {}
        email_dict = notif_dict.pop("email", None) or {}
        remote_dict = notif_dict.pop("remote", None) or {}
        notifications = NotificationsConfig(
            browser=BrowserNotificationConfig(**browser_dict),
            email=EmailNotificationConfig(**email_dict),
            remote=RemoteNotificationConfig(**remote_dict),
            **notif_dict,
        )

        advanced = AdvancedConfig(**(config_dict.get("advanced") or {}))
    except TypeError as e:
        raise ConfigValidationError(f"Unknown configuration key: {e}") from e

    advanced.log_level = advanced.log_level.upper()

    return AppConfig(
        database=database,
        market_data=market_data,
        alerts=alerts,
        notifications=notifications,
        advanced=advanced,
    )


def load_config(config_path: str) -> AppConfig:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to configuration file

    Returns:
        AppConfig instance

    Raises:
        ConfigValidationError: If configuration is invalid
        FileNotFoundError: If config file doesn't exist
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(path) as f:
        raw_config = yaml.safe_load(f) or {}

    config = build_config(raw_config)
    logging.getLogger(__name__).debug(f"Loaded configuration from {config_path}")
    return config
