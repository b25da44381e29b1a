"""
Configuration loading and validation.
"""

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml

from alertflow.database.models import CHANNELS
from alertflow.queue.base import CADENCE_UNITS
from alertflow.timeutil import is_valid_timezone, minutes_since_midnight


class ConfigValidationError(Exception):
    """Raised when configuration is invalid."""

    pass


@dataclass
class DatabaseConfig:
    """Database configuration."""

    path: str = "data/alertflow.db"


@dataclass
class MarketDataConfig:
    """Value source configuration."""

    provider: str = "yahoo_finance"
    portfolio_api_url: Optional[str] = None
    timeout_seconds: float = 10.0


@dataclass
class TriggerConfig:
    """A named recurring trigger that enqueues one job type."""

    job: str
    payload: dict[str, Any] = field(default_factory=dict)
    every: int = 1
    unit: str = "minutes"
    at: Optional[str] = None
    market_hours_only: bool = False
    weekdays_only: bool = False
    enabled: bool = True


def _default_triggers() -> dict[str, TriggerConfig]:
    return {
        "price-check": TriggerConfig(
            job="batch-check", payload={"rule_type": "price"}, market_hours_only=True
        ),
        "percentage-check": TriggerConfig(
            job="batch-check", payload={"rule_type": "percentage"}, market_hours_only=True
        ),
        "volume-check": TriggerConfig(
            job="batch-check",
            payload={"rule_type": "volume"},
            every=2,
            market_hours_only=True,
        ),
        "portfolio-check": TriggerConfig(
            job="batch-check", payload={"rule_type": "portfolio"}, every=5
        ),
        "pattern-check": TriggerConfig(
            job="batch-check", payload={"rule_type": "pattern"}, every=15
        ),
        "process-queue": TriggerConfig(job="process-queue"),
        "expire-alerts": TriggerConfig(job="expire-alerts", every=15),
        "daily-summaries": TriggerConfig(
            job="daily-summaries", unit="days", at="17:00", weekdays_only=True
        ),
        "cleanup-old": TriggerConfig(job="cleanup-old", unit="sunday", at="00:00"),
        "cleanup-webhooks": TriggerConfig(job="cleanup-webhooks", unit="days", at="03:00"),
    }


@dataclass
class ScheduleConfig:
    """Schedule configuration."""

    timezone: str = "America/Toronto"
    market_open: str = "09:00"
    market_close: str = "17:00"
    triggers: dict[str, TriggerConfig] = field(default_factory=_default_triggers)


@dataclass
class EmailNotificationConfig:
    """Email notification settings."""

    enabled: bool = False
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    from_address: str = "alerts@example.com"
    use_tls: bool = True


@dataclass
class SMSNotificationConfig:
    """SMS (Twilio) settings."""

    enabled: bool = False
    account_sid: str = ""
    auth_token: str = ""
    from_number: str = ""
    api_url: str = "https://api.twilio.com/2010-04-01"


@dataclass
class PushNotificationConfig:
    """Push (FCM) settings."""

    enabled: bool = False
    server_key: str = ""
    endpoint: str = "https://fcm.googleapis.com/fcm/send"


@dataclass
class WebhookNotificationConfig:
    """Outbound and inbound webhook settings."""

    enabled: bool = True
    secret: Optional[str] = None
    timeout_seconds: float = 30.0
    max_retries: int = 3
    retry_delay_seconds: float = 1.0
    max_retry_after_seconds: float = 60.0
    signature_tolerance_seconds: int = 300


@dataclass
class NotificationsConfig:
    """Notifications configuration."""

    email: EmailNotificationConfig = field(default_factory=EmailNotificationConfig)
    sms: SMSNotificationConfig = field(default_factory=SMSNotificationConfig)
    push: PushNotificationConfig = field(default_factory=PushNotificationConfig)
    webhook: WebhookNotificationConfig = field(default_factory=WebhookNotificationConfig)
    default_channels: list[str] = field(default_factory=lambda: ["inapp"])
    max_retries: int = 3
    retry_base_seconds: float = 60.0
    retry_multiplier: float = 2.0
    lease_seconds: int = 300
    retention_days: int = 30
    batch_size: int = 10


@dataclass
class QueueConfig:
    """Work queue configuration."""

    workers: int = 2
    poll_interval_seconds: float = 1.0


@dataclass
class AdvancedConfig:
    """Advanced configuration."""

    log_level: str = "INFO"


@dataclass
class AppConfig:
    """Main application configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    market_data: MarketDataConfig = field(default_factory=MarketDataConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
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


def _build(cls, values: Optional[dict[str, Any]], section: str):
    """Build a flat config dataclass, rejecting unknown keys."""
    values = values or {}
    if not isinstance(values, dict):
        raise ConfigValidationError(f"Section '{section}' must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = set(values) - known
    if unknown:
        raise ConfigValidationError(
            f"Unknown keys in '{section}': {', '.join(sorted(unknown))}"
        )
    return cls(**values)


def _validate_timezone(timezone: str) -> None:
    """Validate timezone string."""
    if not timezone:
        raise ConfigValidationError("Timezone cannot be empty")
    if not is_valid_timezone(timezone):
        raise ConfigValidationError(f"Unknown timezone: {timezone}")


def _validate_config(config_dict: dict[str, Any]) -> None:
    """Validate raw configuration values."""
    # Check database path is provided
    db_config = config_dict.get("database") or {}
    db_path = db_config.get("path", DatabaseConfig.path)
    if not db_path:
        raise ConfigValidationError("Database path is required")

    if db_path != ":memory:":
        parent = Path(db_path).parent
        if parent.exists() and not os.access(parent, os.W_OK):
            raise ConfigValidationError(f"Database path not writable: {parent}")

    # Check timezone
    schedule = config_dict.get("schedule") or {}
    _validate_timezone(schedule.get("timezone", ScheduleConfig.timezone))


def _validate_app_config(config: AppConfig) -> None:
    """Validate cross-field rules on the built config."""
    schedule = config.schedule
    try:
        market_open = minutes_since_midnight(schedule.market_open)
        market_close = minutes_since_midnight(schedule.market_close)
    except ValueError as e:
        raise ConfigValidationError(str(e))
    if market_open >= market_close:
        raise ConfigValidationError("market_open must be before market_close")

    for name, trigger in schedule.triggers.items():
        if trigger.unit not in CADENCE_UNITS:
            raise ConfigValidationError(f"Trigger '{name}' has unknown unit: {trigger.unit}")
        if trigger.every < 1:
            raise ConfigValidationError(f"Trigger '{name}' interval must be at least 1")

    notifications = config.notifications
    invalid = [c for c in notifications.default_channels if c not in CHANNELS]
    if invalid:
        raise ConfigValidationError(f"Invalid default channels: {', '.join(invalid)}")
    if not notifications.default_channels:
        raise ConfigValidationError("At least one default channel is required")

    if notifications.max_retries < 1:
        raise ConfigValidationError("max_retries must be positive")
    if notifications.retry_base_seconds <= 0 or notifications.retry_multiplier < 1:
        raise ConfigValidationError("Retry backoff settings must be positive")
    if notifications.lease_seconds <= 0 or notifications.retention_days <= 0:
        raise ConfigValidationError("lease_seconds and retention_days must be positive")
    if notifications.batch_size <= 0:
        raise ConfigValidationError("batch_size must be positive")
    if notifications.webhook.max_retries < 0:
        raise ConfigValidationError("Webhook max_retries cannot be negative")

    if config.queue.workers < 1:
        raise ConfigValidationError("Queue needs at least one worker")


def config_from_dict(raw_config: dict[str, Any]) -> AppConfig:
    """
    Build and validate an AppConfig from a plain mapping.

    Raises:
        ConfigValidationError: If configuration is invalid
    """
    # Substitute environment variables
    config_dict = _substitute_env_vars(raw_config or {})

    # Validate
    _validate_config(config_dict)

    database = _build(DatabaseConfig, config_dict.get("database"), "database")
    market_data = _build(MarketDataConfig, config_dict.get("market_data"), "market_data")

    # Schedule: configured triggers override defaults by name
    sched_dict = dict(config_dict.get("schedule") or {})
    trigger_dicts = sched_dict.pop("triggers", None) or {}
    triggers = _default_triggers()
    for name, trigger_dict in trigger_dicts.items():
        base = triggers.get(name)
        merged = {**(base.__dict__ if base else {}), **(trigger_dict or {})}
        if "job" not in merged:
            raise ConfigValidationError(f"Trigger '{name}' needs a job type")
        triggers[name] = _build(TriggerConfig, merged, f"schedule.triggers.{name}")
    schedule = _build(ScheduleConfig, sched_dict, "schedule")
    schedule.triggers = triggers

    # Notifications
    notif_dict = dict(config_dict.get("notifications") or {})
    notifications = _build(
        NotificationsConfig,
        {
            k: v
            for k, v in notif_dict.items()
            if k not in ("email", "sms", "push", "webhook")
        },
        "notifications",
    )
    notifications.email = _build(
        EmailNotificationConfig, notif_dict.get("email"), "notifications.email"
    )
    notifications.sms = _build(SMSNotificationConfig, notif_dict.get("sms"), "notifications.sms")
    notifications.push = _build(
        PushNotificationConfig, notif_dict.get("push"), "notifications.push"
    )
    notifications.webhook = _build(
        WebhookNotificationConfig, notif_dict.get("webhook"), "notifications.webhook"
    )

    queue = _build(QueueConfig, config_dict.get("queue"), "queue")
    advanced = _build(AdvancedConfig, config_dict.get("advanced"), "advanced")

    config = AppConfig(
        database=database,
        market_data=market_data,
        schedule=schedule,
        notifications=notifications,
        queue=queue,
        advanced=advanced,
    )
    _validate_app_config(config)
    return config


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

    if not isinstance(raw_config, dict):
        raise ConfigValidationError("Configuration root must be a mapping")

    return config_from_dict(raw_config)
