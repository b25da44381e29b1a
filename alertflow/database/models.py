"""
Data models for the alert pipeline.
"""

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from alertflow.errors import RuleValidationError
from alertflow.timeutil import ensure_utc, get_zone, utc_now


class RuleType(str, Enum):
    """Alert rule types."""

    PRICE = "price"
    PERCENTAGE = "percentage"
    PORTFOLIO = "portfolio"
    VOLUME = "volume"
    NEWS = "news"
    PATTERN = "pattern"
    CUSTOM = "custom"


class Operator(str, Enum):
    """Condition operators."""

    ABOVE = "above"
    BELOW = "below"
    EQUALS = "equals"
    CHANGE = "change"
    INCREASE = "increase"
    DECREASE = "decrease"
    BETWEEN = "between"


class Frequency(str, Enum):
    """How often a rule may fire."""

    ONCE = "once"
    DAILY = "daily"
    ALWAYS = "always"


class Channel(str, Enum):
    """Delivery channels."""

    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    WEBHOOK = "webhook"
    INAPP = "inapp"


class Priority(str, Enum):
    """Priority / severity levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return PRIORITY_RANK[self.value]


PRIORITY_RANK = {"low": 0, "medium": 1, "high": 2, "critical": 3}


class AlertStatus(str, Enum):
    """Alert lifecycle states."""

    ACTIVE = "active"
    TRIGGERED = "triggered"
    ACKNOWLEDGED = "acknowledged"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class NotificationStatus(str, Enum):
    """Notification delivery states."""

    PENDING = "pending"
    QUEUED = "queued"
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    BOUNCED = "bounced"


RULE_TYPES = {t.value for t in RuleType}
OPERATORS = {o.value for o in Operator}
FREQUENCIES = {f.value for f in Frequency}
CHANNELS = {c.value for c in Channel}
PRIORITIES = {p.value for p in Priority}

# Channels that need a verified address before use
VERIFIED_CHANNELS = {"email", "sms"}


def new_alert_id() -> str:
    return f"alert_{uuid.uuid4().hex}"


def new_notification_id() -> str:
    return f"notif_{uuid.uuid4().hex}"


def new_webhook_id() -> str:
    return f"wh_{uuid.uuid4().hex}"


@dataclass
class RuleCondition:
    """What a rule watches and when it fires."""

    operator: str
    threshold: Any
    symbol: Optional[str] = None
    metric: Optional[str] = None
    secondary_threshold: Any = None
    timeframe: Optional[str] = None
    frequency: str = "once"

    @property
    def subject(self) -> Optional[str]:
        """Symbol for market rules, metric name for portfolio rules."""
        return self.symbol or self.metric

    def to_dict(self) -> dict[str, Any]:
        return {
            "operator": self.operator,
            "threshold": self.threshold,
            "symbol": self.symbol,
            "metric": self.metric,
            "secondary_threshold": self.secondary_threshold,
            "timeframe": self.timeframe,
            "frequency": self.frequency,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RuleCondition":
        return cls(
            operator=data.get("operator", ""),
            threshold=data.get("threshold"),
            symbol=data.get("symbol"),
            metric=data.get("metric"),
            secondary_threshold=data.get("secondary_threshold"),
            timeframe=data.get("timeframe"),
            frequency=data.get("frequency", "once"),
        )


@dataclass
class AlertRule:
    """User-owned alert trigger definition."""

    owner_id: str
    name: str
    rule_type: str  # see RuleType
    condition: RuleCondition
    enabled: bool = True
    channels: list[str] = field(default_factory=list)
    cooldown_minutes: int = 60
    priority: str = "medium"
    description: Optional[str] = None
    expires_at: Optional[datetime] = None
    last_triggered: Optional[datetime] = None
    trigger_count: int = 0
    last_checked: Optional[datetime] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def validate(self) -> None:
        """
        Check the rule definition.

        Raises:
            RuleValidationError: If any field is invalid
        """
        if not self.owner_id:
            raise RuleValidationError("Rule owner is required")
        if not self.name:
            raise RuleValidationError("Rule name is required")
        if self.rule_type not in RULE_TYPES:
            raise RuleValidationError(f"Unknown rule type: {self.rule_type}")
        if self.condition.operator not in OPERATORS:
            raise RuleValidationError(f"Unknown operator: {self.condition.operator}")
        if self.condition.frequency not in FREQUENCIES:
            raise RuleValidationError(
                f"Unknown frequency: {self.condition.frequency}"
            )
        if self.priority not in PRIORITIES:
            raise RuleValidationError(f"Unknown priority: {self.priority}")
        unknown = [c for c in self.channels if c not in CHANNELS]
        if unknown:
            raise RuleValidationError(f"Unknown channels: {', '.join(unknown)}")
        if self.cooldown_minutes is not None and self.cooldown_minutes < 0:
            raise RuleValidationError("Cooldown cannot be negative")
        if self.condition.threshold is None:
            raise RuleValidationError("Threshold is required")

        if self.condition.operator == Operator.BETWEEN.value:
            low = self.condition.threshold
            high = self.condition.secondary_threshold
            if high is None:
                raise RuleValidationError(
                    "'between' requires a secondary threshold"
                )
            try:
                if float(low) > float(high):
                    raise RuleValidationError(
                        "'between' requires threshold <= secondary threshold"
                    )
            except (TypeError, ValueError):
                raise RuleValidationError("'between' thresholds must be numeric")

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check whether the rule is past its expiry."""
        if self.expires_at is None:
            return False
        now = ensure_utc(now) if now else utc_now()
        return now > ensure_utc(self.expires_at)

    def can_trigger(self, now: Optional[datetime] = None, tz: Optional[str] = None) -> bool:
        """
        Check whether the rule is eligible to fire again.

        Args:
            now: Evaluation time (defaults to current UTC time)
            tz: Timezone used for the daily calendar-date comparison

        Returns:
            True if the rule may fire
        """
        now = ensure_utc(now) if now else utc_now()

        if not self.enabled:
            return False

        if self.is_expired(now):
            return False

        last = ensure_utc(self.last_triggered)

        if last is not None and self.cooldown_minutes:
            if now - last < timedelta(minutes=self.cooldown_minutes):
                return False

        frequency = self.condition.frequency
        if frequency == Frequency.ONCE.value and self.trigger_count > 0:
            return False

        if frequency == Frequency.DAILY.value and last is not None:
            zone = get_zone(tz)
            if now.astimezone(zone).date() == last.astimezone(zone).date():
                return False

        return True


@dataclass
class DeliveryReceipt:
    """One entry in an alert's append-only delivery log."""

    channel: str
    notification_id: str
    status: str
    sent_at: datetime


ALERT_TRANSITIONS = {
    "active": {"triggered", "cancelled", "expired"},
    "triggered": {"acknowledged", "expired", "cancelled"},
    "acknowledged": set(),
    "expired": set(),
    "cancelled": set(),
}


@dataclass
class Alert:
    """A fired (or manually created) alert."""

    owner_id: str
    alert_type: str
    status: str = "active"
    alert_id: str = field(default_factory=new_alert_id)
    rule_id: Optional[int] = None
    triggered_at: Optional[datetime] = None
    triggered_value: Any = None
    threshold: Any = None
    condition: Optional[str] = None  # operator snapshot
    symbol: Optional[str] = None
    metric: Optional[str] = None
    message: str = ""
    severity: str = "medium"
    receipts: list[DeliveryReceipt] = field(default_factory=list)
    expires_at: Optional[datetime] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def can_transition(self, new_status: str) -> bool:
        return new_status in ALERT_TRANSITIONS.get(self.status, set())

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        now = ensure_utc(now) if now else utc_now()
        return now > ensure_utc(self.expires_at)


@dataclass
class RetryPolicy:
    """Notification re-delivery backoff: base * multiplier ** retry_count."""

    base_seconds: float = 60.0
    multiplier: float = 2.0

    def delay_for(self, retry_count: int) -> timedelta:
        return timedelta(seconds=self.base_seconds * (self.multiplier ** retry_count))


DEFAULT_RETRY_POLICY = RetryPolicy()


@dataclass
class Notification:
    """A single-channel delivery unit."""

    owner_id: str
    channel: str
    recipient: str
    message: str
    notification_id: str = field(default_factory=new_notification_id)
    status: str = "pending"
    alert_id: Optional[str] = None
    subject: Optional[str] = None
    template: Optional[str] = None
    template_data: dict[str, Any] = field(default_factory=dict)
    priority: str = "medium"
    retry_count: int = 0
    max_retries: int = 3
    next_retry_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    is_read: bool = False
    read_at: Optional[datetime] = None
    provider: Optional[str] = None
    provider_message_id: Optional[str] = None
    provider_response: Optional[dict[str, Any]] = None
    claimed_at: Optional[datetime] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def priority_rank(self) -> int:
        return PRIORITY_RANK.get(self.priority, 1)

    @property
    def can_retry(self) -> bool:
        return self.retry_count < self.max_retries

    @property
    def is_terminal(self) -> bool:
        if self.status in ("sent", "delivered", "bounced"):
            return True
        return self.status == "failed" and not self.can_retry

    def mark_sent(
        self,
        response: Optional[dict[str, Any]] = None,
        now: Optional[datetime] = None,
        provider: Optional[str] = None,
        provider_message_id: Optional[str] = None,
    ) -> None:
        """Record a successful hand-off to the provider."""
        self.status = NotificationStatus.SENT.value
        self.sent_at = now or utc_now()
        self.claimed_at = None
        self.next_retry_at = None
        if provider:
            self.provider = provider
        if response:
            self.provider_response = response
            message_id = provider_message_id or response.get("message_id")
            if message_id:
                self.provider_message_id = str(message_id)

    def mark_failed(
        self,
        reason: str,
        now: Optional[datetime] = None,
        policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        retryable: bool = True,
    ) -> bool:
        """
        Record a failed attempt and re-arm if retries remain.

        Returns:
            True if the notification was re-armed for another attempt
        """
        now = now or utc_now()
        self.status = NotificationStatus.FAILED.value
        self.failed_at = now
        self.failure_reason = reason
        self.claimed_at = None
        self.retry_count = min(self.retry_count + 1, self.max_retries)
        if not retryable:
            self.retry_count = self.max_retries

        if self.retry_count < self.max_retries:
            self.next_retry_at = now + policy.delay_for(self.retry_count)
            self.status = NotificationStatus.PENDING.value
            return True

        self.next_retry_at = None
        return False

    def mark_read(self, now: Optional[datetime] = None) -> None:
        self.is_read = True
        self.read_at = now or utc_now()


@dataclass
class ChannelSettings:
    """Per-channel preference block."""

    enabled: bool = False
    verified: bool = False
    address: Optional[str] = None  # email address, phone number or webhook URL
    secret: Optional[str] = None
    headers: dict[str, str] = field(default_factory=dict)
    tokens: list[dict[str, Any]] = field(default_factory=list)  # push device tokens

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "verified": self.verified,
            "address": self.address,
            "secret": self.secret,
            "headers": dict(self.headers),
            "tokens": list(self.tokens),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChannelSettings":
        return cls(
            enabled=bool(data.get("enabled", False)),
            verified=bool(data.get("verified", False)),
            address=data.get("address"),
            secret=data.get("secret"),
            headers=dict(data.get("headers") or {}),
            tokens=list(data.get("tokens") or []),
        )


@dataclass
class AlertTypeSettings:
    """Which channels an alert type may use."""

    enabled: bool = True
    channels: list[str] = field(default_factory=list)


@dataclass
class QuietHours:
    """Local-time window during which delivery is suppressed."""

    enabled: bool = False
    start: str = "22:00"
    end: str = "08:00"
    timezone: str = "America/Toronto"


@dataclass
class SummarySchedule:
    """Daily or weekly digest settings."""

    enabled: bool = False
    time: str = "18:00"
    day_of_week: int = 1  # Monday, for weekly digests
    include_portfolio: bool = True
    include_alerts: bool = True


@dataclass
class RateLimits:
    """Per-owner delivery caps."""

    max_per_hour: int = 10
    max_per_day: int = 50


def _default_channels() -> dict[str, ChannelSettings]:
    return {
        "email": ChannelSettings(enabled=True),
        "sms": ChannelSettings(),
        "push": ChannelSettings(),
        "webhook": ChannelSettings(),
        "inapp": ChannelSettings(enabled=True),
    }


def _default_alert_types() -> dict[str, AlertTypeSettings]:
    return {
        "price": AlertTypeSettings(channels=["email", "inapp"]),
        "percentage": AlertTypeSettings(channels=["email", "push"]),
        "portfolio": AlertTypeSettings(channels=["email", "sms"]),
        "volume": AlertTypeSettings(channels=["inapp"]),
        "news": AlertTypeSettings(channels=["email", "push"]),
    }


@dataclass
class NotificationPreference:
    """Per-owner notification settings."""

    owner_id: str
    enabled: bool = True
    channels: dict[str, ChannelSettings] = field(default_factory=_default_channels)
    alert_types: dict[str, AlertTypeSettings] = field(
        default_factory=_default_alert_types
    )
    quiet_hours: QuietHours = field(default_factory=QuietHours)
    daily_summary: SummarySchedule = field(
        default_factory=lambda: SummarySchedule(enabled=True)
    )
    weekly_summary: SummarySchedule = field(
        default_factory=lambda: SummarySchedule(time="09:00")
    )
    limits: RateLimits = field(default_factory=RateLimits)
    unsubscribe_token: str = field(default_factory=lambda: secrets.token_urlsafe(16))
    unsubscribed_at: Optional[datetime] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def channel(self, name: str) -> Optional[ChannelSettings]:
        return self.channels.get(name)

    def recipient_for(self, channel: str) -> Optional[str]:
        """Resolve the delivery address for a channel."""
        if channel in ("email", "sms", "webhook"):
            settings = self.channels.get(channel)
            return settings.address if settings else None
        return self.owner_id


@dataclass
class Webhook:
    """Event subscription for outbound webhooks."""

    owner_id: str
    url: str
    events: list[str]
    webhook_id: str = field(default_factory=new_webhook_id)
    secret: Optional[str] = None
    headers: dict[str, str] = field(default_factory=dict)
    active: bool = True
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def subscribes_to(self, event: str) -> bool:
        return self.active and (event in self.events or "*" in self.events)
