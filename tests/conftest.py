"""
Pytest configuration and shared fixtures.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from alertflow.alerts.lifecycle import AlertLifecycleManager
from alertflow.database.connection import Database
from alertflow.database.models import (
    AlertRule,
    ChannelSettings,
    Notification,
    NotificationPreference,
    RuleCondition,
)
from alertflow.database.repository import (
    AlertRepository,
    NotificationRepository,
    PreferenceRepository,
    RuleRepository,
    WebhookRepository,
)
from alertflow.notifications.delivery import DeliveryTracker
from alertflow.notifications.dispatcher import NotificationDispatcher
from alertflow.notifiers.base import ChannelSender, SenderRegistry, SendResult

# Tuesday 2024-03-12 11:00 in Toronto (EDT)
FIXED_NOW = datetime(2024, 3, 12, 15, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock for time-dependent behaviour."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSender(ChannelSender):
    """Sender that records notifications and replays scripted results."""

    def __init__(self, channel: str, results: Optional[list[SendResult]] = None):
        self.channel = channel
        self.provider = f"fake-{channel}"
        self.results = list(results or [])
        self.sent: list[Notification] = []

    def send(self, notification: Notification) -> SendResult:
        self.sent.append(notification)
        if self.results:
            return self.results.pop(0)
        return SendResult(
            success=True,
            channel=self.channel,
            response={"status_code": 200},
            provider_message_id=f"msg-{len(self.sent)}",
        )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db():
    """Initialized in-memory database."""
    database = Database(":memory:")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def rule_repo(db):
    return RuleRepository(db)


@pytest.fixture
def alert_repo(db):
    return AlertRepository(db)


@pytest.fixture
def notification_repo(db):
    return NotificationRepository(db)


@pytest.fixture
def preference_repo(db):
    return PreferenceRepository(db)


@pytest.fixture
def webhook_repo(db):
    return WebhookRepository(db)


@pytest.fixture
def senders():
    """Registry of recording senders for every channel."""
    return SenderRegistry(
        {
            channel: RecordingSender(channel)
            for channel in ("email", "sms", "push", "webhook", "inapp")
        }
    )


@pytest.fixture
def tracker(notification_repo, alert_repo, rule_repo, senders, clock):
    """Delivery tracker that sends inline (no work queue)."""
    return DeliveryTracker(
        notifications=notification_repo,
        alerts=alert_repo,
        rules=rule_repo,
        senders=senders,
        clock=clock,
    )


@pytest.fixture
def dispatcher(notification_repo, preference_repo, rule_repo, tracker, clock):
    return NotificationDispatcher(
        notifications=notification_repo,
        preferences=preference_repo,
        rules=rule_repo,
        tracker=tracker,
        clock=clock,
    )


@pytest.fixture
def lifecycle(alert_repo, clock):
    return AlertLifecycleManager(alert_repo, clock=clock)


def make_rule(
    owner_id: str = "user-1",
    name: str = "AAPL above 150",
    rule_type: str = "price",
    operator: str = "above",
    threshold=150,
    symbol: Optional[str] = "AAPL",
    metric: Optional[str] = None,
    secondary_threshold=None,
    frequency: str = "always",
    **kwargs,
) -> AlertRule:
    """Build an (unsaved) alert rule."""
    return AlertRule(
        owner_id=owner_id,
        name=name,
        rule_type=rule_type,
        condition=RuleCondition(
            operator=operator,
            threshold=threshold,
            symbol=symbol,
            metric=metric,
            secondary_threshold=secondary_threshold,
            frequency=frequency,
        ),
        **kwargs,
    )


def make_preference(owner_id: str = "user-1", **kwargs) -> NotificationPreference:
    """Preference with a verified email address and in-app enabled."""
    preference = NotificationPreference(owner_id=owner_id, **kwargs)
    preference.channels["email"] = ChannelSettings(
        enabled=True, verified=True, address=f"{owner_id}@example.com"
    )
    preference.daily_summary.enabled = False
    return preference


@pytest.fixture
def sample_stock_info():
    """Sample Yahoo Finance stock info response."""
    return {
        "regularMarketPrice": 175.50,
        "previousClose": 173.25,
        "open": 174.00,
        "dayHigh": 176.00,
        "dayLow": 173.50,
        "volume": 50_000_000,
        "marketCap": 2_800_000_000_000,
        "shortName": "Apple Inc.",
        "exchange": "NASDAQ",
    }


@pytest.fixture
def sample_smtp_config():
    """Sample SMTP configuration for testing."""
    return {
        "smtp_host": "smtp.gmail.com",
        "smtp_port": 587,
        "smtp_user": "test@gmail.com",
        "smtp_password": "test-app-password",
        "from_address": "alerts@example.com",
    }
