"""
Fan an alert out into per-channel notifications.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from alertflow.database.models import (
    Alert,
    AlertRule,
    Notification,
    NotificationPreference,
    NotificationStatus,
)
from alertflow.database.repository import (
    NotificationRepository,
    PreferenceRepository,
    RuleRepository,
)
from alertflow.timeutil import utc_now

from .delivery import DeliveryTracker
from .preferences import PreferenceGate

logger = logging.getLogger(__name__)

IMMEDIATE_PRIORITIES = ("high", "critical")


class NotificationDispatcher:
    """Turns alerts into queued notifications and starts their delivery."""

    def __init__(
        self,
        notifications: NotificationRepository,
        preferences: PreferenceRepository,
        rules: RuleRepository,
        tracker: DeliveryTracker,
        gate: Optional[PreferenceGate] = None,
        default_channels: Optional[list[str]] = None,
        max_retries: int = 3,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.notifications = notifications
        self.preferences = preferences
        self.rules = rules
        self.tracker = tracker
        self.gate = gate or PreferenceGate()
        self.default_channels = list(default_channels or ["inapp"])
        self.max_retries = max_retries
        self.clock = clock

    def dispatch(self, alert: Alert, rule: Optional[AlertRule] = None) -> list[Notification]:
        """Plan and deliver notifications for an alert."""
        planned = self.plan(alert, rule)
        self.deliver(planned)
        return planned

    def plan(self, alert: Alert, rule: Optional[AlertRule] = None) -> list[Notification]:
        """
        Persist one queued notification per channel that passes the gate.

        Nothing is sent here, so the caller may run this inside the same
        transaction that created the alert.
        """
        preference = self.preferences.get(alert.owner_id)
        if preference is None or not preference.enabled:
            logger.info(f"Notifications disabled for {alert.owner_id}")
            return []

        if rule is None and alert.rule_id is not None:
            rule = self.rules.get_by_id(alert.rule_id)
        channels = (rule.channels if rule and rule.channels else None) or self.default_channels

        now = self.clock()
        sent_last_hour = self.notifications.count_since(alert.owner_id, now - timedelta(hours=1))
        sent_last_day = self.notifications.count_since(alert.owner_id, now - timedelta(days=1))

        planned = []
        for channel in dict.fromkeys(channels):
            reason = self.gate.suppression_reason(preference, channel, alert.alert_type, now)
            if reason:
                logger.info(
                    f"Skipping {channel} for alert {alert.alert_id} ({alert.owner_id}): {reason}"
                )
                continue

            if not self.gate.within_rate_limits(preference, sent_last_hour, sent_last_day):
                logger.warning(
                    f"Rate limit reached for {alert.owner_id}, skipping {channel} "
                    f"for alert {alert.alert_id}"
                )
                continue

            recipient = preference.recipient_for(channel)
            if not recipient:
                logger.warning(f"No {channel} recipient for {alert.owner_id}, skipping")
                continue

            notification = self._build(alert, channel, recipient)
            self.notifications.create(notification, now)
            planned.append(notification)
            sent_last_hour += 1
            sent_last_day += 1

        return planned

    def deliver(self, notifications: list[Notification]) -> None:
        """Send urgent notifications now and queue the rest."""
        for notification in notifications:
            try:
                if notification.priority in IMMEDIATE_PRIORITIES:
                    self.tracker.process_notification(notification.notification_id)
                else:
                    self.tracker.submit(notification)
            except Exception:
                # Left queued; the sweep picks it up again
                logger.exception(
                    f"Failed to start delivery of {notification.notification_id}"
                )

    def create_notification(
        self,
        owner_id: str,
        channel: str,
        message: str,
        subject: Optional[str] = None,
        recipient: Optional[str] = None,
        template: Optional[str] = None,
        template_data: Optional[dict[str, Any]] = None,
        priority: str = "medium",
        alert_id: Optional[str] = None,
        preference: Optional[NotificationPreference] = None,
    ) -> Notification:
        """
        Create and deliver a standalone notification.

        The recipient defaults to the owner's address for the channel.

        Raises:
            ValueError: If no recipient can be resolved
        """
        if recipient is None:
            preference = preference or self.preferences.get(owner_id)
            recipient = preference.recipient_for(channel) if preference else None
            if recipient is None and channel not in ("email", "sms", "webhook"):
                recipient = owner_id
        if not recipient:
            raise ValueError(f"No {channel} recipient for {owner_id}")

        notification = Notification(
            owner_id=owner_id,
            channel=channel,
            recipient=recipient,
            message=message,
            subject=subject,
            template=template,
            template_data=dict(template_data or {}),
            priority=priority,
            alert_id=alert_id,
            status=NotificationStatus.QUEUED.value,
            max_retries=self.max_retries,
        )
        self.notifications.create(notification, self.clock())
        self.deliver([notification])
        return notification

    def _build(self, alert: Alert, channel: str, recipient: str) -> Notification:
        return Notification(
            owner_id=alert.owner_id,
            alert_id=alert.alert_id,
            channel=channel,
            recipient=recipient,
            subject=f"Alert: {alert.alert_type}",
            message=alert.message,
            priority=alert.severity,
            template="alert",
            template_data={
                "alert_type": alert.alert_type,
                "message": alert.message,
                "current_value": alert.triggered_value,
                "threshold": alert.threshold,
                "symbol": alert.symbol,
            },
            status=NotificationStatus.QUEUED.value,
            max_retries=self.max_retries,
        )
