"""
Notification delivery, retry scheduling and state tracking.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from alertflow.database.models import (
    DEFAULT_RETRY_POLICY,
    DeliveryReceipt,
    Notification,
    NotificationStatus,
    RetryPolicy,
)
from alertflow.database.repository import (
    AlertRepository,
    NotificationRepository,
    RuleRepository,
)
from alertflow.errors import DeliveryExhausted
from alertflow.notifiers.base import SenderRegistry, SendResult
from alertflow.queue.base import Backoff, JobOptions, WorkQueue
from alertflow.timeutil import ensure_utc, utc_now

logger = logging.getLogger(__name__)

SEND_JOB = "send-notification"
SEND_JOB_ATTEMPTS = 3
SEND_JOB_BACKOFF = Backoff(type="exponential", delay=2.0)

CLAIMABLE = ("pending", "queued")


@dataclass
class DeliveryOutcome:
    """What happened to one notification on one processing pass."""

    notification_id: str
    status: str  # sent, retry_scheduled, failed, cancelled, skipped
    detail: Optional[str] = None
    result: Optional[SendResult] = None


class DeliveryTracker:
    """Sends notifications and records the outcome.

    Every attempt re-reads the notification, re-checks that its alert and
    rule still want delivery, and claims the row before calling a sender so
    two workers never send the same notification.
    """

    def __init__(
        self,
        notifications: NotificationRepository,
        alerts: AlertRepository,
        rules: RuleRepository,
        senders: SenderRegistry,
        queue: Optional[WorkQueue] = None,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        lease_seconds: int = 300,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.notifications = notifications
        self.alerts = alerts
        self.rules = rules
        self.senders = senders
        self.queue = queue
        self.retry_policy = retry_policy
        self.lease_seconds = lease_seconds
        self.clock = clock

    def submit(self, notification: Notification, delay: float = 0.0) -> Optional[str]:
        """
        Queue a send job for a notification.

        Without a work queue the notification is processed inline.

        Returns:
            Job ID, or None when processed inline
        """
        if self.queue is None:
            self.process_notification(notification.notification_id)
            return None

        return self.queue.enqueue(
            SEND_JOB,
            {"notification_id": notification.notification_id},
            JobOptions(
                priority=notification.priority_rank,
                delay=delay,
                attempts=SEND_JOB_ATTEMPTS,
                backoff=SEND_JOB_BACKOFF,
                job_id=f"send:{notification.notification_id}:{notification.retry_count}",
            ),
        )

    def process_notification(
        self, notification_or_id: Union[Notification, str]
    ) -> DeliveryOutcome:
        """
        Attempt delivery of one notification.

        Args:
            notification_or_id: Notification or its ID; state is always reloaded

        Returns:
            DeliveryOutcome describing the result
        """
        if isinstance(notification_or_id, Notification):
            notification_id = notification_or_id.notification_id
        else:
            notification_id = notification_or_id

        notification = self.notifications.get(notification_id)
        if notification is None:
            logger.info(f"Notification {notification_id} no longer exists, skipping")
            return DeliveryOutcome(notification_id, "skipped", "deleted")

        if notification.status not in CLAIMABLE:
            return DeliveryOutcome(
                notification_id, "skipped", f"status is {notification.status}"
            )

        cancel_reason = self._cancellation_reason(notification)

        now = self.clock()
        if not self.notifications.claim(notification_id, now):
            return DeliveryOutcome(notification_id, "skipped", "not claimable")
        notification.status = NotificationStatus.SENDING.value
        notification.claimed_at = now

        if cancel_reason:
            notification.mark_failed(
                f"cancelled: {cancel_reason}", now, self.retry_policy, retryable=False
            )
            self.notifications.save(notification, now)
            logger.info(f"Notification {notification_id} cancelled: {cancel_reason}")
            return DeliveryOutcome(notification_id, "cancelled", cancel_reason)

        result = self.senders.send(notification)
        return self._record_result(notification, result)

    def _record_result(
        self, notification: Notification, result: SendResult
    ) -> DeliveryOutcome:
        now = self.clock()
        notification_id = notification.notification_id
        sender = self.senders.get(notification.channel)
        provider = sender.provider if sender else None

        if result.success:
            notification.mark_sent(
                result.response,
                now,
                provider=provider,
                provider_message_id=result.provider_message_id,
            )
            self.notifications.save(notification, now)
            self._add_receipt(notification, "sent", now)
            logger.info(f"Notification {notification_id} sent via {notification.channel}")
            return DeliveryOutcome(notification_id, "sent", result=result)

        error = result.error or "unknown error"
        rearmed = notification.mark_failed(
            error, now, self.retry_policy, retryable=result.retryable
        )
        if provider:
            notification.provider = provider
        if result.response:
            notification.provider_response = result.response
        self.notifications.save(notification, now)

        if rearmed:
            delay = (ensure_utc(notification.next_retry_at) - now).total_seconds()
            logger.warning(
                f"Notification {notification_id} failed ({error}), "
                f"retry {notification.retry_count}/{notification.max_retries} "
                f"in {delay:.0f}s"
            )
            if self.queue is not None:
                self.submit(notification, delay=max(delay, 0.0))
            return DeliveryOutcome(notification_id, "retry_scheduled", error, result)

        exhausted = DeliveryExhausted(notification_id, notification.retry_count, error)
        logger.error(f"Notification {notification_id}: {exhausted}")
        self._add_receipt(notification, "failed", now)
        return DeliveryOutcome(notification_id, "failed", str(exhausted), result)

    def _cancellation_reason(self, notification: Notification) -> Optional[str]:
        """Check whether the originating alert or rule withdrew the delivery."""
        if not notification.alert_id:
            return None

        alert = self.alerts.get(notification.alert_id)
        if alert is None:
            return "alert deleted"
        if alert.status in ("cancelled", "expired"):
            return f"alert {alert.status}"

        if alert.rule_id is not None:
            rule = self.rules.get_by_id(alert.rule_id)
            if rule is None:
                return "rule deleted"
            if not rule.enabled:
                return "rule disabled"

        return None

    def _add_receipt(self, notification: Notification, status: str, now: datetime) -> None:
        if not notification.alert_id:
            return
        if self.alerts.get(notification.alert_id) is None:
            return
        self.alerts.add_receipt(
            notification.alert_id,
            DeliveryReceipt(
                channel=notification.channel,
                notification_id=notification.notification_id,
                status=status,
                sent_at=now,
            ),
        )

    def sweep(self, limit: int = 10) -> int:
        """
        Re-submit due and orphaned notifications.

        Expired ``sending`` leases are released first. Pending notifications
        whose retry time has come, and queued ones whose job was lost, are
        then submitted highest priority first.

        Returns:
            Number of notifications submitted
        """
        now = self.clock()
        cutoff = now - timedelta(seconds=self.lease_seconds)

        recovered = self.notifications.recover_stale(cutoff, now)
        if recovered:
            logger.warning(f"Recovered {recovered} notifications with expired leases")

        due = self.notifications.get_pending(now, limit=limit, queued_before=cutoff)
        for notification in due:
            try:
                self.submit(notification)
            except Exception:
                logger.exception(
                    f"Failed to resubmit notification {notification.notification_id}"
                )
        if due:
            logger.info(f"Resubmitted {len(due)} pending notifications")
        return len(due)

    def cleanup(self, retention_days: int = 30) -> int:
        """Delete finished notifications older than the retention window."""
        cutoff = self.clock() - timedelta(days=retention_days)
        deleted = self.notifications.delete_terminal_before(cutoff)
        logger.info(f"Cleaned up {deleted} old notifications")
        return deleted

    def resend(self, notification_id: str) -> Optional[Notification]:
        """
        Re-arm a failed or bounced notification with a fresh retry budget.

        Returns:
            The re-armed notification, or None if it cannot be resent
        """
        notification = self.notifications.get(notification_id)
        if notification is None or notification.status not in ("failed", "bounced"):
            return None

        now = self.clock()
        notification.status = NotificationStatus.PENDING.value
        notification.retry_count = 0
        notification.next_retry_at = None
        notification.failed_at = None
        notification.failure_reason = None
        notification.claimed_at = None
        self.notifications.save(notification, now)
        logger.info(f"Notification {notification_id} re-armed for delivery")
        self.submit(notification)
        return notification

    def mark_read(self, notification_id: str) -> bool:
        notification = self.notifications.get(notification_id)
        if notification is None:
            return False
        if not notification.is_read:
            now = self.clock()
            notification.mark_read(now)
            self.notifications.save(notification, now)
        return True

    def mark_all_read(self, owner_id: str) -> int:
        return self.notifications.mark_all_read(owner_id, self.clock())

    def record_provider_status(self, notification_id: str, status: str) -> bool:
        """
        Apply a provider delivery callback (``delivered`` or ``bounced``).

        Returns:
            True if the notification was updated
        """
        if status not in ("delivered", "bounced"):
            raise ValueError(f"Unsupported provider status: {status}")

        notification = self.notifications.get(notification_id)
        if notification is None or notification.status != "sent":
            return False

        now = self.clock()
        notification.status = status
        if status == "delivered":
            notification.delivered_at = now
        else:
            notification.failed_at = now
            notification.failure_reason = "bounced"
        self.notifications.save(notification, now)
        logger.info(f"Notification {notification_id} marked {status} by provider")
        return True
