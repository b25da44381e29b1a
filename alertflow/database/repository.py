"""
Repository classes for CRUD operations.
"""

import json
from dataclasses import asdict
from datetime import datetime
from typing import Any, Optional

from alertflow.errors import InvalidTransition
from alertflow.timeutil import from_iso, to_iso, utc_now

from .connection import Database
from .models import (
    Alert,
    AlertRule,
    AlertTypeSettings,
    ChannelSettings,
    DeliveryReceipt,
    Notification,
    NotificationPreference,
    QuietHours,
    RateLimits,
    RuleCondition,
    SummarySchedule,
    Webhook,
)

# Ordering used wherever queued work is picked up
PRIORITY_ORDER_SQL = (
    "CASE priority WHEN 'critical' THEN 3 WHEN 'high' THEN 2 "
    "WHEN 'medium' THEN 1 ELSE 0 END DESC, created_at ASC, id ASC"
)


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value)


def _loads(value: Optional[str], default: Any = None) -> Any:
    if value is None:
        return default
    return json.loads(value)


class RuleRepository:
    """CRUD operations for alert rules."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, rule: AlertRule, now: Optional[datetime] = None) -> AlertRule:
        """Validate and create a new rule."""
        rule.validate()
        now = now or utc_now()
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO alert_rules
                (owner_id, name, description, rule_type, condition, enabled,
                 channels, cooldown_minutes, priority, expires_at, last_triggered,
                 trigger_count, last_checked, metadata, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    rule.owner_id,
                    rule.name,
                    rule.description,
                    rule.rule_type,
                    json.dumps(rule.condition.to_dict()),
                    1 if rule.enabled else 0,
                    json.dumps(rule.channels),
                    rule.cooldown_minutes,
                    rule.priority,
                    to_iso(rule.expires_at),
                    to_iso(rule.last_triggered),
                    rule.trigger_count,
                    to_iso(rule.last_checked),
                    json.dumps(rule.metadata),
                    to_iso(now),
                    to_iso(now),
                ),
            )
            rule.id = cursor.lastrowid
        rule.created_at = now
        rule.updated_at = now
        return rule

    def get_by_id(self, rule_id: int) -> Optional[AlertRule]:
        """Get rule by ID."""
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM alert_rules WHERE id = ?", (rule_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_rule(row)

    def list_for_owner(self, owner_id: str) -> list[AlertRule]:
        """Get all rules for an owner."""
        with self.db.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM alert_rules WHERE owner_id = ? ORDER BY id",
                (owner_id,),
            ).fetchall()
        return [self._row_to_rule(row) for row in rows]

    def list_all(self) -> list[AlertRule]:
        """List all rules."""
        with self.db.transaction() as conn:
            rows = conn.execute("SELECT * FROM alert_rules ORDER BY id").fetchall()
        return [self._row_to_rule(row) for row in rows]

    def get_enabled_rules(
        self,
        rule_type: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> list[AlertRule]:
        """Get enabled rules, optionally filtered by type and owner."""
        query = "SELECT * FROM alert_rules WHERE enabled = 1"
        params: list[Any] = []
        if rule_type:
            query += " AND rule_type = ?"
            params.append(rule_type)
        if owner_id:
            query += " AND owner_id = ?"
            params.append(owner_id)
        query += " ORDER BY id"

        with self.db.transaction() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_rule(row) for row in rows]

    def update(self, rule: AlertRule, now: Optional[datetime] = None) -> None:
        """Update the rule definition (trigger bookkeeping is left untouched)."""
        rule.validate()
        now = now or utc_now()
        with self.db.transaction() as conn:
            conn.execute(
                """
                UPDATE alert_rules
                SET name = ?, description = ?, rule_type = ?, condition = ?,
                    enabled = ?, channels = ?, cooldown_minutes = ?, priority = ?,
                    expires_at = ?, metadata = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    rule.name,
                    rule.description,
                    rule.rule_type,
                    json.dumps(rule.condition.to_dict()),
                    1 if rule.enabled else 0,
                    json.dumps(rule.channels),
                    rule.cooldown_minutes,
                    rule.priority,
                    to_iso(rule.expires_at),
                    json.dumps(rule.metadata),
                    to_iso(now),
                    rule.id,
                ),
            )
        rule.updated_at = now

    def set_enabled(self, rule_id: int, enabled: bool) -> bool:
        """Enable or soft-disable a rule."""
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE alert_rules SET enabled = ?, updated_at = ? WHERE id = ?",
                (1 if enabled else 0, to_iso(utc_now()), rule_id),
            )
        return cursor.rowcount == 1

    def delete(self, rule_id: int) -> bool:
        """Delete a rule."""
        with self.db.transaction() as conn:
            cursor = conn.execute("DELETE FROM alert_rules WHERE id = ?", (rule_id,))
        return cursor.rowcount == 1

    def record_trigger(self, rule: AlertRule, now: datetime) -> bool:
        """
        Atomically record a trigger.

        The update only applies if nobody else has triggered the rule since it
        was read (trigger_count unchanged) and it is still enabled.

        Returns:
            True if this caller won the trigger
        """
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE alert_rules
                SET last_triggered = ?, trigger_count = trigger_count + 1,
                    updated_at = ?
                WHERE id = ? AND trigger_count = ? AND enabled = 1
                """,
                (to_iso(now), to_iso(now), rule.id, rule.trigger_count),
            )
        if cursor.rowcount != 1:
            return False
        rule.last_triggered = now
        rule.trigger_count += 1
        return True

    def touch_checked(self, rule_id: int, now: datetime) -> None:
        """Record that a rule was evaluated."""
        with self.db.transaction() as conn:
            conn.execute(
                "UPDATE alert_rules SET last_checked = ? WHERE id = ?",
                (to_iso(now), rule_id),
            )

    def _row_to_rule(self, row) -> AlertRule:
        """Convert database row to AlertRule."""
        return AlertRule(
            id=row["id"],
            owner_id=row["owner_id"],
            name=row["name"],
            description=row["description"],
            rule_type=row["rule_type"],
            condition=RuleCondition.from_dict(json.loads(row["condition"])),
            enabled=bool(row["enabled"]),
            channels=json.loads(row["channels"]),
            cooldown_minutes=row["cooldown_minutes"],
            priority=row["priority"],
            expires_at=from_iso(row["expires_at"]),
            last_triggered=from_iso(row["last_triggered"]),
            trigger_count=row["trigger_count"],
            last_checked=from_iso(row["last_checked"]),
            metadata=json.loads(row["metadata"]),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )


class AlertRepository:
    """CRUD operations for alerts and their delivery receipts."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, alert: Alert, now: Optional[datetime] = None) -> Alert:
        """Create a new alert."""
        now = now or utc_now()
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO alerts
                (alert_id, owner_id, rule_id, alert_type, status, triggered_at,
                 triggered_value, threshold, condition, symbol, metric, message,
                 severity, expires_at, metadata, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    alert.alert_id,
                    alert.owner_id,
                    alert.rule_id,
                    alert.alert_type,
                    alert.status,
                    to_iso(alert.triggered_at),
                    _dumps(alert.triggered_value),
                    _dumps(alert.threshold),
                    alert.condition,
                    alert.symbol,
                    alert.metric,
                    alert.message,
                    alert.severity,
                    to_iso(alert.expires_at),
                    json.dumps(alert.metadata),
                    to_iso(now),
                    to_iso(now),
                ),
            )
            alert.id = cursor.lastrowid
        alert.created_at = now
        alert.updated_at = now
        return alert

    def get(self, alert_id: str) -> Optional[Alert]:
        """Get alert (with receipts) by its public ID."""
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM alerts WHERE alert_id = ?", (alert_id,)
            ).fetchone()
            if row is None:
                return None
            alert = self._row_to_alert(row)
            alert.receipts = self.get_receipts(alert_id)
        return alert

    def list_for_owner(
        self,
        owner_id: str,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> list[Alert]:
        """Get recent alerts for an owner."""
        query = "SELECT * FROM alerts WHERE owner_id = ?"
        params: list[Any] = [owner_id]
        if status:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)

        with self.db.transaction() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_alert(row) for row in rows]

    def list_triggered_since(self, owner_id: str, since: datetime) -> list[Alert]:
        """Get alerts for an owner that fired at or after a point in time."""
        with self.db.transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM alerts
                WHERE owner_id = ? AND triggered_at IS NOT NULL AND triggered_at >= ?
                ORDER BY triggered_at ASC
                """,
                (owner_id, to_iso(since)),
            ).fetchall()
        return [self._row_to_alert(row) for row in rows]

    def list_expirable(self, now: datetime) -> list[Alert]:
        """Get active/triggered alerts whose expiry has passed."""
        with self.db.transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM alerts
                WHERE status IN ('active', 'triggered')
                  AND expires_at IS NOT NULL AND expires_at < ?
                ORDER BY id
                """,
                (to_iso(now),),
            ).fetchall()
        return [self._row_to_alert(row) for row in rows]

    def update_status(
        self, alert: Alert, new_status: str, now: Optional[datetime] = None
    ) -> Alert:
        """
        Move an alert to a new status.

        Raises:
            InvalidTransition: If the transition is not allowed or the stored
                status changed underneath the caller
        """
        if not alert.can_transition(new_status):
            raise InvalidTransition(
                f"Alert {alert.alert_id} cannot move from {alert.status} to {new_status}"
            )
        now = now or utc_now()
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE alerts SET status = ?, updated_at = ?
                WHERE alert_id = ? AND status = ?
                """,
                (new_status, to_iso(now), alert.alert_id, alert.status),
            )
        if cursor.rowcount != 1:
            raise InvalidTransition(
                f"Alert {alert.alert_id} is no longer {alert.status}"
            )
        alert.status = new_status
        alert.updated_at = now
        return alert

    def record_trigger(
        self,
        alert: Alert,
        value: Any,
        message: str,
        now: datetime,
    ) -> Alert:
        """
        Fire a manually created alert.

        triggered_at and triggered_value are written once and never rewritten.
        """
        if not alert.can_transition("triggered"):
            raise InvalidTransition(
                f"Alert {alert.alert_id} cannot move from {alert.status} to triggered"
            )
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE alerts
                SET status = 'triggered', triggered_at = ?, triggered_value = ?,
                    message = ?, updated_at = ?
                WHERE alert_id = ? AND status = 'active' AND triggered_at IS NULL
                """,
                (to_iso(now), _dumps(value), message, to_iso(now), alert.alert_id),
            )
        if cursor.rowcount != 1:
            raise InvalidTransition(f"Alert {alert.alert_id} was already triggered")
        alert.status = "triggered"
        alert.triggered_at = now
        alert.triggered_value = value
        alert.message = message
        alert.updated_at = now
        return alert

    def add_receipt(self, alert_id: str, receipt: DeliveryReceipt) -> None:
        """Append a delivery receipt."""
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO alert_receipts
                (alert_id, channel, notification_id, status, sent_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    alert_id,
                    receipt.channel,
                    receipt.notification_id,
                    receipt.status,
                    to_iso(receipt.sent_at),
                ),
            )

    def get_receipts(self, alert_id: str) -> list[DeliveryReceipt]:
        """Get receipts for an alert in insertion order."""
        with self.db.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM alert_receipts WHERE alert_id = ? ORDER BY id",
                (alert_id,),
            ).fetchall()
        return [
            DeliveryReceipt(
                channel=row["channel"],
                notification_id=row["notification_id"],
                status=row["status"],
                sent_at=from_iso(row["sent_at"]),
            )
            for row in rows
        ]

    def delete(self, alert_id: str) -> bool:
        """Delete an alert and its receipts."""
        with self.db.transaction() as conn:
            cursor = conn.execute("DELETE FROM alerts WHERE alert_id = ?", (alert_id,))
        return cursor.rowcount == 1

    def _row_to_alert(self, row) -> Alert:
        """Convert database row to Alert."""
        return Alert(
            id=row["id"],
            alert_id=row["alert_id"],
            owner_id=row["owner_id"],
            rule_id=row["rule_id"],
            alert_type=row["alert_type"],
            status=row["status"],
            triggered_at=from_iso(row["triggered_at"]),
            triggered_value=_loads(row["triggered_value"]),
            threshold=_loads(row["threshold"]),
            condition=row["condition"],
            symbol=row["symbol"],
            metric=row["metric"],
            message=row["message"],
            severity=row["severity"],
            expires_at=from_iso(row["expires_at"]),
            metadata=json.loads(row["metadata"]),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )


class NotificationRepository:
    """CRUD operations for notifications."""

    def __init__(self, db: Database):
        self.db = db

    def create(
        self, notification: Notification, now: Optional[datetime] = None
    ) -> Notification:
        """Create a new notification."""
        now = now or utc_now()
        notification.created_at = now
        notification.updated_at = now
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO notifications
                (notification_id, owner_id, alert_id, channel, status, subject,
                 message, template, template_data, recipient, priority,
                 retry_count, max_retries, next_retry_at, sent_at, delivered_at,
                 failed_at, failure_reason, is_read, read_at, provider,
                 provider_message_id, provider_response, claimed_at,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?,
                        ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    notification.notification_id,
                    notification.owner_id,
                    notification.alert_id,
                    notification.channel,
                    notification.status,
                    notification.subject,
                    notification.message,
                    notification.template,
                    json.dumps(notification.template_data),
                    notification.recipient,
                    notification.priority,
                    notification.retry_count,
                    notification.max_retries,
                    to_iso(notification.next_retry_at),
                    to_iso(notification.sent_at),
                    to_iso(notification.delivered_at),
                    to_iso(notification.failed_at),
                    notification.failure_reason,
                    1 if notification.is_read else 0,
                    to_iso(notification.read_at),
                    notification.provider,
                    notification.provider_message_id,
                    _dumps(notification.provider_response),
                    to_iso(notification.claimed_at),
                    to_iso(now),
                    to_iso(now),
                ),
            )
            notification.id = cursor.lastrowid
        return notification

    def get(self, notification_id: str) -> Optional[Notification]:
        """Get notification by its public ID."""
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM notifications WHERE notification_id = ?",
                (notification_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_notification(row)

    def save(self, notification: Notification, now: Optional[datetime] = None) -> None:
        """Persist the mutable delivery state of a notification."""
        now = now or utc_now()
        with self.db.transaction() as conn:
            conn.execute(
                """
                UPDATE notifications
                SET status = ?, retry_count = ?, next_retry_at = ?, sent_at = ?,
                    delivered_at = ?, failed_at = ?, failure_reason = ?,
                    is_read = ?, read_at = ?, provider = ?,
                    provider_message_id = ?, provider_response = ?,
                    claimed_at = ?, updated_at = ?
                WHERE notification_id = ?
                """,
                (
                    notification.status,
                    notification.retry_count,
                    to_iso(notification.next_retry_at),
                    to_iso(notification.sent_at),
                    to_iso(notification.delivered_at),
                    to_iso(notification.failed_at),
                    notification.failure_reason,
                    1 if notification.is_read else 0,
                    to_iso(notification.read_at),
                    notification.provider,
                    notification.provider_message_id,
                    _dumps(notification.provider_response),
                    to_iso(notification.claimed_at),
                    to_iso(now),
                    notification.notification_id,
                ),
            )
        notification.updated_at = now

    def claim(self, notification_id: str, now: datetime) -> bool:
        """
        Take exclusive ownership of a notification for one send attempt.

        Returns:
            True if the notification moved to ``sending`` for this caller
        """
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE notifications
                SET status = 'sending', claimed_at = ?, updated_at = ?
                WHERE notification_id = ?
                  AND status IN ('pending', 'queued')
                  AND (next_retry_at IS NULL OR next_retry_at <= ?)
                """,
                (to_iso(now), to_iso(now), notification_id, to_iso(now)),
            )
        return cursor.rowcount == 1

    def recover_stale(self, lease_cutoff: datetime, now: datetime) -> int:
        """Release ``sending`` claims older than the lease cutoff."""
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE notifications
                SET status = 'pending', claimed_at = NULL, updated_at = ?
                WHERE status = 'sending' AND claimed_at < ?
                """,
                (to_iso(now), to_iso(lease_cutoff)),
            )
        return cursor.rowcount

    def get_pending(
        self,
        now: datetime,
        limit: int = 10,
        queued_before: Optional[datetime] = None,
    ) -> list[Notification]:
        """
        Get notifications ready for a send attempt, highest priority first.

        Args:
            now: Retries scheduled after this time are not yet due
            limit: Maximum number of notifications
            queued_before: Also include ``queued`` notifications last touched
                before this time (their job was lost)
        """
        params: list[Any] = [to_iso(now)]
        query = """
            SELECT * FROM notifications
            WHERE (status = 'pending' AND (next_retry_at IS NULL OR next_retry_at <= ?))
        """
        if queued_before is not None:
            query += " OR (status = 'queued' AND updated_at < ?)"
            params.append(to_iso(queued_before))
        query += f" ORDER BY {PRIORITY_ORDER_SQL} LIMIT ?"
        params.append(limit)

        with self.db.transaction() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_notification(row) for row in rows]

    def list_for_owner(
        self,
        owner_id: str,
        unread_only: bool = False,
        channel: Optional[str] = None,
        limit: int = 50,
    ) -> list[Notification]:
        """Get notifications for an owner, newest first."""
        query = "SELECT * FROM notifications WHERE owner_id = ?"
        params: list[Any] = [owner_id]
        if unread_only:
            query += " AND is_read = 0"
        if channel:
            query += " AND channel = ?"
            params.append(channel)
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)

        with self.db.transaction() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_notification(row) for row in rows]

    def list_for_alert(self, alert_id: str) -> list[Notification]:
        """Get notifications created for an alert."""
        with self.db.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM notifications WHERE alert_id = ? ORDER BY id",
                (alert_id,),
            ).fetchall()
        return [self._row_to_notification(row) for row in rows]

    def count_since(self, owner_id: str, since: datetime) -> int:
        """Count notifications created for an owner since a point in time."""
        with self.db.transaction() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) FROM notifications
                WHERE owner_id = ? AND created_at >= ?
                """,
                (owner_id, to_iso(since)),
            ).fetchone()
        return row[0]

    def mark_all_read(self, owner_id: str, now: datetime) -> int:
        """Mark every unread notification of an owner as read."""
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE notifications SET is_read = 1, read_at = ?, updated_at = ?
                WHERE owner_id = ? AND is_read = 0
                """,
                (to_iso(now), to_iso(now), owner_id),
            )
        return cursor.rowcount

    def delete(self, notification_id: str) -> bool:
        """Delete a notification."""
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM notifications WHERE notification_id = ?",
                (notification_id,),
            )
        return cursor.rowcount == 1

    def delete_terminal_before(self, cutoff: datetime) -> int:
        """
        Delete finished notifications created before the cutoff.

        Read state is not consulted: unread in-app notifications past the
        cutoff are pruned along with read ones.
        """
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                DELETE FROM notifications
                WHERE created_at < ?
                  AND status IN ('sent', 'delivered', 'bounced', 'failed')
                """,
                (to_iso(cutoff),),
            )
        return cursor.rowcount

    def status_counts(self) -> dict[str, int]:
        """Count notifications per status."""
        with self.db.transaction() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM notifications GROUP BY status"
            ).fetchall()
        return {row["status"]: row["n"] for row in rows}

    def _row_to_notification(self, row) -> Notification:
        """Convert database row to Notification."""
        return Notification(
            id=row["id"],
            notification_id=row["notification_id"],
            owner_id=row["owner_id"],
            alert_id=row["alert_id"],
            channel=row["channel"],
            status=row["status"],
            subject=row["subject"],
            message=row["message"],
            template=row["template"],
            template_data=json.loads(row["template_data"]),
            recipient=row["recipient"],
            priority=row["priority"],
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            next_retry_at=from_iso(row["next_retry_at"]),
            sent_at=from_iso(row["sent_at"]),
            delivered_at=from_iso(row["delivered_at"]),
            failed_at=from_iso(row["failed_at"]),
            failure_reason=row["failure_reason"],
            is_read=bool(row["is_read"]),
            read_at=from_iso(row["read_at"]),
            provider=row["provider"],
            provider_message_id=row["provider_message_id"],
            provider_response=_loads(row["provider_response"]),
            claimed_at=from_iso(row["claimed_at"]),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )


class PreferenceRepository:
    """CRUD operations for notification preferences."""

    def __init__(self, db: Database):
        self.db = db

    def get(self, owner_id: str) -> Optional[NotificationPreference]:
        """Get an owner's preferences."""
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM notification_preferences WHERE owner_id = ?",
                (owner_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_preference(row)

    def get_or_create(self, owner_id: str) -> NotificationPreference:
        """Get an owner's preferences, creating the defaults if missing."""
        preference = self.get(owner_id)
        if preference is None:
            preference = self.upsert(NotificationPreference(owner_id=owner_id))
        return preference

    def get_by_unsubscribe_token(self, token: str) -> Optional[NotificationPreference]:
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM notification_preferences WHERE unsubscribe_token = ?",
                (token,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_preference(row)

    def list_daily_summary_enabled(self) -> list[NotificationPreference]:
        """Get preferences of owners who want a daily summary."""
        with self.db.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM notification_preferences WHERE enabled = 1 ORDER BY id"
            ).fetchall()
        preferences = [self._row_to_preference(row) for row in rows]
        return [p for p in preferences if p.daily_summary.enabled]

    def upsert(
        self, preference: NotificationPreference, now: Optional[datetime] = None
    ) -> NotificationPreference:
        """Create or replace an owner's preferences."""
        now = now or utc_now()
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO notification_preferences
                (owner_id, enabled, channels, alert_types, quiet_hours,
                 daily_summary, weekly_summary, limits, unsubscribe_token,
                 unsubscribed_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(owner_id) DO UPDATE SET
                    enabled = excluded.enabled,
                    channels = excluded.channels,
                    alert_types = excluded.alert_types,
                    quiet_hours = excluded.quiet_hours,
                    daily_summary = excluded.daily_summary,
                    weekly_summary = excluded.weekly_summary,
                    limits = excluded.limits,
                    unsubscribe_token = excluded.unsubscribe_token,
                    unsubscribed_at = excluded.unsubscribed_at,
                    updated_at = excluded.updated_at
                """,
                (
                    preference.owner_id,
                    1 if preference.enabled else 0,
                    json.dumps(
                        {k: v.to_dict() for k, v in preference.channels.items()}
                    ),
                    json.dumps(
                        {k: asdict(v) for k, v in preference.alert_types.items()}
                    ),
                    json.dumps(asdict(preference.quiet_hours)),
                    json.dumps(asdict(preference.daily_summary)),
                    json.dumps(asdict(preference.weekly_summary)),
                    json.dumps(asdict(preference.limits)),
                    preference.unsubscribe_token,
                    to_iso(preference.unsubscribed_at),
                    to_iso(now),
                    to_iso(now),
                ),
            )
        # Get the ID and timestamps (either new or existing)
        return self.get(preference.owner_id)

    def delete(self, owner_id: str) -> bool:
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM notification_preferences WHERE owner_id = ?",
                (owner_id,),
            )
        return cursor.rowcount == 1

    def _row_to_preference(self, row) -> NotificationPreference:
        """Convert database row to NotificationPreference."""
        return NotificationPreference(
            id=row["id"],
            owner_id=row["owner_id"],
            enabled=bool(row["enabled"]),
            channels={
                k: ChannelSettings.from_dict(v)
                for k, v in json.loads(row["channels"]).items()
            },
            alert_types={
                k: AlertTypeSettings(**v)
                for k, v in json.loads(row["alert_types"]).items()
            },
            quiet_hours=QuietHours(**json.loads(row["quiet_hours"])),
            daily_summary=SummarySchedule(**json.loads(row["daily_summary"])),
            weekly_summary=SummarySchedule(**json.loads(row["weekly_summary"])),
            limits=RateLimits(**json.loads(row["limits"])),
            unsubscribe_token=row["unsubscribe_token"],
            unsubscribed_at=from_iso(row["unsubscribed_at"]),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )


class WebhookRepository:
    """CRUD operations for webhook subscriptions."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, webhook: Webhook, now: Optional[datetime] = None) -> Webhook:
        """Create a new subscription."""
        now = now or utc_now()
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO webhooks
                (webhook_id, owner_id, url, events, secret, headers, active,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    webhook.webhook_id,
                    webhook.owner_id,
                    webhook.url,
                    json.dumps(webhook.events),
                    webhook.secret,
                    json.dumps(webhook.headers),
                    1 if webhook.active else 0,
                    to_iso(now),
                    to_iso(now),
                ),
            )
            webhook.id = cursor.lastrowid
        webhook.created_at = now
        webhook.updated_at = now
        return webhook

    def get(self, webhook_id: str) -> Optional[Webhook]:
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM webhooks WHERE webhook_id = ?", (webhook_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_webhook(row)

    def list_for_owner(self, owner_id: str) -> list[Webhook]:
        with self.db.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM webhooks WHERE owner_id = ? ORDER BY id",
                (owner_id,),
            ).fetchall()
        return [self._row_to_webhook(row) for row in rows]

    def list_active_for_event(
        self, event: str, owner_id: Optional[str] = None
    ) -> list[Webhook]:
        """Get active subscriptions that listen for an event."""
        query = "SELECT * FROM webhooks WHERE active = 1"
        params: list[Any] = []
        if owner_id:
            query += " AND owner_id = ?"
            params.append(owner_id)
        query += " ORDER BY id"

        with self.db.transaction() as conn:
            rows = conn.execute(query, params).fetchall()
        webhooks = [self._row_to_webhook(row) for row in rows]
        return [w for w in webhooks if w.subscribes_to(event)]

    def set_active(self, webhook_id: str, active: bool, now: Optional[datetime] = None) -> bool:
        now = now or utc_now()
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE webhooks SET active = ?, updated_at = ? WHERE webhook_id = ?",
                (1 if active else 0, to_iso(now), webhook_id),
            )
        return cursor.rowcount == 1

    def delete(self, webhook_id: str) -> bool:
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM webhooks WHERE webhook_id = ?", (webhook_id,)
            )
        return cursor.rowcount == 1

    def delete_inactive_before(self, cutoff: datetime) -> int:
        """Delete inactive subscriptions not updated since the cutoff."""
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM webhooks WHERE active = 0 AND updated_at < ?",
                (to_iso(cutoff),),
            )
        return cursor.rowcount

    def _row_to_webhook(self, row) -> Webhook:
        """Convert database row to Webhook."""
        return Webhook(
            id=row["id"],
            webhook_id=row["webhook_id"],
            owner_id=row["owner_id"],
            url=row["url"],
            events=json.loads(row["events"]),
            secret=row["secret"],
            headers=json.loads(row["headers"]),
            active=bool(row["active"]),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )
