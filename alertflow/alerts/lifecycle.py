"""
Alert creation and status transitions.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from alertflow.database.models import Alert, AlertRule, AlertStatus, DeliveryReceipt
from alertflow.database.repository import AlertRepository
from alertflow.errors import RuleValidationError
from alertflow.timeutil import utc_now

logger = logging.getLogger(__name__)


def format_value(value: Any) -> str:
    """Render a number without a trailing ``.0``."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if value is None:
        return ""
    return str(value)


def format_alert_message(rule: AlertRule, value: Any) -> str:
    """Build the human-readable message for a fired rule."""
    condition = rule.condition
    symbol = condition.symbol or ""
    operator = condition.operator
    threshold = format_value(condition.threshold)
    current = format_value(value)

    message = f"Alert: {rule.name}\n"

    if rule.rule_type == "price":
        message += f"{symbol} price is {operator} {threshold}. Current: {current}"
    elif rule.rule_type == "percentage":
        message += f"{symbol} changed {current}% (threshold: {threshold}%)"
    elif rule.rule_type == "portfolio":
        message += (
            f"Portfolio {condition.metric} is {operator} {threshold}. Current: {current}"
        )
    elif rule.rule_type == "volume":
        message += f"{symbol} volume is {operator} {threshold}. Current: {current}"
    else:
        message += f"Condition met: {current} is {operator} {threshold}"

    return message


class AlertLifecycleManager:
    """Creates alerts and moves them through their states."""

    def __init__(
        self,
        alerts: AlertRepository,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.alerts = alerts
        self.clock = clock

    def create_from_rule(
        self, rule: AlertRule, value: Any, now: Optional[datetime] = None
    ) -> Alert:
        """
        Persist a triggered alert for a fired rule.

        Args:
            rule: The rule that fired
            value: Observed value that met the condition
            now: Trigger time

        Returns:
            The stored alert
        """
        now = now or self.clock()
        alert = Alert(
            owner_id=rule.owner_id,
            rule_id=rule.id,
            alert_type=rule.rule_type,
            status=AlertStatus.TRIGGERED.value,
            triggered_at=now,
            triggered_value=value,
            threshold=rule.condition.threshold,
            condition=rule.condition.operator,
            symbol=rule.condition.symbol,
            metric=rule.condition.metric,
            message=format_alert_message(rule, value),
            severity=rule.priority or "medium",
        )
        self.alerts.create(alert, now)
        logger.info(f"Alert {alert.alert_id} created for rule {rule.id} ({rule.name})")
        return alert

    def create_manual(self, payload: dict[str, Any]) -> Alert:
        """
        Persist an operator-created alert in the ``active`` state.

        Raises:
            RuleValidationError: If owner or type is missing
        """
        if not payload.get("owner_id") or not payload.get("alert_type"):
            raise RuleValidationError("Manual alerts need owner_id and alert_type")

        alert = Alert(
            owner_id=payload["owner_id"],
            alert_type=payload["alert_type"],
            status=AlertStatus.ACTIVE.value,
            rule_id=payload.get("rule_id"),
            threshold=payload.get("threshold"),
            condition=payload.get("condition"),
            symbol=payload.get("symbol"),
            metric=payload.get("metric"),
            message=payload.get("message", ""),
            severity=payload.get("severity", "medium"),
            expires_at=payload.get("expires_at"),
            metadata=dict(payload.get("metadata") or {}),
        )
        self.alerts.create(alert, self.clock())
        logger.info(f"Manual alert {alert.alert_id} created for {alert.owner_id}")
        return alert

    def trigger(self, alert: Alert, value: Any, message: Optional[str] = None) -> Alert:
        """Fire an active (manual) alert."""
        return self.alerts.record_trigger(
            alert, value, message or alert.message, self.clock()
        )

    def acknowledge(self, alert: Alert) -> Alert:
        return self.alerts.update_status(
            alert, AlertStatus.ACKNOWLEDGED.value, self.clock()
        )

    def cancel(self, alert: Alert) -> Alert:
        return self.alerts.update_status(
            alert, AlertStatus.CANCELLED.value, self.clock()
        )

    def expire_stale(self, now: Optional[datetime] = None) -> int:
        """Expire active and triggered alerts whose expiry has passed."""
        now = now or self.clock()
        expired = 0
        for alert in self.alerts.list_expirable(now):
            try:
                self.alerts.update_status(alert, AlertStatus.EXPIRED.value, now)
                expired += 1
            except ValueError as e:
                # Status moved on since the scan
                logger.debug(f"Skipping expiry of {alert.alert_id}: {e}")
        if expired:
            logger.info(f"Expired {expired} alerts")
        return expired

    def add_delivery_receipt(
        self,
        alert_id: str,
        channel: str,
        notification_id: str,
        status: str = "sent",
    ) -> DeliveryReceipt:
        """Append a delivery receipt to an alert's log."""
        receipt = DeliveryReceipt(
            channel=channel,
            notification_id=notification_id,
            status=status,
            sent_at=self.clock(),
        )
        self.alerts.add_receipt(alert_id, receipt)
        return receipt
