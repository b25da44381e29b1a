"""
Rule evaluation engine.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from alertflow.alerts.lifecycle import AlertLifecycleManager, format_alert_message
from alertflow.data.fetcher import ValueFetcher
from alertflow.database.connection import Database
from alertflow.database.models import AlertRule
from alertflow.database.repository import RuleRepository
from alertflow.errors import EvaluationSkipped, PersistenceFailure, UpstreamDataUnavailable
from alertflow.notifications.dispatcher import NotificationDispatcher
from alertflow.timeutil import utc_now

from .conditions import evaluate

logger = logging.getLogger(__name__)


@dataclass
class RuleCheckResult:
    """Outcome of checking one rule."""

    rule_id: Optional[int]
    triggered: bool
    value: Optional[float] = None
    alert_id: Optional[str] = None
    reason: Optional[str] = None
    notification_ids: list[str] = field(default_factory=list)


class RuleEngine:
    """Evaluates rules and fires alerts for the ones whose condition holds."""

    def __init__(
        self,
        db: Database,
        rules: RuleRepository,
        fetcher: ValueFetcher,
        lifecycle: AlertLifecycleManager,
        dispatcher: NotificationDispatcher,
        timezone: str = "America/Toronto",
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.rules = rules
        self.fetcher = fetcher
        self.lifecycle = lifecycle
        self.dispatcher = dispatcher
        self.timezone = timezone
        self.clock = clock

    def check_rules(
        self,
        rule_type: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> list[RuleCheckResult]:
        """
        Check every enabled rule, optionally filtered by type and owner.

        A failing rule is logged and skipped. PersistenceFailure propagates.

        Returns:
            One result per rule
        """
        rules = self.rules.get_enabled_rules(rule_type, owner_id)
        logger.info(f"Checking {len(rules)} {rule_type or 'all'} alert rules")

        results = []
        for rule in rules:
            try:
                results.append(self.check_rule(rule))
            except PersistenceFailure:
                raise
            except Exception as e:
                logger.exception(f"Error checking rule {rule.id}")
                results.append(RuleCheckResult(rule.id, False, reason=f"error: {e}"))

        triggered = sum(1 for r in results if r.triggered)
        if triggered:
            logger.info(f"{triggered} of {len(results)} rules triggered")
        return results

    def check_rule_by_id(self, rule_id: int) -> Optional[RuleCheckResult]:
        rule = self.rules.get_by_id(rule_id)
        if rule is None:
            return None
        return self.check_rule(rule)

    def check_rule(self, rule: AlertRule) -> RuleCheckResult:
        """
        Evaluate one rule and fire it if its condition holds.

        The trigger write, the alert and its notifications are committed
        together; delivery starts after the commit.
        """
        now = self.clock()

        try:
            self._ensure_eligible(rule, now)
        except EvaluationSkipped as e:
            logger.debug(str(e))
            return RuleCheckResult(rule.id, False, reason=e.reason)

        try:
            value = self.fetcher.fetch(rule.rule_type, rule.condition.subject, rule.owner_id)
        except UpstreamDataUnavailable as e:
            logger.warning(f"Rule {rule.id}: {e}")
            self.rules.touch_checked(rule.id, now)
            return RuleCheckResult(rule.id, False, reason="no data")

        self.rules.touch_checked(rule.id, now)

        condition = rule.condition
        if not evaluate(value, condition.operator, condition.threshold, condition.secondary_threshold):
            return RuleCheckResult(rule.id, False, value=value)

        with self.db.transaction():
            if not self.rules.record_trigger(rule, now):
                logger.info(f"Rule {rule.id} was triggered concurrently, skipping")
                return RuleCheckResult(rule.id, False, value=value, reason="already triggered")
            alert = self.lifecycle.create_from_rule(rule, value, now)
            planned = self.dispatcher.plan(alert, rule)

        self.dispatcher.deliver(planned)

        return RuleCheckResult(
            rule.id,
            True,
            value=value,
            alert_id=alert.alert_id,
            notification_ids=[n.notification_id for n in planned],
        )

    def _ensure_eligible(self, rule: AlertRule, now: datetime) -> None:
        """
        Raises:
            EvaluationSkipped: If the rule may not fire right now
        """
        if not rule.enabled:
            raise EvaluationSkipped(rule.id, "disabled")
        if rule.is_expired(now):
            raise EvaluationSkipped(rule.id, "expired")
        if not rule.can_trigger(now, self.timezone):
            raise EvaluationSkipped(rule.id, "cooldown")

    def test_rule(self, rule: AlertRule) -> dict[str, Any]:
        """
        Dry-run a rule without recording a trigger or creating an alert.

        Raises:
            UpstreamDataUnavailable: If the current value cannot be fetched
        """
        value = self.fetcher.fetch(rule.rule_type, rule.condition.subject, rule.owner_id)
        condition = rule.condition
        return {
            "current_value": value,
            "threshold": condition.threshold,
            "operator": condition.operator,
            "condition_met": evaluate(
                value, condition.operator, condition.threshold, condition.secondary_threshold
            ),
            "can_trigger": rule.can_trigger(self.clock(), self.timezone),
            "message": format_alert_message(rule, value),
        }
