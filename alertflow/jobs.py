"""
Work queue job handlers.
"""

import logging
from typing import Any, Optional

from alertflow.alerts.lifecycle import AlertLifecycleManager
from alertflow.notifications.delivery import SEND_JOB, DeliveryTracker
from alertflow.notifications.summaries import DailySummaryService
from alertflow.queue.base import WorkQueue
from alertflow.rules.engine import RuleEngine
from alertflow.webhooks.registry import INACTIVE_RETENTION_DAYS, WebhookRegistry

logger = logging.getLogger(__name__)

BATCH_CHECK_JOB = "batch-check"
CHECK_RULE_JOB = "check-rule"
PROCESS_QUEUE_JOB = "process-queue"
CLEANUP_OLD_JOB = "cleanup-old"
CLEANUP_WEBHOOKS_JOB = "cleanup-webhooks"
DAILY_SUMMARIES_JOB = "daily-summaries"
SEND_DAILY_SUMMARY_JOB = "send-daily-summary"
EXPIRE_ALERTS_JOB = "expire-alerts"
TRIGGER_WEBHOOKS_JOB = "trigger-webhooks"


class PipelineJobs:
    """
    Handlers for every job type the pipeline enqueues.

    Handlers let PersistenceFailure and other crashes propagate so the
    queue's attempts and backoff apply. Per-rule and per-notification
    failures are already isolated by the services they call.
    """

    def __init__(
        self,
        engine: RuleEngine,
        tracker: DeliveryTracker,
        lifecycle: AlertLifecycleManager,
        summaries: DailySummaryService,
        webhooks: Optional[WebhookRegistry] = None,
        batch_size: int = 10,
        retention_days: int = 30,
    ):
        self.engine = engine
        self.tracker = tracker
        self.lifecycle = lifecycle
        self.summaries = summaries
        self.webhooks = webhooks
        self.batch_size = batch_size
        self.retention_days = retention_days

    def register(self, queue: WorkQueue) -> None:
        queue.register(BATCH_CHECK_JOB, self.batch_check)
        queue.register(CHECK_RULE_JOB, self.check_rule)
        queue.register(SEND_JOB, self.send_notification)
        queue.register(PROCESS_QUEUE_JOB, self.process_queue)
        queue.register(CLEANUP_OLD_JOB, self.cleanup_old)
        queue.register(DAILY_SUMMARIES_JOB, self.daily_summaries)
        queue.register(SEND_DAILY_SUMMARY_JOB, self.send_daily_summary)
        queue.register(EXPIRE_ALERTS_JOB, self.expire_alerts)
        if self.webhooks is not None:
            queue.register(CLEANUP_WEBHOOKS_JOB, self.cleanup_webhooks)
            queue.register(TRIGGER_WEBHOOKS_JOB, self.trigger_webhooks)

    def batch_check(self, payload: dict[str, Any]) -> dict[str, Any]:
        rule_type = payload.get("rule_type")
        results = self.engine.check_rules(rule_type, payload.get("owner_id"))
        return {
            "rule_type": rule_type,
            "checked": len(results),
            "triggered": sum(1 for r in results if r.triggered),
        }

    def check_rule(self, payload: dict[str, Any]) -> dict[str, Any]:
        result = self.engine.check_rule_by_id(int(payload["rule_id"]))
        if result is None:
            logger.warning(f"Rule {payload['rule_id']} not found")
            return {"rule_id": payload["rule_id"], "triggered": False}
        return {"rule_id": result.rule_id, "triggered": result.triggered}

    def send_notification(self, payload: dict[str, Any]) -> dict[str, Any]:
        outcome = self.tracker.process_notification(payload["notification_id"])
        return {"notification_id": outcome.notification_id, "status": outcome.status}

    def process_queue(self, payload: dict[str, Any]) -> dict[str, Any]:
        submitted = self.tracker.sweep(limit=int(payload.get("limit", self.batch_size)))
        return {"submitted": submitted}

    def cleanup_old(self, payload: dict[str, Any]) -> dict[str, Any]:
        days = int(payload.get("days_to_keep", self.retention_days))
        return {"deleted": self.tracker.cleanup(days)}

    def cleanup_webhooks(self, payload: dict[str, Any]) -> dict[str, Any]:
        days = int(payload.get("days", INACTIVE_RETENTION_DAYS))
        return {"deleted": self.webhooks.cleanup_inactive(days)}

    def daily_summaries(self, payload: dict[str, Any]) -> dict[str, Any]:
        return {"sent": self.summaries.send_daily_summaries()}

    def send_daily_summary(self, payload: dict[str, Any]) -> dict[str, Any]:
        notification = self.summaries.send_daily_summary(payload["owner_id"])
        return {"notification_id": notification.notification_id if notification else None}

    def expire_alerts(self, payload: dict[str, Any]) -> dict[str, Any]:
        return {"expired": self.lifecycle.expire_stale()}

    def trigger_webhooks(self, payload: dict[str, Any]) -> dict[str, Any]:
        results = self.webhooks.trigger(
            payload["event"], payload.get("data") or {}, payload.get("owner_id")
        )
        failed = [r for r in results if not r.get("success")]
        if failed:
            logger.warning(f"{len(failed)} of {len(results)} webhooks failed for {payload['event']}")
        return {"delivered": len(results) - len(failed), "failed": len(failed)}
