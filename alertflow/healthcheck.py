"""
Health check - collects pipeline status and optionally posts it to a URL.
"""

import logging
import os
from typing import Any, Optional

import requests

from alertflow.database.connection import Database
from alertflow.database.repository import NotificationRepository, RuleRepository
from alertflow.errors import PersistenceFailure
from alertflow.queue.base import WorkQueue
from alertflow.timeutil import to_iso, utc_now

logger = logging.getLogger(__name__)


def collect_health(db: Database, queue: Optional[WorkQueue] = None) -> dict[str, Any]:
    """Gather database, rule, notification and queue status."""
    report: dict[str, Any] = {"timestamp": to_iso(utc_now()), "status": "ok"}

    try:
        db.ping()
        report["database"] = "ok"
    except PersistenceFailure as e:
        report["database"] = f"error: {e}"
        report["status"] = "degraded"
        return report

    rules = RuleRepository(db).list_all()
    report["rules"] = {
        "total": len(rules),
        "enabled": sum(1 for r in rules if r.enabled),
    }
    report["notifications"] = NotificationRepository(db).status_counts()

    if queue is not None:
        stats = queue.stats()
        report["queue"] = {
            "waiting": stats.waiting,
            "active": stats.active,
            "completed": stats.completed,
            "failed": stats.failed,
            "delayed": stats.delayed,
        }

    return report


def run_healthcheck(
    db: Database,
    queue: Optional[WorkQueue] = None,
    webhook_url: Optional[str] = None,
) -> dict[str, Any]:
    """Run health check and post the report when a URL is configured.

    Args:
        db: Database instance (already initialized)
        queue: Work queue to report on
        webhook_url: Defaults to HEALTHCHECK_WEBHOOK_URL
    """
    report = collect_health(db, queue)

    webhook_url = webhook_url or os.getenv("HEALTHCHECK_WEBHOOK_URL")
    if not webhook_url:
        return report

    try:
        response = requests.post(webhook_url, json=report, timeout=10)
        report["posted"] = response.status_code < 400
        logger.info(f"Health check sent (status: {response.status_code})")
    except requests.exceptions.RequestException as e:
        report["posted"] = False
        logger.warning(f"Health check post failed: {e}")
    return report
