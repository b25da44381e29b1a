"""
Webhook subscription management and event fan-out.
"""

import logging
import re
import secrets
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from alertflow.database.models import Webhook
from alertflow.database.repository import WebhookRepository
from alertflow.notifiers.webhook import WebhookSender
from alertflow.timeutil import to_iso, utc_now

logger = logging.getLogger(__name__)

URL_REGEX = re.compile(
    r"^https?://[a-zA-Z0-9]([a-zA-Z0-9\-]*[a-zA-Z0-9])?"
    r"(\.[a-zA-Z0-9]([a-zA-Z0-9\-]*[a-zA-Z0-9])?)*"
    r"(:\d+)?(/.*)?$"
)
TEST_EVENT = "webhook.test"
INACTIVE_RETENTION_DAYS = 30


class WebhookRegistry:
    """Stores subscriptions and delivers events to them."""

    def __init__(
        self,
        webhooks: WebhookRepository,
        sender: WebhookSender,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.webhooks = webhooks
        self.sender = sender
        self.clock = clock

    def register(
        self,
        owner_id: str,
        url: str,
        events: list[str],
        secret: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> Webhook:
        """
        Create a subscription. A signing secret is generated if none is given.

        Raises:
            ValueError: If the URL or event list is invalid
        """
        if not URL_REGEX.match(url or ""):
            raise ValueError(f"Invalid webhook URL: {url}")
        if not events:
            raise ValueError("A webhook needs at least one event")

        webhook = Webhook(
            owner_id=owner_id,
            url=url,
            events=list(events),
            secret=secret or secrets.token_hex(32),
            headers=dict(headers or {}),
        )
        self.webhooks.create(webhook, self.clock())
        logger.info(f"Webhook registered: {webhook.webhook_id} -> {url} ({', '.join(events)})")
        return webhook

    def unregister(self, webhook_id: str) -> bool:
        deleted = self.webhooks.delete(webhook_id)
        if deleted:
            logger.info(f"Webhook unregistered: {webhook_id}")
        return deleted

    def set_active(self, webhook_id: str, active: bool) -> bool:
        return self.webhooks.set_active(webhook_id, active, self.clock())

    def list_for_owner(self, owner_id: str) -> list[Webhook]:
        return self.webhooks.list_for_owner(owner_id)

    def trigger(
        self,
        event: str,
        data: dict[str, Any],
        owner_id: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """
        Deliver an event to every active subscription listening for it.

        Returns:
            One result dict per subscription
        """
        results = []
        for webhook in self.webhooks.list_active_for_event(event, owner_id):
            results.append(self._send(webhook, event, data))
        return results

    def test(self, webhook_id: str) -> dict[str, Any]:
        """Send a test event to one subscription."""
        webhook = self.webhooks.get(webhook_id)
        if webhook is None:
            return {"webhook_id": webhook_id, "success": False, "message": "Webhook not found"}

        result = self._send(
            webhook,
            TEST_EVENT,
            {
                "test": True,
                "message": "This is a test webhook",
                "timestamp": to_iso(self.clock()),
            },
        )
        result["message"] = (
            "Webhook test successful"
            if result["success"]
            else f"Webhook test failed: {result['error']}"
        )
        return result

    def cleanup_inactive(self, days: int = INACTIVE_RETENTION_DAYS) -> int:
        """Delete inactive subscriptions untouched for ``days`` days."""
        cleaned = self.webhooks.delete_inactive_before(self.clock() - timedelta(days=days))
        logger.info(f"Cleaned up {cleaned} inactive webhooks")
        return cleaned

    def _send(self, webhook: Webhook, event: str, data: dict[str, Any]) -> dict[str, Any]:
        result = self.sender.deliver(
            url=webhook.url,
            webhook_id=webhook.webhook_id,
            event=event,
            data=data,
            secret=webhook.secret,
            headers=webhook.headers,
        )
        response = result.response or {}
        return {
            "webhook_id": webhook.webhook_id,
            "success": result.success,
            "status_code": response.get("status_code"),
            "retry_count": response.get("retry_count", 0),
            "error": result.error,
        }
