"""
Inbound webhook callbacks (provider delivery status).
"""

import json
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from requests.structures import CaseInsensitiveDict

from alertflow.database.repository import WebhookRepository
from alertflow.errors import SignatureInvalid
from alertflow.timeutil import from_iso, utc_now

from .signing import verify

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300

STATUS_EVENTS = {
    "notification.delivered": "delivered",
    "notification.bounced": "bounced",
}
READ_EVENT = "notification.read"


class WebhookReceiver:
    """Verifies and applies signed provider callbacks."""

    def __init__(
        self,
        tracker,
        webhooks: Optional[WebhookRepository] = None,
        global_secret: Optional[str] = None,
        tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Args:
            tracker: Delivery tracker with ``record_provider_status`` and ``mark_read``
            webhooks: Subscription store used to look up per-webhook secrets
            global_secret: Secret used when the subscription has none
            tolerance_seconds: Maximum age of a callback timestamp
            clock: Current time source
        """
        self.tracker = tracker
        self.webhooks = webhooks
        self.global_secret = global_secret
        self.tolerance_seconds = tolerance_seconds
        self.clock = clock

    def _secret_for(self, webhook_id: Optional[str]) -> Optional[str]:
        if webhook_id and self.webhooks is not None:
            webhook = self.webhooks.get(webhook_id)
            if webhook is not None and webhook.secret:
                return webhook.secret
        return self.global_secret

    def verify_request(self, headers: dict[str, str], body: bytes) -> dict[str, Any]:
        """
        Check signature and freshness of a callback.

        Freshness is judged by the ``timestamp`` inside the signed body. An
        ``X-Webhook-Timestamp`` header, when sent, must match it.

        Returns:
            Parsed JSON body

        Raises:
            SignatureInvalid: If the signature, timestamp or body is unacceptable
        """
        headers = CaseInsensitiveDict(headers)
        signature = headers.get("X-Webhook-Signature")
        secret = self._secret_for(headers.get("X-Webhook-Id"))

        if not secret:
            raise SignatureInvalid("No secret configured for webhook")
        if not verify(body, signature, secret):
            raise SignatureInvalid("Signature mismatch")

        try:
            parsed = json.loads(body)
        except ValueError:
            raise SignatureInvalid("Body is not valid JSON")
        if not isinstance(parsed, dict):
            raise SignatureInvalid("Body must be a JSON object")

        timestamp = parsed.get("timestamp")
        if not timestamp:
            raise SignatureInvalid("Missing timestamp")
        sent_at = self._parse_timestamp(timestamp)

        header_timestamp = headers.get("X-Webhook-Timestamp")
        if header_timestamp and self._parse_timestamp(header_timestamp) != sent_at:
            raise SignatureInvalid("Timestamp header does not match signed body")

        age = abs((self.clock() - sent_at).total_seconds())
        if age > self.tolerance_seconds:
            raise SignatureInvalid(f"Stale timestamp ({age:.0f}s old)")
        return parsed

    def _parse_timestamp(self, value: Any) -> datetime:
        try:
            return from_iso(str(value))
        except ValueError:
            raise SignatureInvalid(f"Malformed timestamp: {value}")

    def handle(self, headers: dict[str, str], body: bytes) -> dict[str, Any]:
        """
        Process a provider callback.

        Returns:
            Summary with ``event``, ``notification_id`` and ``handled``

        Raises:
            SignatureInvalid: If verification fails
        """
        payload = self.verify_request(headers, body)
        event = CaseInsensitiveDict(headers).get("X-Webhook-Event") or payload.get("event")
        data = payload.get("data") or {}
        notification_id = data.get("notification_id")

        if not notification_id:
            logger.warning(f"Callback {event} without notification_id ignored")
            return {"event": event, "notification_id": None, "handled": False}

        if event in STATUS_EVENTS:
            handled = self.tracker.record_provider_status(
                notification_id, STATUS_EVENTS[event]
            )
        elif event == READ_EVENT:
            handled = self.tracker.mark_read(notification_id)
        else:
            logger.info(f"Ignoring callback event {event}")
            handled = False

        return {"event": event, "notification_id": notification_id, "handled": handled}
