"""
Signed HTTP webhook sender.
"""

import logging
import time
from typing import Any, Callable, Optional

import requests

from alertflow.database.models import Notification
from alertflow.webhooks.signing import build_payload, canonical_body, sign

from .base import ChannelSender, SendResult, result_from_response

logger = logging.getLogger(__name__)

USER_AGENT = "alertflow-webhooks/1.0"
ALERT_EVENT = "alert.triggered"

SecretResolver = Callable[[Notification], Optional[str]]


class WebhookSender(ChannelSender):
    """Sends notifications as signed JSON POSTs."""

    channel = "webhook"
    provider = "webhook"

    def __init__(
        self,
        default_secret: Optional[str] = None,
        secret_resolver: Optional[SecretResolver] = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        max_retry_after: float = 60.0,
        user_agent: str = USER_AGENT,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize webhook sender.

        Args:
            default_secret: Signing secret used when no per-owner secret exists
            secret_resolver: Looks up the signing secret for a notification
            timeout: Request timeout in seconds
            max_retries: Extra attempts for 5xx and network errors. Other 4xx
                responses are terminal except 429, which is retried after the
                server's Retry-After
            retry_delay: Base delay in seconds, doubled on every retry
            max_retry_after: Longest Retry-After to wait out in-process. A
                longer one ends the attempt as a retryable failure
            user_agent: User-Agent header value
            sleep: Sleep function used between attempts
        """
        self.default_secret = default_secret
        self.secret_resolver = secret_resolver
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.max_retry_after = max_retry_after
        self.user_agent = user_agent
        self.sleep = sleep

    def send(self, notification: Notification) -> SendResult:
        """Send notification to the owner's webhook URL."""
        if not notification.recipient:
            return SendResult(
                success=False,
                channel=self.channel,
                error="No webhook URL for recipient",
                retryable=False,
            )

        secret = None
        if self.secret_resolver:
            secret = self.secret_resolver(notification)
        secret = secret or self.default_secret

        data = {
            "alert_id": notification.alert_id,
            "notification_id": notification.notification_id,
            "subject": notification.subject,
            "message": notification.message,
            **notification.template_data,
        }
        event = notification.template_data.get("event", ALERT_EVENT)

        return self.deliver(
            url=notification.recipient,
            webhook_id=notification.owner_id,
            event=event,
            data=data,
            secret=secret,
        )

    def deliver(
        self,
        url: str,
        webhook_id: str,
        event: str,
        data: dict[str, Any],
        secret: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> SendResult:
        """
        POST a signed event envelope, retrying transient failures.

        Returns:
            SendResult; ``response`` carries the status code and retry count
        """
        payload = build_payload(webhook_id, event, data)
        body = canonical_body(payload)

        request_headers = {
            **(headers or {}),
            "Content-Type": "application/json",
            "X-Webhook-Event": event,
            "X-Webhook-Id": webhook_id,
            "X-Webhook-Timestamp": payload["timestamp"],
            "User-Agent": self.user_agent,
        }
        if secret:
            request_headers["X-Webhook-Signature"] = sign(body, secret)
        else:
            logger.warning(f"No signing secret for webhook {webhook_id}, sending unsigned")

        retry_count = 0
        while True:
            retry_after = None
            try:
                response = requests.post(
                    url,
                    data=body,
                    headers=request_headers,
                    timeout=self.timeout,
                )
            except requests.exceptions.RequestException as e:
                result = SendResult(
                    success=False,
                    channel=self.channel,
                    error=f"Connection error: {str(e)}",
                )
            else:
                result = result_from_response(self.channel, response)
                # Handle rate limiting
                if response.status_code == 429:
                    retry_after = response.headers.get("Retry-After")

            if result.success or not result.retryable or retry_count >= self.max_retries:
                break

            delay = self._retry_delay(retry_count, retry_after)
            if delay > self.max_retry_after:
                logger.warning(
                    f"Webhook {webhook_id} asked to wait {delay:.0f}s, "
                    f"over the {self.max_retry_after:.0f}s limit; leaving it for a later retry"
                )
                break
            logger.warning(
                f"Webhook {webhook_id} delivery failed ({result.error}), "
                f"retrying in {delay:.1f}s"
            )
            self.sleep(delay)
            retry_count += 1

        result.response = {**(result.response or {}), "retry_count": retry_count}
        if result.success:
            result.provider_message_id = payload["id"]
            logger.info(f"Webhook {event} delivered to {url}")
        else:
            logger.error(f"Webhook {event} to {url} failed: {result.error}")
        return result

    def _retry_delay(self, retry_count: int, retry_after: Optional[str]) -> float:
        if retry_after is not None:
            try:
                return max(float(retry_after), 0.0)
            except ValueError:
                pass
        return self.retry_delay * (2 ** retry_count)
