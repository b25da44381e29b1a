"""
Mobile push sender using the FCM HTTP API.
"""

import logging
from typing import Callable, Optional

import requests

from alertflow.database.models import Notification

from .base import ChannelSender, SendResult, result_from_response

logger = logging.getLogger(__name__)

FCM_SEND_URL = "https://fcm.googleapis.com/fcm/send"

# FCM errors that will not go away on retry
TERMINAL_FCM_ERRORS = {"NotRegistered", "InvalidRegistration", "MismatchSenderId"}

TokenResolver = Callable[[str], list[str]]


class PushSender(ChannelSender):
    """Sends notifications to an owner's registered devices."""

    channel = "push"
    provider = "fcm"

    def __init__(
        self,
        server_key: str,
        token_resolver: Optional[TokenResolver] = None,
        endpoint: str = FCM_SEND_URL,
        timeout: float = 30.0,
    ):
        """
        Initialize push sender.

        Args:
            server_key: FCM server key
            token_resolver: Maps an owner ID to device tokens
            endpoint: FCM send endpoint
            timeout: Request timeout in seconds
        """
        self.server_key = server_key
        self.token_resolver = token_resolver
        self.endpoint = endpoint
        self.timeout = timeout

    def send(self, notification: Notification) -> SendResult:
        """Send notification to every device of the owner."""
        tokens = self.token_resolver(notification.owner_id) if self.token_resolver else []
        if not tokens:
            return SendResult(
                success=False,
                channel=self.channel,
                error="No push tokens registered",
                retryable=False,
            )

        payload = {
            "registration_ids": tokens,
            "priority": "high" if notification.priority in ("high", "critical") else "normal",
            "notification": {
                "title": notification.subject or "Alert",
                "body": notification.message,
            },
            "data": {
                "alert_id": notification.alert_id or "",
                "notification_id": notification.notification_id,
                "severity": notification.priority,
            },
        }

        try:
            response = requests.post(
                self.endpoint,
                json=payload,
                headers={"Authorization": f"key={self.server_key}"},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            return SendResult(
                success=False,
                channel=self.channel,
                error=f"Connection error: {str(e)}",
            )

        result = result_from_response(self.channel, response, message_id_key="multicast_id")
        if not result.success:
            return result

        body = result.response or {}
        if body.get("success", 1) == 0:
            errors = [r.get("error") for r in body.get("results", []) if r.get("error")]
            return SendResult(
                success=False,
                channel=self.channel,
                response=body,
                error=f"Push rejected: {', '.join(errors) or 'unknown error'}",
                retryable=not errors or not set(errors) <= TERMINAL_FCM_ERRORS,
            )

        logger.info(f"Push sent to {len(tokens)} devices of {notification.owner_id}")
        return result
