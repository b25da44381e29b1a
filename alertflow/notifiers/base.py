"""
Base channel sender classes.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

from alertflow.database.models import Notification

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    """Result of a single delivery attempt."""

    success: bool
    channel: str
    response: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    retryable: bool = True
    provider_message_id: Optional[str] = None


def result_from_response(channel: str, response, message_id_key: str = "id") -> SendResult:
    """
    Build a SendResult from an HTTP response.

    2xx/3xx is success. 4xx is terminal except 429. 5xx is retryable.
    """
    try:
        body = response.json()
    except ValueError:
        body = {"text": response.text[:500]} if response.text else {}
    if not isinstance(body, dict):
        body = {"body": body}

    if response.status_code < 400:
        message_id = body.get(message_id_key)
        return SendResult(
            success=True,
            channel=channel,
            response={"status_code": response.status_code, **body},
            provider_message_id=str(message_id) if message_id else None,
        )

    retryable = response.status_code == 429 or response.status_code >= 500
    return SendResult(
        success=False,
        channel=channel,
        response={"status_code": response.status_code, **body},
        error=f"HTTP {response.status_code}: {response.text[:200]}",
        retryable=retryable,
    )


class ChannelSender(ABC):
    """Abstract base class for channel senders.

    ``send`` reports delivery failures through the returned ``SendResult``
    instead of raising.
    """

    channel: str = ""
    provider: Optional[str] = None

    @abstractmethod
    def send(self, notification: Notification) -> SendResult:
        """
        Deliver a single notification.

        Args:
            notification: Notification to send

        Returns:
            SendResult indicating success or failure
        """
        pass

    def send_batch(self, notifications: list[Notification]) -> list[SendResult]:
        """
        Deliver multiple notifications.

        Args:
            notifications: List of notifications to send

        Returns:
            List of SendResult for each notification
        """
        return [self.send(notification) for notification in notifications]


class SenderRegistry:
    """Channel tag to sender lookup."""

    def __init__(self, senders: Optional[dict[str, ChannelSender]] = None):
        self._senders: dict[str, ChannelSender] = dict(senders or {})

    def register(self, channel: str, sender: ChannelSender) -> None:
        self._senders[channel] = sender

    def get(self, channel: str) -> Optional[ChannelSender]:
        return self._senders.get(channel)

    def channels(self) -> list[str]:
        return sorted(self._senders)

    def __contains__(self, channel: str) -> bool:
        return channel in self._senders

    def send(self, notification: Notification) -> SendResult:
        """
        Route a notification to its channel's sender.

        Unexpected exceptions from a sender are turned into a failed result.
        """
        sender = self._senders.get(notification.channel)
        if sender is None:
            return SendResult(
                success=False,
                channel=notification.channel,
                error=f"No sender registered for channel: {notification.channel}",
                retryable=False,
            )

        try:
            return sender.send(notification)
        except Exception as e:
            logger.exception(
                f"{notification.channel} sender raised for {notification.notification_id}"
            )
            return SendResult(
                success=False,
                channel=notification.channel,
                error=f"Unexpected sender error: {e}",
            )
