"""
In-app notifications.

The stored notification is the delivery; clients poll for unread items.
"""

from alertflow.database.models import Notification

from .base import ChannelSender, SendResult


class InAppSender(ChannelSender):
    """Marks in-app notifications as delivered to the inbox."""

    channel = "inapp"
    provider = "inapp"

    def send(self, notification: Notification) -> SendResult:
        return SendResult(success=True, channel=self.channel, response={"inapp": True})
