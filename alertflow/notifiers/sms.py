"""
SMS sender using the Twilio REST API.
"""

import logging

import requests

from alertflow.database.models import Notification

from .base import ChannelSender, SendResult, result_from_response

logger = logging.getLogger(__name__)

TWILIO_API_URL = "https://api.twilio.com/2010-04-01"
SMS_MAX_LENGTH = 1600


class SMSSender(ChannelSender):
    """Sends notifications as text messages."""

    channel = "sms"
    provider = "twilio"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        api_url: str = TWILIO_API_URL,
        timeout: float = 30.0,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout

    def send(self, notification: Notification) -> SendResult:
        """Send notification as an SMS."""
        if not notification.recipient:
            return SendResult(
                success=False,
                channel=self.channel,
                error="No phone number for recipient",
                retryable=False,
            )

        url = f"{self.api_url}/Accounts/{self.account_sid}/Messages.json"
        try:
            response = requests.post(
                url,
                data={
                    "To": notification.recipient,
                    "From": self.from_number,
                    "Body": notification.message[:SMS_MAX_LENGTH],
                },
                auth=(self.account_sid, self.auth_token),
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            return SendResult(
                success=False,
                channel=self.channel,
                error=f"Connection error: {str(e)}",
            )

        result = result_from_response(self.channel, response, message_id_key="sid")
        if result.success:
            logger.info(f"SMS sent to {notification.recipient} ({result.provider_message_id})")
        return result
