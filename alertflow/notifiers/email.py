"""
Email SMTP sender.
"""

import html
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid

from alertflow.database.models import Notification

from .base import ChannelSender, SendResult

logger = logging.getLogger(__name__)

SEVERITY_COLOR = {
    "low": "#3498DB",
    "medium": "#3498DB",
    "high": "#FFA500",
    "critical": "#FF0000",
}


class EmailSender(ChannelSender):
    """Sends notifications via email SMTP."""

    channel = "email"
    provider = "smtp"

    def __init__(
        self,
        smtp_host: str,
        smtp_port: int,
        smtp_user: str,
        smtp_password: str,
        from_address: str,
        use_tls: bool = True,
        timeout: float = 30.0,
    ):
        """
        Initialize email sender.

        Args:
            smtp_host: SMTP server hostname
            smtp_port: SMTP server port
            smtp_user: SMTP username (empty to skip login)
            smtp_password: SMTP password
            from_address: Sender email address
            use_tls: Whether to upgrade the connection with STARTTLS
            timeout: Socket timeout in seconds
        """
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.from_address = from_address
        self.use_tls = use_tls
        self.timeout = timeout

    def send(self, notification: Notification) -> SendResult:
        """Send notification via email."""
        if not notification.recipient:
            return SendResult(
                success=False,
                channel=self.channel,
                error="No email address for recipient",
                retryable=False,
            )

        try:
            message = self._create_message(notification)

            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.smtp_user:
                    server.login(self.smtp_user, self.smtp_password)
                server.send_message(message)

            logger.info(f"Email sent to {notification.recipient}")
            return SendResult(
                success=True,
                channel=self.channel,
                response={"message_id": message["Message-ID"]},
                provider_message_id=message["Message-ID"],
            )

        except smtplib.SMTPAuthenticationError as e:
            return SendResult(
                success=False,
                channel=self.channel,
                error=f"Authentication failed: {str(e)}",
                retryable=False,
            )
        except smtplib.SMTPRecipientsRefused as e:
            return SendResult(
                success=False,
                channel=self.channel,
                error=f"Recipient refused: {str(e)}",
                retryable=False,
            )
        except (smtplib.SMTPException, OSError) as e:
            return SendResult(
                success=False,
                channel=self.channel,
                error=f"SMTP error: {str(e)}",
            )

    def _create_message(self, notification: Notification) -> MIMEMultipart:
        """Create email message."""
        message = MIMEMultipart("alternative")
        message["Subject"] = self._create_subject(notification)
        message["From"] = self.from_address
        message["To"] = notification.recipient
        message["Message-ID"] = make_msgid(domain=self.from_address.rpartition("@")[2] or None)

        # Plain text version
        message.attach(MIMEText(self._create_text_body(notification), "plain"))

        # HTML version
        message.attach(MIMEText(self._create_body(notification), "html"))

        return message

    def _create_subject(self, notification: Notification) -> str:
        """Create email subject."""
        subject = notification.subject or "Alert"
        if notification.priority == "critical":
            return f"[CRITICAL] {subject}"
        return subject

    def _create_text_body(self, notification: Notification) -> str:
        """Create plain text email body."""
        if notification.template == "daily-summary":
            return self._summary_text(notification)

        data = notification.template_data
        lines = [notification.message, ""]
        if data.get("symbol"):
            lines.append(f"Symbol: {data['symbol']}")
        if data.get("current_value") is not None:
            lines.append(f"Current: {data['current_value']}")
        if data.get("threshold") is not None:
            lines.append(f"Threshold: {data['threshold']}")
        return "\n".join(lines) + "\n"

    def _summary_text(self, notification: Notification) -> str:
        data = notification.template_data
        lines = [f"Daily summary for {data.get('date', '')}", ""]
        portfolio = data.get("portfolio") or {}
        if portfolio:
            lines.append(f"Portfolio value: {portfolio.get('totalValue', 'n/a')}")
        alerts = data.get("alerts") or []
        lines.append(f"Alerts today: {len(alerts)}")
        for alert in alerts:
            lines.append(f"- [{alert.get('type')}] {alert.get('message', '')}")
        return "\n".join(lines) + "\n"

    def _create_body(self, notification: Notification) -> str:
        """Create HTML email body."""
        color = SEVERITY_COLOR.get(notification.priority, "#3498DB")
        text = html.escape(self._create_text_body(notification)).replace("\n", "<br>\n")
        subject = html.escape(notification.subject or "Alert")

        return f"""
<!DOCTYPE html>
<html>
<head>
    <style>
        body {{ font-family: Arial, sans-serif; margin: 0; padding: 20px; }}
        .alert-box {{
            border-left: 4px solid {color};
            padding: 15px;
            background-color: #f9f9f9;
            margin-bottom: 20px;
        }}
        .title {{ font-size: 20px; font-weight: bold; color: {color}; }}
        .message {{ margin: 15px 0; color: #555; }}
    </style>
</head>
<body>
    <div class="alert-box">
        <div class="title">{subject}</div>
        <div class="message">{text}</div>
    </div>
</body>
</html>
"""
