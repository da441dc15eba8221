"""
Email SMTP notifier with daily digest support.
"""

import logging
import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart

from cryptalert.database.models import DeliveryChannel, Notification, NotificationPriority
from .base import Notifier, NotificationResult

logger = logging.getLogger(__name__)

# Errors worth retrying once the connection is back
TEMPORARY_SMTP_ERRORS = (
    smtplib.SMTPServerDisconnected,
    smtplib.SMTPConnectError,
    ConnectionError,
    TimeoutError,
)


class EmailNotifier(Notifier):
    """Sends notifications via email SMTP."""

    channels = (DeliveryChannel.EMAIL.value,)
    offline_action = "email"

    def __init__(
        self,
        smtp_host: str,
        smtp_port: int,
        smtp_user: str,
        smtp_password: str,
        from_address: str,
        to_addresses: list[str],
    ):
        """
        Initialize email notifier.

        Args:
            smtp_host: SMTP server hostname
            smtp_port: SMTP server port
            smtp_user: SMTP username
            smtp_password: SMTP password
            from_address: Sender email address
            to_addresses: List of recipient email addresses
        """
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.from_address = from_address
        self.to_addresses = to_addresses
        self.digest: list[Notification] = []

    def send(self, notification: Notification) -> NotificationResult:
        """Send a notification via email."""
        message = self._create_message(
            self._create_subject(notification),
            self._create_text_body(notification),
            self._create_body(notification),
        )
        return self._deliver(message)

    def add_to_digest(self, notification: Notification) -> None:
        """Buffer a notification for the next digest email."""
        self.digest.append(notification)

    def send_digest(self) -> NotificationResult:
        """
        Send every buffered notification as one summary email.

        The buffer is only cleared when the email went out.
        """
        if not self.digest:
            return NotificationResult(success=True, channel=self.name)

        items = list(self.digest)
        message = self._create_message(
            f"[Digest] {len(items)} CryptAlert notifications",
            "\n".join(self._create_text_body(n) for n in items),
            "".join(self._create_body(n) for n in items),
        )
        result = self._deliver(message)
        if result.success:
            del self.digest[:len(items)]
            logger.info(f"Sent email digest with {len(items)} notifications")
        return result

    def _deliver(self, message: MIMEMultipart) -> NotificationResult:
        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port) as server:
                server.starttls()
                server.login(self.smtp_user, self.smtp_password)
                server.send_message(message)

            return NotificationResult(success=True, channel=self.name)

        except smtplib.SMTPAuthenticationError as e:
            return NotificationResult(
                success=False,
                channel=self.name,
                error=f"Authentication failed: {str(e)}",
            )
        except TEMPORARY_SMTP_ERRORS as e:
            return NotificationResult(
                success=False,
                channel=self.name,
                error=f"Connection error: {str(e)}",
                temporary=True,
            )
        except Exception as e:
            return NotificationResult(
                success=False,
                channel=self.name,
                error=f"SMTP error: {str(e)}",
            )

    def _create_message(self, subject: str, text_body: str, html_body: str) -> MIMEMultipart:
        """Create email message."""
        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = self.from_address
        message["To"] = ", ".join(self.to_addresses)

        message.attach(MIMEText(text_body, "plain"))
        message.attach(MIMEText(html_body, "html"))

        return message

    def _create_subject(self, notification: Notification) -> str:
        """Create email subject."""
        priority_prefix = {
            NotificationPriority.LOW: "[Info]",
            NotificationPriority.MEDIUM: "[Alert]",
            NotificationPriority.HIGH: "[Alert]",
            NotificationPriority.URGENT: "[URGENT]",
        }
        prefix = priority_prefix.get(notification.priority, "[Alert]")
        return f"{prefix} CryptAlert: {notification.title}"

    def _create_text_body(self, notification: Notification) -> str:
        """Create plain text email body."""
        links = "\n".join(
            f"{action.label}: {action.url}" for action in notification.actions if action.url
        )
        return f"""
{notification.title}

{notification.description}

{links}
Time: {notification.timestamp.strftime("%Y-%m-%d %H:%M:%S")}
"""

    def _create_body(self, notification: Notification) -> str:
        """Create HTML email body."""
        priority_color = {
            NotificationPriority.LOW: "#3498DB",
            NotificationPriority.MEDIUM: "#3498DB",
            NotificationPriority.HIGH: "#FFA500",
            NotificationPriority.URGENT: "#FF0000",
        }
        color = priority_color.get(notification.priority, "#3498DB")
        links = "<br>".join(
            f'<a href="{action.url}">{action.label}</a>'
            for action in notification.actions
            if action.url
        )

        return f"""
<div style="border-left: 4px solid {color}; padding: 15px; background-color: #f9f9f9; margin-bottom: 20px; font-family: Arial, sans-serif;">
    <div style="font-size: 20px; font-weight: bold; color: {color};">{notification.title}</div>
    <div style="margin: 15px 0; color: #555;">{notification.description}</div>
    <div style="color: #888; font-size: 12px;">
        Time: {notification.timestamp.strftime("%Y-%m-%d %H:%M:%S")}
    </div>
    <div style="margin-top: 15px;">{links}</div>
</div>
"""
