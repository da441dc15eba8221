"""
Base notifier classes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

from cryptalert.database.models import Notification


@dataclass
class NotificationResult:
    """Result of a notification attempt."""

    success: bool
    channel: str
    error: Optional[str] = None
    temporary: bool = False


class Notifier(ABC):
    """Abstract base class for delivery channels.

    Attributes:
        channels: Preference channel names this notifier serves
        blocking: Whether send() does network I/O and must run off the loop
        offline_action: Offline queue action used to deliver through this
            notifier, or None when delivery is never queued
        server_backed: Whether the notifier delivers to the notification
            server, which must not receive its own notifications back
    """

    channels: tuple[str, ...] = ()
    blocking: bool = True
    offline_action: Optional[str] = None
    server_backed: bool = False

    @property
    def name(self) -> str:
        return self.channels[0] if self.channels else type(self).__name__

    def is_available(self) -> bool:
        """Whether the channel may be used at all (e.g. permission granted)."""
        return True

    @abstractmethod
    def send(self, notification: Notification) -> NotificationResult:
        """
        Send a single notification.

        Args:
            notification: Notification to deliver

        Returns:
            NotificationResult indicating success or failure
        """
        pass


class NotifierFactory:
    """Factory for creating notifier instances."""

    @staticmethod
    def create(config: dict[str, Any]) -> Notifier:
        """
        Create a notifier from configuration.

        Args:
            config: Notifier configuration dict

        Returns:
            Appropriate Notifier instance

        Raises:
            ValueError: If notifier type is unknown
        """
        notifier_type = config.get("type")

        if notifier_type == "in_app":
            from .in_app import InAppNotifier

            return InAppNotifier(max_items=config.get("max_items", 50))

        elif notifier_type == "browser":
            from .browser import BrowserPushNotifier

            return BrowserPushNotifier(
                push_url=config.get("push_url", ""),
                subscription=config.get("subscription"),
                permission_granted=config.get("permission_granted", False),
            )

        elif notifier_type == "email":
            from .email import EmailNotifier

            return EmailNotifier(
                smtp_host=config.get("smtp_host", ""),
                smtp_port=config.get("smtp_port", 587),
                smtp_user=config.get("smtp_user", ""),
                smtp_password=config.get("smtp_password", ""),
                from_address=config.get("from_address", ""),
                to_addresses=config.get("to_addresses", []),
            )

        elif notifier_type == "remote":
            from .remote import RemoteNotifier

            return RemoteNotifier(
                base_url=config.get("base_url", ""),
                user_id=config.get("user_id", "default"),
                token=config.get("token"),
            )

        else:
            raise ValueError(f"Unknown notifier type: {notifier_type}")
