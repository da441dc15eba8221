"""
In-app notification list.
"""

import logging
from typing import Callable, Optional

from cryptalert.database.models import DeliveryChannel, Notification
from .base import Notifier, NotificationResult

logger = logging.getLogger(__name__)


class InAppNotifier(Notifier):
    """Keeps the user's live notification list and raises toasts."""

    channels = (DeliveryChannel.IN_APP.value,)
    blocking = False

    def __init__(
        self,
        max_items: int = 50,
        on_toast: Optional[Callable[[Notification], None]] = None,
    ):
        """
        Initialize in-app notifier.

        Args:
            max_items: Size of the live list, newest first
            on_toast: Called for notifications that request a toast
        """
        self.max_items = max_items
        self.on_toast = on_toast
        self.items: list[Notification] = []

    def send(self, notification: Notification) -> NotificationResult:
        """Put a notification at the top of the live list."""
        self._upsert(notification)

        if notification.show_toast and self.on_toast:
            try:
                self.on_toast(notification)
            except Exception as e:
                logger.warning(f"Toast callback failed for {notification.id}: {e}")

        return NotificationResult(success=True, channel=self.name)

    def refresh(self, notification: Notification) -> None:
        """Update an entry in place (e.g. after grouping) without a toast."""
        for index, item in enumerate(self.items):
            if item.id == notification.id:
                self.items[index] = notification
                return

    def remove(self, notification_id: str) -> None:
        self.items = [n for n in self.items if n.id != notification_id]

    def clear(self) -> None:
        self.items = []

    def _upsert(self, notification: Notification) -> None:
        self.remove(notification.id)
        self.items.insert(0, notification)
        del self.items[self.max_items:]
