"""
Browser push notifier via a web push gateway.
"""

import logging
import time
from typing import Any, Optional

import requests

from cryptalert.database.models import DeliveryChannel, Notification, NotificationPriority
from cryptalert.errors import PermissionDenied
from .base import Notifier, NotificationResult

logger = logging.getLogger(__name__)


class BrowserPushNotifier(Notifier):
    """Sends notifications to the user's browser through a push gateway."""

    channels = (DeliveryChannel.BROWSER.value,)

    def __init__(
        self,
        push_url: str,
        subscription: Optional[dict[str, Any]] = None,
        permission_granted: bool = False,
        timeout: float = 10.0,
    ):
        """
        Initialize browser push notifier.

        Args:
            push_url: Push gateway endpoint
            subscription: Browser push subscription (endpoint and keys)
            permission_granted: Whether the user allowed notifications
            timeout: Request timeout in seconds
        """
        self.push_url = push_url
        self.subscription = subscription
        self.permission_granted = permission_granted
        self.timeout = timeout

    def is_available(self) -> bool:
        return self.permission_granted and bool(self.push_url)

    def set_permission(self, granted: bool, subscription: Optional[dict[str, Any]] = None) -> None:
        """Record the user's answer to the permission prompt."""
        self.permission_granted = granted
        if subscription is not None:
            self.subscription = subscription

    def check_permission(self) -> None:
        """Raise PermissionDenied when the channel may not be used."""
        if not self.permission_granted:
            raise PermissionDenied("Browser notifications not permitted")

    def send(self, notification: Notification) -> NotificationResult:
        """Push a notification to the browser."""
        try:
            self.check_permission()
            response = self._post(self._create_payload(notification))

            if response.ok:
                return NotificationResult(success=True, channel=self.name)
            else:
                return NotificationResult(
                    success=False,
                    channel=self.name,
                    error=f"HTTP {response.status_code}: {response.text}",
                    temporary=response.status_code >= 500,
                )

        except PermissionDenied as e:
            return NotificationResult(success=False, channel=self.name, error=str(e))
        except requests.exceptions.ConnectionError as e:
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
                error=str(e),
            )

    def _post(self, payload: dict[str, Any]) -> requests.Response:
        """Send to the gateway with rate limit handling."""
        response = requests.post(self.push_url, json=payload, timeout=self.timeout)

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After", "1")
            time.sleep(float(retry_after))
            response = requests.post(self.push_url, json=payload, timeout=self.timeout)

        return response

    def _create_payload(self, notification: Notification) -> dict[str, Any]:
        """Create push gateway payload."""
        return {
            "subscription": self.subscription,
            "notification": {
                "title": notification.title,
                "body": notification.description,
                "tag": notification.id,
                "data": notification.data,
                "requireInteraction": notification.priority
                in (NotificationPriority.HIGH, NotificationPriority.URGENT),
                "actions": [
                    {"action": a.action, "title": a.label} for a in notification.actions
                ],
            },
        }
