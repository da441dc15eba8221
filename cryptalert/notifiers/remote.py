"""
Remote notification server client (SMS and mobile fan-out).
"""

import logging
from typing import Any, Optional

import requests

from cryptalert.database.models import DeliveryChannel, Notification
from cryptalert.errors import NetworkError
from .base import Notifier, NotificationResult

logger = logging.getLogger(__name__)


class RemoteNotifier(Notifier):
    """Mirrors notifications to the portal server, which fans out to SMS and mobile."""

    channels = (DeliveryChannel.MOBILE.value, DeliveryChannel.SMS.value)
    offline_action = "create"
    server_backed = True

    def __init__(
        self,
        base_url: str,
        user_id: str = "default",
        token: Optional[str] = None,
        timeout: float = 10.0,
    ):
        """
        Initialize remote notifier.

        Args:
            base_url: Portal base URL
            user_id: User the notifications belong to
            token: Bearer token for the portal API
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self.token = token
        self.timeout = timeout

    def is_available(self) -> bool:
        return bool(self.base_url)

    def send(self, notification: Notification) -> NotificationResult:
        """Create the notification on the server."""
        try:
            self.create(notification.to_dict())
            return NotificationResult(success=True, channel=self.name)
        except NetworkError as e:
            return NotificationResult(
                success=False,
                channel=self.name,
                error=str(e),
                temporary=e.temporary,
            )

    def create(self, notification: dict[str, Any]) -> None:
        self._request(
            "POST",
            "/api/notifications",
            {"userId": self.user_id, "notification": notification},
        )

    def update_status(self, notification_id: str, status: str) -> None:
        self._request(
            "PUT",
            f"/api/notifications/{notification_id}/status",
            {"userId": self.user_id, "status": status},
        )

    def delete(self, notification_id: str) -> None:
        self._request(
            "DELETE",
            f"/api/notifications/{notification_id}",
            {"userId": self.user_id},
        )

    def list_notifications(
        self,
        status: Optional[str] = None,
        notification_type: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> list[dict[str, Any]]:
        """
        Fetch one page of the user's notifications from the server.

        Raises:
            NetworkError: If the server could not be reached or answered badly
        """
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if status:
            params["status"] = status
        if notification_type:
            params["type"] = notification_type

        body = self._request(
            "GET", f"/api/users/{self.user_id}/notifications", params=params
        )
        notifications = body.get("notifications") if isinstance(body, dict) else None
        if not isinstance(notifications, list):
            raise NetworkError("Unexpected notification list from server", temporary=False)
        return notifications

    def _request(
        self,
        method: str,
        path: str,
        payload: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> Any:
        """
        Call the portal API.

        Returns:
            Decoded JSON body, or None when the body is empty

        Raises:
            NetworkError: temporary for connection problems, 429 and 5xx
        """
        url = f"{self.base_url}{path}"
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            response = requests.request(
                method,
                url,
                json=payload,
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"Connection error calling {url}: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise NetworkError(f"HTTP {response.status_code} from {url}")
        if not response.ok:
            raise NetworkError(
                f"HTTP {response.status_code} from {url}: {response.text}",
                temporary=False,
            )
        logger.debug(f"{method} {url} -> {response.status_code}")

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise NetworkError(f"Invalid JSON from {url}", temporary=False) from e
