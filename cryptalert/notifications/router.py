"""
Notification routing: preferences, grouping, rate limiting and channel fan-out.
"""

import asyncio
import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional

from cryptalert.database.models import (
    DeliveryChannel,
    EmailFrequency,
    Notification,
    NotificationGroup,
    NotificationPreferences,
    NotificationStatus,
    NotificationType,
)
from cryptalert.database.repository import NotificationRepository, PreferencesRepository
from cryptalert.errors import InvalidNotification, NetworkError
from cryptalert.events import EventBus
from cryptalert.notifiers.base import Notifier, NotificationResult
from cryptalert.scheduling import TaskScheduler
from .offline_queue import OfflineQueue

logger = logging.getLogger(__name__)

# Data field that identifies "the same thing" for grouping, per type
GROUP_KEYS = {
    NotificationType.PRICE_ALERT: "coinId",
    NotificationType.NEWS: "source",
    NotificationType.SOCIAL: "userId",
}

DRAIN_TIMER = "notifications.drain"


def composite_key(notification: Notification) -> Optional[str]:
    """Fine-grained preference key, e.g. ``price_alert_bitcoin``."""
    coin_id = notification.data.get("coinId")
    if notification.type == NotificationType.PRICE_ALERT and coin_id:
        return f"{notification.type.value}_{coin_id}"
    return None


def group_title(notification: Notification) -> str:
    """Title for a grouped notification."""
    count = notification.group.count if notification.group else 1
    data = notification.data

    if notification.type == NotificationType.PRICE_ALERT:
        return f"{count} price alerts for {data.get('coinSymbol') or data.get('coinId')}"
    elif notification.type == NotificationType.NEWS:
        return f"{count} news updates from {data.get('source')}"
    elif notification.type == NotificationType.SOCIAL:
        return f"{count} interactions from {data.get('userName') or data.get('userId')}"
    return notification.title


def deliver_or_raise(notifier: Notifier, data: dict[str, Any]) -> None:
    """Offline queue handler: send a queued notification through a channel."""
    result = notifier.send(Notification.from_dict(data["notification"]))
    if not result.success:
        raise NetworkError(
            result.error or f"{result.channel} delivery failed",
            temporary=result.temporary,
        )


class NotificationRouter:
    """Per-user notification pipeline."""

    def __init__(
        self,
        repository: NotificationRepository,
        preferences_repository: PreferencesRepository,
        channels: Iterable[Notifier] = (),
        offline_queue: Optional[OfflineQueue] = None,
        timers: Optional[TaskScheduler] = None,
        events: Optional[EventBus] = None,
        group_similar_window: float = 300,
        rate_limit_window: float = 60,
        max_notifications_per_window: int = 5,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Initialize the router.

        Args:
            repository: Stored notifications of the user
            preferences_repository: Stored preferences of the user
            channels: Delivery channels
            offline_queue: Queue used for channels with an offline action
                and for server-side status sync
            timers: Scheduler for the deferred-delivery drain timer
            events: Bus for UI change events
            group_similar_window: Seconds within which similar notifications merge
            rate_limit_window: Sliding window length in seconds
            max_notifications_per_window: Deliveries allowed per window
            clock: Source of the current time
        """
        self.repository = repository
        self.preferences_repository = preferences_repository
        self.channels = list(channels)
        self.offline_queue = offline_queue
        self.timers = timers
        self.events = events
        self.group_similar_window = timedelta(seconds=group_similar_window)
        self.rate_limit_window = timedelta(seconds=rate_limit_window)
        self.max_notifications_per_window = max_notifications_per_window
        self.clock = clock

        self._delivered_at: deque[datetime] = deque()
        self._deferred: deque[tuple[str, Optional[list[str]]]] = deque()
        self._permission_logged: set[str] = set()
        self.unread_count = repository.count_by_status(NotificationStatus.UNREAD)

        if offline_queue is not None:
            for notifier in self.channels:
                if notifier.offline_action:
                    offline_queue.register(
                        notifier.offline_action,
                        lambda data, n=notifier: deliver_or_raise(n, data),
                    )

    @property
    def deferred_count(self) -> int:
        return len(self._deferred)

    # Dispatch

    async def dispatch(
        self,
        notification: Notification,
        channels: Optional[list[str]] = None,
    ) -> Optional[Notification]:
        """
        Store a notification and deliver it.

        Args:
            notification: Notification to route
            channels: Restrict delivery to these channels (still subject
                to the user's preferences)

        Returns:
            The stored notification (the grouped entry when merged), or
            None if the user disabled this type
        """
        preferences = self.get_preferences()

        if not self.is_enabled(notification, preferences):
            logger.debug(f"Notification type {notification.type.value} disabled, dropped")
            return None

        if preferences.group_similar:
            existing = self._find_similar(notification)
            if existing is not None:
                self._merge(existing, notification)
                self.repository.save(existing)
                for notifier in self.channels:
                    refresh = getattr(notifier, "refresh", None)
                    if refresh:
                        refresh(existing)
                self._refresh_unread()
                self._publish("notifications.updated", existing)
                logger.debug(f"Grouped notification into {existing.id} ({existing.group.count})")
                return existing

        self.repository.save(notification)
        self._refresh_unread()
        self._publish("notifications.created", notification)

        if self._deferred or self._rate_limited():
            self._deferred.append((notification.id, channels))
            self._schedule_drain()
            logger.info(f"Rate limit reached, deferred delivery of {notification.id}")
            return notification

        await self._deliver(notification, channels, preferences)
        return notification

    async def drain_deferred(self) -> int:
        """Deliver deferred notifications while the window has room."""
        delivered = 0
        preferences = self.get_preferences()

        while self._deferred and not self._rate_limited():
            notification_id, channels = self._deferred.popleft()
            notification = self.repository.get_by_id(notification_id)
            if notification is None:
                continue
            await self._deliver(notification, channels, preferences)
            delivered += 1

        if self._deferred:
            self._schedule_drain()
        return delivered

    async def flush_digest(self) -> list[NotificationResult]:
        """Send the buffered email digest of every digest-capable channel."""
        if self.offline_queue is not None and not self.offline_queue.online:
            logger.info("Offline, email digest postponed")
            return []

        results = []
        for notifier in self.channels:
            send_digest = getattr(notifier, "send_digest", None)
            if send_digest is None:
                continue
            result = await asyncio.to_thread(send_digest)
            if not result.success:
                logger.warning(f"Digest via {result.channel} failed: {result.error}")
            results.append(result)
        return results

    def is_enabled(
        self,
        notification: Notification,
        preferences: Optional[NotificationPreferences] = None,
    ) -> bool:
        preferences = preferences or self.get_preferences()
        key = composite_key(notification)
        if key and key in preferences.muted_keys:
            return False
        return notification.type.value in preferences.enabled_types or (
            key is not None and key in preferences.enabled_types
        )

    # Caller operations

    async def create_notification(self, data: dict[str, Any]) -> Optional[Notification]:
        """
        Build a notification from plain data, filling defaults, and dispatch it.

        Raises:
            InvalidNotification: If title or type is missing or invalid
        """
        title = data.get("title")
        if not isinstance(title, str) or not title.strip():
            raise InvalidNotification("Notification title is required")
        if data.get("type") not in {t.value for t in NotificationType}:
            raise InvalidNotification(f"Invalid notification type: {data.get('type')!r}")

        try:
            notification = Notification.from_dict(
                {**data, "timestamp": data.get("timestamp") or self.clock()}
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidNotification(f"Invalid notification: {e}") from e

        return await self.dispatch(notification)

    async def receive_remote_notification(self, data: dict[str, Any]) -> Optional[Notification]:
        """
        Route a notification pushed by the notification server.

        It passes the same preference, grouping and rate limit steps as a
        local notification but is only delivered to local channels, so it
        is never posted back to the server.

        Raises:
            InvalidNotification: If the payload is not a notification
        """
        try:
            notification = Notification.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidNotification(f"Invalid remote notification: {e}") from e

        stored = await self.dispatch(notification, channels=self._local_channels())
        if stored is not None:
            self._publish("notifications.received", stored)
        return stored

    async def sync_notifications(
        self,
        status: Optional[NotificationStatus] = None,
        notification_type: Optional[NotificationType] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> list[Notification]:
        """
        Load a page of notifications from the server into the local store.

        Unknown ids are added; a stored copy is replaced when it has no
        updatedAt or the server copy is newer. Falls back to the stored
        list when offline, without a server channel, or when the server
        call fails.

        Returns:
            The requested page
        """
        server = self._server_channel()
        online = self.offline_queue is None or self.offline_queue.online
        if server is None or not online:
            return self._stored_page(status, notification_type, offset, limit)

        try:
            raw = await asyncio.to_thread(
                server.list_notifications,
                status.value if status else None,
                notification_type.value if notification_type else None,
                offset,
                limit,
            )
        except NetworkError as e:
            logger.warning(f"Notification sync failed, using stored list: {e}")
            return self._stored_page(status, notification_type, offset, limit)

        fetched = []
        for item in raw:
            try:
                fetched.append(Notification.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipped invalid server notification: {e}")

        merged = 0
        for notification in fetched:
            local = self.repository.get_by_id(notification.id)
            if (
                local is None
                or local.updated_at is None
                or (notification.updated_at and notification.updated_at > local.updated_at)
            ):
                self.repository.save(notification)
                merged += 1

        self._refresh_unread()
        self._publish("notifications.synced", merged)
        logger.info(f"Synced {len(fetched)} notifications from server ({merged} updated)")
        return fetched

    def get_all_notifications(
        self,
        status: Optional[NotificationStatus] = None,
        notification_type: Optional[NotificationType] = None,
        limit: Optional[int] = None,
    ) -> list[Notification]:
        """List stored notifications, newest first."""
        notifications = self.repository.list_all()
        if status is not None:
            notifications = [n for n in notifications if n.status == status]
        if notification_type is not None:
            notifications = [n for n in notifications if n.type == notification_type]
        return notifications[:limit] if limit else notifications

    async def mark_as_read(self, notification_id: str) -> bool:
        return await self._set_status(notification_id, NotificationStatus.READ)

    async def mark_as_unread(self, notification_id: str) -> bool:
        return await self._set_status(notification_id, NotificationStatus.UNREAD)

    async def mark_all_as_read(self) -> int:
        """Mark every unread notification read. Returns how many changed."""
        unread = [
            n.id for n in self.repository.list_all() if n.status == NotificationStatus.UNREAD
        ]
        changed = self.repository.mark_all(
            NotificationStatus.UNREAD, NotificationStatus.READ, updated_at=self.clock()
        )
        self._refresh_unread()

        for notification_id in unread:
            await self._sync(
                "markAsRead",
                {"id": notification_id, "status": NotificationStatus.READ.value},
            )
        return changed

    async def delete_notification(self, notification_id: str) -> bool:
        """Delete a notification. Returns False for an unknown id."""
        if not self.repository.delete(notification_id):
            return False

        for notifier in self.channels:
            remove = getattr(notifier, "remove", None)
            if remove:
                remove(notification_id)
        self._refresh_unread()
        self._publish("notifications.deleted", notification_id)
        await self._sync("delete", {"id": notification_id})
        return True

    def clear_notifications(
        self,
        older_than: Optional[datetime] = None,
        status: Optional[NotificationStatus] = None,
        notification_type: Optional[NotificationType] = None,
    ) -> int:
        """Delete stored notifications matching every given filter."""
        if older_than is None and status is None and notification_type is None:
            removed = self.repository.delete_all()
            ids = None
        else:
            ids = [
                n.id
                for n in self.repository.list_all()
                if (older_than is None or n.timestamp < older_than)
                and (status is None or n.status == status)
                and (notification_type is None or n.type == notification_type)
            ]
            removed = self.repository.delete_ids(ids)

        for notifier in self.channels:
            if ids is None and hasattr(notifier, "clear"):
                notifier.clear()
            elif ids and hasattr(notifier, "remove"):
                for notification_id in ids:
                    notifier.remove(notification_id)

        self._refresh_unread()
        logger.info(f"Cleared {removed} notifications")
        return removed

    def get_preferences(self) -> NotificationPreferences:
        return self.preferences_repository.get() or NotificationPreferences()

    def update_preferences(self, patch: dict[str, Any]) -> NotificationPreferences:
        """
        Merge a camelCase patch into the stored preferences.

        Raises:
            InvalidNotification: If a channel, type or frequency is unknown
        """
        merged = {**self.get_preferences().to_dict(), **patch}
        validate_preferences(merged)
        preferences = NotificationPreferences.from_dict(merged)
        self.preferences_repository.save(preferences)
        self._publish("notifications.preferences", preferences)
        return preferences

    def disable_similar(self, notification: Notification) -> NotificationPreferences:
        """Stop notifications like this one (this coin for price alerts)."""
        preferences = self.get_preferences()
        key = composite_key(notification)

        if key:
            if key not in preferences.muted_keys:
                preferences.muted_keys.append(key)
        else:
            preferences.enabled_types = [
                t for t in preferences.enabled_types if t != notification.type.value
            ]

        self.preferences_repository.save(preferences)
        self._publish("notifications.preferences", preferences)
        logger.info(f"Disabled notifications similar to {key or notification.type.value}")
        return preferences

    # Internals

    def _find_similar(self, notification: Notification) -> Optional[Notification]:
        field_name = GROUP_KEYS.get(notification.type)
        value = notification.data.get(field_name) if field_name else None
        if value is None:
            return None

        cutoff = self.clock() - self.group_similar_window
        for existing in self.repository.list_all(limit=50):
            if existing.timestamp < cutoff:
                break
            if existing.type == notification.type and existing.data.get(field_name) == value:
                return existing
        return None

    def _merge(self, existing: Notification, notification: Notification) -> None:
        if existing.group is None:
            existing.group = NotificationGroup(count=1, items=[dict(existing.data)])
        existing.group.count += 1
        existing.group.items.append(dict(notification.data))
        existing.title = group_title(existing)
        existing.timestamp = self.clock()
        existing.updated_at = existing.timestamp
        existing.status = NotificationStatus.UNREAD

    def _local_channels(self) -> list[str]:
        return [c for n in self.channels if not n.server_backed for c in n.channels]

    def _server_channel(self) -> Optional[Notifier]:
        for notifier in self.channels:
            if notifier.server_backed and notifier.is_available():
                return notifier
        return None

    def _stored_page(
        self,
        status: Optional[NotificationStatus],
        notification_type: Optional[NotificationType],
        offset: int,
        limit: int,
    ) -> list[Notification]:
        notifications = self.get_all_notifications(status, notification_type)
        return notifications[offset:offset + limit]

    def _rate_limited(self) -> bool:
        cutoff = self.clock() - self.rate_limit_window
        while self._delivered_at and self._delivered_at[0] <= cutoff:
            self._delivered_at.popleft()
        return len(self._delivered_at) >= self.max_notifications_per_window

    def _schedule_drain(self) -> None:
        if self.timers is None:
            return
        delay = 0.0
        if self._delivered_at:
            opens_at = self._delivered_at[0] + self.rate_limit_window
            delay = (opens_at - self.clock()).total_seconds()
        self.timers.call_later(DRAIN_TIMER, delay, self.drain_deferred)

    async def _deliver(
        self,
        notification: Notification,
        channels: Optional[list[str]],
        preferences: NotificationPreferences,
    ) -> None:
        self._delivered_at.append(self.clock())

        enabled = set(preferences.enabled_channels)
        if channels is not None:
            enabled &= set(channels)

        for notifier in self.channels:
            if not enabled.intersection(notifier.channels):
                continue
            if not notifier.is_available():
                if notifier.name not in self._permission_logged:
                    self._permission_logged.add(notifier.name)
                    logger.warning(f"Channel {notifier.name} unavailable (permission denied), skipped")
                continue

            try:
                await self._send(notifier, notification, preferences)
            except Exception:
                logger.exception(f"Delivery via {notifier.name} failed for {notification.id}")

    async def _send(
        self,
        notifier: Notifier,
        notification: Notification,
        preferences: NotificationPreferences,
    ) -> None:
        if DeliveryChannel.EMAIL.value in notifier.channels:
            if preferences.email_frequency == EmailFrequency.OFF:
                return
            if preferences.email_frequency == EmailFrequency.DIGEST:
                notifier.add_to_digest(notification)
                return

        if notifier.offline_action and self.offline_queue is not None:
            await self.offline_queue.submit(
                notifier.offline_action, {"notification": notification.to_dict()}
            )
            return

        if notifier.blocking:
            result = await asyncio.to_thread(notifier.send, notification)
        else:
            result = notifier.send(notification)

        if not result.success:
            logger.warning(
                f"Delivery via {result.channel} failed for {notification.id}: {result.error}"
            )

    async def _set_status(self, notification_id: str, status: NotificationStatus) -> bool:
        if not self.repository.update_status(notification_id, status, updated_at=self.clock()):
            return False
        self._refresh_unread()
        self._publish("notifications.updated", self.repository.get_by_id(notification_id))
        await self._sync("markAsRead", {"id": notification_id, "status": status.value})
        return True

    async def _sync(self, action: str, data: dict[str, Any]) -> None:
        if self.offline_queue is not None and self.offline_queue.handles(action):
            await self.offline_queue.submit(action, data)

    def _refresh_unread(self) -> None:
        self.unread_count = self.repository.count_by_status(NotificationStatus.UNREAD)
        self._publish("notifications.unread_count", self.unread_count)

    def _publish(self, topic: str, payload: Any) -> None:
        if self.events is not None:
            self.events.publish(topic, payload)


def validate_preferences(data: dict[str, Any]) -> None:
    """
    Validate camelCase preferences.

    Raises:
        InvalidNotification: On the first invalid value
    """
    channels = {c.value for c in DeliveryChannel}
    for channel in data.get("enabledChannels", []):
        if channel not in channels:
            raise InvalidNotification(f"Unknown delivery channel: {channel!r}")

    types = [t.value for t in NotificationType]
    for key in list(data.get("enabledTypes", [])) + list(data.get("mutedKeys", [])):
        if not isinstance(key, str) or not any(
            key == t or key.startswith(f"{t}_") for t in types
        ):
            raise InvalidNotification(f"Unknown notification type: {key!r}")

    if data.get("emailFrequency") not in {f.value for f in EmailFrequency}:
        raise InvalidNotification(
            f"Invalid email frequency: {data.get('emailFrequency')!r}"
        )

    if not isinstance(data.get("groupSimilar", True), bool):
        raise InvalidNotification("groupSimilar must be true or false")
