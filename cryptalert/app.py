"""
Application wiring for one user's alert and notification services.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Optional, Union

from cryptalert.alerts.scheduler import AlertScheduler
from cryptalert.alerts.store import AlertStore
from cryptalert.config import AppConfig
from cryptalert.data.fetcher import MarketDataSource, MarketSnapshot, create_data_source
from cryptalert.database.connection import Database
from cryptalert.database.models import (
    Alert,
    AlertHistoryEntry,
    AlertStatus,
    Notification,
    NotificationPreferences,
    NotificationStatus,
    NotificationType,
)
from cryptalert.database.repository import (
    NotificationRepository,
    OfflineQueueRepository,
    PreferencesRepository,
)
from cryptalert.events import EventBus
from cryptalert.notifications.offline_queue import OfflineQueue
from cryptalert.notifications.router import NotificationRouter
from cryptalert.notifiers.base import Notifier, NotifierFactory, NotificationResult
from cryptalert.notifiers.in_app import InAppNotifier
from cryptalert.notifiers.remote import RemoteNotifier
from cryptalert.scheduling import TaskScheduler

logger = logging.getLogger(__name__)

DIGEST_TASK = "notifications.digest"


def build_channels(
    config: AppConfig,
    user_id: str = "default",
    on_toast: Optional[Callable[[Notification], None]] = None,
) -> list[Notifier]:
    """Create the delivery channels that are configured."""
    in_app = InAppNotifier(on_toast=on_toast)
    channels: list[Notifier] = [in_app]
    notifications = config.notifications

    if notifications.browser.push_url:
        channels.append(NotifierFactory.create({
            "type": "browser",
            "push_url": notifications.browser.push_url,
            "permission_granted": notifications.browser.permission_granted,
        }))

    email = notifications.email
    if email.smtp_user and email.to_addresses:
        channels.append(NotifierFactory.create({
            "type": "email",
            "smtp_host": email.smtp_host,
            "smtp_port": email.smtp_port,
            "smtp_user": email.smtp_user,
            "smtp_password": email.smtp_password,
            "from_address": email.from_address or email.smtp_user,
            "to_addresses": email.to_addresses,
        }))

    if notifications.remote.base_url:
        channels.append(NotifierFactory.create({
            "type": "remote",
            "base_url": notifications.remote.base_url,
            "user_id": user_id,
            "token": notifications.remote.token,
        }))

    return channels


class CryptAlertApp:
    """Alert store, scheduler and notification router for one user."""

    def __init__(
        self,
        db: Database,
        data_source: MarketDataSource,
        channels: Optional[list[Notifier]] = None,
        config: Optional[AppConfig] = None,
        user_id: Optional[str] = None,
        events: Optional[EventBus] = None,
        timers: Optional[TaskScheduler] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Initialize the app.

        Args:
            db: Initialized database
            data_source: Market data provider
            channels: Delivery channels (in-app only when omitted)
            config: Application configuration
            user_id: Owner of alerts and notifications
            events: Shared event bus
            timers: Shared timer owner
            clock: Source of the current time
        """
        self.config = config or AppConfig()
        self.db = db
        self.user_id = user_id or self.config.advanced.user_id
        self.events = events or EventBus()
        self.timers = timers or TaskScheduler()
        self.channels = channels if channels is not None else [InAppNotifier()]

        alerts = self.config.alerts
        notifications = self.config.notifications

        self.store = AlertStore(
            db,
            user_id=self.user_id,
            max_alerts_per_user=alerts.max_alerts_per_user,
            max_history_items=alerts.max_history_items,
            events=self.events,
            clock=clock,
        )
        self.offline_queue = OfflineQueue(OfflineQueueRepository(db, self.user_id))
        self.router = NotificationRouter(
            NotificationRepository(
                db, self.user_id, max_stored=notifications.max_stored_notifications
            ),
            PreferencesRepository(db, self.user_id),
            channels=self.channels,
            offline_queue=self.offline_queue,
            timers=self.timers,
            events=self.events,
            group_similar_window=notifications.group_similar_window,
            rate_limit_window=notifications.rate_limit_window,
            max_notifications_per_window=notifications.max_notifications_per_window,
            clock=clock,
        )
        self.scheduler = AlertScheduler(
            self.store,
            data_source,
            self.router,
            self.timers,
            check_interval=alerts.check_interval,
            fetch_timeout=alerts.fetch_timeout,
            events=self.events,
        )

        for notifier in self.channels:
            if isinstance(notifier, RemoteNotifier):
                self.offline_queue.register(
                    "markAsRead",
                    lambda data, n=notifier: n.update_status(data["id"], data["status"]),
                )
                self.offline_queue.register(
                    "delete", lambda data, n=notifier: n.delete(data["id"])
                )

        self.events.subscribe("alerts.deleted", self._on_alert_deleted)
        self.events.subscribe("notifications.remote", self.receive_remote_notification)
        self.events.subscribe("realtime.connected", self._on_realtime_connected)

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        db: Optional[Database] = None,
        on_toast: Optional[Callable[[Notification], None]] = None,
        dry_run: bool = False,
    ) -> "CryptAlertApp":
        """Build the app and its collaborators from configuration."""
        if db is None:
            db = Database(config.database.path)
            db.initialize()

        market = config.market_data
        data_source = create_data_source(
            market.provider,
            base_url=market.base_url,
            timeout=market.timeout,
            api_key=market.api_key,
            symbols=market.symbols,
        )
        if dry_run:
            channels: list[Notifier] = [InAppNotifier(on_toast=on_toast)]
        else:
            channels = build_channels(config, config.advanced.user_id, on_toast)

        return cls(db, data_source, channels=channels, config=config)

    # Lifecycle

    async def start(self) -> None:
        """Start alert checks, replay offline actions and schedule the digest."""
        self.scheduler.start()
        await self.offline_queue.drain()
        self.timers.every(
            DIGEST_TASK,
            self.config.notifications.email.digest_interval,
            self.router.flush_digest,
            run_immediately=False,
        )
        logger.info(f"CryptAlert started for user {self.user_id}")

    async def stop(self) -> None:
        """Cancel every timer, let running checks finish and drop subscriptions."""
        self.scheduler.stop()
        await self.timers.shutdown()
        self.events.close()
        logger.info(f"CryptAlert stopped for user {self.user_id}")

    async def set_online(self, online: bool) -> None:
        """Propagate a connectivity change."""
        self.scheduler.set_online(online)
        await self.offline_queue.set_online(online)

    async def on_reconnect(self) -> list[Notification]:
        """Replay queued actions and refresh notifications after the realtime link returns."""
        logger.info("Realtime connection restored, syncing notifications")
        await self.offline_queue.drain()
        return await self.router.sync_notifications()

    async def check_now(self) -> int:
        return await self.scheduler.check_alerts()

    async def on_market_update(self, coin_id: str, snapshot: MarketSnapshot) -> int:
        return await self.scheduler.on_market_update(coin_id, snapshot)

    # Alerts

    def create_alert(self, data: dict[str, Any]) -> Alert:
        return self.store.create(data)

    def update_alert(self, alert_id: str, patch: dict[str, Any]) -> Alert:
        return self.store.update(alert_id, patch)

    def delete_alert(self, alert_id: str) -> bool:
        return self.store.delete(alert_id)

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        return self.store.get(alert_id)

    def get_alerts(self, **filters: Any) -> list[Alert]:
        return self.store.list(**filters)

    def change_alert_status(self, alert_id: str, status: Union[AlertStatus, str]) -> Alert:
        return self.store.change_status(alert_id, status)

    def enable_alert(self, alert_id: str) -> Alert:
        return self.store.enable(alert_id)

    def disable_alert(self, alert_id: str) -> Alert:
        return self.store.disable(alert_id)

    def get_alerts_history(self, **filters: Any) -> list[AlertHistoryEntry]:
        return self.store.list_history(**filters)

    def clear_alerts_history(self) -> bool:
        return self.store.clear_history()

    def get_stats(self) -> dict[str, int]:
        return self.store.get_stats()

    def export_alerts(self) -> str:
        return self.store.export_alerts()

    def import_alerts(self, snapshot: Union[str, dict[str, Any]], merge: bool = True) -> dict[str, Any]:
        result = self.store.import_alerts(snapshot, merge=merge)
        if not merge:
            self.timers.cancel_prefix("repeat:")
        if self.scheduler.running:
            self.scheduler.restore_repeat_timers()
        return result

    # Notifications

    async def create_notification(self, data: dict[str, Any]) -> Optional[Notification]:
        return await self.router.create_notification(data)

    async def receive_remote_notification(self, data: dict[str, Any]) -> Optional[Notification]:
        return await self.router.receive_remote_notification(data)

    async def sync_notifications(
        self,
        status: Optional[NotificationStatus] = None,
        notification_type: Optional[NotificationType] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> list[Notification]:
        return await self.router.sync_notifications(status, notification_type, offset, limit)

    def get_all_notifications(
        self,
        status: Optional[NotificationStatus] = None,
        notification_type: Optional[NotificationType] = None,
        limit: Optional[int] = None,
    ) -> list[Notification]:
        return self.router.get_all_notifications(status, notification_type, limit)

    @property
    def unread_count(self) -> int:
        return self.router.unread_count

    async def mark_as_read(self, notification_id: str) -> bool:
        return await self.router.mark_as_read(notification_id)

    async def mark_as_unread(self, notification_id: str) -> bool:
        return await self.router.mark_as_unread(notification_id)

    async def mark_all_as_read(self) -> int:
        return await self.router.mark_all_as_read()

    async def delete_notification(self, notification_id: str) -> bool:
        return await self.router.delete_notification(notification_id)

    def clear_notifications(self, **filters: Any) -> int:
        return self.router.clear_notifications(**filters)

    def get_preferences(self) -> NotificationPreferences:
        return self.router.get_preferences()

    def update_preferences(self, patch: dict[str, Any]) -> NotificationPreferences:
        return self.router.update_preferences(patch)

    def disable_similar(self, notification: Notification) -> NotificationPreferences:
        return self.router.disable_similar(notification)

    async def flush_digest(self) -> list[NotificationResult]:
        return await self.router.flush_digest()

    def _on_alert_deleted(self, payload: dict[str, Any]) -> None:
        self.timers.cancel(f"repeat:{payload['alert'].id}")

    def _on_realtime_connected(self, payload: Any = None):
        return self.on_reconnect()
