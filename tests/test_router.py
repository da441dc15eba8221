"""
Notification router tests.
Tests for preferences, grouping, rate limiting and channel fan-out.
"""

import logging
import pytest
from datetime import timedelta
from unittest.mock import MagicMock, Mock, patch

from cryptalert.database.models import (
    Notification,
    NotificationStatus,
    NotificationType,
)
from cryptalert.database.repository import (
    NotificationRepository,
    OfflineQueueRepository,
    PreferencesRepository,
)
from cryptalert.errors import InvalidNotification, NetworkError
from cryptalert.events import EventBus
from cryptalert.notifications.offline_queue import OfflineQueue
from cryptalert.notifications.router import (
    DRAIN_TIMER,
    NotificationRouter,
    composite_key,
    group_title,
)
from cryptalert.notifiers.browser import BrowserPushNotifier
from cryptalert.notifiers.email import EmailNotifier
from cryptalert.notifiers.in_app import InAppNotifier
from cryptalert.notifiers.remote import RemoteNotifier
from cryptalert.scheduling import TaskScheduler


def price_alert(clock, coin_id: str = "bitcoin", symbol: str = "BTC", price: float = 51000.0):
    return Notification(
        type=NotificationType.PRICE_ALERT,
        title=f"{symbol} above $50,000.00",
        data={"coinId": coin_id, "coinSymbol": symbol, "price": price},
        timestamp=clock(),
    )


def system(clock, title: str) -> Notification:
    return Notification(type=NotificationType.SYSTEM, title=title, timestamp=clock())


@pytest.fixture
def in_app():
    return InAppNotifier()


@pytest.fixture
def make_router(db, clock, in_app):
    """Build a router over the in-memory database."""

    def factory(channels=None, **kwargs):
        return NotificationRouter(
            NotificationRepository(db),
            PreferencesRepository(db),
            channels=channels if channels is not None else [in_app],
            clock=clock,
            **kwargs,
        )

    return factory


@pytest.fixture
def router(make_router):
    return make_router()


class TestHelpers:
    def test_composite_key(self, clock):
        assert composite_key(price_alert(clock)) == "price_alert_bitcoin"
        assert composite_key(system(clock, "x")) is None

    def test_group_titles(self):
        news = Notification(
            type=NotificationType.NEWS, title="n", data={"source": "CoinDesk"}
        )
        news.group = MagicMock(count=3)
        assert group_title(news) == "3 news updates from CoinDesk"

        social = Notification(
            type=NotificationType.SOCIAL, title="s", data={"userId": "u1", "userName": "Ada"}
        )
        social.group = MagicMock(count=2)
        assert group_title(social) == "2 interactions from Ada"


class TestDispatch:
    @pytest.mark.asyncio
    async def test_stores_and_delivers(self, clock, router, in_app):
        notification = await router.dispatch(system(clock, "Welcome"))

        assert router.repository.get_by_id(notification.id) is not None
        assert [n.id for n in in_app.items] == [notification.id]
        assert router.unread_count == 1

    @pytest.mark.asyncio
    async def test_groups_similar_price_alerts(self, router, in_app, clock):
        """Should merge two bitcoin alerts within the window into one entry."""
        first = await router.dispatch(price_alert(clock, price=51000.0))
        clock.advance(seconds=30)
        merged = await router.dispatch(price_alert(clock, price=52000.0))

        stored = router.get_all_notifications()
        assert len(stored) == 1
        assert merged.id == first.id
        assert stored[0].group.count == 2
        assert stored[0].title == "2 price alerts for BTC"
        assert [item["price"] for item in stored[0].group.items] == [51000.0, 52000.0]
        assert in_app.items[0].title == "2 price alerts for BTC"

    @pytest.mark.asyncio
    async def test_does_not_group_outside_window(self, router, clock):
        await router.dispatch(price_alert(clock))
        clock.advance(seconds=301)
        await router.dispatch(price_alert(clock))

        assert len(router.get_all_notifications()) == 2

    @pytest.mark.asyncio
    async def test_does_not_group_different_coins(self, clock, router):
        await router.dispatch(price_alert(clock, "bitcoin", "BTC"))
        await router.dispatch(price_alert(clock, "ethereum", "ETH"))

        assert len(router.get_all_notifications()) == 2

    @pytest.mark.asyncio
    async def test_grouping_can_be_turned_off(self, clock, router):
        router.update_preferences({"groupSimilar": False})
        await router.dispatch(price_alert(clock))
        await router.dispatch(price_alert(clock))

        assert len(router.get_all_notifications()) == 2

    @pytest.mark.asyncio
    async def test_disabled_type_is_dropped(self, clock, router, in_app):
        router.update_preferences({"enabledTypes": ["system"]})

        assert await router.dispatch(price_alert(clock)) is None
        assert router.get_all_notifications() == []
        assert in_app.items == []

    @pytest.mark.asyncio
    async def test_composite_key_enables_single_coin(self, clock, router):
        router.update_preferences({"enabledTypes": ["price_alert_bitcoin"]})

        assert await router.dispatch(price_alert(clock, "bitcoin")) is not None
        assert await router.dispatch(price_alert(clock, "ethereum", "ETH")) is None

    @pytest.mark.asyncio
    async def test_channel_restriction(self, clock, router, in_app):
        """Should store but not deliver when the alert's channels exclude in-app."""
        notification = await router.dispatch(system(clock, "x"), channels=["email"])

        assert router.repository.get_by_id(notification.id) is not None
        assert in_app.items == []


class TestRateLimit:
    @pytest.mark.asyncio
    async def test_defers_beyond_window_limit(self, make_router, in_app, clock):
        """Should deliver at most max_notifications_per_window and defer the rest."""
        router = make_router(max_notifications_per_window=5)
        for i in range(6):
            await router.dispatch(system(clock, f"n{i}"))

        assert len(in_app.items) == 5
        assert router.deferred_count == 1
        assert len(router.get_all_notifications()) == 6

        assert await router.drain_deferred() == 0

        clock.advance(seconds=61)
        assert await router.drain_deferred() == 1
        assert in_app.items[0].title == "n5"
        assert router.deferred_count == 0

    @pytest.mark.asyncio
    async def test_deferred_keep_order(self, make_router, in_app, clock):
        router = make_router(max_notifications_per_window=1)
        for i in range(3):
            await router.dispatch(system(clock, f"n{i}"))

        for _ in range(2):
            clock.advance(seconds=61)
            await router.drain_deferred()

        assert [n.title for n in in_app.items] == ["n2", "n1", "n0"]

    @pytest.mark.asyncio
    async def test_schedules_drain_timer(self, clock, make_router):
        timers = TaskScheduler()
        router = make_router(timers=timers, max_notifications_per_window=1)
        try:
            await router.dispatch(system(clock, "a"))
            await router.dispatch(system(clock, "b"))

            assert timers.has(DRAIN_TIMER)
        finally:
            timers.cancel_all()


class TestStatus:
    @pytest.mark.asyncio
    async def test_read_unread_counter(self, clock, router):
        """Should keep the unread counter equal to the stored unread count."""
        first = await router.dispatch(system(clock, "a"))
        await router.dispatch(system(clock, "b"))
        assert router.unread_count == 2

        assert await router.mark_as_read(first.id) is True
        assert router.unread_count == 1

        assert await router.mark_as_unread(first.id) is True
        assert router.unread_count == 2

        assert await router.mark_all_as_read() == 2
        assert router.unread_count == 0
        assert router.get_all_notifications(status=NotificationStatus.UNREAD) == []

    @pytest.mark.asyncio
    async def test_unknown_ids(self, router):
        assert await router.mark_as_read("missing") is False
        assert await router.delete_notification("missing") is False

    @pytest.mark.asyncio
    async def test_delete_removes_from_list(self, clock, router, in_app):
        notification = await router.dispatch(system(clock, "a"))

        assert await router.delete_notification(notification.id) is True
        assert router.get_all_notifications() == []
        assert in_app.items == []
        assert router.unread_count == 0

    @pytest.mark.asyncio
    async def test_unread_count_events(self, clock, make_router):
        events = EventBus()
        counts = []
        events.subscribe("notifications.unread_count", counts.append)
        router = make_router(events=events)

        notification = await router.dispatch(system(clock, "a"))
        await router.mark_as_read(notification.id)

        assert counts == [1, 0]

    @pytest.mark.asyncio
    async def test_clear_with_filters(self, router, clock):
        old = await router.dispatch(system(clock, "old"))
        clock.advance(hours=2)
        await router.dispatch(
            Notification(type=NotificationType.NEWS, title="news", timestamp=clock())
        )

        removed = router.clear_notifications(older_than=clock() - timedelta(hours=1))

        assert removed == 1
        assert router.repository.get_by_id(old.id) is None
        assert router.clear_notifications() == 1


class TestPreferences:
    def test_defaults(self, router):
        preferences = router.get_preferences()
        assert preferences.enabled_channels == ["in_app"]
        assert "price_alert" in preferences.enabled_types

    def test_update_persists(self, router, db):
        router.update_preferences({"emailFrequency": "digest"})
        assert PreferencesRepository(db).get().email_frequency.value == "digest"

    @pytest.mark.parametrize(
        "patch_data",
        [
            {"enabledChannels": ["pigeon"]},
            {"enabledTypes": ["weather"]},
            {"emailFrequency": "weekly"},
            {"groupSimilar": "yes"},
        ],
    )
    def test_update_rejects_invalid(self, router, patch_data):
        with pytest.raises(InvalidNotification):
            router.update_preferences(patch_data)

    @pytest.mark.asyncio
    async def test_disable_similar_mutes_coin(self, clock, router):
        """Should mute this coin's price alerts only."""
        router.disable_similar(price_alert(clock, "bitcoin"))

        assert router.get_preferences().muted_keys == ["price_alert_bitcoin"]
        assert await router.dispatch(price_alert(clock, "bitcoin")) is None
        assert await router.dispatch(price_alert(clock, "ethereum", "ETH")) is not None

    def test_disable_similar_without_coin_removes_type(self, router):
        router.disable_similar(Notification(type=NotificationType.NEWS, title="n"))
        assert "news" not in router.get_preferences().enabled_types


class TestCreateNotification:
    @pytest.mark.asyncio
    async def test_fills_defaults(self, router, clock):
        notification = await router.create_notification({"type": "system", "title": "Hi"})

        assert notification.timestamp == clock()
        assert notification.status == NotificationStatus.UNREAD
        assert notification.id.startswith("notification_")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "data", [{"type": "system"}, {"type": "system", "title": "  "}, {"type": "x", "title": "t"}]
    )
    async def test_rejects_invalid(self, router, data):
        with pytest.raises(InvalidNotification):
            await router.create_notification(data)


class TestChannels:
    @pytest.fixture
    def email(self, sample_smtp_config):
        return EmailNotifier(**sample_smtp_config)

    @pytest.mark.asyncio
    async def test_email_digest_mode(self, clock, make_router, in_app, email):
        """Should buffer emails in digest mode and send them in one message."""
        router = make_router(channels=[in_app, email])
        router.update_preferences(
            {"enabledChannels": ["in_app", "email"], "emailFrequency": "digest"}
        )

        with patch("smtplib.SMTP") as mock_smtp:
            await router.dispatch(system(clock, "a"))
            await router.dispatch(system(clock, "b"))
            mock_smtp.assert_not_called()

        assert len(email.digest) == 2

        with patch("smtplib.SMTP") as mock_smtp:
            mock_server = MagicMock()
            mock_smtp.return_value.__enter__.return_value = mock_server
            results = await router.flush_digest()

        assert [r.success for r in results] == [True]
        mock_server.send_message.assert_called_once()
        assert email.digest == []

    @pytest.mark.asyncio
    async def test_email_off(self, clock, make_router, in_app, email):
        router = make_router(channels=[in_app, email])
        router.update_preferences({"enabledChannels": ["in_app", "email"], "emailFrequency": "off"})

        with patch("smtplib.SMTP") as mock_smtp:
            await router.dispatch(system(clock, "a"))

        mock_smtp.assert_not_called()
        assert email.digest == []

    @pytest.mark.asyncio
    async def test_email_queued_offline_and_sent_on_reconnect(
        self, clock, db, make_router, in_app, email
    ):
        queue = OfflineQueue(OfflineQueueRepository(db), online=False)
        router = make_router(channels=[in_app, email], offline_queue=queue)
        router.update_preferences({"enabledChannels": ["in_app", "email"]})

        with patch("smtplib.SMTP") as mock_smtp:
            await router.dispatch(system(clock, "a"))
            mock_smtp.assert_not_called()

        assert [a.action for a in queue.pending()] == ["email"]
        assert len(in_app.items) == 1

        with patch("smtplib.SMTP") as mock_smtp:
            mock_server = MagicMock()
            mock_smtp.return_value.__enter__.return_value = mock_server
            assert await queue.set_online(True) == 1

        mock_server.send_message.assert_called_once()

    @pytest.mark.asyncio
    async def test_browser_without_permission_is_skipped(self, clock, make_router, in_app, caplog):
        """Should skip the channel and log the permission problem once."""
        browser = BrowserPushNotifier(push_url="https://push.example.com/send")
        router = make_router(channels=[in_app, browser])
        router.update_preferences({"enabledChannels": ["in_app", "browser"]})

        with patch("requests.post") as mock_post:
            with caplog.at_level(logging.WARNING, logger="cryptalert.notifications.router"):
                await router.dispatch(system(clock, "a"))
                await router.dispatch(system(clock, "b"))

        mock_post.assert_not_called()
        assert len(in_app.items) == 2
        assert sum("unavailable" in r.message for r in caplog.records) == 1

    @pytest.mark.asyncio
    async def test_failing_channel_does_not_stop_others(self, clock, make_router, in_app):
        broken = Mock()
        broken.channels = ("browser",)
        broken.name = "browser"
        broken.offline_action = None
        broken.server_backed = False
        broken.blocking = False
        broken.is_available.return_value = True
        broken.send.side_effect = RuntimeError("boom")
        router = make_router(channels=[broken, in_app])
        router.update_preferences({"enabledChannels": ["in_app", "browser"]})

        await router.dispatch(system(clock, "a"))

        assert len(in_app.items) == 1

    @pytest.mark.asyncio
    async def test_status_sync_queued_offline(self, clock, db, make_router):
        queue = OfflineQueue(OfflineQueueRepository(db), online=False)
        queue.register("markAsRead", Mock())
        router = make_router(offline_queue=queue)

        notification = await router.dispatch(system(clock, "a"))
        await router.mark_as_read(notification.id)

        pending = queue.pending()
        assert [a.action for a in pending] == ["markAsRead"]
        assert pending[0].data == {"id": notification.id, "status": "read"}


class TestServerNotifications:
    @pytest.fixture
    def remote(self):
        return RemoteNotifier(base_url="https://portal.example.com")

    @pytest.fixture
    def server_router(self, make_router, in_app, remote):
        router = make_router(channels=[in_app, remote])
        router.update_preferences({"enabledChannels": ["in_app", "mobile"]})
        return router

    @pytest.mark.asyncio
    async def test_received_notification_is_not_posted_back(
        self, clock, server_router, in_app
    ):
        with patch("requests.request") as mock_request:
            stored = await server_router.receive_remote_notification(
                system(clock, "Maintenance tonight").to_dict()
            )

        mock_request.assert_not_called()
        assert server_router.repository.get_by_id(stored.id) is not None
        assert [n.id for n in in_app.items] == [stored.id]
        assert server_router.unread_count == 1

    @pytest.mark.asyncio
    async def test_received_price_alerts_are_grouped(self, clock, server_router):
        with patch("requests.request"):
            await server_router.receive_remote_notification(price_alert(clock).to_dict())
            clock.advance(seconds=30)
            await server_router.receive_remote_notification(
                price_alert(clock, price=52000.0).to_dict()
            )

        stored = server_router.get_all_notifications()
        assert len(stored) == 1
        assert stored[0].group.count == 2

    @pytest.mark.asyncio
    async def test_received_disabled_type_is_dropped(self, clock, server_router, in_app):
        server_router.update_preferences({"enabledTypes": ["system"]})

        assert await server_router.receive_remote_notification(price_alert(clock).to_dict()) is None
        assert in_app.items == []

    @pytest.mark.asyncio
    async def test_received_invalid_payload(self, server_router):
        with pytest.raises(InvalidNotification):
            await server_router.receive_remote_notification({"type": "carrier_pigeon", "title": "x"})

    @pytest.mark.asyncio
    async def test_sync_merges_by_updated_at(self, clock, server_router, remote):
        """Should add unknown ids and keep whichever copy was updated last."""
        start = clock()
        stale = system(clock, "stale local")
        stale.updated_at = start
        fresh = system(clock, "fresh local")
        fresh.updated_at = start + timedelta(minutes=10)
        server_router.repository.save(stale)
        server_router.repository.save(fresh)

        server_copy = {**stale.to_dict(), "title": "from server", "status": "read",
                       "updatedAt": (start + timedelta(minutes=5)).isoformat()}
        outdated = {**fresh.to_dict(), "title": "older server copy",
                    "updatedAt": (start + timedelta(minutes=5)).isoformat()}
        unseen = system(clock, "only on server").to_dict()

        with patch.object(
            remote, "list_notifications", return_value=[server_copy, outdated, unseen]
        ) as mock_list:
            synced = await server_router.sync_notifications(limit=3)

        mock_list.assert_called_once_with(None, None, 0, 3)
        assert len(synced) == 3
        repository = server_router.repository
        assert repository.get_by_id(stale.id).title == "from server"
        assert repository.get_by_id(stale.id).status == NotificationStatus.READ
        assert repository.get_by_id(fresh.id).title == "fresh local"
        assert repository.get_by_id(unseen["id"]).title == "only on server"
        assert server_router.unread_count == 2

    @pytest.mark.asyncio
    async def test_sync_passes_filters(self, server_router, remote):
        with patch.object(remote, "list_notifications", return_value=[]) as mock_list:
            await server_router.sync_notifications(
                NotificationStatus.UNREAD, NotificationType.SYSTEM, offset=20, limit=10
            )

        mock_list.assert_called_once_with("unread", "system", 20, 10)

    @pytest.mark.asyncio
    async def test_sync_failure_uses_stored_list(self, clock, server_router, remote):
        stored = await server_router.dispatch(system(clock, "kept"))

        with patch.object(remote, "list_notifications", side_effect=NetworkError("down")):
            synced = await server_router.sync_notifications()

        assert [n.id for n in synced] == [stored.id]

    @pytest.mark.asyncio
    async def test_sync_offline_uses_stored_list(self, clock, db, make_router, in_app, remote):
        queue = OfflineQueue(OfflineQueueRepository(db), online=False)
        router = make_router(channels=[in_app, remote], offline_queue=queue)
        stored = await router.dispatch(system(clock, "kept"))

        with patch.object(remote, "list_notifications") as mock_list:
            synced = await router.sync_notifications()

        mock_list.assert_not_called()
        assert [n.id for n in synced] == [stored.id]

    @pytest.mark.asyncio
    async def test_sync_without_server_channel(self, clock, router):
        stored = await router.dispatch(system(clock, "kept"))

        assert [n.id for n in await router.sync_notifications()] == [stored.id]
