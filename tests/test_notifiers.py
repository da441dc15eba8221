"""
Notifier tests.
Tests for in-app, browser push, email and remote notification delivery.
"""

import smtplib
import pytest
from unittest.mock import Mock, patch, MagicMock

import requests

from cryptalert.database.models import (
    Notification,
    NotificationAction,
    NotificationPriority,
    NotificationType,
)
from cryptalert.errors import NetworkError, PermissionDenied
from cryptalert.notifiers.base import NotificationResult, Notifier, NotifierFactory
from cryptalert.notifiers.browser import BrowserPushNotifier
from cryptalert.notifiers.email import EmailNotifier
from cryptalert.notifiers.in_app import InAppNotifier
from cryptalert.notifiers.remote import RemoteNotifier


@pytest.fixture
def sample_notification():
    """Create sample price alert notification."""
    return Notification(
        type=NotificationType.PRICE_ALERT,
        title="BTC above $50,000.00",
        description="BTC rose above $50,000.00. Current price: $51,000.00",
        data={"coinId": "bitcoin", "price": 51000.0},
        actions=[
            NotificationAction(label="View details", action="view", url="/crypto/bitcoin"),
        ],
        priority=NotificationPriority.HIGH,
    )


class TestNotificationResult:
    """Test NotificationResult model."""

    def test_success_result(self):
        """Should create success result."""
        result = NotificationResult(success=True, channel="in_app")
        assert result.success is True
        assert result.channel == "in_app"
        assert result.error is None
        assert result.temporary is False

    def test_failure_result(self):
        """Should create failure result with error."""
        result = NotificationResult(
            success=False, channel="email", error="SMTP connection failed", temporary=True
        )
        assert result.success is False
        assert result.error == "SMTP connection failed"
        assert result.temporary is True


class TestNotifierBase:
    def test_send_is_the_only_delivery_method(self, sample_notification):
        """Should need nothing but send() from a channel."""

        class EchoNotifier(Notifier):
            channels = ("in_app",)

            def send(self, notification):
                return NotificationResult(success=True, channel=self.name)

        echo = EchoNotifier()
        assert echo.send(sample_notification).success is True
        assert echo.is_available() is True
        assert echo.offline_action is None
        assert echo.server_backed is False
        assert not hasattr(echo, "send_batch")
        assert RemoteNotifier(base_url="https://portal.example.com").server_backed is True


class TestInAppNotifier:
    """Test the live in-app list."""

    def test_send_adds_to_top(self, sample_notification):
        notifier = InAppNotifier()
        older = Notification(type=NotificationType.SYSTEM, title="Older")
        notifier.send(older)

        result = notifier.send(sample_notification)

        assert result.success is True
        assert [n.id for n in notifier.items] == [sample_notification.id, older.id]

    def test_list_is_bounded(self):
        notifier = InAppNotifier(max_items=2)
        for i in range(3):
            notifier.send(Notification(type=NotificationType.SYSTEM, title=f"n{i}"))

        assert [n.title for n in notifier.items] == ["n2", "n1"]

    def test_toast_callback(self, sample_notification):
        """Should call the toast callback for toast notifications."""
        on_toast = Mock()
        notifier = InAppNotifier(on_toast=on_toast)

        notifier.send(sample_notification)
        notifier.send(Notification(type=NotificationType.SYSTEM, title="quiet", show_toast=False))

        on_toast.assert_called_once_with(sample_notification)

    def test_failing_toast_does_not_fail_delivery(self, sample_notification):
        notifier = InAppNotifier(on_toast=Mock(side_effect=RuntimeError("ui gone")))
        assert notifier.send(sample_notification).success is True

    def test_refresh_and_remove(self, sample_notification):
        notifier = InAppNotifier()
        notifier.send(sample_notification)
        sample_notification.title = "2 price alerts for BTC"

        notifier.refresh(sample_notification)
        assert notifier.items[0].title == "2 price alerts for BTC"

        notifier.remove(sample_notification.id)
        assert notifier.items == []


class TestBrowserPushNotifier:
    """Test browser push delivery."""

    @pytest.fixture
    def notifier(self):
        return BrowserPushNotifier(
            push_url="https://push.example.com/send",
            subscription={"endpoint": "https://fcm.example.com/abc"},
            permission_granted=True,
        )

    def test_send_notification_success(self, notifier, sample_notification):
        """Should post the notification to the push gateway."""
        with patch("requests.post") as mock_post:
            mock_post.return_value.status_code = 201
            mock_post.return_value.ok = True

            result = notifier.send(sample_notification)

        assert result.success is True
        assert result.channel == "browser"
        payload = mock_post.call_args.kwargs["json"]
        assert payload["notification"]["title"] == sample_notification.title
        assert payload["notification"]["requireInteraction"] is True

    def test_without_permission(self, sample_notification):
        """Should not call the gateway without permission."""
        notifier = BrowserPushNotifier(push_url="https://push.example.com/send")

        with patch("requests.post") as mock_post:
            result = notifier.send(sample_notification)

        assert notifier.is_available() is False
        assert result.success is False
        assert "not permitted" in result.error
        mock_post.assert_not_called()
        with pytest.raises(PermissionDenied):
            notifier.check_permission()

    def test_set_permission(self):
        notifier = BrowserPushNotifier(push_url="https://push.example.com/send")
        notifier.set_permission(True, {"endpoint": "e"})
        assert notifier.is_available() is True
        assert notifier.subscription == {"endpoint": "e"}

    def test_send_failure(self, notifier, sample_notification):
        with patch("requests.post") as mock_post:
            mock_post.return_value.status_code = 410
            mock_post.return_value.ok = False
            mock_post.return_value.text = "Gone"

            result = notifier.send(sample_notification)

        assert result.success is False
        assert "410" in result.error

    def test_connection_error_is_temporary(self, notifier, sample_notification):
        with patch("requests.post", side_effect=requests.exceptions.ConnectionError("down")):
            result = notifier.send(sample_notification)

        assert result.success is False
        assert result.temporary is True

    def test_retries_after_rate_limit(self, notifier, sample_notification):
        """Should wait Retry-After and retry once on 429."""
        limited = MagicMock(status_code=429, headers={"Retry-After": "0"})
        ok = MagicMock(status_code=201, ok=True)
        with patch("requests.post", side_effect=[limited, ok]) as mock_post:
            with patch("time.sleep") as mock_sleep:
                result = notifier.send(sample_notification)

        assert result.success is True
        assert mock_post.call_count == 2
        mock_sleep.assert_called_once_with(0.0)


class TestEmailNotifier:
    """Test email notifications."""

    @pytest.fixture
    def notifier(self, sample_smtp_config):
        """Create email notifier."""
        return EmailNotifier(**sample_smtp_config)

    def test_send_email_success(self, notifier, sample_notification):
        """Should send email successfully."""
        with patch("smtplib.SMTP") as mock_smtp:
            mock_server = MagicMock()
            mock_smtp.return_value.__enter__.return_value = mock_server

            result = notifier.send(sample_notification)

        assert result.success is True
        assert result.channel == "email"
        mock_server.starttls.assert_called_once()
        mock_server.login.assert_called_once_with("test@gmail.com", "test-app-password")
        mock_server.send_message.assert_called_once()

    def test_authentication_failure(self, notifier, sample_notification):
        """Should report authentication failures as permanent."""
        with patch("smtplib.SMTP") as mock_smtp:
            mock_server = MagicMock()
            mock_server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad")
            mock_smtp.return_value.__enter__.return_value = mock_server

            result = notifier.send(sample_notification)

        assert result.success is False
        assert "Authentication failed" in result.error
        assert result.temporary is False

    def test_connection_failure_is_temporary(self, notifier, sample_notification):
        with patch("smtplib.SMTP", side_effect=ConnectionRefusedError("refused")):
            result = notifier.send(sample_notification)

        assert result.success is False
        assert result.temporary is True

    def test_subject_includes_title(self, notifier, sample_notification):
        subject = notifier._create_subject(sample_notification)
        assert sample_notification.title in subject

    def test_urgent_prefix(self, notifier):
        notification = Notification(
            type=NotificationType.SECURITY,
            title="New login",
            priority=NotificationPriority.URGENT,
        )
        assert notifier._create_subject(notification).startswith("[URGENT]")

    def test_body_includes_action_links(self, notifier, sample_notification):
        body = notifier._create_body(sample_notification)
        assert 'href="/crypto/bitcoin"' in body
        assert "View details" in notifier._create_text_body(sample_notification)

    def test_digest_sends_one_email_and_empties_buffer(self, notifier, sample_notification):
        """Should send all buffered notifications in a single message."""
        notifier.add_to_digest(sample_notification)
        notifier.add_to_digest(Notification(type=NotificationType.NEWS, title="News"))

        with patch("smtplib.SMTP") as mock_smtp:
            mock_server = MagicMock()
            mock_smtp.return_value.__enter__.return_value = mock_server

            result = notifier.send_digest()

        assert result.success is True
        mock_server.send_message.assert_called_once()
        message = mock_server.send_message.call_args.args[0]
        assert "2 CryptAlert notifications" in message["Subject"]
        assert notifier.digest == []

    def test_failed_digest_keeps_buffer(self, notifier, sample_notification):
        notifier.add_to_digest(sample_notification)

        with patch("smtplib.SMTP", side_effect=ConnectionRefusedError("refused")):
            result = notifier.send_digest()

        assert result.success is False
        assert notifier.digest == [sample_notification]

    def test_empty_digest_sends_nothing(self, notifier):
        with patch("smtplib.SMTP") as mock_smtp:
            assert notifier.send_digest().success is True
        mock_smtp.assert_not_called()


class TestRemoteNotifier:
    """Test the portal server client."""

    @pytest.fixture
    def notifier(self):
        return RemoteNotifier(base_url="https://portal.example.com/", user_id="u1", token="t")

    def test_send_posts_notification(self, notifier, sample_notification):
        with patch("requests.request") as mock_request:
            mock_request.return_value.status_code = 201
            mock_request.return_value.ok = True

            result = notifier.send(sample_notification)

        assert result.success is True
        args, kwargs = mock_request.call_args
        assert args == ("POST", "https://portal.example.com/api/notifications")
        assert kwargs["json"]["userId"] == "u1"
        assert kwargs["json"]["notification"]["id"] == sample_notification.id
        assert kwargs["headers"]["Authorization"] == "Bearer t"

    def test_server_error_is_temporary(self, notifier, sample_notification):
        with patch("requests.request") as mock_request:
            mock_request.return_value.status_code = 503
            mock_request.return_value.ok = False

            result = notifier.send(sample_notification)

        assert result.success is False
        assert result.temporary is True

    def test_client_error_is_permanent(self, notifier):
        with patch("requests.request") as mock_request:
            mock_request.return_value.status_code = 400
            mock_request.return_value.ok = False
            mock_request.return_value.text = "Bad Request"

            with pytest.raises(NetworkError) as exc_info:
                notifier.update_status("n1", "read")

        assert exc_info.value.temporary is False

    def test_connection_error_raises_temporary(self, notifier):
        with patch("requests.request", side_effect=requests.exceptions.ConnectionError("x")):
            with pytest.raises(NetworkError) as exc_info:
                notifier.delete("n1")

        assert exc_info.value.temporary is True

    def test_list_notifications(self, notifier):
        """Should GET one page of the user's notifications with filters."""
        with patch("requests.request") as mock_request:
            mock_request.return_value.status_code = 200
            mock_request.return_value.ok = True
            mock_request.return_value.json.return_value = {
                "notifications": [{"id": "n1", "type": "system", "title": "Hi"}]
            }

            items = notifier.list_notifications(status="unread", offset=20, limit=10)

        assert [i["id"] for i in items] == ["n1"]
        args, kwargs = mock_request.call_args
        assert args == ("GET", "https://portal.example.com/api/users/u1/notifications")
        assert kwargs["params"] == {"limit": 10, "offset": 20, "status": "unread"}

    def test_list_notifications_rejects_bad_body(self, notifier):
        with patch("requests.request") as mock_request:
            mock_request.return_value.status_code = 200
            mock_request.return_value.ok = True
            mock_request.return_value.json.return_value = {"error": "nope"}

            with pytest.raises(NetworkError) as exc_info:
                notifier.list_notifications()

        assert exc_info.value.temporary is False

    def test_list_notifications_invalid_json(self, notifier):
        with patch("requests.request") as mock_request:
            mock_request.return_value.status_code = 200
            mock_request.return_value.ok = True
            mock_request.return_value.json.side_effect = ValueError("Expecting value")

            with pytest.raises(NetworkError):
                notifier.list_notifications()


class TestNotifierFactory:
    """Test notifier factory."""

    def test_create_in_app(self):
        assert isinstance(NotifierFactory.create({"type": "in_app"}), InAppNotifier)

    def test_create_browser(self):
        notifier = NotifierFactory.create({
            "type": "browser",
            "push_url": "https://push.example.com",
            "permission_granted": True,
        })
        assert isinstance(notifier, BrowserPushNotifier)
        assert notifier.is_available() is True

    def test_create_email(self, sample_smtp_config):
        notifier = NotifierFactory.create({"type": "email", **sample_smtp_config})
        assert isinstance(notifier, EmailNotifier)
        assert notifier.offline_action == "email"

    def test_create_remote(self):
        notifier = NotifierFactory.create({"type": "remote", "base_url": "https://p"})
        assert isinstance(notifier, RemoteNotifier)
        assert notifier.channels == ("mobile", "sms")

    def test_unknown_type(self):
        """Should raise error for unknown type."""
        with pytest.raises(ValueError, match="Unknown notifier type"):
            NotifierFactory.create({"type": "pager"})
