"""
Data models for CryptAlert.
"""

import math
import random
import string
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class AlertType(str, Enum):
    """Condition evaluated by an alert."""

    PRICE_ABOVE = "price_above"
    PRICE_BELOW = "price_below"
    PERCENT_CHANGE = "percent_change"
    VOLUME_SPIKE = "volume_spike"
    MARKET_CAP = "market_cap"

    @classmethod
    def parse(cls, value: Any) -> "AlertType":
        """Parse a type from its value or name, case-insensitively."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError(f"Invalid alert type: {value!r}")
        try:
            return cls(value.lower())
        except ValueError:
            raise ValueError(f"Invalid alert type: {value!r}") from None


class AlertStatus(str, Enum):
    """Alert lifecycle states."""

    ACTIVE = "active"
    PENDING = "pending"
    TRIGGERED = "triggered"
    EXPIRED = "expired"
    DISABLED = "disabled"

    @property
    def is_evaluable(self) -> bool:
        return self in (AlertStatus.ACTIVE, AlertStatus.PENDING)


class RepeatOption(str, Enum):
    """What happens to an alert after it triggers."""

    ONCE = "once"
    ALWAYS = "always"
    HOURLY = "hourly"
    DAILY = "daily"


class NotificationType(str, Enum):
    PRICE_ALERT = "price_alert"
    NEWS = "news"
    SYSTEM = "system"
    SOCIAL = "social"
    PORTFOLIO = "portfolio"
    SECURITY = "security"


class NotificationStatus(str, Enum):
    UNREAD = "unread"
    READ = "read"
    DISMISSED = "dismissed"
    ARCHIVED = "archived"


class NotificationPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class DeliveryChannel(str, Enum):
    IN_APP = "in_app"
    EMAIL = "email"
    BROWSER = "browser"
    MOBILE = "mobile"
    SMS = "sms"


class EmailFrequency(str, Enum):
    IMMEDIATE = "immediate"
    DIGEST = "digest"
    OFF = "off"


# Directions accepted per alert type
DIRECTIONS = {
    AlertType.PERCENT_CHANGE: ("up", "down"),
    AlertType.MARKET_CAP: ("above", "below"),
}

DEFAULT_ALERT_CHANNELS = [DeliveryChannel.IN_APP.value, DeliveryChannel.EMAIL.value]


def generate_id(prefix: str) -> str:
    """Generate an opaque id like ``alert_1700000000000_k3j9x0a1b``."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp into a naive local datetime."""
    if value is None or value == "":
        return None
    if not isinstance(value, datetime):
        value = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if value.tzinfo is not None:
        value = value.astimezone().replace(tzinfo=None)
    return value


def is_finite_number(value: Any) -> bool:
    """Check that value is a real, finite number (bools excluded)."""
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return math.isfinite(value)
    if isinstance(value, str):
        try:
            return math.isfinite(float(value))
        except ValueError:
            return False
    return False


@dataclass
class Alert:
    """User-defined condition on a coin's market metrics."""

    coin_id: str
    coin_symbol: str
    type: AlertType
    target_value: float
    id: Optional[str] = None
    direction: Optional[str] = None
    average_volume: Optional[float] = None
    status: AlertStatus = AlertStatus.ACTIVE
    repeat: RepeatOption = RepeatOption.ONCE
    notification_channels: list[str] = field(
        default_factory=lambda: list(DEFAULT_ALERT_CHANNELS)
    )
    name: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    triggered_at: Optional[datetime] = None
    triggered_data: Optional[dict[str, Any]] = None
    expires_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the camelCase form used for export and JSON columns."""
        return {
            "id": self.id,
            "name": self.name,
            "coinId": self.coin_id,
            "coinSymbol": self.coin_symbol,
            "type": self.type.value,
            "targetValue": self.target_value,
            "direction": self.direction,
            "averageVolume": self.average_volume,
            "status": self.status.value,
            "repeat": self.repeat.value,
            "notificationChannels": list(self.notification_channels),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "triggeredAt": _iso(self.triggered_at),
            "triggeredData": self.triggered_data,
            "expiresAt": _iso(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Alert":
        """
        Build an Alert from its camelCase dictionary form.

        Raises:
            ValueError: If an enum field holds an unknown value
        """
        average_volume = data.get("averageVolume")
        return cls(
            id=data.get("id"),
            name=data.get("name"),
            coin_id=data["coinId"],
            coin_symbol=data["coinSymbol"],
            type=AlertType.parse(data["type"]),
            target_value=float(data["targetValue"]),
            direction=data.get("direction"),
            average_volume=float(average_volume) if average_volume is not None else None,
            status=AlertStatus(data.get("status") or AlertStatus.ACTIVE.value),
            repeat=RepeatOption(data.get("repeat") or RepeatOption.ONCE.value),
            notification_channels=list(
                data.get("notificationChannels") or DEFAULT_ALERT_CHANNELS
            ),
            created_at=_parse_datetime(data.get("createdAt")),
            updated_at=_parse_datetime(data.get("updatedAt")),
            triggered_at=_parse_datetime(data.get("triggeredAt")),
            triggered_data=data.get("triggeredData"),
            expires_at=_parse_datetime(data.get("expiresAt")),
        )


@dataclass(frozen=True)
class AlertHistoryEntry:
    """Immutable record of one trigger event."""

    id: str
    alert_id: str
    coin_id: str
    coin_symbol: str
    type: AlertType
    target_value: float
    triggered_at: datetime
    direction: Optional[str] = None
    price: Optional[float] = None
    volume: Optional[float] = None
    market_cap: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "alertId": self.alert_id,
            "coinId": self.coin_id,
            "coinSymbol": self.coin_symbol,
            "type": self.type.value,
            "targetValue": self.target_value,
            "direction": self.direction,
            "triggeredAt": self.triggered_at.isoformat(),
            "price": self.price,
            "volume": self.volume,
            "marketCap": self.market_cap,
        }


@dataclass
class NotificationAction:
    """Button attached to a notification."""

    label: str
    action: str
    url: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {"label": self.label, "action": self.action, "url": self.url}


@dataclass
class NotificationGroup:
    """Merged notifications collapsed into one entry."""

    count: int = 1
    items: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class Notification:
    """A message for the user's notification list."""

    type: NotificationType
    title: str
    description: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    actions: list[NotificationAction] = field(default_factory=list)
    status: NotificationStatus = NotificationStatus.UNREAD
    priority: NotificationPriority = NotificationPriority.MEDIUM
    timestamp: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: generate_id("notification"))
    group: Optional[NotificationGroup] = None
    show_toast: bool = True
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "title": self.title,
            "description": self.description,
            "data": self.data,
            "actions": [a.to_dict() for a in self.actions],
            "status": self.status.value,
            "priority": self.priority.value,
            "timestamp": self.timestamp.isoformat(),
            "group": (
                {"count": self.group.count, "items": self.group.items}
                if self.group
                else None
            ),
            "showToast": self.show_toast,
            "updatedAt": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Notification":
        group = data.get("group")
        return cls(
            id=data.get("id") or generate_id("notification"),
            type=NotificationType(data["type"]),
            title=data["title"],
            description=data.get("description") or "",
            data=dict(data.get("data") or {}),
            actions=[
                NotificationAction(
                    label=a["label"], action=a.get("action", ""), url=a.get("url")
                )
                for a in data.get("actions") or []
            ],
            status=NotificationStatus(data.get("status") or "unread"),
            priority=NotificationPriority(data.get("priority") or "medium"),
            timestamp=_parse_datetime(data.get("timestamp")) or datetime.now(),
            group=(
                NotificationGroup(count=group["count"], items=list(group["items"]))
                if group
                else None
            ),
            show_toast=data.get("showToast", True),
            updated_at=_parse_datetime(data.get("updatedAt")),
        )


@dataclass
class NotificationPreferences:
    """Per-user channel and type preferences."""

    enabled_channels: list[str] = field(
        default_factory=lambda: [DeliveryChannel.IN_APP.value]
    )
    enabled_types: list[str] = field(
        default_factory=lambda: [t.value for t in NotificationType]
    )
    group_similar: bool = True
    email_frequency: EmailFrequency = EmailFrequency.IMMEDIATE
    muted_keys: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabledChannels": list(self.enabled_channels),
            "enabledTypes": list(self.enabled_types),
            "groupSimilar": self.group_similar,
            "emailFrequency": self.email_frequency.value,
            "mutedKeys": list(self.muted_keys),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NotificationPreferences":
        defaults = cls()
        return cls(
            enabled_channels=list(data.get("enabledChannels", defaults.enabled_channels)),
            enabled_types=list(data.get("enabledTypes", defaults.enabled_types)),
            group_similar=bool(data.get("groupSimilar", defaults.group_similar)),
            email_frequency=EmailFrequency(
                data.get("emailFrequency", defaults.email_frequency.value)
            ),
            muted_keys=list(data.get("mutedKeys", defaults.muted_keys)),
        )


@dataclass
class OfflineAction:
    """Network operation buffered while offline."""

    action: str  # "create", "markAsRead", "delete", "email"
    data: dict[str, Any]
    id: Optional[int] = None
    queued_at: Optional[datetime] = None
