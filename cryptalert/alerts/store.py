"""
Alert definitions and trigger history.
"""

from __future__ import annotations

import json
import logging
import secrets
from datetime import datetime
from typing import Any, Callable, Optional, Union

from cryptalert.data.fetcher import MarketSnapshot
from cryptalert.database.connection import Database
from cryptalert.database.models import (
    DIRECTIONS,
    Alert,
    AlertHistoryEntry,
    AlertStatus,
    AlertType,
    RepeatOption,
    generate_id,
    is_finite_number,
)
from cryptalert.database.repository import AlertHistoryRepository, AlertRepository
from cryptalert.errors import InvalidAlert, LimitExceeded, NotFound
from cryptalert.events import EventBus
from cryptalert.rules.state import check_transition, is_expired

logger = logging.getLogger(__name__)

EXPORT_VERSION = "1.0"

SORT_OPTIONS: dict[str, tuple[Callable[[Alert], Any], bool]] = {
    "created_asc": (lambda a: a.created_at, False),
    "created_desc": (lambda a: a.created_at, True),
    "updated_asc": (lambda a: a.updated_at, False),
    "updated_desc": (lambda a: a.updated_at, True),
    "coin_asc": (lambda a: a.coin_symbol.lower(), False),
    "coin_desc": (lambda a: a.coin_symbol.lower(), True),
    "value_asc": (lambda a: a.target_value, False),
    "value_desc": (lambda a: a.target_value, True),
}

# snake_case spellings accepted from Python callers
_KEY_ALIASES = {
    "coin_id": "coinId",
    "coin_symbol": "coinSymbol",
    "target_value": "targetValue",
    "average_volume": "averageVolume",
    "notification_channels": "notificationChannels",
    "created_at": "createdAt",
    "updated_at": "updatedAt",
    "triggered_at": "triggeredAt",
    "triggered_data": "triggeredData",
    "expires_at": "expiresAt",
}


def normalize_alert_data(data: dict[str, Any]) -> dict[str, Any]:
    """Map snake_case keys to the camelCase alert form."""
    normalized = {}
    for key, value in data.items():
        if isinstance(value, (AlertType, AlertStatus, RepeatOption)):
            value = value.value
        elif isinstance(value, datetime):
            value = value.isoformat()
        normalized[_KEY_ALIASES.get(key, key)] = value
    return normalized


def validate_alert_data(data: dict[str, Any]) -> None:
    """
    Validate camelCase alert data.

    Raises:
        InvalidAlert: With a human readable reason
    """
    if not data.get("coinId"):
        raise InvalidAlert("A coin id is required")

    if not data.get("coinSymbol"):
        raise InvalidAlert("A coin symbol is required")

    try:
        alert_type = AlertType.parse(data.get("type"))
    except ValueError:
        raise InvalidAlert(f"Invalid alert type: {data.get('type')}") from None

    if not is_finite_number(data.get("targetValue")):
        raise InvalidAlert("A valid target value is required")

    allowed = DIRECTIONS.get(alert_type)
    if allowed:
        direction = data.get("direction")
        if not direction:
            raise InvalidAlert(
                f"A direction ({'/'.join(allowed)}) is required for "
                f"{alert_type.value} alerts"
            )
        if direction not in allowed:
            raise InvalidAlert(
                f"Invalid direction for {alert_type.value} alerts: {direction}"
            )

    average_volume = data.get("averageVolume")
    if average_volume is not None and not is_finite_number(average_volume):
        raise InvalidAlert("Average volume must be a number")

    channels = data.get("notificationChannels")
    if channels is not None and not isinstance(channels, list):
        raise InvalidAlert("Notification channels must be a list")


def _build_alert(data: dict[str, Any]) -> Alert:
    try:
        return Alert.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        raise InvalidAlert(f"Invalid alert data: {e}") from e


class AlertStore:
    """Durable alert collection for one user plus its trigger history.

    Every mutating call commits to the database before it returns.
    """

    def __init__(
        self,
        db: Database,
        user_id: str = "default",
        max_alerts_per_user: int = 50,
        max_history_items: int = 100,
        events: Optional[EventBus] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Initialize the store.

        Args:
            db: Initialized database
            user_id: Owner of the alerts
            max_alerts_per_user: Alert quota
            max_history_items: History ring buffer size
            events: Optional bus for change notifications
            clock: Source of the current time
        """
        self.repo = AlertRepository(db, user_id)
        self.history = AlertHistoryRepository(db, user_id, max_history_items)
        self.max_alerts_per_user = max_alerts_per_user
        self.events = events
        self.clock = clock
        self._stats = {"active": 0, "triggered": 0, "pending": 0, "total": 0}
        self.update_stats()

    # Alert CRUD

    def create(self, data: dict[str, Any]) -> Alert:
        """
        Create a new alert.

        Raises:
            InvalidAlert: If the data is invalid
            LimitExceeded: If the user already has the maximum number of alerts
        """
        data = normalize_alert_data(data)
        validate_alert_data(data)

        if self.repo.count() >= self.max_alerts_per_user:
            raise LimitExceeded(
                f"Alert limit reached ({self.max_alerts_per_user})"
            )

        now = self.clock().isoformat()
        alert = _build_alert({
            **data,
            "id": generate_id("alert"),
            "createdAt": now,
            "updatedAt": now,
        })
        if alert.status not in (AlertStatus.ACTIVE, AlertStatus.PENDING, AlertStatus.DISABLED):
            raise InvalidAlert(f"New alerts cannot start as {alert.status.value}")

        self.repo.create(alert)
        logger.info(f"Created alert {alert.id} ({alert.type.value} {alert.coin_symbol})")
        self._changed("alerts.created", {"alert": alert})
        return alert

    def update(self, alert_id: str, patch: dict[str, Any]) -> Alert:
        """
        Update an existing alert.

        Raises:
            NotFound: If the alert does not exist
            InvalidAlert: If the merged alert is invalid
        """
        existing = self.repo.get_by_id(alert_id)
        if existing is None:
            raise NotFound(f"Alert not found: {alert_id}")

        merged = {
            **existing.to_dict(),
            **normalize_alert_data(patch),
            "id": existing.id,
            "createdAt": existing.created_at.isoformat(),
            "updatedAt": self.clock().isoformat(),
        }
        validate_alert_data(merged)
        updated = _build_alert(merged)
        check_transition(existing.status, updated.status)

        self.repo.update(updated)
        self._changed("alerts.updated", {"alert": updated, "previous": existing})
        return updated

    def delete(self, alert_id: str) -> bool:
        """Delete an alert. Returns False when the id is unknown."""
        existing = self.repo.get_by_id(alert_id)
        if existing is None or not self.repo.delete(alert_id):
            logger.warning(f"Cannot delete alert {alert_id}: not found")
            return False
        logger.info(f"Deleted alert {alert_id}")
        self._changed("alerts.deleted", {"alert": existing})
        return True

    def get(self, alert_id: str) -> Optional[Alert]:
        return self.repo.get_by_id(alert_id)

    def list(
        self,
        status: Optional[Union[AlertStatus, str]] = None,
        coin_id: Optional[str] = None,
        alert_type: Optional[Union[AlertType, str]] = None,
        sort: str = "created_desc",
    ) -> list[Alert]:
        """
        List alerts with optional filters.

        Args:
            status: Only alerts in this status
            coin_id: Only alerts for this coin
            alert_type: Only alerts of this type
            sort: One of SORT_OPTIONS; unknown values keep storage order
        """
        alerts = self.repo.list_by_coin(coin_id) if coin_id else self.repo.list_all()

        if status:
            try:
                wanted_status = AlertStatus(status)
            except ValueError:
                raise InvalidAlert(f"Unknown alert status: {status}") from None
            alerts = [a for a in alerts if a.status == wanted_status]
        if alert_type:
            try:
                wanted_type = AlertType.parse(alert_type)
            except ValueError:
                raise InvalidAlert(f"Unknown alert type: {alert_type}") from None
            alerts = [a for a in alerts if a.type == wanted_type]

        if sort in SORT_OPTIONS:
            key, reverse = SORT_OPTIONS[sort]
            alerts.sort(key=key, reverse=reverse)
        return alerts

    def list_evaluable(self, coin_id: Optional[str] = None) -> list[Alert]:
        """Alerts that are candidates for evaluation (ACTIVE or PENDING, not past expiry)."""
        now = self.clock()
        alerts = [
            a for a in self.repo.list_by_status([AlertStatus.ACTIVE, AlertStatus.PENDING])
            if not is_expired(a, now)
        ]
        if coin_id:
            alerts = [a for a in alerts if a.coin_id == coin_id]
        return alerts

    # Status changes

    def change_status(self, alert_id: str, status: Union[AlertStatus, str]) -> Alert:
        """
        Move an alert to a new status.

        Raises:
            InvalidAlert: If status is not a known value or the change is not allowed
            NotFound: If the alert does not exist
        """
        try:
            new_status = AlertStatus(status)
        except ValueError:
            raise InvalidAlert(f"Invalid status: {status}") from None
        return self.update(alert_id, {"status": new_status.value})

    def enable(self, alert_id: str) -> Alert:
        return self.change_status(alert_id, AlertStatus.ACTIVE)

    def disable(self, alert_id: str) -> Alert:
        return self.change_status(alert_id, AlertStatus.DISABLED)

    def mark_triggered(self, alert_id: str, snapshot: MarketSnapshot) -> Optional[Alert]:
        """
        Move an evaluable alert to TRIGGERED and stamp the trigger data.

        Returns:
            The triggered alert, or None if it is gone or no longer evaluable
        """
        alert = self.repo.get_by_id(alert_id)
        if alert is None or not alert.status.is_evaluable:
            return None

        now = self.clock()
        alert.status = AlertStatus.TRIGGERED
        alert.triggered_at = now
        alert.triggered_data = snapshot.to_triggered_data()
        alert.updated_at = now
        self.repo.update(alert)
        return alert

    def reactivate(self, alert_id: str) -> Optional[Alert]:
        """Return a triggered repeating alert to ACTIVE."""
        alert = self.repo.get_by_id(alert_id)
        if alert is None or alert.status != AlertStatus.TRIGGERED:
            return None
        if alert.repeat == RepeatOption.ONCE:
            return None

        alert.status = AlertStatus.ACTIVE
        alert.updated_at = self.clock()
        self.repo.update(alert)
        self.update_stats()
        return alert

    def set_average_volume(self, alert_id: str, volume: float) -> Optional[Alert]:
        """Record the baseline volume of a VOLUME_SPIKE alert."""
        alert = self.repo.get_by_id(alert_id)
        if alert is None:
            return None
        alert.average_volume = volume
        alert.updated_at = self.clock()
        self.repo.update(alert)
        return alert

    def expire_due(self) -> list[Alert]:
        """Move every non-terminal alert past its expiry to EXPIRED."""
        now = self.clock()
        expired = []
        for alert in self.repo.list_all():
            if is_expired(alert, now):
                alert.status = AlertStatus.EXPIRED
                alert.updated_at = now
                self.repo.update(alert)
                expired.append(alert)
        if expired:
            logger.info(f"Expired {len(expired)} alerts")
            self.update_stats()
        return expired

    # History

    def append_history(self, entry: AlertHistoryEntry) -> AlertHistoryEntry:
        return self.history.append(entry)

    def record_trigger(self, alert: Alert, snapshot: MarketSnapshot) -> AlertHistoryEntry:
        """Append the history entry for a trigger event."""
        entry = AlertHistoryEntry(
            id=f"hist_{int(self.clock().timestamp() * 1000)}_{alert.id}_{secrets.token_hex(3)}",
            alert_id=alert.id,
            coin_id=alert.coin_id,
            coin_symbol=alert.coin_symbol,
            type=alert.type,
            target_value=alert.target_value,
            direction=alert.direction,
            triggered_at=alert.triggered_at or self.clock(),
            price=snapshot.price,
            volume=snapshot.volume,
            market_cap=snapshot.market_cap,
        )
        return self.append_history(entry)

    def list_history(
        self,
        coin_id: Optional[str] = None,
        alert_type: Optional[Union[AlertType, str]] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        sort: str = "newest",
        limit: Optional[int] = None,
    ) -> list[AlertHistoryEntry]:
        """Query trigger history, newest first unless sort="oldest"."""
        return self.history.list(
            coin_id=coin_id,
            alert_type=AlertType.parse(alert_type) if alert_type else None,
            date_from=date_from,
            date_to=date_to,
            oldest_first=sort == "oldest",
            limit=limit,
        )

    def clear_history(self) -> bool:
        self.history.clear()
        if self.events:
            self.events.publish("alerts.history_cleared")
        return True

    # Stats

    def update_stats(self) -> dict[str, int]:
        alerts = self.repo.list_all()
        self._stats = {
            "active": sum(1 for a in alerts if a.status == AlertStatus.ACTIVE),
            "triggered": sum(1 for a in alerts if a.status == AlertStatus.TRIGGERED),
            "pending": sum(1 for a in alerts if a.status == AlertStatus.PENDING),
            "total": len(alerts),
        }
        if self.events:
            self.events.publish("alerts.stats", dict(self._stats))
        return dict(self._stats)

    def get_stats(self) -> dict[str, int]:
        return dict(self._stats)

    # Export / import

    def export_alerts(self) -> str:
        """Serialize every alert to a JSON snapshot."""
        return json.dumps({
            "alerts": [a.to_dict() for a in self.repo.list_all()],
            "exportDate": self.clock().isoformat(),
            "version": EXPORT_VERSION,
        })

    def import_alerts(
        self, snapshot: Union[str, dict[str, Any]], merge: bool = True
    ) -> dict[str, Any]:
        """
        Import alerts from an export snapshot.

        Args:
            snapshot: JSON string or already-parsed dict
            merge: Keep existing alerts and add unseen ids; False replaces all

        Returns:
            {"imported", "invalid", "invalidAlerts"}

        Raises:
            InvalidAlert: If the snapshot itself is malformed
        """
        if isinstance(snapshot, str):
            try:
                payload = json.loads(snapshot)
            except ValueError as e:
                raise InvalidAlert(f"Invalid import data: {e}") from e
        else:
            payload = snapshot

        if not isinstance(payload, dict) or not isinstance(payload.get("alerts"), list):
            raise InvalidAlert("Invalid import data: expected an alerts list")

        existing_ids = {a.id for a in self.repo.list_all()} if merge else set()
        capacity = self.max_alerts_per_user - (len(existing_ids) if merge else 0)
        now = self.clock().isoformat()

        valid: list[Alert] = []
        invalid: list[dict[str, Any]] = []
        seen: set[str] = set()

        for raw in payload["alerts"]:
            try:
                if not isinstance(raw, dict):
                    raise InvalidAlert("Alert entry must be an object")
                data = normalize_alert_data(raw)
                validate_alert_data(data)
                data["createdAt"] = data.get("createdAt") or now
                data["updatedAt"] = data.get("updatedAt") or data["createdAt"]
                data["id"] = data.get("id") or generate_id("alert")
                alert = _build_alert(data)
            except InvalidAlert as e:
                invalid.append({"alert": raw, "error": str(e)})
                continue

            if alert.id in existing_ids:
                continue
            if alert.id in seen:
                invalid.append({"alert": raw, "error": f"Duplicate alert id: {alert.id}"})
                continue
            if len(valid) >= capacity:
                invalid.append(
                    {"alert": raw, "error": f"Alert limit reached ({self.max_alerts_per_user})"}
                )
                continue

            seen.add(alert.id)
            valid.append(alert)

        if merge:
            self.repo.bulk_create(valid)
        else:
            self.repo.replace_all(valid)

        logger.info(
            f"Imported {len(valid)} alerts ({len(invalid)} invalid, "
            f"mode={'merge' if merge else 'replace'})"
        )
        self._changed(
            "alerts.imported",
            {"count": len(valid), "invalid": len(invalid), "merge": merge},
        )
        return {"imported": len(valid), "invalid": len(invalid), "invalidAlerts": invalid}

    def _changed(self, topic: str, payload: dict[str, Any]) -> None:
        self.update_stats()
        if self.events:
            self.events.publish(topic, payload)
