"""
Repository classes for CRUD operations.
"""

import json
from datetime import datetime
from typing import Iterable, Optional

from .connection import Database
from .models import (
    Alert,
    AlertHistoryEntry,
    AlertStatus,
    AlertType,
    Notification,
    NotificationPreferences,
    NotificationStatus,
    OfflineAction,
    RepeatOption,
)


def _dt(value) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class AlertRepository:
    """CRUD operations for a user's alerts."""

    def __init__(self, db: Database, user_id: str = "default"):
        self.db = db
        self.user_id = user_id

    def create(self, alert: Alert) -> Alert:
        """Insert a new alert. The alert id must already be set."""
        cursor = self.db.connection.cursor()
        self._insert(cursor, alert)
        self.db.connection.commit()
        return alert

    def get_by_id(self, alert_id: str) -> Optional[Alert]:
        """Get alert by ID."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            "SELECT * FROM alerts WHERE id = ? AND user_id = ?",
            (alert_id, self.user_id),
        )
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_alert(row)

    def list_all(self) -> list[Alert]:
        """List all alerts in creation order."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            "SELECT * FROM alerts WHERE user_id = ? ORDER BY created_at, rowid",
            (self.user_id,),
        )
        return [self._row_to_alert(row) for row in cursor.fetchall()]

    def list_by_status(self, statuses: Iterable[AlertStatus]) -> list[Alert]:
        """List alerts whose status is one of statuses."""
        values = [s.value for s in statuses]
        if not values:
            return []
        placeholders = ", ".join("?" for _ in values)
        cursor = self.db.connection.cursor()
        cursor.execute(
            f"""
            SELECT * FROM alerts
            WHERE user_id = ? AND status IN ({placeholders})
            ORDER BY created_at, rowid
            """,
            (self.user_id, *values),
        )
        return [self._row_to_alert(row) for row in cursor.fetchall()]

    def list_by_coin(self, coin_id: str) -> list[Alert]:
        """List alerts for one coin."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT * FROM alerts
            WHERE user_id = ? AND coin_id = ?
            ORDER BY created_at, rowid
            """,
            (self.user_id, coin_id),
        )
        return [self._row_to_alert(row) for row in cursor.fetchall()]

    def count(self) -> int:
        """Count the user's alerts."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            "SELECT COUNT(*) FROM alerts WHERE user_id = ?", (self.user_id,)
        )
        return cursor.fetchone()[0]

    def update(self, alert: Alert) -> None:
        """Persist every field of an existing alert."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            UPDATE alerts
            SET name = ?, coin_id = ?, coin_symbol = ?, type = ?, target_value = ?,
                direction = ?, average_volume = ?, status = ?, repeat_option = ?,
                notification_channels = ?, created_at = ?, updated_at = ?,
                triggered_at = ?, triggered_data = ?, expires_at = ?
            WHERE id = ? AND user_id = ?
            """,
            (
                alert.name,
                alert.coin_id,
                alert.coin_symbol,
                alert.type.value,
                alert.target_value,
                alert.direction,
                alert.average_volume,
                alert.status.value,
                alert.repeat.value,
                json.dumps(alert.notification_channels),
                alert.created_at.isoformat(),
                alert.updated_at.isoformat(),
                alert.triggered_at.isoformat() if alert.triggered_at else None,
                json.dumps(alert.triggered_data) if alert.triggered_data else None,
                alert.expires_at.isoformat() if alert.expires_at else None,
                alert.id,
                self.user_id,
            ),
        )
        self.db.connection.commit()

    def delete(self, alert_id: str) -> bool:
        """Delete an alert. Returns False if it did not exist."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            "DELETE FROM alerts WHERE id = ? AND user_id = ?",
            (alert_id, self.user_id),
        )
        self.db.connection.commit()
        return cursor.rowcount > 0

    def bulk_create(self, alerts: list[Alert]) -> None:
        """Insert several alerts in one transaction."""
        cursor = self.db.connection.cursor()
        for alert in alerts:
            self._insert(cursor, alert)
        self.db.connection.commit()

    def replace_all(self, alerts: list[Alert]) -> None:
        """Atomically replace the user's whole alert set."""
        connection = self.db.connection
        try:
            cursor = connection.cursor()
            cursor.execute("DELETE FROM alerts WHERE user_id = ?", (self.user_id,))
            for alert in alerts:
                self._insert(cursor, alert)
            connection.commit()
        except Exception:
            connection.rollback()
            raise

    def _insert(self, cursor, alert: Alert) -> None:
        cursor.execute(
            """
            INSERT INTO alerts
            (id, user_id, name, coin_id, coin_symbol, type, target_value, direction,
             average_volume, status, repeat_option, notification_channels,
             created_at, updated_at, triggered_at, triggered_data, expires_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                alert.id,
                self.user_id,
                alert.name,
                alert.coin_id,
                alert.coin_symbol,
                alert.type.value,
                alert.target_value,
                alert.direction,
                alert.average_volume,
                alert.status.value,
                alert.repeat.value,
                json.dumps(alert.notification_channels),
                alert.created_at.isoformat(),
                alert.updated_at.isoformat(),
                alert.triggered_at.isoformat() if alert.triggered_at else None,
                json.dumps(alert.triggered_data) if alert.triggered_data else None,
                alert.expires_at.isoformat() if alert.expires_at else None,
            ),
        )

    def _row_to_alert(self, row) -> Alert:
        """Convert database row to Alert."""
        return Alert(
            id=row["id"],
            name=row["name"],
            coin_id=row["coin_id"],
            coin_symbol=row["coin_symbol"],
            type=AlertType(row["type"]),
            target_value=row["target_value"],
            direction=row["direction"],
            average_volume=row["average_volume"],
            status=AlertStatus(row["status"]),
            repeat=RepeatOption(row["repeat_option"]),
            notification_channels=json.loads(row["notification_channels"]),
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
            triggered_at=_dt(row["triggered_at"]),
            triggered_data=(
                json.loads(row["triggered_data"]) if row["triggered_data"] else None
            ),
            expires_at=_dt(row["expires_at"]),
        )


class AlertHistoryRepository:
    """Append-only alert trigger history, bounded to max_items entries."""

    def __init__(self, db: Database, user_id: str = "default", max_items: int = 100):
        self.db = db
        self.user_id = user_id
        self.max_items = max_items

    def append(self, entry: AlertHistoryEntry) -> AlertHistoryEntry:
        """Append an entry and evict the oldest ones beyond max_items."""
        connection = self.db.connection
        cursor = connection.cursor()
        cursor.execute(
            """
            INSERT INTO alert_history
            (id, user_id, alert_id, coin_id, coin_symbol, type, target_value,
             direction, triggered_at, price, volume, market_cap)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.id,
                self.user_id,
                entry.alert_id,
                entry.coin_id,
                entry.coin_symbol,
                entry.type.value,
                entry.target_value,
                entry.direction,
                entry.triggered_at.isoformat(),
                entry.price,
                entry.volume,
                entry.market_cap,
            ),
        )
        cursor.execute(
            """
            DELETE FROM alert_history
            WHERE user_id = ? AND id NOT IN (
                SELECT id FROM alert_history
                WHERE user_id = ?
                ORDER BY triggered_at DESC, rowid DESC
                LIMIT ?
            )
            """,
            (self.user_id, self.user_id, self.max_items),
        )
        connection.commit()
        return entry

    def list(
        self,
        coin_id: Optional[str] = None,
        alert_type: Optional[AlertType] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        oldest_first: bool = False,
        limit: Optional[int] = None,
    ) -> list[AlertHistoryEntry]:
        """Query history with optional filters, newest first by default."""
        clauses = ["user_id = ?"]
        params: list = [self.user_id]
        if coin_id:
            clauses.append("coin_id = ?")
            params.append(coin_id)
        if alert_type:
            clauses.append("type = ?")
            params.append(alert_type.value)
        if date_from:
            clauses.append("triggered_at >= ?")
            params.append(date_from.isoformat())
        if date_to:
            clauses.append("triggered_at <= ?")
            params.append(date_to.isoformat())

        order = "ASC" if oldest_first else "DESC"
        sql = (
            f"SELECT * FROM alert_history WHERE {' AND '.join(clauses)} "
            f"ORDER BY triggered_at {order}, rowid {order}"
        )
        if limit and limit > 0:
            sql += " LIMIT ?"
            params.append(limit)

        cursor = self.db.connection.cursor()
        cursor.execute(sql, params)
        return [self._row_to_entry(row) for row in cursor.fetchall()]

    def count(self) -> int:
        cursor = self.db.connection.cursor()
        cursor.execute(
            "SELECT COUNT(*) FROM alert_history WHERE user_id = ?", (self.user_id,)
        )
        return cursor.fetchone()[0]

    def clear(self) -> None:
        """Delete the user's whole history."""
        cursor = self.db.connection.cursor()
        cursor.execute("DELETE FROM alert_history WHERE user_id = ?", (self.user_id,))
        self.db.connection.commit()

    def _row_to_entry(self, row) -> AlertHistoryEntry:
        """Convert database row to AlertHistoryEntry."""
        return AlertHistoryEntry(
            id=row["id"],
            alert_id=row["alert_id"],
            coin_id=row["coin_id"],
            coin_symbol=row["coin_symbol"],
            type=AlertType(row["type"]),
            target_value=row["target_value"],
            direction=row["direction"],
            triggered_at=datetime.fromisoformat(row["triggered_at"]),
            price=row["price"],
            volume=row["volume"],
            market_cap=row["market_cap"],
        )


class NotificationRepository:
    """Stored notifications for a user, bounded to max_stored entries."""

    def __init__(self, db: Database, user_id: str = "default", max_stored: int = 200):
        self.db = db
        self.user_id = user_id
        self.max_stored = max_stored

    def save(self, notification: Notification) -> Notification:
        """Insert or replace a notification, keeping the newest max_stored."""
        connection = self.db.connection
        cursor = connection.cursor()
        cursor.execute(
            """
            INSERT INTO notifications (id, user_id, type, status, timestamp, payload)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id, id) DO UPDATE SET
                type = excluded.type,
                status = excluded.status,
                timestamp = excluded.timestamp,
                payload = excluded.payload
            """,
            (
                notification.id,
                self.user_id,
                notification.type.value,
                notification.status.value,
                notification.timestamp.isoformat(),
                json.dumps(notification.to_dict()),
            ),
        )
        cursor.execute(
            """
            DELETE FROM notifications
            WHERE user_id = ? AND id NOT IN (
                SELECT id FROM notifications
                WHERE user_id = ?
                ORDER BY timestamp DESC
                LIMIT ?
            )
            """,
            (self.user_id, self.user_id, self.max_stored),
        )
        connection.commit()
        return notification

    def get_by_id(self, notification_id: str) -> Optional[Notification]:
        cursor = self.db.connection.cursor()
        cursor.execute(
            "SELECT payload FROM notifications WHERE id = ? AND user_id = ?",
            (notification_id, self.user_id),
        )
        row = cursor.fetchone()
        if row is None:
            return None
        return Notification.from_dict(json.loads(row["payload"]))

    def list_all(self, limit: Optional[int] = None) -> list[Notification]:
        """List notifications, newest first."""
        sql = "SELECT payload FROM notifications WHERE user_id = ? ORDER BY timestamp DESC"
        params: list = [self.user_id]
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        cursor = self.db.connection.cursor()
        cursor.execute(sql, params)
        return [Notification.from_dict(json.loads(row["payload"])) for row in cursor.fetchall()]

    def update_status(
        self,
        notification_id: str,
        status: NotificationStatus,
        updated_at: Optional[datetime] = None,
    ) -> bool:
        """Change one notification's status. Returns False if it is unknown."""
        notification = self.get_by_id(notification_id)
        if notification is None:
            return False
        notification.status = status
        notification.updated_at = updated_at or notification.updated_at
        self.save(notification)
        return True

    def mark_all(
        self,
        from_status: NotificationStatus,
        to_status: NotificationStatus,
        updated_at: Optional[datetime] = None,
    ) -> int:
        """Move every notification in from_status to to_status."""
        changed = 0
        for notification in self.list_all():
            if notification.status == from_status:
                notification.status = to_status
                notification.updated_at = updated_at or notification.updated_at
                self._write(notification)
                changed += 1
        self.db.connection.commit()
        return changed

    def delete(self, notification_id: str) -> bool:
        cursor = self.db.connection.cursor()
        cursor.execute(
            "DELETE FROM notifications WHERE id = ? AND user_id = ?",
            (notification_id, self.user_id),
        )
        self.db.connection.commit()
        return cursor.rowcount > 0

    def delete_all(self) -> int:
        cursor = self.db.connection.cursor()
        cursor.execute("DELETE FROM notifications WHERE user_id = ?", (self.user_id,))
        self.db.connection.commit()
        return cursor.rowcount

    def delete_ids(self, ids: list[str]) -> int:
        """Delete several notifications in one transaction."""
        cursor = self.db.connection.cursor()
        deleted = 0
        for notification_id in ids:
            cursor.execute(
                "DELETE FROM notifications WHERE id = ? AND user_id = ?",
                (notification_id, self.user_id),
            )
            deleted += cursor.rowcount
        self.db.connection.commit()
        return deleted

    def count_by_status(self, status: NotificationStatus) -> int:
        cursor = self.db.connection.cursor()
        cursor.execute(
            "SELECT COUNT(*) FROM notifications WHERE user_id = ? AND status = ?",
            (self.user_id, status.value),
        )
        return cursor.fetchone()[0]

    def _write(self, notification: Notification) -> None:
        self.db.connection.execute(
            """
            UPDATE notifications SET status = ?, payload = ?
            WHERE id = ? AND user_id = ?
            """,
            (
                notification.status.value,
                json.dumps(notification.to_dict()),
                notification.id,
                self.user_id,
            ),
        )


class PreferencesRepository:
    """Notification preferences storage, one row per user."""

    def __init__(self, db: Database, user_id: str = "default"):
        self.db = db
        self.user_id = user_id

    def get(self) -> Optional[NotificationPreferences]:
        cursor = self.db.connection.cursor()
        cursor.execute(
            "SELECT payload FROM notification_preferences WHERE user_id = ?",
            (self.user_id,),
        )
        row = cursor.fetchone()
        if row is None:
            return None
        return NotificationPreferences.from_dict(json.loads(row["payload"]))

    def save(self, preferences: NotificationPreferences) -> None:
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            INSERT INTO notification_preferences (user_id, payload)
            VALUES (?, ?)
            ON CONFLICT(user_id) DO UPDATE SET payload = excluded.payload
            """,
            (self.user_id, json.dumps(preferences.to_dict())),
        )
        self.db.connection.commit()


class OfflineQueueRepository:
    """Durable FIFO of actions waiting for connectivity."""

    def __init__(self, db: Database, user_id: str = "default"):
        self.db = db
        self.user_id = user_id

    def push(self, action: OfflineAction) -> OfflineAction:
        """Append an action at the tail of the queue."""
        queued_at = action.queued_at or datetime.now()
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            INSERT INTO offline_queue (user_id, action, data, queued_at)
            VALUES (?, ?, ?, ?)
            """,
            (self.user_id, action.action, json.dumps(action.data), queued_at.isoformat()),
        )
        self.db.connection.commit()
        action.id = cursor.lastrowid
        action.queued_at = queued_at
        return action

    def list_all(self) -> list[OfflineAction]:
        """List queued actions head first."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            "SELECT * FROM offline_queue WHERE user_id = ? ORDER BY id",
            (self.user_id,),
        )
        return [
            OfflineAction(
                id=row["id"],
                action=row["action"],
                data=json.loads(row["data"]),
                queued_at=datetime.fromisoformat(row["queued_at"]),
            )
            for row in cursor.fetchall()
        ]

    def remove(self, action_id: int) -> None:
        cursor = self.db.connection.cursor()
        cursor.execute(
            "DELETE FROM offline_queue WHERE id = ? AND user_id = ?",
            (action_id, self.user_id),
        )
        self.db.connection.commit()

    def count(self) -> int:
        cursor = self.db.connection.cursor()
        cursor.execute(
            "SELECT COUNT(*) FROM offline_queue WHERE user_id = ?", (self.user_id,)
        )
        return cursor.fetchone()[0]
