"""
SQLite database connection and schema management.
"""

import sqlite3
from pathlib import Path
from typing import Optional


class Database:
    """SQLite database connection manager."""

    def __init__(self, db_path: str):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file, or ":memory:" for in-memory DB.
        """
        self.db_path = db_path
        self._connection: Optional[sqlite3.Connection] = None
        self._connect()

    def _connect(self) -> None:
        """Establish database connection."""
        if self.db_path != ":memory:":
            # Ensure parent directory exists
            path = Path(self.db_path)
            path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = sqlite3.connect(self.db_path)
        self._connection.row_factory = sqlite3.Row

    @property
    def connection(self) -> sqlite3.Connection:
        """Get the database connection."""
        if self._connection is None:
            raise sqlite3.ProgrammingError("Database connection is closed")
        return self._connection

    def initialize(self) -> None:
        """Create database schema if it doesn't exist."""
        cursor = self.connection.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS alerts (
                id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                name TEXT,
                coin_id TEXT NOT NULL,
                coin_symbol TEXT NOT NULL,
                type TEXT NOT NULL,
                target_value REAL NOT NULL,
                direction TEXT,
                average_volume REAL,
                status TEXT NOT NULL,
                repeat_option TEXT NOT NULL,
                notification_channels TEXT NOT NULL,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL,
                triggered_at TIMESTAMP,
                triggered_data TEXT,
                expires_at TIMESTAMP,
                PRIMARY KEY (user_id, id)
            )
        """)

        # History outlives the alert it came from, so no foreign key
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS alert_history (
                id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                alert_id TEXT NOT NULL,
                coin_id TEXT NOT NULL,
                coin_symbol TEXT NOT NULL,
                type TEXT NOT NULL,
                target_value REAL NOT NULL,
                direction TEXT,
                triggered_at TIMESTAMP NOT NULL,
                price REAL,
                volume REAL,
                market_cap REAL,
                PRIMARY KEY (user_id, id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS notifications (
                id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                type TEXT NOT NULL,
                status TEXT NOT NULL,
                timestamp TIMESTAMP NOT NULL,
                payload TEXT NOT NULL,
                PRIMARY KEY (user_id, id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS notification_preferences (
                user_id TEXT PRIMARY KEY,
                payload TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS offline_queue (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                action TEXT NOT NULL,
                data TEXT NOT NULL,
                queued_at TIMESTAMP NOT NULL
            )
        """)

        # Create indexes for common queries
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_alerts_user_status
            ON alerts(user_id, status)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_alerts_user_coin ON alerts(user_id, coin_id)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_history_user_triggered
            ON alert_history(user_id, triggered_at)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_notifications_user_timestamp
            ON notifications(user_id, timestamp)
        """)

        self.connection.commit()

    def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            self._connection.close()
            self._connection = None
