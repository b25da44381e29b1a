"""
SQLite database connection and schema management.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from alertflow.errors import PersistenceFailure

logger = logging.getLogger(__name__)


class Database:
    """SQLite database connection manager.

    A single connection is shared between worker threads. Every statement runs
    inside ``transaction()``, which serializes access with a re-entrant lock.
    Nested ``transaction()`` blocks join the outermost one, which alone commits
    or rolls back.
    """

    def __init__(self, db_path: str):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file, or ":memory:" for in-memory DB.
        """
        self.db_path = db_path
        self._connection: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._depth = 0
        self._connect()

    def _connect(self) -> None:
        """Establish database connection."""
        if self.db_path != ":memory:":
            # Ensure parent directory exists
            path = Path(self.db_path)
            path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = sqlite3.connect(self.db_path, check_same_thread=False)
        self._connection.row_factory = sqlite3.Row
        # Enable foreign keys
        self._connection.execute("PRAGMA foreign_keys = ON")

    @property
    def connection(self) -> sqlite3.Connection:
        """Get the database connection."""
        if self._connection is None:
            raise PersistenceFailure("Database connection is closed")
        return self._connection

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block of statements atomically.

        Raises:
            PersistenceFailure: If SQLite reports an error inside the block
        """
        with self._lock:
            conn = self.connection
            self._depth += 1
            try:
                yield conn
            except sqlite3.Error as e:
                if self._depth == 1:
                    conn.rollback()
                raise PersistenceFailure(str(e)) from e
            except BaseException:
                if self._depth == 1:
                    conn.rollback()
                raise
            else:
                if self._depth == 1:
                    try:
                        conn.commit()
                    except sqlite3.Error as e:
                        conn.rollback()
                        raise PersistenceFailure(str(e)) from e
            finally:
                self._depth -= 1

    def initialize(self) -> None:
        """Create database schema if it doesn't exist."""
        with self.transaction() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS alert_rules (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    owner_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT,
                    rule_type TEXT NOT NULL,
                    condition TEXT NOT NULL,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    channels TEXT NOT NULL DEFAULT '[]',
                    cooldown_minutes INTEGER NOT NULL DEFAULT 60,
                    priority TEXT NOT NULL DEFAULT 'medium',
                    expires_at TEXT,
                    last_triggered TEXT,
                    trigger_count INTEGER NOT NULL DEFAULT 0,
                    last_checked TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS alerts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    alert_id TEXT NOT NULL UNIQUE,
                    owner_id TEXT NOT NULL,
                    rule_id INTEGER,
                    alert_type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    triggered_at TEXT,
                    triggered_value TEXT,
                    threshold TEXT,
                    condition TEXT,
                    symbol TEXT,
                    metric TEXT,
                    message TEXT NOT NULL,
                    severity TEXT NOT NULL DEFAULT 'medium',
                    expires_at TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS alert_receipts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    alert_id TEXT NOT NULL,
                    channel TEXT NOT NULL,
                    notification_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    sent_at TEXT NOT NULL,
                    FOREIGN KEY (alert_id) REFERENCES alerts(alert_id) ON DELETE CASCADE
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    notification_id TEXT NOT NULL UNIQUE,
                    owner_id TEXT NOT NULL,
                    alert_id TEXT,
                    channel TEXT NOT NULL,
                    status TEXT NOT NULL,
                    subject TEXT,
                    message TEXT NOT NULL,
                    template TEXT,
                    template_data TEXT NOT NULL DEFAULT '{}',
                    recipient TEXT NOT NULL,
                    priority TEXT NOT NULL DEFAULT 'medium',
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    max_retries INTEGER NOT NULL DEFAULT 3,
                    next_retry_at TEXT,
                    sent_at TEXT,
                    delivered_at TEXT,
                    failed_at TEXT,
                    failure_reason TEXT,
                    is_read INTEGER NOT NULL DEFAULT 0,
                    read_at TEXT,
                    provider TEXT,
                    provider_message_id TEXT,
                    provider_response TEXT,
                    claimed_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS notification_preferences (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    owner_id TEXT NOT NULL UNIQUE,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    channels TEXT NOT NULL,
                    alert_types TEXT NOT NULL,
                    quiet_hours TEXT NOT NULL,
                    daily_summary TEXT NOT NULL,
                    weekly_summary TEXT NOT NULL,
                    limits TEXT NOT NULL,
                    unsubscribe_token TEXT NOT NULL,
                    unsubscribed_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS webhooks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    webhook_id TEXT NOT NULL UNIQUE,
                    owner_id TEXT NOT NULL,
                    url TEXT NOT NULL,
                    events TEXT NOT NULL,
                    secret TEXT,
                    headers TEXT NOT NULL DEFAULT '{}',
                    active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            # Create indexes for common queries
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_rules_type_enabled
                ON alert_rules(rule_type, enabled)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_rules_owner ON alert_rules(owner_id)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_alerts_owner_status
                ON alerts(owner_id, status)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_alerts_created ON alerts(created_at)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_receipts_alert ON alert_receipts(alert_id)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_notifications_owner_status
                ON notifications(owner_id, status)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_notifications_status_priority
                ON notifications(status, priority)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_notifications_created
                ON notifications(created_at)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_webhooks_owner ON webhooks(owner_id)
            """)

        logger.debug(f"Database schema ready at {self.db_path}")

    def ping(self) -> bool:
        """Check that the database answers a trivial query."""
        with self.transaction() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
