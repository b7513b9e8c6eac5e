# history/sqlite_store.py

import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path

from history.models import (
    InstanceRecord,
    PersistenceError,
    PollingEvent,
    ScalingEvent,
    format_timestamp,
    parse_timestamp,
)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS instances (
        instance_key TEXT PRIMARY KEY,
        project_id TEXT NOT NULL,
        instance_name TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS polling_events (
        instance_key TEXT NOT NULL REFERENCES instances (instance_key),
        polling_event_id TEXT NOT NULL,
        event_timestamp TEXT NOT NULL,
        metrics TEXT NOT NULL,
        PRIMARY KEY (instance_key, polling_event_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS scaling_events (
        instance_key TEXT NOT NULL REFERENCES instances (instance_key),
        scaling_event_id TEXT NOT NULL,
        event_timestamp TEXT NOT NULL,
        action TEXT NOT NULL,
        nodes_before INTEGER,
        nodes_after INTEGER NOT NULL,
        PRIMARY KEY (instance_key, scaling_event_id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS scaling_events_by_time
        ON scaling_events (instance_key, event_timestamp DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS instance_locks (
        instance_key TEXT PRIMARY KEY,
        owner TEXT NOT NULL,
        expires_at TEXT NOT NULL
    )
    """,
]


class SQLiteHistoryStore:
    """
    Durable history of polling and scaling events.

    The latest scaling event per instance is the debounce state for the
    rebalance guard, so it must survive process restarts. Every write runs in
    its own ``BEGIN IMMEDIATE`` transaction together with the lazy creation of
    the instance row.

    Several autoscaler processes may share one database file; the
    ``instance_locks`` leases keep their applies to one instance serialised.
    """

    def __init__(self, db_path: str, timeout: float = 30.0) -> None:
        self.db_path = db_path
        self.timeout = timeout
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @contextmanager
    def _connect(self):
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open history database {self.db_path}: {e}") from e
        try:
            yield conn
        except sqlite3.Error as e:
            raise PersistenceError(f"History database error: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def _transaction(self):
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _init_schema(self) -> None:
        with self._transaction() as conn:
            for statement in SCHEMA:
                conn.execute(statement)
        logging.info(f"History database ready at {self.db_path}")

    @staticmethod
    def _ensure_instance(conn: sqlite3.Connection, instance: InstanceRecord) -> None:
        conn.execute(
            "INSERT OR IGNORE INTO instances (instance_key, project_id, instance_name) VALUES (?, ?, ?)",
            (str(instance.instance_key), instance.project_id, instance.instance_name),
        )

    def exists_instance(self, instance_key: uuid.UUID) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM instances WHERE instance_key = ?", (str(instance_key),)
            ).fetchone()
        return row is not None

    def create_instance(self, instance: InstanceRecord) -> None:
        with self._transaction() as conn:
            self._ensure_instance(conn, instance)

    def save_polling_event(self, instance: InstanceRecord, event: PollingEvent) -> None:
        with self._transaction() as conn:
            self._ensure_instance(conn, instance)
            conn.execute(
                """
                INSERT INTO polling_events (instance_key, polling_event_id, event_timestamp, metrics)
                VALUES (?, ?, ?, ?)
                """,
                (
                    str(event.instance_key),
                    str(event.polling_event_id),
                    format_timestamp(event.event_timestamp),
                    event.metrics,
                ),
            )

    def save_scaling_event(self, instance: InstanceRecord, event: ScalingEvent) -> None:
        with self._transaction() as conn:
            self._ensure_instance(conn, instance)
            conn.execute(
                """
                INSERT INTO scaling_events (
                    instance_key, scaling_event_id, event_timestamp, action, nodes_before, nodes_after
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    str(event.instance_key),
                    str(event.scaling_event_id),
                    format_timestamp(event.event_timestamp),
                    event.action,
                    event.nodes_before,
                    event.nodes_after,
                ),
            )

    def latest_scaling_event(self, instance_key: uuid.UUID) -> ScalingEvent | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT instance_key, scaling_event_id, event_timestamp, action, nodes_before, nodes_after
                FROM scaling_events
                WHERE instance_key = ?
                ORDER BY event_timestamp DESC
                LIMIT 1
                """,
                (str(instance_key),),
            ).fetchone()
        return self._scaling_event(row) if row else None

    def scaling_events(self, instance_key: uuid.UUID) -> list[ScalingEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT instance_key, scaling_event_id, event_timestamp, action, nodes_before, nodes_after
                FROM scaling_events
                WHERE instance_key = ?
                ORDER BY event_timestamp
                """,
                (str(instance_key),),
            ).fetchall()
        return [self._scaling_event(row) for row in rows]

    def acquire_instance_lock(self, instance_key: uuid.UUID, owner: str, now: datetime, lease: timedelta) -> bool:
        """
        Take or renew the lease on an instance. Returns False while another
        owner holds an unexpired lease.
        """
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT owner, expires_at FROM instance_locks WHERE instance_key = ?", (str(instance_key),)
            ).fetchone()
            if row is not None and row[0] != owner and parse_timestamp(row[1]) > now:
                return False
            conn.execute(
                "INSERT OR REPLACE INTO instance_locks (instance_key, owner, expires_at) VALUES (?, ?, ?)",
                (str(instance_key), owner, format_timestamp(now + lease)),
            )
        return True

    def release_instance_lock(self, instance_key: uuid.UUID, owner: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "DELETE FROM instance_locks WHERE instance_key = ? AND owner = ?", (str(instance_key), owner)
            )

    def polling_event_count(self, instance_key: uuid.UUID) -> int:
        with self._connect() as conn:
            (count,) = conn.execute(
                "SELECT COUNT(*) FROM polling_events WHERE instance_key = ?", (str(instance_key),)
            ).fetchone()
        return count

    @staticmethod
    def _scaling_event(row) -> ScalingEvent:
        instance_key, event_id, timestamp, action, nodes_before, nodes_after = row
        return ScalingEvent(
            instance_key=uuid.UUID(instance_key),
            scaling_event_id=uuid.UUID(event_id),
            event_timestamp=parse_timestamp(timestamp),
            action=action,
            nodes_before=nodes_before,
            nodes_after=nodes_after,
        )
