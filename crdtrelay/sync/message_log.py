"""Append-only, deduplicated message log backed by SQLite.

Messages are keyed by (timestamp, group_id). Because the canonical timestamp
string is fixed width, ordering by the text column orders by HLC time. Each
group's merkle index is stored next to the messages so both change in the
same transaction.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from .. import clock, merkle
from ..clock import Timestamp
from ..exceptions import StorageError
from ..messages import Message, detag_value, tag_value

logger = logging.getLogger(__name__)

SCHEMA = """
-- Message log: one row per (timestamp, group), never updated
CREATE TABLE IF NOT EXISTS messages (
    timestamp TEXT NOT NULL,
    group_id TEXT NOT NULL,
    dataset TEXT NOT NULL,
    "row" TEXT NOT NULL,
    "column" TEXT NOT NULL,
    value TEXT NOT NULL,
    PRIMARY KEY (timestamp, group_id)
);

CREATE INDEX IF NOT EXISTS idx_messages_group_ts ON messages(group_id, timestamp);

-- Latest merkle index per group
CREATE TABLE IF NOT EXISTS messages_merkles (
    group_id TEXT PRIMARY KEY,
    merkle TEXT NOT NULL
);
"""


class LogTransaction:
    """Operations available inside one ``MessageLog.transaction()``."""

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def append_if_absent(self, message: Message) -> bool:
        """Store a message unless one with the same identity exists.

        Returns:
            True if the row was written, False if it was already present.
            An existing row is never changed.
        """
        cursor = self._conn.execute(
            """
            INSERT INTO messages (timestamp, group_id, dataset, "row", "column", value)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (timestamp, group_id) DO NOTHING
            """,
            (
                clock.to_string(message.timestamp),
                message.group_id,
                message.dataset,
                message.row,
                message.column,
                tag_value(message.value),
            ),
        )
        return cursor.rowcount == 1

    def load_index(self, group_id: str) -> merkle.Index:
        """Get a group's merkle index, or an empty one for a new group."""
        row = self._conn.execute(
            "SELECT merkle FROM messages_merkles WHERE group_id = ?", (group_id,)
        ).fetchone()
        if row is None:
            return merkle.empty_index()
        return merkle.from_json(row["merkle"])

    def save_index(self, group_id: str, index: merkle.Index) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO messages_merkles (group_id, merkle) VALUES (?, ?)",
            (group_id, merkle.to_json(index)),
        )


class MessageLog:
    """Durable message log shared by all requests in the process.

    A single connection is opened at startup. Transactions are serialized
    by an in-process lock and begin with ``BEGIN IMMEDIATE``, which also
    serializes writers across processes sharing the database file.
    """

    def __init__(self, db_path: str | Path, busy_timeout: float = 5.0):
        """Initialize the message log.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
            busy_timeout: Seconds to wait for another process's write lock.
        """
        self.db_path = Path(db_path).expanduser() if str(db_path) != ":memory:" else None
        self.busy_timeout = busy_timeout
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def _target(self) -> str:
        return str(self.db_path) if self.db_path else ":memory:"

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if self.db_path:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(
            self._target,
            timeout=self.busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA)

        logger.info(f"MessageLog connected to {self._target}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            logger.info("MessageLog connection closed")

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure database connection exists."""
        if self._conn is None:
            self.connect()
        return self._conn

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.execute("ROLLBACK")

    @contextmanager
    def transaction(self) -> Iterator[LogTransaction]:
        """Run a block as one write transaction.

        Commits when the block exits normally and rolls back on any
        exception, which is then re-raised (sqlite errors as StorageError).
        """
        with self._lock:
            conn = self._ensure_connected()
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StorageError(f"Could not begin transaction: {e}") from e

            try:
                yield LogTransaction(conn)
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                self._rollback(conn)
                logger.warning(f"Transaction rolled back: {e}")
                raise StorageError(str(e)) from e
            except BaseException:
                self._rollback(conn)
                raise

    def query_after(
        self,
        group_id: str,
        after: Timestamp,
        excluding_replica_id: str | None = None,
        inclusive: bool = False,
    ) -> list[Message]:
        """Get a group's messages newer than a timestamp.

        Args:
            group_id: Group to read.
            after: Only messages with a greater timestamp.
            excluding_replica_id: Skip messages written by this replica.
            inclusive: Also return a message stamped exactly ``after``.

        Returns:
            Messages ordered by timestamp, values decoded.
        """
        op = ">=" if inclusive else ">"
        sql = f"""
            SELECT timestamp, dataset, "row", "column", value
            FROM messages
            WHERE group_id = ? AND timestamp {op} ?
        """
        params: list[Any] = [group_id, clock.to_string(after)]
        if excluding_replica_id is not None:
            # The replica id is the fixed-width tail of the timestamp
            sql += f" AND substr(timestamp, -{clock.REPLICA_ID_LENGTH}) != ?"
            params.append(clock.normalize_replica_id(excluding_replica_id))
        sql += " ORDER BY timestamp ASC"

        with self._lock:
            conn = self._ensure_connected()
            try:
                rows = conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StorageError(str(e)) from e

        return [
            Message(
                timestamp=clock.parse(row["timestamp"]),
                group_id=group_id,
                dataset=row["dataset"],
                row=row["row"],
                column=row["column"],
                value=detag_value(row["value"]),
            )
            for row in rows
        ]

    def get_index(self, group_id: str) -> merkle.Index:
        """Get a group's current merkle index outside a transaction."""
        with self._lock:
            conn = self._ensure_connected()
            return LogTransaction(conn).load_index(group_id)

    def count_messages(self, group_id: str | None = None) -> int:
        """Count stored messages, optionally for one group."""
        with self._lock:
            conn = self._ensure_connected()
            if group_id is None:
                cursor = conn.execute("SELECT COUNT(*) FROM messages")
            else:
                cursor = conn.execute(
                    "SELECT COUNT(*) FROM messages WHERE group_id = ?", (group_id,)
                )
            return cursor.fetchone()[0]

    def get_stats(self) -> dict[str, Any]:
        """Get log statistics.

        Returns:
            Dictionary with message counts per group and database size.
        """
        with self._lock:
            conn = self._ensure_connected()

            stats: dict[str, Any] = {"db_path": self._target}

            cursor = conn.execute("SELECT COUNT(*) FROM messages")
            stats["total_messages"] = cursor.fetchone()[0]

            cursor = conn.execute(
                "SELECT group_id, COUNT(*) FROM messages GROUP BY group_id ORDER BY group_id"
            )
            stats["messages_by_group"] = {row[0]: row[1] for row in cursor}

            cursor = conn.execute("SELECT COUNT(*) FROM messages_merkles")
            stats["groups"] = cursor.fetchone()[0]

        if self.db_path and self.db_path.exists():
            stats["db_size_mb"] = round(self.db_path.stat().st_size / (1024 * 1024), 2)

        return stats
