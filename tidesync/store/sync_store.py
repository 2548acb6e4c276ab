"""SQLite persistent store for the offline mutation queue.

Holds four record kinds (queue items, conflict records, pull cursors and the
audit log) plus an optional lease row used to keep more than one process from
draining the same queue at once.

Every status update is a compare-and-set on the row's current state, so a
terminal row can never change again and a repeated update is a no-op.
"""

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any

from ..idempotency import generate_id, now_ms
from .models import (
    AuditLogEntry,
    ConflictRecord,
    Cursor,
    LogLevel,
    MutationOp,
    QueueItem,
    QueueStatus,
)

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000

SCHEMA = """
-- Offline mutation queue; rows are never deleted except by purge
CREATE TABLE IF NOT EXISTS queue (
    id TEXT PRIMARY KEY,
    op TEXT NOT NULL,
    target_type TEXT NOT NULL,
    target_id TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    base_version INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    retries INTEGER NOT NULL DEFAULT 0,
    next_attempt_at INTEGER,
    created_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_queue_status_attempt ON queue(status, next_attempt_at);
CREATE INDEX IF NOT EXISTS idx_queue_target ON queue(target_type, target_id, created_at);

-- Conflict records: one per poisoned queue item, immutable
CREATE TABLE IF NOT EXISTS conflicts (
    id TEXT PRIMARY KEY,
    queue_id TEXT NOT NULL UNIQUE,
    project_id TEXT NOT NULL,
    node_id TEXT NOT NULL,
    base_json TEXT NOT NULL,
    remote_json TEXT NOT NULL,
    local_json TEXT NOT NULL,
    policy TEXT NOT NULL,
    created_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_conflicts_project ON conflicts(project_id);

-- Delta pull cursors, one per sync scope
CREATE TABLE IF NOT EXISTS cursors (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at INTEGER NOT NULL
);

-- Append-only audit trail
CREATE TABLE IF NOT EXISTS logs (
    id TEXT PRIMARY KEY,
    level TEXT NOT NULL,
    message TEXT NOT NULL,
    meta_json TEXT NOT NULL,
    created_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_logs_created ON logs(created_at);

-- Drain leases for multi-process deployments
CREATE TABLE IF NOT EXISTS leases (
    name TEXT PRIMARY KEY,
    holder TEXT NOT NULL,
    expires_at INTEGER NOT NULL
);
"""

_ACTIVE = (QueueStatus.PENDING.value, QueueStatus.RETRYING.value)

_SELECT_DUE = """
SELECT q.* FROM queue q
WHERE q.status IN (?, ?)
  AND (q.next_attempt_at IS NULL OR q.next_attempt_at <= ?)
  AND NOT EXISTS (
      SELECT 1 FROM queue p
      WHERE p.target_type = q.target_type
        AND p.target_id = q.target_id
        AND p.status IN (?, ?)
        AND p.next_attempt_at IS NOT NULL
        AND p.next_attempt_at > ?
        AND (p.created_at < q.created_at
             OR (p.created_at = q.created_at AND p.rowid < q.rowid))
  )
ORDER BY q.created_at ASC, q.rowid ASC
LIMIT ?
"""


class SyncStore:
    """SQLite-backed store for queue items, conflicts, cursors and logs."""

    def __init__(self, db_path: str | Path):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self.db_path = Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Initialize database connection and schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA)
        self._conn.commit()

        logger.info(f"SyncStore connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    # ---- queue ----

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> QueueItem:
        return QueueItem(
            id=row["id"],
            op=MutationOp(row["op"]),
            target_type=row["target_type"],
            target_id=row["target_id"],
            payload_json=row["payload_json"],
            base_version=row["base_version"],
            status=QueueStatus(row["status"]),
            retries=row["retries"],
            next_attempt_at=row["next_attempt_at"],
            created_at=row["created_at"],
        )

    def enqueue(self, item: QueueItem) -> bool:
        """Insert a new queue item.

        An item whose id already exists is ignored, so enqueueing the same
        idempotency key twice never resets an existing row.

        Returns:
            True if the row was inserted.
        """
        conn = self._ensure_connected()

        if not item.created_at:
            item.created_at = now_ms()

        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO queue (
                id, op, target_type, target_id, payload_json, base_version,
                status, retries, next_attempt_at, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                item.id,
                item.op.value,
                item.target_type,
                item.target_id,
                item.payload_json,
                item.base_version,
                item.status.value,
                item.retries,
                item.next_attempt_at,
                item.created_at,
            ),
        )
        conn.commit()

        inserted = cursor.rowcount == 1
        if not inserted:
            logger.debug(f"Queue item {item.id} already exists, not enqueued")
        return inserted

    def get_item(self, item_id: str) -> QueueItem | None:
        conn = self._ensure_connected()
        row = conn.execute("SELECT * FROM queue WHERE id = ?", (item_id,)).fetchone()
        return self._row_to_item(row) if row else None

    def list_items(
        self, status: QueueStatus | None = None, limit: int = 100
    ) -> list[QueueItem]:
        """List queue items in enqueue order."""
        conn = self._ensure_connected()

        if status is None:
            cursor = conn.execute(
                "SELECT * FROM queue ORDER BY created_at ASC, rowid ASC LIMIT ?",
                (limit,),
            )
        else:
            cursor = conn.execute(
                """
                SELECT * FROM queue WHERE status = ?
                ORDER BY created_at ASC, rowid ASC LIMIT ?
                """,
                (status.value, limit),
            )
        return [self._row_to_item(row) for row in cursor]

    def get_due(self, limit: int = 10, now: int | None = None) -> list[QueueItem]:
        """Get pending items and retrying items whose backoff has elapsed.

        Items come back in enqueue order. An item is held back while an
        earlier, still-waiting item targets the same entity.

        Args:
            limit: Maximum items to return.
            now: Current time in epoch ms.

        Returns:
            List of due QueueItem objects, oldest first.
        """
        conn = self._ensure_connected()
        now = now_ms() if now is None else now

        cursor = conn.execute(_SELECT_DUE, (*_ACTIVE, now, *_ACTIVE, now, limit))
        return [self._row_to_item(row) for row in cursor]

    def mark_done(self, item_id: str) -> bool:
        """Move an active item to ``done``. Returns False if not active."""
        conn = self._ensure_connected()
        cursor = conn.execute(
            """
            UPDATE queue SET status = ?, next_attempt_at = NULL
            WHERE id = ? AND status IN (?, ?)
            """,
            (QueueStatus.DONE.value, item_id, *_ACTIVE),
        )
        conn.commit()
        return cursor.rowcount == 1

    def mark_retry(self, item_id: str, previous_retries: int, next_attempt_at: int) -> bool:
        """Record one more failed attempt and schedule the next one.

        The update only applies while the row is active and still carries
        ``previous_retries``, so a duplicate update cannot double count.
        """
        conn = self._ensure_connected()
        cursor = conn.execute(
            """
            UPDATE queue SET status = ?, retries = ?, next_attempt_at = ?
            WHERE id = ? AND status IN (?, ?) AND retries = ?
            """,
            (
                QueueStatus.RETRYING.value,
                previous_retries + 1,
                next_attempt_at,
                item_id,
                *_ACTIVE,
                previous_retries,
            ),
        )
        conn.commit()
        return cursor.rowcount == 1

    def mark_poison(self, item_id: str, retries: int | None = None) -> bool:
        """Move an active item to ``poison``.

        Args:
            item_id: Queue item id.
            retries: Retry count to record; never lowers the stored value.
        """
        conn = self._ensure_connected()
        cursor = conn.execute(
            """
            UPDATE queue
            SET status = ?, next_attempt_at = NULL, retries = MAX(retries, ?)
            WHERE id = ? AND status IN (?, ?)
            """,
            (QueueStatus.POISON.value, retries or 0, item_id, *_ACTIVE),
        )
        conn.commit()
        return cursor.rowcount == 1

    # ---- conflicts ----

    @staticmethod
    def _row_to_conflict(row: sqlite3.Row) -> ConflictRecord:
        return ConflictRecord(
            id=row["id"],
            queue_id=row["queue_id"],
            project_id=row["project_id"],
            node_id=row["node_id"],
            base_json=row["base_json"],
            remote_json=row["remote_json"],
            local_json=row["local_json"],
            policy=row["policy"],
            created_at=row["created_at"],
        )

    def record_conflict(self, conflict: ConflictRecord) -> bool:
        """Write a conflict record and poison its queue item atomically.

        A second record for the same queue item is ignored.

        Returns:
            True if a new conflict record was written.
        """
        conn = self._ensure_connected()

        if not conflict.created_at:
            conflict.created_at = now_ms()

        with conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO conflicts (
                    id, queue_id, project_id, node_id, base_json,
                    remote_json, local_json, policy, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    conflict.id,
                    conflict.queue_id,
                    conflict.project_id,
                    conflict.node_id,
                    conflict.base_json,
                    conflict.remote_json,
                    conflict.local_json,
                    conflict.policy,
                    conflict.created_at,
                ),
            )
            conn.execute(
                """
                UPDATE queue SET status = ?, next_attempt_at = NULL
                WHERE id = ? AND status IN (?, ?)
                  AND EXISTS (SELECT 1 FROM conflicts WHERE queue_id = ?)
                """,
                (QueueStatus.POISON.value, conflict.queue_id, *_ACTIVE, conflict.queue_id),
            )

        return cursor.rowcount == 1

    def get_conflict(self, conflict_id: str) -> ConflictRecord | None:
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT * FROM conflicts WHERE id = ?", (conflict_id,)
        ).fetchone()
        return self._row_to_conflict(row) if row else None

    def get_conflict_for_item(self, queue_id: str) -> ConflictRecord | None:
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT * FROM conflicts WHERE queue_id = ?", (queue_id,)
        ).fetchone()
        return self._row_to_conflict(row) if row else None

    def list_conflicts(
        self, project_id: str | None = None, limit: int = 100
    ) -> list[ConflictRecord]:
        """List conflict records, newest first."""
        conn = self._ensure_connected()

        if project_id is None:
            cursor = conn.execute(
                "SELECT * FROM conflicts ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (limit,),
            )
        else:
            cursor = conn.execute(
                """
                SELECT * FROM conflicts WHERE project_id = ?
                ORDER BY created_at DESC, rowid DESC LIMIT ?
                """,
                (project_id, limit),
            )
        return [self._row_to_conflict(row) for row in cursor]

    # ---- cursors ----

    def get_cursor(self, key: str) -> str | None:
        conn = self._ensure_connected()
        row = conn.execute("SELECT value FROM cursors WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_cursor(self, key: str, value: str, now: int | None = None) -> None:
        conn = self._ensure_connected()
        conn.execute(
            """
            INSERT INTO cursors (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value, updated_at = excluded.updated_at
            """,
            (key, value, now_ms() if now is None else now),
        )
        conn.commit()

    def list_cursors(self) -> list[Cursor]:
        conn = self._ensure_connected()
        cursor = conn.execute("SELECT key, value, updated_at FROM cursors ORDER BY key")
        return [
            Cursor(key=row["key"], value=row["value"], updated_at=row["updated_at"])
            for row in cursor
        ]

    def delete_cursor(self, key: str) -> bool:
        """Forget a cursor so the next pull starts from the beginning."""
        conn = self._ensure_connected()
        cursor = conn.execute("DELETE FROM cursors WHERE key = ?", (key,))
        conn.commit()
        return cursor.rowcount == 1

    # ---- audit log ----

    def add_log(
        self,
        level: LogLevel,
        message: str,
        meta: dict[str, Any] | None = None,
        now: int | None = None,
    ) -> AuditLogEntry:
        """Append an audit log entry."""
        conn = self._ensure_connected()

        entry = AuditLogEntry(
            id=generate_id(),
            level=level,
            message=message,
            meta=meta or {},
            created_at=now_ms() if now is None else now,
        )

        conn.execute(
            """
            INSERT INTO logs (id, level, message, meta_json, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                entry.id,
                entry.level.value,
                entry.message,
                json.dumps(entry.meta, default=str),
                entry.created_at,
            ),
        )
        conn.commit()
        return entry

    def get_logs(
        self, limit: int = 1000, level: LogLevel | None = None
    ) -> list[AuditLogEntry]:
        """Get recent audit entries, newest first."""
        conn = self._ensure_connected()

        if level is None:
            cursor = conn.execute(
                "SELECT * FROM logs ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (limit,),
            )
        else:
            cursor = conn.execute(
                """
                SELECT * FROM logs WHERE level = ?
                ORDER BY created_at DESC, rowid DESC LIMIT ?
                """,
                (level.value, limit),
            )

        return [
            AuditLogEntry(
                id=row["id"],
                level=LogLevel(row["level"]),
                message=row["message"],
                meta=json.loads(row["meta_json"]),
                created_at=row["created_at"],
            )
            for row in cursor
        ]

    def clear_old_logs(self, keep_days: int = 7, now: int | None = None) -> int:
        """Delete audit entries older than ``keep_days``."""
        conn = self._ensure_connected()

        cutoff = (now_ms() if now is None else now) - keep_days * DAY_MS
        cursor = conn.execute("DELETE FROM logs WHERE created_at < ?", (cutoff,))
        conn.commit()

        deleted = cursor.rowcount
        if deleted > 0:
            logger.info(f"Cleaned up {deleted} audit entries older than {keep_days} days")
        return deleted

    def purge_terminal(
        self,
        older_than_days: int = 30,
        now: int | None = None,
        include_poison: bool = False,
    ) -> int:
        """Delete old terminal queue items.

        Poisoned items that own a conflict record are always kept.

        Args:
            older_than_days: Age threshold in days, by enqueue time.
            now: Current time in epoch ms.
            include_poison: Also delete poisoned items without a conflict.

        Returns:
            Number of items deleted.
        """
        conn = self._ensure_connected()

        cutoff = (now_ms() if now is None else now) - older_than_days * DAY_MS
        statuses = [QueueStatus.DONE.value]
        if include_poison:
            statuses.append(QueueStatus.POISON.value)
        placeholders = ",".join("?" * len(statuses))

        cursor = conn.execute(
            f"""
            DELETE FROM queue
            WHERE created_at < ? AND status IN ({placeholders})
              AND id NOT IN (SELECT queue_id FROM conflicts)
            """,
            (cutoff, *statuses),
        )
        conn.commit()

        deleted = cursor.rowcount
        if deleted > 0:
            logger.info(f"Purged {deleted} terminal queue items older than {older_than_days} days")
        return deleted

    # ---- leases ----

    def acquire_lease(
        self, name: str, holder: str, ttl_ms: int, now: int | None = None
    ) -> bool:
        """Take or renew a named lease.

        Succeeds when the lease is free, expired, or already held by
        ``holder``.
        """
        conn = self._ensure_connected()
        now = now_ms() if now is None else now

        cursor = conn.execute(
            """
            INSERT INTO leases (name, holder, expires_at) VALUES (?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
                holder = excluded.holder, expires_at = excluded.expires_at
            WHERE leases.holder = excluded.holder OR leases.expires_at <= ?
            """,
            (name, holder, now + ttl_ms, now),
        )
        conn.commit()
        return cursor.rowcount == 1

    def release_lease(self, name: str, holder: str) -> bool:
        conn = self._ensure_connected()
        cursor = conn.execute(
            "DELETE FROM leases WHERE name = ? AND holder = ?", (name, holder)
        )
        conn.commit()
        return cursor.rowcount == 1

    # ---- stats ----

    def get_stats(self) -> dict[str, Any]:
        """Get store statistics.

        Returns:
            Dictionary with queue counts by status and other totals.
        """
        conn = self._ensure_connected()

        stats: dict[str, Any] = {}

        cursor = conn.execute("SELECT status, COUNT(*) FROM queue GROUP BY status")
        by_status = {status.value: 0 for status in QueueStatus}
        by_status.update({row[0]: row[1] for row in cursor})
        stats["queue_by_status"] = by_status
        stats["queue_total"] = sum(by_status.values())

        stats["conflicts"] = conn.execute("SELECT COUNT(*) FROM conflicts").fetchone()[0]
        stats["log_entries"] = conn.execute("SELECT COUNT(*) FROM logs").fetchone()[0]
        stats["cursors"] = {c.key: c.value for c in self.list_cursors()}

        if self.db_path.exists():
            stats["db_size_mb"] = round(self.db_path.stat().st_size / (1024 * 1024), 2)

        return stats
