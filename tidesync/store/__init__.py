"""Persistent store for the offline mutation queue.

Provides the SQLite-backed queue, conflict, cursor and audit log tables
used by the sync worker.
"""

from .models import (
    AuditLogEntry,
    ConflictRecord,
    Cursor,
    LogLevel,
    MutationOp,
    QueueItem,
    QueueStatus,
)
from .sync_store import SyncStore

__all__ = [
    "AuditLogEntry",
    "ConflictRecord",
    "Cursor",
    "LogLevel",
    "MutationOp",
    "QueueItem",
    "QueueStatus",
    "SyncStore",
]
