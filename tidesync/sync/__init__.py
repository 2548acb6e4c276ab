"""Offline sync engine.

Replays queued local mutations against the remote store with retry and
backoff, records version conflicts, and pulls remote changes through a
resumable cursor.
"""

from .outbox import enqueue_mutation, quarantine_item, requeue_item, resolve_conflict
from .scheduler import (
    SYNC_TASK_NAME,
    AsyncioScheduler,
    BackgroundScheduler,
    register_background_sync,
    unregister_background_sync,
)
from .worker import CycleResult, DrainResult, PullResult, SyncStatus, SyncWorker

__all__ = [
    "AsyncioScheduler",
    "BackgroundScheduler",
    "CycleResult",
    "DrainResult",
    "PullResult",
    "SYNC_TASK_NAME",
    "SyncStatus",
    "SyncWorker",
    "enqueue_mutation",
    "quarantine_item",
    "register_background_sync",
    "requeue_item",
    "resolve_conflict",
    "unregister_background_sync",
]
