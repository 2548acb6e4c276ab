"""Sync worker: replays the offline mutation queue and pulls remote deltas.

Queue items move pending -> (retrying)* -> done | poison:

- success marks the item ``done``;
- a version conflict writes a ConflictRecord and marks it ``poison``;
  conflicts are never retried;
- any other failure counts against ``max_retries`` with exponential backoff
  (``base_delay_ms * 2**retries``) and poisons the item at the ceiling.

Every decision is written to the store's audit log as well as to process
logging. None of the public entry points raise.
"""

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable

from ..config import SyncConfig
from ..idempotency import generate_id, now_ms
from ..payloads import QueuePayload
from ..remote.base import (
    ChangesRequest,
    ConflictInfo,
    MalformedResponseError,
    MutationRequest,
    RemoteRejectedError,
    RemoteSyncClient,
    TransientSyncError,
)
from ..store import ConflictRecord, LogLevel, QueueItem, SyncStore

logger = logging.getLogger(__name__)

LEASE_NAME = "sync-drain"

ChangeHandler = Callable[[list[Any], str | None], Awaitable[None] | None]

_PY_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class SyncStatus(Enum):
    """Outcome of a drain, pull or full cycle."""

    SUCCESS = "success"
    PARTIAL = "partial"  # Some items retried, poisoned or conflicted
    FAILED = "failed"
    SKIPPED = "skipped"  # Another process holds the drain lease


class Outcome(Enum):
    """What happened to one queue item in a drain."""

    DONE = "done"
    CONFLICT = "conflict"
    RETRYING = "retrying"
    POISON = "poison"


@dataclass
class DrainResult:
    """Counters for one drain pass."""

    selected: int = 0
    succeeded: int = 0
    conflicted: int = 0
    retried: int = 0
    poisoned: int = 0
    deferred: int = 0
    error: str | None = None

    @property
    def status(self) -> SyncStatus:
        if self.error:
            return SyncStatus.FAILED
        if self.conflicted or self.retried or self.poisoned or self.deferred:
            return SyncStatus.PARTIAL
        return SyncStatus.SUCCESS


@dataclass
class PullResult:
    """Result of one delta pull."""

    status: SyncStatus
    cursor_key: str
    changes_pulled: int = 0
    cursor: str | None = None
    error: str | None = None


@dataclass
class CycleResult:
    """Result of a full drain-then-pull cycle."""

    status: SyncStatus
    drain: DrainResult | None = None
    pull: PullResult | None = None
    timestamp: datetime = field(default_factory=datetime.now)


class SyncWorker:
    """Drains the mutation queue and pulls remote changes.

    One instance per process. Calls are serialized by an in-process lock;
    with ``lease_enabled`` a store lease also keeps other processes from
    running a cycle against the same store at the same time.
    """

    def __init__(
        self,
        store: SyncStore,
        remote: RemoteSyncClient,
        config: SyncConfig | None = None,
        clock: Callable[[], int] = now_ms,
        request_timeout: float = 30.0,
        change_handler: ChangeHandler | None = None,
        holder_id: str | None = None,
    ):
        """Initialize the worker.

        Args:
            store: Persistent store holding the queue.
            remote: Client for the remote sync service.
            config: Retry, batch and lease settings.
            clock: Returns the current time in epoch ms.
            request_timeout: Seconds allowed for each remote call.
            change_handler: Optional callable receiving pulled changes before
                the cursor advances. If it raises, the cursor stays put.
            holder_id: Lease holder identity; generated when omitted.
        """
        self.store = store
        self.remote = remote
        self.config = config or SyncConfig()
        self.request_timeout = request_timeout
        self.change_handler = change_handler
        self.holder_id = holder_id or generate_id()
        self._clock = clock
        self._lock = asyncio.Lock()
        self._last_cycle: datetime | None = None

    @staticmethod
    def cursor_key(scope_id: str | None = None) -> str:
        """Cursor key for a sync scope."""
        return f"delta:project:{scope_id}" if scope_id else "delta:global"

    def backoff_delay_ms(self, retries: int) -> int:
        """Delay before the next attempt after ``retries`` failures."""
        return self.config.base_delay_ms * (2**retries)

    def _audit(self, level: LogLevel, message: str, **meta: Any) -> None:
        """Write to the durable audit log and to process logging."""
        logger.log(_PY_LEVELS[level], message, extra={"audit_meta": meta})
        self.store.add_log(level, f"[SyncWorker] {message}", meta, now=self._clock())

    # ---- queue drain ----

    async def drain_queue(self) -> DrainResult:
        """Replay up to ``batch_size`` due queue items in enqueue order.

        Runs without the drain lease; use :meth:`run_sync` when several
        processes share the store.
        """
        async with self._lock:
            return await self._drain_queue()

    async def _drain_queue(self, holds_lease: bool = False) -> DrainResult:
        result = DrainResult()

        try:
            items = self.store.get_due(self.config.batch_size, now=self._clock())
            self._audit(LogLevel.INFO, f"Draining queue: {len(items)} items", count=len(items))
        except Exception as e:
            logger.error(f"Could not read due queue items: {e}", exc_info=True)
            result.error = str(e)
            return result

        result.selected = len(items)

        # Entities whose earlier edit failed in this batch; later edits wait
        blocked: set[tuple[str, str]] = set()

        for index, item in enumerate(items):
            target = (item.target_type, item.target_id)
            if target in blocked:
                result.deferred += 1
                logger.debug(f"Deferring {item.id}: earlier edit to {target} not applied")
                continue

            if holds_lease and not self._renew_lease():
                # Rows left untouched are picked up by whoever holds the lease
                result.deferred += len(items) - index
                logger.warning(
                    f"Drain lease lost, stopping batch with {len(items) - index} items left"
                )
                break

            try:
                outcome = await self._process_item(item)
            except Exception as e:
                # Row keeps its pre-attempt state and is picked up next cycle
                logger.error(f"Failed to record outcome for {item.id}: {e}", exc_info=True)
                blocked.add(target)
                result.deferred += 1
                continue

            if outcome is Outcome.DONE:
                result.succeeded += 1
            elif outcome is Outcome.CONFLICT:
                result.conflicted += 1
            elif outcome is Outcome.RETRYING:
                result.retried += 1
                blocked.add(target)
            else:
                result.poisoned += 1

        return result

    async def _process_item(self, item: QueueItem) -> Outcome:
        """Send one item to the remote and record what happened."""
        try:
            payload = item.payload
            request = MutationRequest(
                op=item.op.value,
                target_type=item.target_type,
                target_id=item.target_id,
                payload=payload.to_wire(),
                base_version=item.base_version,
                idempotency_key=item.id,
            )
            response = await asyncio.wait_for(
                self.remote.mutate(request), timeout=self.request_timeout
            )
        except asyncio.TimeoutError:
            return self._handle_failure(
                item, "transient", f"Timed out after {self.request_timeout}s"
            )
        except TransientSyncError as e:
            return self._handle_failure(item, "transient", str(e))
        except RemoteRejectedError as e:
            return self._handle_failure(item, "rejected", str(e))
        except (MalformedResponseError, ValueError) as e:
            logger.error(f"Malformed data for {item.id}: {e}")
            return self._handle_failure(item, "malformed", str(e))
        except Exception as e:
            logger.error(f"Unexpected error for {item.id}: {e}", exc_info=True)
            return self._handle_failure(item, "malformed", f"{type(e).__name__}: {e}")

        if response.success:
            return self._handle_success(item)
        if response.conflict is not None:
            return self._handle_conflict(item, payload, response.conflict)
        return self._handle_failure(item, "rejected", response.error or "Unknown error")

    def _handle_success(self, item: QueueItem) -> Outcome:
        if not self.store.mark_done(item.id):
            logger.debug(f"{item.id} was already terminal")
        self._audit(
            LogLevel.INFO,
            f"Success: {item.id}",
            id=item.id,
            op=item.op.value,
            target=f"{item.target_type}/{item.target_id}",
        )
        return Outcome.DONE

    def _handle_conflict(
        self, item: QueueItem, payload: QueuePayload, conflict: ConflictInfo
    ) -> Outcome:
        record = ConflictRecord(
            id=generate_id(),
            queue_id=item.id,
            project_id=payload.conflict_project_id() or item.target_id,
            node_id=item.target_id,
            base_json=json.dumps(conflict.base),
            remote_json=json.dumps(conflict.remote),
            local_json=json.dumps(payload.to_wire()),
            policy=conflict.policy,
            created_at=self._clock(),
        )
        if not self.store.record_conflict(record):
            existing = self.store.get_conflict_for_item(item.id)
            record = existing or record

        self._audit(
            LogLevel.WARN,
            f"Conflict: {item.id}",
            id=item.id,
            conflict_id=record.id,
            policy=record.policy,
            target=f"{item.target_type}/{item.target_id}",
        )
        return Outcome.CONFLICT

    def _handle_failure(self, item: QueueItem, failure: str, error: str) -> Outcome:
        """Count a failed attempt against the retry ceiling."""
        retries = item.retries + 1
        now = self._clock()

        if retries >= self.config.max_retries:
            self.store.mark_poison(item.id, retries)
            self._audit(
                LogLevel.ERROR,
                f"Max retries: {item.id}",
                id=item.id,
                op=item.op.value,
                target=f"{item.target_type}/{item.target_id}",
                payload=item.payload_json,
                error=error,
                failure=failure,
                retries=retries,
                created_at=item.created_at,
                failed_at=now,
            )
            return Outcome.POISON

        next_attempt = now + self.backoff_delay_ms(retries)
        if not self.store.mark_retry(item.id, item.retries, next_attempt):
            logger.debug(f"{item.id} changed concurrently, retry not recorded")
        self._audit(
            LogLevel.WARN,
            f"Retry {retries}: {item.id}",
            id=item.id,
            retries=retries,
            next_attempt_at=next_attempt,
            error=error,
            failure=failure,
        )
        return Outcome.RETRYING

    # ---- delta pull ----

    async def pull_changes(self, scope_id: str | None = None) -> PullResult:
        """Pull remote changes since the stored cursor for a scope.

        The cursor advances only when the whole round trip succeeds.
        """
        async with self._lock:
            return await self._pull_changes(scope_id)

    async def _pull_changes(self, scope_id: str | None) -> PullResult:
        key = self.cursor_key(scope_id)
        since: str | None = None

        try:
            since = self.store.get_cursor(key) or "0"
            response = await asyncio.wait_for(
                self.remote.changes(ChangesRequest(since=since, project_id=scope_id)),
                timeout=self.request_timeout,
            )

            if self.change_handler is not None:
                handled = self.change_handler(response.changes, scope_id)
                if inspect.isawaitable(handled):
                    await handled

            self.store.set_cursor(key, response.cursor, now=self._clock())
            self._audit(
                LogLevel.INFO,
                f"Pulled changes: {len(response.changes)}",
                count=len(response.changes),
                cursor=response.cursor,
                scope=key,
            )
        except Exception as e:
            error = (
                f"Timed out after {self.request_timeout}s"
                if isinstance(e, asyncio.TimeoutError)
                else f"{type(e).__name__}: {e}"
            )
            try:
                self._audit(LogLevel.ERROR, "Pull failed", error=error, scope=key, since=since)
            except Exception as log_error:
                logger.error(f"Could not write pull failure to audit log: {log_error}")
            return PullResult(status=SyncStatus.FAILED, cursor_key=key, cursor=since, error=error)

        return PullResult(
            status=SyncStatus.SUCCESS,
            cursor_key=key,
            changes_pulled=len(response.changes),
            cursor=response.cursor,
        )

    # ---- full cycle ----

    async def run_sync(self, scope_id: str | None = None) -> CycleResult:
        """Drain the queue, then pull remote changes.

        Args:
            scope_id: Project scope to pull; defaults to the configured scope.
        """
        if scope_id is None:
            scope_id = self.config.scope_id

        async with self._lock:
            if self.config.lease_enabled and not self._acquire_lease():
                try:
                    self._audit(LogLevel.INFO, "Sync skipped: lease held by another process")
                except Exception as e:
                    logger.error(f"Could not write skip to audit log: {e}")
                return CycleResult(status=SyncStatus.SKIPPED)

            try:
                drain = await self._drain_queue(holds_lease=self.config.lease_enabled)
                pull = await self._pull_changes(scope_id)
            finally:
                if self.config.lease_enabled:
                    self._release_lease()

        self._last_cycle = datetime.now()

        if drain.status is SyncStatus.SUCCESS and pull.status is SyncStatus.SUCCESS:
            status = SyncStatus.SUCCESS
        elif drain.status is SyncStatus.FAILED and pull.status is SyncStatus.FAILED:
            status = SyncStatus.FAILED
        else:
            status = SyncStatus.PARTIAL

        return CycleResult(status=status, drain=drain, pull=pull, timestamp=self._last_cycle)

    # ---- lease ----

    def _acquire_lease(self) -> bool:
        try:
            return self.store.acquire_lease(
                LEASE_NAME,
                self.holder_id,
                self.config.lease_ttl_seconds * 1000,
                now=self._clock(),
            )
        except Exception as e:
            logger.error(f"Could not acquire drain lease: {e}", exc_info=True)
            return False

    def _renew_lease(self) -> bool:
        if not self._acquire_lease():
            logger.warning("Drain lease could not be renewed")
            return False
        return True

    def _release_lease(self) -> None:
        try:
            self.store.release_lease(LEASE_NAME, self.holder_id)
        except Exception as e:
            logger.error(f"Could not release drain lease: {e}")

    # ---- status ----

    @property
    def last_cycle(self) -> datetime | None:
        """Time the last full cycle finished."""
        return self._last_cycle

    def get_sync_status(self) -> dict[str, Any]:
        """Get current sync status.

        Returns:
            Dictionary with queue counts, conflicts and cursors.
        """
        stats = self.store.get_stats()
        return {
            "last_cycle": self._last_cycle.isoformat() if self._last_cycle else None,
            "queue": stats["queue_by_status"],
            "conflicts": stats["conflicts"],
            "cursors": stats["cursors"],
            "max_retries": self.config.max_retries,
            "batch_size": self.config.batch_size,
        }
