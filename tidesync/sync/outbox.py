"""Entry points that put work into the mutation queue.

Local edits enter through :func:`enqueue_mutation`. Poisoned items and
conflicts are never revived in place; the workflows here enqueue a fresh
item instead, so the terminal row stays as an audit record.
"""

import json
import logging
from typing import Any, Callable

from ..idempotency import generate_id, generate_idempotency_key, now_ms
from ..payloads import QueuePayload, build_payload, encode_payload
from ..store import LogLevel, MutationOp, QueueItem, QueueStatus, SyncStore

logger = logging.getLogger(__name__)


def enqueue_mutation(
    store: SyncStore,
    op: str | MutationOp,
    target_type: str,
    target_id: str,
    payload: QueuePayload | Any,
    base_version: int,
    clock: Callable[[], int] = now_ms,
    item_id: str | None = None,
) -> QueueItem:
    """Record a local edit for later replay.

    Args:
        store: Store holding the queue.
        op: "create", "update" or "delete".
        target_type: Type of the edited entity.
        target_id: Id of the edited entity.
        payload: A QueuePayload, or a plain wire body to wrap.
        base_version: Version the edit was made against.
        clock: Returns the current time in epoch ms.
        item_id: Explicit id; a fresh unique id is generated when omitted.

    Returns:
        The stored QueueItem (the existing row if ``item_id`` was already queued).

    Raises:
        ValueError: Unknown op.
    """
    op = MutationOp(op) if not isinstance(op, MutationOp) else op

    if not isinstance(payload, QueuePayload):
        payload = build_payload(target_type, op.value, payload)

    item = QueueItem(
        id=item_id or generate_id(),
        op=op,
        target_type=target_type,
        target_id=target_id,
        payload_json=encode_payload(payload),
        base_version=base_version,
        status=QueueStatus.PENDING,
        created_at=clock(),
    )

    if not store.enqueue(item):
        existing = store.get_item(item.id)
        if existing is not None:
            return existing

    logger.debug(f"Enqueued {item.op.value} {target_type}/{target_id} as {item.id}")
    return item


def quarantine_item(store: SyncStore, item_id: str) -> QueueItem:
    """Manually poison a pending or retrying item.

    Raises:
        KeyError: No such item.
        ValueError: The item is already terminal.
    """
    item = store.get_item(item_id)
    if item is None:
        raise KeyError(f"Queue item {item_id} not found")
    if not store.mark_poison(item_id):
        raise ValueError(f"Queue item {item_id} is already {item.status.value}")

    store.add_log(LogLevel.WARN, f"[Outbox] Quarantined: {item_id}", {"id": item_id})
    return store.get_item(item_id)


def requeue_item(store: SyncStore, item_id: str, clock: Callable[[], int] = now_ms) -> QueueItem:
    """Enqueue a fresh copy of a poisoned item.

    Items poisoned by a conflict must go through :func:`resolve_conflict`.

    Raises:
        KeyError: No such item.
        ValueError: The item is not poisoned, or it has a conflict record.
    """
    item = store.get_item(item_id)
    if item is None:
        raise KeyError(f"Queue item {item_id} not found")
    if item.status is not QueueStatus.POISON:
        raise ValueError(f"Only poisoned items can be requeued, {item_id} is {item.status.value}")
    if store.get_conflict_for_item(item_id) is not None:
        raise ValueError(f"Queue item {item_id} has a conflict record; resolve the conflict instead")

    fresh = QueueItem(
        id=generate_id(),
        op=item.op,
        target_type=item.target_type,
        target_id=item.target_id,
        payload_json=item.payload_json,
        base_version=item.base_version,
        created_at=clock(),
    )
    store.enqueue(fresh)
    store.add_log(
        LogLevel.INFO,
        f"[Outbox] Requeued: {item_id} as {fresh.id}",
        {"id": fresh.id, "requeued_from": item_id},
    )
    return fresh


def resolve_conflict(
    store: SyncStore,
    conflict_id: str,
    resolution: str | dict[str, Any],
    base_version: int,
    clock: Callable[[], int] = now_ms,
) -> QueueItem:
    """Enqueue the outcome of a manual conflict resolution.

    The conflict record and its poisoned item are left untouched. Resolving
    the same conflict twice with the same content enqueues only once.

    Args:
        store: Store holding the queue.
        conflict_id: Conflict to resolve.
        resolution: "local" to keep our edit, "remote" to keep the server's
            value, or a replacement payload body.
        base_version: Server version the resolution is based on.
        clock: Returns the current time in epoch ms.

    Raises:
        KeyError: No such conflict.
    """
    conflict = store.get_conflict(conflict_id)
    if conflict is None:
        raise KeyError(f"Conflict {conflict_id} not found")

    original = store.get_item(conflict.queue_id)
    target_type = original.target_type if original else "node"

    # local_json and remote_json both hold wire bodies
    if resolution == "local":
        body = json.loads(conflict.local_json)
    elif resolution == "remote":
        body = json.loads(conflict.remote_json)
    else:
        body = resolution
    payload_json = encode_payload(build_payload(target_type, MutationOp.UPDATE.value, body))

    item_id = generate_idempotency_key(
        MutationOp.UPDATE.value,
        target_type,
        conflict.node_id,
        base_version,
        json.loads(payload_json),
        salt=conflict_id,
    )
    item = QueueItem(
        id=item_id,
        op=MutationOp.UPDATE,
        target_type=target_type,
        target_id=conflict.node_id,
        payload_json=payload_json,
        base_version=base_version,
        created_at=clock(),
    )

    if not store.enqueue(item):
        logger.info(f"Conflict {conflict_id} already resolved as {item_id}")
        return store.get_item(item_id)

    store.add_log(
        LogLevel.INFO,
        f"[Outbox] Conflict resolved: {conflict_id}",
        {
            "conflict_id": conflict_id,
            "queue_id": conflict.queue_id,
            "id": item_id,
            "resolution": resolution if isinstance(resolution, str) else "custom",
        },
    )
    return item
