"""Id and idempotency key generation.

Queue ids double as the remote idempotency key, so they must be unique
across every client that talks to the same server.
"""

import hashlib
import json
import time
import uuid
from typing import Any


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def generate_id() -> str:
    """Generate a unique id of the form ``<epoch-ms>-<random hex>``."""
    return f"{now_ms()}-{uuid.uuid4().hex[:12]}"


def generate_idempotency_key(
    op: str,
    target_type: str,
    target_id: str,
    base_version: int,
    payload: Any,
    salt: str | None = None,
) -> str:
    """Derive a deterministic idempotency key from mutation content.

    Two calls with identical arguments return the same key, so enqueueing
    the same logical mutation twice is detected by the queue's primary key.

    Args:
        op: Mutation operation.
        target_type: Type of the target entity.
        target_id: Id of the target entity.
        base_version: Version the mutation was based on.
        payload: JSON-serializable mutation payload.
        salt: Optional extra discriminator (e.g. a conflict id).

    Returns:
        SHA-256 hex digest.
    """
    data = json.dumps(
        {
            "op": op,
            "targetType": target_type,
            "targetId": target_id,
            "baseVersion": base_version,
            "payload": payload,
            "salt": salt,
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(data.encode("utf-8")).hexdigest()
