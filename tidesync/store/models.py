"""Row types for the persistent sync store."""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..payloads import QueuePayload, decode_payload


class MutationOp(Enum):
    """Kind of local mutation carried by a queue item."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class QueueStatus(Enum):
    """Lifecycle state of a queue item.

    pending -> (retrying)* -> done | poison. Terminal states never change.
    """

    PENDING = "pending"
    RETRYING = "retrying"
    DONE = "done"
    POISON = "poison"

    @property
    def is_terminal(self) -> bool:
        return self in (QueueStatus.DONE, QueueStatus.POISON)


class LogLevel(Enum):
    """Audit log severity."""

    INFO = "info"
    WARN = "warn"
    ERROR = "error"


@dataclass
class QueueItem:
    """A local mutation waiting to be replayed against the remote store."""

    id: str
    op: MutationOp
    target_type: str
    target_id: str
    payload_json: str
    base_version: int
    status: QueueStatus = QueueStatus.PENDING
    retries: int = 0
    next_attempt_at: int | None = None
    created_at: int = 0

    @property
    def payload(self) -> QueuePayload:
        """Decoded payload."""
        return decode_payload(self.payload_json)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for display and serialization."""
        return {
            "id": self.id,
            "op": self.op.value,
            "target_type": self.target_type,
            "target_id": self.target_id,
            "payload": json.loads(self.payload_json),
            "base_version": self.base_version,
            "status": self.status.value,
            "retries": self.retries,
            "next_attempt_at": self.next_attempt_at,
            "created_at": self.created_at,
        }


@dataclass
class ConflictRecord:
    """Evidence of a mutation rejected for concurrent modification.

    Immutable once written. ``policy`` is an opaque hint for whoever
    resolves the conflict; nothing in this package interprets it.
    """

    id: str
    queue_id: str
    project_id: str
    node_id: str
    base_json: str
    remote_json: str
    local_json: str
    policy: str
    created_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "queue_id": self.queue_id,
            "project_id": self.project_id,
            "node_id": self.node_id,
            "base": json.loads(self.base_json),
            "remote": json.loads(self.remote_json),
            "local": json.loads(self.local_json),
            "policy": self.policy,
            "created_at": self.created_at,
        }


@dataclass
class Cursor:
    """Resumption token for one delta-pull scope."""

    key: str
    value: str
    updated_at: int = 0


@dataclass
class AuditLogEntry:
    """An append-only audit trail entry."""

    id: str
    level: LogLevel
    message: str
    meta: dict[str, Any] = field(default_factory=dict)
    created_at: int = 0
