"""Contract for the remote sync service.

The worker only talks to the server through :class:`RemoteSyncClient`, so
tests and alternative transports can supply their own implementation.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


class SyncError(Exception):
    """Base class for remote sync failures."""


class TransientSyncError(SyncError):
    """Network failure, 5xx or throttling. Safe to retry later."""


class RemoteTimeoutError(TransientSyncError):
    """The remote call did not finish within its timeout."""


class MalformedResponseError(SyncError):
    """The remote answered with something that could not be understood."""


class RemoteRejectedError(SyncError):
    """The remote refused the request with an unexpected client error."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class MutationRequest:
    op: str
    target_type: str
    target_id: str
    payload: Any
    base_version: int
    idempotency_key: str

    def to_dict(self) -> dict[str, Any]:
        """Wire form (camelCase keys)."""
        return {
            "op": self.op,
            "targetType": self.target_type,
            "targetId": self.target_id,
            "payload": self.payload,
            "baseVersion": self.base_version,
            "idempotencyKey": self.idempotency_key,
        }


@dataclass
class ConflictInfo:
    """Server-reported version conflict."""

    base: Any
    remote: Any
    policy: str = "manual"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConflictInfo":
        if not isinstance(data, dict) or "remote" not in data:
            raise MalformedResponseError(f"Invalid conflict body: {data!r}")
        return cls(
            base=data.get("base"),
            remote=data["remote"],
            policy=str(data.get("policy") or "manual"),
        )


@dataclass
class MutationResponse:
    success: bool
    conflict: ConflictInfo | None = None
    error: str | None = None
    new_version: int | None = None

    @classmethod
    def from_dict(cls, data: Any) -> "MutationResponse":
        if not isinstance(data, dict) or "success" not in data:
            raise MalformedResponseError(f"Invalid mutate response: {data!r}")
        conflict = data.get("conflict")
        return cls(
            success=bool(data["success"]),
            conflict=ConflictInfo.from_dict(conflict) if conflict else None,
            error=data.get("error"),
            new_version=data.get("newVersion"),
        )


@dataclass
class ChangesRequest:
    since: str
    project_id: str | None = None


@dataclass
class ChangesResponse:
    cursor: str
    changes: list[Any] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "ChangesResponse":
        if not isinstance(data, dict):
            raise MalformedResponseError(f"Invalid changes response: {data!r}")
        cursor = data.get("cursor")
        changes = data.get("changes", [])
        if cursor is None or not isinstance(changes, list):
            raise MalformedResponseError(
                f"Changes response missing cursor or changes list: {data!r}"
            )
        return cls(cursor=str(cursor), changes=changes)


class RemoteSyncClient(ABC):
    """Remote side of the sync protocol.

    Implementations MUST send ``idempotency_key`` so the server can
    deduplicate repeated deliveries of the same mutation.
    """

    @abstractmethod
    async def mutate(self, request: MutationRequest) -> MutationResponse:
        """Apply one mutation remotely.

        Raises:
            TransientSyncError: Retryable transport or server failure.
            MalformedResponseError: Response could not be decoded.
            RemoteRejectedError: Unexpected client error.
        """

    @abstractmethod
    async def changes(self, request: ChangesRequest) -> ChangesResponse:
        """Fetch remote changes after ``request.since``."""

    async def aclose(self) -> None:
        """Release any held resources."""
