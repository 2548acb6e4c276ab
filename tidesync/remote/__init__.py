"""Remote sync service clients."""

from .base import (
    ChangesRequest,
    ChangesResponse,
    ConflictInfo,
    MalformedResponseError,
    MutationRequest,
    MutationResponse,
    RemoteRejectedError,
    RemoteSyncClient,
    RemoteTimeoutError,
    SyncError,
    TransientSyncError,
)
from .http_client import HttpSyncClient

__all__ = [
    "ChangesRequest",
    "ChangesResponse",
    "ConflictInfo",
    "HttpSyncClient",
    "MalformedResponseError",
    "MutationRequest",
    "MutationResponse",
    "RemoteRejectedError",
    "RemoteSyncClient",
    "RemoteTimeoutError",
    "SyncError",
    "TransientSyncError",
]
