"""Shared fixtures for tidesync tests."""

import asyncio
from collections import Counter

import pytest

from tidesync.config import SyncConfig
from tidesync.remote.base import (
    ChangesRequest,
    ChangesResponse,
    ConflictInfo,
    MutationRequest,
    MutationResponse,
    RemoteSyncClient,
)
from tidesync.store import SyncStore
from tidesync.sync import SyncWorker

START_MS = 1_700_000_000_000


class FakeClock:
    """Controllable epoch-ms clock."""

    def __init__(self, now: int = START_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeRemote(RemoteSyncClient):
    """In-memory remote that deduplicates mutations by idempotency key."""

    def __init__(self):
        self.calls: list[MutationRequest] = []
        self.applied: dict[str, MutationRequest] = {}
        self.apply_count: Counter = Counter()
        self.changes_calls: list[ChangesRequest] = []
        self.changes_result: ChangesResponse | Exception = ChangesResponse(cursor="0")
        self.delay: float = 0.0
        self._failures: list[Exception] = []
        self._responses: list[MutationResponse] = []
        self._conflicts: dict[str, ConflictInfo] = {}

    def fail_next(self, count: int, error: Exception) -> None:
        self._failures.extend([error] * count)

    def respond_next(self, response: MutationResponse) -> None:
        self._responses.append(response)

    def conflict_on(self, target_id: str, conflict: ConflictInfo) -> None:
        self._conflicts[target_id] = conflict

    async def mutate(self, request: MutationRequest) -> MutationResponse:
        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self._failures:
            raise self._failures.pop(0)
        if self._responses:
            return self._responses.pop(0)
        if request.target_id in self._conflicts:
            return MutationResponse(success=False, conflict=self._conflicts[request.target_id])

        if request.idempotency_key not in self.applied:
            self.applied[request.idempotency_key] = request
            self.apply_count[request.target_id] += 1
        return MutationResponse(success=True)

    async def changes(self, request: ChangesRequest) -> ChangesResponse:
        self.changes_calls.append(request)
        if isinstance(self.changes_result, Exception):
            raise self.changes_result
        return self.changes_result


@pytest.fixture
def store():
    """Create an in-memory sync store."""
    store = SyncStore(":memory:")
    store.connect()
    yield store
    store.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def worker(store, remote, clock):
    """Create a worker with default retry settings and a fake clock."""
    return SyncWorker(
        store,
        remote,
        config=SyncConfig(),
        clock=clock,
        request_timeout=1.0,
    )
