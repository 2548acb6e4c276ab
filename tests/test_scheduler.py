"""Tests for background sync scheduling."""

import asyncio

import pytest

from tidesync.sync import (
    SYNC_TASK_NAME,
    AsyncioScheduler,
    SyncStatus,
    register_background_sync,
    unregister_background_sync,
)


class TestAsyncioScheduler:
    """Tests for the in-process scheduler."""

    @pytest.mark.asyncio
    async def test_register_runs_task(self):
        """Test that a registered task runs immediately and then periodically."""
        scheduler = AsyncioScheduler()
        runs = []

        async def task():
            runs.append(1)

        await scheduler.register("job", task, minimum_interval_seconds=0.01)
        await asyncio.sleep(0.05)
        await scheduler.shutdown()

        assert len(runs) >= 2
        assert not await scheduler.is_registered("job")

    @pytest.mark.asyncio
    async def test_register_twice_is_noop(self):
        """Test that registering a known name keeps the first task."""
        scheduler = AsyncioScheduler(initial_delay_seconds=60)
        calls = []

        async def first():
            calls.append("first")

        async def second():
            calls.append("second")

        await scheduler.register("job", first, 60)
        await scheduler.register("job", second, 60)
        await scheduler.trigger("job")
        await scheduler.shutdown()

        assert calls == ["first"]

    @pytest.mark.asyncio
    async def test_task_errors_do_not_stop_loop(self):
        """Test that a failing task keeps being scheduled."""
        scheduler = AsyncioScheduler()
        attempts = []

        async def flaky():
            attempts.append(1)
            raise RuntimeError("boom")

        await scheduler.register("flaky", flaky, minimum_interval_seconds=0.01)
        await asyncio.sleep(0.05)
        await scheduler.shutdown()

        assert len(attempts) >= 2

    @pytest.mark.asyncio
    async def test_unregister_unknown_is_noop(self):
        scheduler = AsyncioScheduler()

        await scheduler.unregister("missing")

    @pytest.mark.asyncio
    async def test_trigger_unknown_raises(self):
        scheduler = AsyncioScheduler()

        with pytest.raises(KeyError):
            await scheduler.trigger("missing")


class TestBackgroundSync:
    """Tests for registering the sync cycle."""

    @pytest.mark.asyncio
    async def test_register_background_sync(self, worker, remote):
        """Test registering the sync task and triggering it."""
        scheduler = AsyncioScheduler(initial_delay_seconds=60)

        assert await register_background_sync(scheduler, worker, 900)
        assert await scheduler.is_registered(SYNC_TASK_NAME)

        result = await scheduler.trigger(SYNC_TASK_NAME)
        assert result.status == SyncStatus.SUCCESS
        assert len(remote.changes_calls) == 1

        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_register_is_idempotent(self, worker):
        """Test that registering twice reports the existing registration."""
        scheduler = AsyncioScheduler(initial_delay_seconds=60)

        assert await register_background_sync(scheduler, worker)
        assert not await register_background_sync(scheduler, worker)

        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_unregister(self, worker):
        """Test unregistering is idempotent."""
        scheduler = AsyncioScheduler(initial_delay_seconds=60)
        await register_background_sync(scheduler, worker)

        assert await unregister_background_sync(scheduler)
        assert not await unregister_background_sync(scheduler)
        assert not await scheduler.is_registered(SYNC_TASK_NAME)

    @pytest.mark.asyncio
    async def test_scope_passed_to_cycle(self, worker, store, remote):
        """Test the registered task pulls the requested scope."""
        scheduler = AsyncioScheduler(initial_delay_seconds=60)
        await register_background_sync(scheduler, worker, scope_id="proj-1")

        await scheduler.trigger(SYNC_TASK_NAME)
        await scheduler.shutdown()

        assert remote.changes_calls[0].project_id == "proj-1"
