"""Background scheduling for periodic sync cycles.

The scheduler is injected rather than global: whoever owns the process
creates one, registers the sync task on it, and unregisters it on shutdown.
Registering an already registered task is a no-op.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from .worker import SyncWorker

logger = logging.getLogger(__name__)

SYNC_TASK_NAME = "tidesync-sync"
DEFAULT_MINIMUM_INTERVAL_SECONDS = 15 * 60

ScheduledTask = Callable[[], Awaitable[Any]]


class BackgroundScheduler(ABC):
    """Periodic trigger for named tasks."""

    @abstractmethod
    async def is_registered(self, name: str) -> bool:
        """Whether a task with this name is registered."""

    @abstractmethod
    async def register(
        self, name: str, task: ScheduledTask, minimum_interval_seconds: float
    ) -> None:
        """Run ``task`` at most every ``minimum_interval_seconds``."""

    @abstractmethod
    async def unregister(self, name: str) -> None:
        """Stop and forget a task. Unknown names are ignored."""

    @abstractmethod
    async def trigger(self, name: str) -> Any:
        """Run a registered task once, now, and return its result."""


@dataclass
class _Registration:
    task: ScheduledTask
    interval: float
    runner: asyncio.Task | None = None


class AsyncioScheduler(BackgroundScheduler):
    """In-process scheduler running each task in its own asyncio loop.

    Task errors are logged and the loop keeps going. Overlapping runs of the
    same task (a trigger during a periodic run) are allowed; the sync worker
    serializes them.
    """

    def __init__(self, initial_delay_seconds: float = 0.0):
        """Initialize the scheduler.

        Args:
            initial_delay_seconds: Wait before a task's first periodic run.
        """
        self._initial_delay = initial_delay_seconds
        self._registrations: dict[str, _Registration] = {}

    async def is_registered(self, name: str) -> bool:
        return name in self._registrations

    async def register(
        self, name: str, task: ScheduledTask, minimum_interval_seconds: float
    ) -> None:
        if name in self._registrations:
            logger.debug(f"Task {name} already registered")
            return

        registration = _Registration(task=task, interval=minimum_interval_seconds)
        self._registrations[name] = registration
        registration.runner = asyncio.create_task(self._run_loop(name, registration))
        logger.info(f"Registered task {name} (interval={minimum_interval_seconds}s)")

    async def unregister(self, name: str) -> None:
        registration = self._registrations.pop(name, None)
        if registration is None:
            return

        if registration.runner:
            registration.runner.cancel()
            try:
                await registration.runner
            except asyncio.CancelledError:
                pass
        logger.info(f"Unregistered task {name}")

    async def trigger(self, name: str) -> Any:
        registration = self._registrations.get(name)
        if registration is None:
            raise KeyError(f"Task {name} is not registered")
        return await registration.task()

    async def shutdown(self) -> None:
        """Unregister every task."""
        for name in list(self._registrations):
            await self.unregister(name)

    async def _run_loop(self, name: str, registration: _Registration) -> None:
        if self._initial_delay > 0:
            await asyncio.sleep(self._initial_delay)

        while True:
            try:
                await registration.task()
            except Exception as e:
                logger.error(f"Scheduled task {name} failed: {e}", exc_info=True)

            await asyncio.sleep(registration.interval)


async def register_background_sync(
    scheduler: BackgroundScheduler,
    worker: SyncWorker,
    minimum_interval_seconds: float = DEFAULT_MINIMUM_INTERVAL_SECONDS,
    scope_id: str | None = None,
) -> bool:
    """Register the periodic sync cycle.

    Returns:
        True if newly registered, False if it already was.
    """
    if await scheduler.is_registered(SYNC_TASK_NAME):
        return False

    async def sync_task() -> Any:
        result = await worker.run_sync(scope_id)
        logger.info(
            f"Background sync: {result.status.value}"
            + (
                f", pushed={result.drain.succeeded}, pulled={result.pull.changes_pulled}"
                if result.drain and result.pull
                else ""
            )
        )
        return result

    await scheduler.register(SYNC_TASK_NAME, sync_task, minimum_interval_seconds)
    logger.info("Background sync registered")
    return True


async def unregister_background_sync(scheduler: BackgroundScheduler) -> bool:
    """Remove the periodic sync cycle.

    Returns:
        True if it was registered.
    """
    if not await scheduler.is_registered(SYNC_TASK_NAME):
        return False

    await scheduler.unregister(SYNC_TASK_NAME)
    logger.info("Background sync unregistered")
    return True
