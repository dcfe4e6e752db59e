"""
Scheduler

Cancellable delayed tasks on the running event loop. Reconciliation
retries and live preview refreshes are expressed as lists of delays
handed to a scheduler instead of nested sleeps, so tests can swap in a
manual scheduler and step through the schedule.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set


logger = logging.getLogger(__name__)

TaskFactory = Callable[[], Awaitable[None]]


class ScheduledTask:
    """Handle to a delayed task."""

    def __init__(self, name: str, delay: float):
        self.name = name
        self.delay = delay
        self._cancelled = False
        self._task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def cancel(self) -> None:
        self._cancelled = True
        if self._task is None or self._task.done():
            return
        try:
            running = asyncio.current_task()
        except RuntimeError:
            running = None
        # A task cancelling itself (e.g. a finalizing attempt) just runs to completion
        if self._task is not running:
            self._task.cancel()


class Scheduler:
    """Base scheduler interface."""

    def call_later(self, delay: float, factory: TaskFactory, name: str = "task") -> ScheduledTask:
        raise NotImplementedError

    def cancel_all(self) -> None:
        raise NotImplementedError


class AsyncioScheduler(Scheduler):
    """Runs each scheduled call as an asyncio task that sleeps, then awaits the call."""

    def __init__(self):
        self._handles: Set[ScheduledTask] = set()

    def call_later(self, delay: float, factory: TaskFactory, name: str = "task") -> ScheduledTask:
        handle = ScheduledTask(name, delay)
        handle._task = asyncio.get_running_loop().create_task(self._run(handle, factory), name=name)
        self._handles.add(handle)
        handle._task.add_done_callback(lambda _: self._handles.discard(handle))
        return handle

    async def _run(self, handle: ScheduledTask, factory: TaskFactory) -> None:
        await asyncio.sleep(handle.delay)
        if handle.cancelled:
            return
        try:
            await factory()
        except Exception as e:
            logger.error(f"Scheduled task {handle.name} failed: {e}")

    def cancel_all(self) -> None:
        for handle in list(self._handles):
            handle.cancel()
        self._handles.clear()

    @property
    def pending(self) -> int:
        return len(self._handles)

    async def wait_idle(self) -> None:
        """Wait until every scheduled task has finished or been cancelled."""
        while self._handles:
            tasks = [h._task for h in list(self._handles) if h._task is not None]
            await asyncio.gather(*tasks, return_exceptions=True)
