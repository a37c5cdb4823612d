"""Wall-clock time and single-shot timers backed by the running event loop."""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timezone


logger = logging.getLogger(__name__)


class Clock:
    """Supplies the current time and schedules expiry callbacks.

    ``after`` returns an opaque handle accepted by ``cancel``. Callbacks run on
    the event loop and must not block; they are expected to schedule a task
    and return.
    """

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def after(self, delay_seconds: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(max(delay_seconds, 0.0), callback)

    def cancel(self, handle: asyncio.TimerHandle) -> None:
        handle.cancel()

    def until(self, deadline: datetime) -> float:
        """Seconds from now until ``deadline`` (negative once it has passed)."""
        return (deadline - self.now()).total_seconds()


# Strong references; the event loop only keeps weak ones.
_background_tasks: set[asyncio.Task] = set()


def spawn(coro, *, name: str | None = None) -> asyncio.Task:
    """Run ``coro`` in the background and log anything it raises."""
    task = asyncio.get_running_loop().create_task(coro, name=name)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    task.add_done_callback(_log_task_failure)
    return task


def pending_tasks() -> set[asyncio.Task]:
    """Unfinished background tasks on the running loop."""
    loop = asyncio.get_running_loop()
    return {task for task in _background_tasks if not task.done() and task.get_loop() is loop}


async def drain_background_tasks(timeout: float = 5.0) -> None:
    """Give in-flight tasks ``timeout`` seconds to finish, then cancel the rest."""
    pending = pending_tasks()
    if not pending:
        return
    _, still_running = await asyncio.wait(pending, timeout=timeout)
    for task in still_running:
        task.cancel()
    if still_running:
        logger.warning("Cancelled %d background tasks at shutdown", len(still_running))
        await asyncio.gather(*still_running, return_exceptions=True)


def _log_task_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background task %s failed", task.get_name(), exc_info=exc)
