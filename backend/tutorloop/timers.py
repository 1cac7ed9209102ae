import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any, Optional

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Optional[Awaitable[None]]]

# Strong references so fire-and-forget tasks are not garbage collected mid-flight.
_background_tasks: set[asyncio.Task] = set()


def spawn_background(coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
    """Run coro as a detached task; any exception is logged, never raised."""
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)
    task.add_done_callback(_on_background_done)
    return task


def _on_background_done(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background task %s failed", task.get_name(), exc_info=exc)


class SingleSlotTimer:
    """
    A scheduled action of one kind. Starting it again cancels the pending one,
    so at most one is ever live.
    """

    def __init__(self, name: str):
        self.name = name
        self._task: asyncio.Task | None = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, delay: float, callback: TimerCallback) -> None:
        self.cancel()
        self._task = asyncio.create_task(self._run(delay, callback), name=f"timer:{self.name}")

    def cancel(self) -> None:
        task = self._task
        self._task = None
        # A callback may restart its own timer; never cancel the running task.
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _run(self, delay: float, callback: TimerCallback) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return
        if self._task is asyncio.current_task():
            self._task = None
        try:
            result = callback()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Timer %s callback failed", self.name)
