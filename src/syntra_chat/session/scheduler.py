"""Cancellable delayed tasks."""

import asyncio
from typing import Any, Awaitable, Callable, Optional

import structlog

logger = structlog.get_logger()


class ScheduledTask:
    """Runs a coroutine function once after a delay unless cancelled first."""

    def __init__(self, delay: float, action: Callable[[], Awaitable[Any]], name: str = "scheduled_task") -> None:
        self.delay = delay
        self.name = name
        self._action = action
        self._task: Optional[asyncio.Task] = asyncio.ensure_future(self._run())

    @property
    def done(self) -> bool:
        return self._task is None or self._task.done()

    @property
    def cancelled(self) -> bool:
        return self._task is not None and self._task.cancelled()

    async def _run(self) -> None:
        try:
            await asyncio.sleep(self.delay)
            await self._action()
        except asyncio.CancelledError:
            logger.debug("scheduled_task_cancelled", name=self.name)
            raise
        except Exception as e:
            logger.error("scheduled_task_failed", name=self.name, error=str(e))

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        """Wait for the task to finish or be cancelled."""
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise
