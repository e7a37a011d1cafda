import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class Timer:
    """Single periodic task. Each tick awaits the callback; a failing tick never stops the timer."""

    def __init__(self, interval_seconds: float, callback: Callable[[], Awaitable[None]], name: str = "timer"):
        self.interval_seconds = interval_seconds
        self.callback = callback
        self.name = name
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=self.name)
        logger.debug(f"{self.name} started, interval {self.interval_seconds}s")

    async def _run(self):
        me = asyncio.current_task()
        while self._task is me:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.callback()
            except Exception as e:
                logger.error(f"Error in {self.name} tick: {e}", exc_info=True)

    async def stop(self):
        task, self._task = self._task, None
        if task is None:
            return
        if task is asyncio.current_task():
            # Stopped from inside a tick: the loop ends when the tick returns
            logger.debug(f"{self.name} stopping after current tick")
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug(f"{self.name} stopped")
