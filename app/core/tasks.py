"""
Registry for fire-and-forget background work.

Delayed jobs (audio asset cleanup, appointment notifications) are tracked so
they can be awaited in tests and cancelled on shutdown. A failing job is
logged and never propagates.
"""
import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Set

from app.core.clock import Clock, RealClock

logger = logging.getLogger(__name__)

JobFactory = Callable[[], Awaitable[object]]


class BackgroundTasks:
    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or RealClock()
        self._tasks: Set[asyncio.Task] = set()

    def schedule(self, name: str, factory: JobFactory, delay_ms: int = 0) -> asyncio.Task:
        """
        Run factory() after delay_ms on the running event loop.

        Args:
            name: Label used in logs and pending()
            factory: Zero-argument callable returning the awaitable to run
            delay_ms: Delay before the job starts

        Returns:
            The created task
        """
        task = asyncio.create_task(self._run(name, factory, delay_ms), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info(f"BG_TASK|scheduled|name={name}|delay_ms={delay_ms}")
        return task

    async def _run(self, name: str, factory: JobFactory, delay_ms: int) -> None:
        if delay_ms > 0:
            await self.clock.sleep_ms(delay_ms)
        try:
            await factory()
            logger.info(f"BG_TASK|done|name={name}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"BG_TASK|failed|name={name}|error={type(e).__name__}: {e}")

    def pending(self) -> List[str]:
        return sorted(task.get_name() for task in self._tasks if not task.done())

    async def flush(self) -> None:
        """Await every job scheduled so far (including ones they schedule)"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"BG_TASK|cancelled|count={len(tasks)}")
