"""
Fixed-interval recurring tasks.

Every periodic job of a node (checkpointing, sync verification, leader
heartbeats, follower liveness checks, delivery-queue cleanup) runs as an
independent RecurringTask so that none blocks another.
"""

import asyncio
from typing import Awaitable, Callable, Dict, Optional, Union

from distcoord.utils.logging import get_logger

logger = get_logger(__name__)

SleepFn = Callable[[float], Awaitable[None]]
Job = Callable[[], Union[Awaitable[None], None]]


class RecurringTask:
    """
    Runs a job every `interval` seconds on the event loop.

    The first run happens after one full interval unless `run_immediately`
    is set. Exceptions raised by the job are logged and the loop keeps going.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        job: Job,
        sleep: Optional[SleepFn] = None,
        run_immediately: bool = False,
    ):
        """
        Initialize recurring task.

        Args:
            name: Task name for logging
            interval: Seconds between runs
            job: Sync or async callable to run
            sleep: Sleep function (injectable for tests)
            run_immediately: Run once before the first sleep
        """
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")

        self.name = name
        self.interval = interval
        self.job = job
        self.run_immediately = run_immediately
        self._sleep = sleep or asyncio.sleep

        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.runs = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the task on the running event loop."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._loop(), name=f"recurring-{self.name}")

        logger.debug("Recurring task started", task=self.name, interval=self.interval)

    async def stop(self) -> None:
        """Stop the task and wait for it to exit."""
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.debug("Recurring task stopped", task=self.name, runs=self.runs)

    async def run_once(self) -> None:
        """Run the job a single time, logging failures."""
        try:
            result = self.job()
            if asyncio.iscoroutine(result):
                await result
            self.runs += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            logger.error(
                "Recurring task failed",
                task=self.name,
                error=str(e),
            )

    async def _loop(self) -> None:
        if self.run_immediately:
            await self.run_once()

        while self._running:
            try:
                await self._sleep(self.interval)
            except asyncio.CancelledError:
                break

            if not self._running:
                break

            await self.run_once()


class TaskGroup:
    """Named collection of recurring tasks started and stopped together."""

    def __init__(self):
        self._tasks: Dict[str, RecurringTask] = {}

    def add(self, task: RecurringTask) -> RecurringTask:
        if task.name in self._tasks:
            raise ValueError(f"Duplicate recurring task: {task.name}")
        self._tasks[task.name] = task
        return task

    def get(self, name: str) -> Optional[RecurringTask]:
        return self._tasks.get(name)

    def start_all(self) -> None:
        for task in self._tasks.values():
            task.start()

    async def stop_all(self) -> None:
        for task in self._tasks.values():
            await task.stop()

    def __contains__(self, name: str) -> bool:
        return name in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)
