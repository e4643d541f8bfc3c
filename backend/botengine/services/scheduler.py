"""Periodic jobs with non-overlapping runs."""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

JobFunc = Callable[[], Awaitable[object]]


class PeriodicJob:
    """Runs a coroutine function every `interval` seconds.

    A tick that comes due while the previous run is still executing is
    skipped. Stopping cancels the timer; a run already in progress is
    allowed to finish.
    """

    def __init__(self, name: str, func: JobFunc, interval: float, run_immediately: bool = False):
        self.name = name
        self.func = func
        self.interval = interval
        self.run_immediately = run_immediately
        self.runs = 0
        self.skipped = 0
        self._timer: Optional[asyncio.Task] = None
        self._current: Optional[asyncio.Task] = None

    @property
    def is_started(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def in_progress(self) -> bool:
        return self._current is not None and not self._current.done()

    def start(self) -> None:
        if self.is_started:
            return
        self._timer = asyncio.create_task(self._loop())
        logger.info(f"Job '{self.name}' scheduled every {self.interval}s")

    async def _loop(self) -> None:
        if not self.run_immediately:
            await asyncio.sleep(self.interval)
        while True:
            self.trigger()
            await asyncio.sleep(self.interval)

    def trigger(self) -> bool:
        """Start a run in the background unless one is already executing."""
        if self.in_progress:
            self.skipped += 1
            logger.warning(f"Job '{self.name}' still running, skipping this tick")
            return False
        self._current = asyncio.create_task(self.run_once())
        return True

    async def run_once(self) -> None:
        """Execute the job once, logging (not raising) failures."""
        self.runs += 1
        try:
            await self.func()
        except Exception as e:
            logger.error(f"Job '{self.name}' failed: {e}", exc_info=True)

    async def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None

        if self.in_progress:
            await asyncio.gather(self._current, return_exceptions=True)
        logger.info(f"Job '{self.name}' stopped")


class JobScheduler:
    """Owns the engine's periodic jobs."""

    def __init__(self):
        self._jobs: Dict[str, PeriodicJob] = {}

    def add(self, name: str, func: JobFunc, interval: float, run_immediately: bool = False) -> PeriodicJob:
        job = PeriodicJob(name, func, interval, run_immediately)
        self._jobs[name] = job
        return job

    def get(self, name: str) -> Optional[PeriodicJob]:
        return self._jobs.get(name)

    @property
    def jobs(self) -> List[PeriodicJob]:
        return list(self._jobs.values())

    def start(self) -> None:
        for job in self._jobs.values():
            job.start()

    async def stop(self) -> None:
        for job in self._jobs.values():
            await job.stop()
