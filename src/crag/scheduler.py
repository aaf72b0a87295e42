"""
Periodic runner for the embedding pipeline.

Hosts the three recurring tasks in one asyncio loop:
- process pending embedding jobs (every 5 minutes)
- schedule re-embedding of fallback/changed content (daily)
- reap old terminal jobs (weekly)

Stops cleanly on SIGINT/SIGTERM after the task in flight finishes.
"""

import asyncio
import logging
import signal
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Optional

from .service import RetrievalService

logger = logging.getLogger(__name__)

PROCESS_INTERVAL = 5 * 60
UPDATE_INTERVAL = 24 * 60 * 60
REAP_INTERVAL = 7 * 24 * 60 * 60


@dataclass
class PeriodicTask:
    """A named coroutine run every `interval` seconds."""

    name: str
    interval: float
    action: Callable[[], Awaitable[object]]
    next_run: float = 0.0
    runs: int = 0
    failures: int = 0
    last_error: Optional[str] = field(default=None, repr=False)

    def is_due(self, now: float) -> bool:
        return now >= self.next_run


class ScheduledRunner:
    """
    Runs the pipeline's periodic tasks until asked to stop.

    Example:
        runner = ScheduledRunner(build_service(settings))
        asyncio.run(runner.run())
    """

    def __init__(
        self,
        service: RetrievalService,
        process_interval: float = PROCESS_INTERVAL,
        update_interval: float = UPDATE_INTERVAL,
        reap_interval: float = REAP_INTERVAL,
        logfile: Optional[Path] = None,
    ):
        self.service = service
        self.logfile = logfile
        self._shutdown_event = asyncio.Event()
        self.tasks = [
            PeriodicTask("process_jobs", process_interval, self._process_jobs),
            PeriodicTask("schedule_updates", update_interval, self._schedule_updates),
            PeriodicTask("reap_jobs", reap_interval, self._reap_jobs),
        ]

    async def _process_jobs(self):
        summary = await self.service.run_scheduled_processing()
        if summary.jobs_claimed:
            logger.info(
                f"Processed {summary.jobs_claimed} jobs: {summary.jobs_completed} completed, "
                f"{summary.jobs_retrying} retrying, {summary.jobs_failed} failed"
            )
        return summary

    async def _schedule_updates(self):
        return self.service.schedule_embedding_updates()

    async def _reap_jobs(self):
        return self.service.reap_jobs()

    def _setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def signal_handler():
            logger.warning("Shutdown requested, finishing current task...")
            self._shutdown_event.set()

        try:
            loop.add_signal_handler(signal.SIGINT, signal_handler)
            loop.add_signal_handler(signal.SIGTERM, signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    def _setup_file_logging(self) -> None:
        if self.logfile is None:
            return
        self.logfile.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(self.logfile)
        file_handler.setFormatter(
            logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        )
        logging.root.addHandler(file_handler)

    def stop(self) -> None:
        self._shutdown_event.set()

    async def run_due(self, now: Optional[float] = None) -> list[str]:
        """
        Run every task that is due, in declaration order.

        A task that raises is logged and rescheduled; it does not stop the
        runner.

        Returns:
            Names of the tasks that ran
        """
        now = time.monotonic() if now is None else now
        ran = []
        for task in self.tasks:
            if not task.is_due(now):
                continue
            try:
                await task.action()
                task.last_error = None
            except Exception as e:
                task.failures += 1
                task.last_error = str(e)
                logger.exception(f"Scheduled task {task.name} failed: {e}")
            task.runs += 1
            task.next_run = now + task.interval
            ran.append(task.name)
        return ran

    async def run(self, max_ticks: Optional[int] = None) -> None:
        """
        Loop until a shutdown signal (or max_ticks iterations).

        Args:
            max_ticks: Stop after this many loop iterations (None = forever)
        """
        self._setup_file_logging()
        self._setup_signal_handlers()
        logger.info(
            "Scheduler started: "
            + ", ".join(f"{t.name} every {t.interval:.0f}s" for t in self.tasks)
        )

        ticks = 0
        while not self._shutdown_event.is_set():
            await self.run_due()
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break

            wait = max(0.0, min(t.next_run for t in self.tasks) - time.monotonic())
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=wait)
            except asyncio.TimeoutError:
                pass  # Expected - next task is due

        logger.info("Scheduler stopped")
