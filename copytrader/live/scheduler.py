"""
Periodic tasks of the worker: heartbeat, daily/quarterly jobs and the
pending-trade expiry sweep.

Each cadence is its own asyncio task, so a slow job run never delays the
heartbeat or the sweep. Every tick catches its own errors.
"""
import asyncio
from typing import Awaitable, Callable, List, Optional, Protocol

from copytrader.config.config import SchedulerConfig
from copytrader.execution.pending_trades import PendingTradeService
from copytrader.monitoring.logger import get_logger
from copytrader.storage import repository
from copytrader.utils.clock import Clock, utc_now

logger = get_logger(__name__)

HEARTBEAT_KEY = "worker_heartbeat"


class ScheduledJob(Protocol):
    def should_run(self) -> bool: ...

    async def run(self): ...


def write_heartbeat(clock: Clock = utc_now) -> None:
    now = clock()
    repository.set_system_config(HEARTBEAT_KEY, now.isoformat(), now)


class Scheduler:

    def __init__(
        self,
        jobs: List[ScheduledJob],
        pending_trades: PendingTradeService,
        config: Optional[SchedulerConfig] = None,
        clock: Clock = utc_now,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.jobs = jobs
        self.pending_trades = pending_trades
        self.config = config or SchedulerConfig()
        self.clock = clock
        self.sleep = sleep or asyncio.sleep
        self.active = False
        self._tasks: List[asyncio.Task] = []

    def start(self) -> None:
        self.active = True
        self._tasks = [
            asyncio.create_task(self._every(self.config.heartbeat_seconds, self.heartbeat), name="heartbeat"),
            asyncio.create_task(self._every(self.config.job_check_seconds, self.run_due_jobs), name="jobs"),
            asyncio.create_task(self._every(self.config.pending_sweep_seconds, self.expire_pending), name="pending"),
        ]
        logger.info(
            "SCHEDULER_START",
            heartbeat_seconds=self.config.heartbeat_seconds,
            job_check_seconds=self.config.job_check_seconds,
            pending_sweep_seconds=self.config.pending_sweep_seconds,
        )

    async def stop(self) -> None:
        self.active = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("SCHEDULER_STOPPED")

    async def _every(self, interval: float, tick: Callable[[], Awaitable[None]]) -> None:
        """Run `tick` now and then every `interval` seconds until stopped."""
        while self.active:
            await tick()
            await self.sleep(interval)

    async def heartbeat(self) -> None:
        try:
            write_heartbeat(self.clock)
        except Exception as e:
            logger.warning("Heartbeat failed", error=str(e))

    async def run_due_jobs(self) -> None:
        for job in self.jobs:
            name = type(job).__name__
            try:
                if job.should_run():
                    logger.info("JOB_RUN", job=name)
                    await job.run()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("JOB_FAILED", job=name, error=str(e), error_type=type(e).__name__)

    async def expire_pending(self) -> None:
        try:
            self.pending_trades.expire_due()
        except Exception as e:
            logger.warning("Pending trade sweep failed", error=str(e))
