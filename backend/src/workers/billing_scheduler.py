"""
Billing Scheduler Worker.

Long-running process that triggers the periodic billing jobs:
1. Subscription population sync (with role updates)
2. Expired trial sweep

Overlap policy: a job that is still running when it comes due again is
skipped for that slot. Each run gets a deadline after which it schedules
no further chunks, plus a hard timeout guard.

Run as: python -m src.workers.billing_scheduler

Configuration:
- SUBSCRIPTION_SYNC_INTERVAL / SUBSCRIPTION_SYNC_TIMEOUT (default: 3600 / 1800)
- TRIAL_SWEEP_INTERVAL / TRIAL_SWEEP_TIMEOUT (default: 3600 / 900)
"""

import asyncio
import logging
import signal
import sys
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from src.config.subscription import SubscriptionSettings, get_subscription_settings
from src.jobs.check_expired_trials import run_trial_sweep
from src.jobs.sync_subscriptions import run_subscription_sync

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Extra time a run gets past its deadline to finish the in-flight chunk
HARD_TIMEOUT_GRACE_SECONDS = 60.0

JobRunner = Callable[[asyncio.Event, float], Awaitable[Any]]


@dataclass
class ScheduledJob:
    """A periodic job and its bookkeeping."""

    name: str
    interval: float
    timeout: float
    run: JobRunner
    next_run_at: float = 0.0
    running: bool = False
    runs: int = 0
    failures: int = 0
    skipped: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "interval": self.interval,
            "timeout": self.timeout,
            "running": self.running,
            "runs": self.runs,
            "failures": self.failures,
            "skipped": self.skipped,
        }


class BillingScheduler:
    """Asyncio loop that starts due jobs and shuts down gracefully."""

    def __init__(
        self,
        jobs: List[ScheduledJob],
        tick_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.jobs = jobs
        self.tick_seconds = tick_seconds
        self.clock = clock
        self.stop_event = asyncio.Event()
        self._tasks: Dict[str, asyncio.Task] = {}

    def request_shutdown(self, signum: Optional[int] = None) -> None:
        logger.info("Shutdown signal received", extra={"signal": signum})
        self.stop_event.set()

    async def _run_job(self, job: ScheduledJob) -> None:
        deadline = self.clock() + job.timeout
        started = self.clock()
        job.running = True
        job.runs += 1
        logger.info("Scheduled job started", extra={"job": job.name})
        try:
            result = await asyncio.wait_for(
                job.run(self.stop_event, deadline),
                timeout=job.timeout + HARD_TIMEOUT_GRACE_SECONDS,
            )
            summary = result.to_dict() if hasattr(result, "to_dict") else {}
            logger.info("Scheduled job finished", extra={
                "job": job.name,
                "elapsed_seconds": round(self.clock() - started, 3),
                **summary,
            })
        except asyncio.TimeoutError:
            job.failures += 1
            logger.error("Scheduled job exceeded hard timeout", extra={
                "job": job.name,
                "timeout": job.timeout,
            })
        except Exception as e:
            job.failures += 1
            logger.error("Scheduled job failed", extra={
                "job": job.name,
                "error": str(e),
            }, exc_info=True)
        finally:
            job.running = False

    def tick(self) -> List[str]:
        """
        Start every job that is due.

        Returns:
            Names of the jobs started on this tick
        """
        now = self.clock()
        started = []
        for job in self.jobs:
            if now < job.next_run_at:
                continue
            job.next_run_at = now + job.interval

            if job.running:
                job.skipped += 1
                logger.warning("Scheduled job still running, skipping this slot", extra={
                    "job": job.name,
                })
                continue

            self._tasks[job.name] = asyncio.create_task(self._run_job(job))
            started.append(job.name)
        return started

    async def run_forever(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig)
            except (NotImplementedError, RuntimeError):
                # Not available on this platform / not the main thread
                pass

        logger.info("Billing scheduler started", extra={
            "jobs": [job.name for job in self.jobs],
        })

        while not self.stop_event.is_set():
            self.tick()
            try:
                await asyncio.wait_for(self.stop_event.wait(), timeout=self.tick_seconds)
            except asyncio.TimeoutError:
                pass

        await self.drain()
        logger.info("Billing scheduler stopped", extra={
            "jobs": [job.to_dict() for job in self.jobs],
        })

    async def drain(self) -> None:
        """Wait for running jobs; they stop after their in-flight chunk."""
        pending = [task for task in self._tasks.values() if not task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


def default_jobs(settings: Optional[SubscriptionSettings] = None) -> List[ScheduledJob]:
    """The population sync and the trial sweep, configured from settings."""
    settings = settings or get_subscription_settings()

    async def subscription_sync(stop_event: asyncio.Event, deadline: float):
        return await run_subscription_sync(
            sync_roles=True, stop_event=stop_event, deadline=deadline
        )

    async def trial_sweep(stop_event: asyncio.Event, deadline: float):
        return await run_trial_sweep(stop_event=stop_event, deadline=deadline)

    return [
        ScheduledJob(
            name="subscription_sync",
            interval=settings.subscription_sync_interval,
            timeout=settings.subscription_sync_timeout,
            run=subscription_sync,
        ),
        ScheduledJob(
            name="trial_sweep",
            interval=settings.trial_sweep_interval,
            timeout=settings.trial_sweep_timeout,
            run=trial_sweep,
        ),
    ]


def main() -> int:
    scheduler = BillingScheduler(default_jobs())
    asyncio.run(scheduler.run_forever())
    return 0


if __name__ == "__main__":
    sys.exit(main())
