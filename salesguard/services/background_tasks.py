"""
Scheduled maintenance for the security layer.

Each registered job runs in its own asyncio loop, so a slow retention
cleanup never delays the rate limit sweep. Every run is kept in a bounded
history for inspection.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from salesguard.config import settings

logger = logging.getLogger(__name__)

HISTORY_SIZE = 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunStatus(str, Enum):
    """Outcome of one job run"""
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class JobRun:
    """Record of a single execution of a maintenance job"""
    job: str
    status: RunStatus
    started_at: datetime
    finished_at: datetime
    result: Any = None
    error: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'job': self.job,
            'status': self.status.value,
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat(),
            'duration_seconds': self.duration_seconds,
            'result': self.result,
            'error': self.error,
        }


@dataclass
class MaintenanceJob:
    """A coroutine function run every interval_seconds"""
    name: str
    func: Callable[[], Awaitable[Any]]
    interval_seconds: float
    run_on_startup: bool = False
    busy: bool = False
    last_run: Optional[JobRun] = None
    handle: Optional[asyncio.Task] = field(default=None, repr=False)


async def sweep_rate_limits() -> Dict[str, Any]:
    """Drop expired rate limit counters"""
    from salesguard.services.rate_limiter import get_rate_limiter
    limiter = get_rate_limiter()

    # Off the event loop; the store locks one shard at a time
    removed = await asyncio.to_thread(limiter.sweep)
    return {'expired_entries_removed': removed}


async def cleanup_security_data() -> Dict[str, Any]:
    """Apply the retention period to the security audit store"""
    from salesguard.services.security_monitor import get_security_monitor
    monitor = await get_security_monitor()

    removed = await monitor.cleanup_old_data()
    return {'rows_removed': removed}


class MaintenanceScheduler:
    """Runs maintenance jobs on independent schedules"""

    def __init__(self, register_defaults: bool = True):
        self.jobs: Dict[str, MaintenanceJob] = {}
        self.history: Deque[JobRun] = deque(maxlen=HISTORY_SIZE)
        self.running = False

        if register_defaults:
            config = settings.get_background_task_config()
            self.register("rate_limit_sweep", sweep_rate_limits, config['sweep_interval_seconds'])
            self.register("security_data_cleanup", cleanup_security_data,
                          config['cleanup_interval_minutes'] * 60)

    def register(self, name: str, func: Callable[[], Awaitable[Any]],
                 interval_seconds: float, run_on_startup: bool = False):
        if self.running:
            raise RuntimeError("Jobs must be registered before the scheduler starts")
        self.jobs[name] = MaintenanceJob(name, func, interval_seconds, run_on_startup)
        logger.info(f"Registered maintenance job {name} every {interval_seconds}s")

    async def start(self):
        if self.running:
            return
        self.running = True
        for job in self.jobs.values():
            job.handle = asyncio.create_task(self._loop(job), name=f"maintenance:{job.name}")
        logger.info(f"Maintenance scheduler started with {len(self.jobs)} jobs")

    async def stop(self):
        """Cancel every job loop, including runs in progress"""
        if not self.running:
            return
        self.running = False

        handles = [job.handle for job in self.jobs.values() if job.handle is not None]
        for handle in handles:
            handle.cancel()
        await asyncio.gather(*handles, return_exceptions=True)

        for job in self.jobs.values():
            job.handle = None
        logger.info("Maintenance scheduler stopped")

    async def run_now(self, name: str) -> JobRun:
        job = self.jobs.get(name)
        if job is None:
            raise KeyError(f"Unknown maintenance job: {name}")
        return await self._execute(job)

    def status(self) -> Dict[str, Any]:
        return {
            'running': self.running,
            'jobs': {
                name: {
                    'interval_seconds': job.interval_seconds,
                    'busy': job.busy,
                    'last_status': job.last_run.status.value if job.last_run else None,
                    'last_run': job.last_run.finished_at.isoformat() if job.last_run else None,
                }
                for name, job in self.jobs.items()
            },
        }

    def recent_runs(self, job: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        """Run history, newest first"""
        runs = [run for run in reversed(self.history) if job is None or run.job == job]
        return [run.to_dict() for run in runs[:limit]]

    async def _loop(self, job: MaintenanceJob):
        if not job.run_on_startup:
            await asyncio.sleep(job.interval_seconds)
        while True:
            await self._execute(job)
            await asyncio.sleep(job.interval_seconds)

    async def _execute(self, job: MaintenanceJob) -> JobRun:
        started = _utcnow()
        job.busy = True
        try:
            result = await job.func()
        except asyncio.CancelledError:
            self._record(job, JobRun(job.name, RunStatus.CANCELLED, started, _utcnow()))
            raise
        except Exception as e:
            logger.error(f"Maintenance job {job.name} failed: {e}")
            run = JobRun(job.name, RunStatus.FAILED, started, _utcnow(), error=str(e))
        else:
            run = JobRun(job.name, RunStatus.COMPLETED, started, _utcnow(), result=result)
            logger.debug(f"Maintenance job {job.name} finished in {run.duration_seconds:.3f}s")
        finally:
            job.busy = False

        self._record(job, run)
        return run

    def _record(self, job: MaintenanceJob, run: JobRun):
        job.last_run = run
        self.history.append(run)


# Global scheduler instance
_scheduler: Optional[MaintenanceScheduler] = None


def get_scheduler() -> MaintenanceScheduler:
    """Get or create the global maintenance scheduler"""
    global _scheduler
    if _scheduler is None:
        _scheduler = MaintenanceScheduler()
    return _scheduler


async def initialize_background_tasks():
    """Start the maintenance scheduler"""
    await get_scheduler().start()


async def shutdown_background_tasks():
    """Stop the maintenance scheduler"""
    global _scheduler
    if _scheduler:
        await _scheduler.stop()
        _scheduler = None
