"""
Maintenance scheduler.

Runs periodic background jobs (expired-entry sweep, cache report, analytics
flush, optimization suggestions, memory sampling) as independent timers on
the event loop. A job whose previous run is still executing is skipped
rather than started twice.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
from uuid import uuid4

from .logging_config import CorrelationContext, get_logger
from .metrics_collector import MetricsCollector


class JobState(str, Enum):
    """Scheduled job state."""
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class ScheduledJob:
    """Periodic maintenance job configuration."""
    name: str
    interval: float  # seconds
    func: Callable[[], Awaitable[Any]]
    enabled: bool = True
    run_on_start: bool = False
    state: JobState = JobState.IDLE
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    last_error: Optional[str] = None
    run_count: int = 0
    success_count: int = 0
    error_count: int = 0
    skipped_count: int = 0
    avg_duration: float = 0.0
    last_correlation_id: Optional[str] = None


class MaintenanceScheduler:
    """Runs registered jobs on their own intervals."""

    def __init__(self, metrics: Optional[MetricsCollector] = None):
        self.logger = get_logger(__name__, 'maintenance_scheduler')
        self.metrics = metrics if metrics is not None else MetricsCollector()

        self.jobs: Dict[str, ScheduledJob] = {}
        self.running = False
        self.tasks: Dict[str, asyncio.Task] = {}
        self._runs: Set[asyncio.Task] = set()

        self.stats = {
            'jobs_registered': 0,
            'jobs_executed': 0,
            'jobs_succeeded': 0,
            'jobs_failed': 0,
            'jobs_skipped': 0,
            'total_job_time': 0.0
        }

    def register_job(self, job: ScheduledJob) -> None:
        """Register a job; if the scheduler is running it starts immediately."""
        if job.interval <= 0:
            raise ValueError(f"Job {job.name} needs a positive interval")

        previous = self.tasks.pop(job.name, None)
        if previous is not None:
            previous.cancel()

        self.jobs[job.name] = job
        self.stats['jobs_registered'] += 1
        job.next_run = datetime.utcnow() + timedelta(seconds=job.interval)

        if self.running and job.enabled:
            self._start_job_task(job)

        self.logger.info(f"Registered maintenance job: {job.name} every {job.interval}s", operation="register_job")

    def unregister_job(self, job_name: str) -> bool:
        task = self.tasks.pop(job_name, None)
        if task:
            task.cancel()
        if self.jobs.pop(job_name, None) is not None:
            self.logger.info(f"Unregistered maintenance job: {job_name}", operation="unregister_job")
            return True
        return False

    def get_job(self, job_name: str) -> Optional[ScheduledJob]:
        return self.jobs.get(job_name)

    def list_jobs(self, enabled_only: bool = True) -> List[ScheduledJob]:
        jobs = list(self.jobs.values())
        if enabled_only:
            jobs = [job for job in jobs if job.enabled]
        return sorted(jobs, key=lambda j: j.name)

    async def run_job(self, job_name: str) -> bool:
        """
        Run a job once.

        Returns False when the job is unknown, disabled, already running
        (the invocation is skipped) or raised. Job errors are logged and
        counted, never propagated.
        """
        job = self.jobs.get(job_name)
        if not job or not job.enabled:
            self.logger.warning(f"Job {job_name} not found or disabled", operation="run_job")
            return False

        if job.state == JobState.RUNNING:
            job.skipped_count += 1
            self.stats['jobs_skipped'] += 1
            self.logger.warning(f"Job {job_name} is still running, skipping this run", operation="run_job")
            return False

        job.state = JobState.RUNNING
        start_time = time.time()
        success = False

        with CorrelationContext(f"{job_name}-{uuid4().hex[:12]}") as context:
            job.last_correlation_id = context.correlation_id_value
            try:
                await job.func()
                success = True
                job.success_count += 1
                job.last_error = None
                self.stats['jobs_succeeded'] += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                job.error_count += 1
                job.last_error = str(e)
                self.stats['jobs_failed'] += 1
                self.logger.exception(f"Maintenance job {job_name} failed: {e}", operation="run_job")
            finally:
                duration = time.time() - start_time
                job.state = JobState.IDLE
                job.run_count += 1
                job.last_run = datetime.utcnow()
                job.next_run = job.last_run + timedelta(seconds=job.interval)
                job.avg_duration = (job.avg_duration * (job.run_count - 1) + duration) / job.run_count

                self.stats['jobs_executed'] += 1
                self.stats['total_job_time'] += duration

        counter = self.metrics.get_counter('maintenance_jobs_total')
        counter.increment(1, job=job_name, status='success' if success else 'error')

        gauge = self.metrics.get_gauge('maintenance_job_duration_seconds')
        gauge.set(duration, job=job_name)

        if success:
            self.logger.debug(f"Maintenance job {job_name} completed in {duration:.2f}s", operation="run_job")
        return success

    async def _job_worker(self, job: ScheduledJob) -> None:
        if job.run_on_start:
            await self.run_job(job.name)

        while self.running:
            try:
                await asyncio.sleep(job.interval)
                # Overlapping runs are skipped by the state guard in run_job
                run = asyncio.create_task(self.run_job(job.name))
                self._runs.add(run)
                run.add_done_callback(self._runs.discard)
            except asyncio.CancelledError:
                break

    def _start_job_task(self, job: ScheduledJob) -> None:
        self.tasks[job.name] = asyncio.create_task(self._job_worker(job), name=f"maintenance:{job.name}")

    async def start(self) -> None:
        """Start one timer task per enabled job."""
        if self.running:
            self.logger.warning("Maintenance scheduler is already running", operation="start")
            return

        self.running = True
        for job in self.jobs.values():
            if job.enabled:
                self._start_job_task(job)

        self.logger.info(f"Maintenance scheduler started with {len(self.tasks)} jobs", operation="start")

    async def stop(self) -> None:
        """Cancel every timer task and wait for them to finish."""
        if not self.running:
            return

        self.running = False
        tasks = list(self.tasks.values()) + list(self._runs)
        self.tasks.clear()
        self._runs.clear()

        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self.logger.info("Maintenance scheduler stopped", operation="stop")

    def get_stats(self) -> Dict[str, Any]:
        """Get scheduler statistics."""
        job_stats = {}
        for name, job in self.jobs.items():
            job_stats[name] = {
                'interval': job.interval,
                'enabled': job.enabled,
                'state': job.state.value,
                'run_count': job.run_count,
                'success_count': job.success_count,
                'error_count': job.error_count,
                'skipped_count': job.skipped_count,
                'success_rate': job.success_count / job.run_count if job.run_count > 0 else 0,
                'avg_duration': job.avg_duration,
                'last_error': job.last_error,
                'last_run': job.last_run.isoformat() if job.last_run else None,
                'next_run': job.next_run.isoformat() if job.next_run else None
            }

        return {
            'overall': self.stats,
            'jobs': job_stats,
            'scheduler_running': self.running
        }
