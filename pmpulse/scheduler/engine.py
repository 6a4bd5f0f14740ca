"""
APScheduler Engine - background job queue and recurring sync schedule.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from uuid import uuid4

from apscheduler.events import (
    EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, EVENT_JOB_MISSED,
    EVENT_SCHEDULER_SHUTDOWN, EVENT_SCHEDULER_STARTED
)
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from pmpulse.scheduler.config import SchedulerConfig

logger = logging.getLogger(__name__)

SYNC_JOB_ID = 'recurring_incremental_sync'
PENDING_RUNS_JOB_ID = 'pending_runs'


@dataclass
class JobOutcome:
    """Return value or exception of a finished job."""
    job_id: str
    retval: Any = None
    exception: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.exception is None


class JobQueue:
    """
    Thread-pool job queue on top of APScheduler.

    One-off jobs run immediately through a DateTrigger; the recurring sync
    uses a CronTrigger. Callers can block on a one-off job with wait().
    """

    def __init__(self, config: Optional[SchedulerConfig] = None):
        """
        Initialize the queue.

        Args:
            config: Scheduler configuration (timezone, workers, job defaults)
        """
        self.config = config or SchedulerConfig()
        self._scheduler = BackgroundScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': ThreadPoolExecutor(max_workers=self.config.executor_max_workers)},
            job_defaults={
                'coalesce': self.config.coalesce,
                'max_instances': self.config.max_instances,
                'misfire_grace_time': self.config.misfire_grace_time,
            },
            timezone=self.config.timezone,
        )
        self._scheduler.add_listener(self._on_job_event, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR | EVENT_JOB_MISSED)
        self._scheduler.add_listener(self._on_scheduler_event, EVENT_SCHEDULER_STARTED | EVENT_SCHEDULER_SHUTDOWN)

        self._lock = threading.Lock()
        self._done: Dict[str, threading.Event] = {}
        self._outcomes: Dict[str, JobOutcome] = {}

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self):
        """Start the scheduler."""
        if self._scheduler.running:
            logger.warning("Job queue is already running")
            return
        self._scheduler.start()

    def shutdown(self, wait: Optional[bool] = None):
        """
        Stop the scheduler.

        Args:
            wait: Whether to wait for running jobs (default: config.wait_for_jobs)
        """
        if not self._scheduler.running:
            return
        self._scheduler.shutdown(wait=self.config.wait_for_jobs if wait is None else wait)

    # ========================================================================
    # Jobs
    # ========================================================================

    def enqueue(self, func: Callable[..., Any], job_id: Optional[str] = None, name: Optional[str] = None,
                **kwargs) -> str:
        """
        Run a function once, as soon as a worker is free.

        Args:
            func: Job body
            job_id: Optional job id (default: random)
            name: Display name
            **kwargs: Keyword arguments for func

        Returns:
            Job id to pass to wait()
        """
        job_id = job_id or f"job_{uuid4().hex[:12]}"
        with self._lock:
            self._done[job_id] = threading.Event()
        self._scheduler.add_job(
            func=func,
            trigger=DateTrigger(),
            id=job_id,
            name=name or getattr(func, '__name__', job_id),
            kwargs=kwargs,
            misfire_grace_time=None,
        )
        logger.info(f"Enqueued job {job_id} ({name or getattr(func, '__name__', 'job')})")
        return job_id

    def wait(self, job_id: str, timeout: Optional[float] = None) -> JobOutcome:
        """
        Block until a one-off job has finished.

        Raises:
            KeyError: For a job id that was never enqueued
            TimeoutError: If the job is still running after `timeout` seconds
        """
        with self._lock:
            done = self._done[job_id]
        if not done.wait(timeout):
            raise TimeoutError(f"Job {job_id} still running after {timeout}s")
        with self._lock:
            self._done.pop(job_id, None)
            return self._outcomes.pop(job_id)

    def schedule_incremental_sync(self, func: Callable[..., Any], cron: Optional[str] = None, **kwargs) -> None:
        """
        Register the recurring sync job.

        Args:
            func: Job body (scheduled_sync_job)
            cron: Five-field cron expression (default: config.sync_cron)
            **kwargs: Keyword arguments for func
        """
        cron = cron or self.config.sync_cron
        self._scheduler.add_job(
            func=func,
            trigger=self._cron_trigger(cron),
            id=SYNC_JOB_ID,
            name='Incremental AppFolio sync',
            kwargs=kwargs,
            replace_existing=True,
        )
        logger.info(f"Registered recurring incremental sync ({cron})")

    def schedule_pending_runs(self, func: Callable[..., Any], seconds: Optional[int] = None, **kwargs) -> None:
        """Poll for runs queued with --no-wait and execute them."""
        seconds = seconds or self.config.pending_poll_seconds
        self._scheduler.add_job(
            func=func,
            trigger=IntervalTrigger(seconds=seconds),
            id=PENDING_RUNS_JOB_ID,
            name='Queued sync runs',
            kwargs=kwargs,
            replace_existing=True,
        )
        logger.info(f"Polling for queued sync runs every {seconds}s")

    def _cron_trigger(self, cron: str) -> CronTrigger:
        parts = cron.split()
        if len(parts) != 5:
            raise ValueError(f"Invalid cron expression '{cron}': expected 5 fields")
        return CronTrigger(
            minute=parts[0],
            hour=parts[1],
            day=parts[2],
            month=parts[3],
            day_of_week=parts[4],
            timezone=self.config.timezone,
        )

    def get_jobs(self):
        return self._scheduler.get_jobs()

    # ========================================================================
    # Events
    # ========================================================================

    def _on_job_event(self, event):
        if event.code == EVENT_JOB_MISSED:
            logger.warning(f"Job {event.job_id} missed its run time")
            outcome = JobOutcome(event.job_id, exception=RuntimeError('Job missed its run time'))
        elif event.exception is not None:
            logger.error(f"Job {event.job_id} raised: {event.exception}")
            outcome = JobOutcome(event.job_id, exception=event.exception)
        else:
            logger.debug(f"Job {event.job_id} executed")
            outcome = JobOutcome(event.job_id, retval=event.retval)

        with self._lock:
            done = self._done.get(event.job_id)
            if done is not None:
                self._outcomes[event.job_id] = outcome
                done.set()

    def _on_scheduler_event(self, event):
        if event.code == EVENT_SCHEDULER_STARTED:
            logger.info("Job queue started")
        else:
            logger.info("Job queue stopped")
