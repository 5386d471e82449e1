"""Recurring background jobs on an APScheduler background scheduler."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from threading import Lock
from typing import Callable, Iterable
from zoneinfo import ZoneInfo

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.base import BaseTrigger

from time_utils import get_local_timezone

logger = logging.getLogger(__name__)

JOB_DEFAULTS = {"coalesce": True, "max_instances": 1, "misfire_grace_time": 60}


@dataclass(frozen=True)
class ScheduledJob:
    """A recurring job.

    ``run_immediately`` fires the job once at start in addition to its trigger.
    """

    name: str
    action: Callable[[], object]
    trigger: BaseTrigger
    run_immediately: bool = False


class ArchiveScheduler:
    """Own a background scheduler for the archive's recurring jobs.

    Jobs run on a thread pool sized to the job count, so a slow job never
    delays another. No job fires after ``stop`` returns.
    """

    def __init__(
        self,
        jobs: Iterable[ScheduledJob],
        *,
        timezone: ZoneInfo | None = None,
    ) -> None:
        self._jobs = list(jobs)
        names = [job.name for job in self._jobs]
        if len(names) != len(set(names)):
            raise ValueError("Scheduled job names must be unique.")
        self._timezone = timezone or get_local_timezone()
        self._scheduler: BackgroundScheduler | None = None
        self._lock = Lock()
        self._run_counts: dict[str, int] = {name: 0 for name in names}

    @property
    def jobs(self) -> list[ScheduledJob]:
        return list(self._jobs)

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        """Register every job and start the background scheduler."""
        if self.is_running:
            logger.warning("Scheduler already running")
            return
        scheduler = BackgroundScheduler(
            executors={"default": ThreadPoolExecutor(max(1, len(self._jobs)))},
            job_defaults=JOB_DEFAULTS,
            timezone=self._timezone,
        )
        for job in self._jobs:
            options = {}
            if job.run_immediately:
                options["next_run_time"] = datetime.now(self._timezone)
            scheduler.add_job(
                partial(self._execute, job),
                trigger=job.trigger,
                id=job.name,
                name=job.name,
                replace_existing=True,
                **options,
            )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("Scheduler started with jobs: %s", ", ".join(job.name for job in self._jobs))

    def stop(self, wait: bool = True) -> None:
        """Drop pending runs and wait for in-flight jobs to finish."""
        scheduler = self._scheduler
        if scheduler is None:
            return
        if scheduler.running:
            scheduler.remove_all_jobs()
            scheduler.shutdown(wait=wait)
        self._scheduler = None
        logger.info("Scheduler stopped")

    def next_run_times(self) -> dict[str, datetime | None]:
        """Return each registered job's next fire time while running."""
        if self._scheduler is None:
            return {}
        return {job.id: job.next_run_time for job in self._scheduler.get_jobs()}

    def run_counts(self) -> dict[str, int]:
        """Return how many times each job has fired."""
        with self._lock:
            return dict(self._run_counts)

    def _execute(self, job: ScheduledJob) -> None:
        with self._lock:
            self._run_counts[job.name] += 1
        try:
            job.action()
        except Exception:
            logger.exception("Scheduled job %s failed", job.name)
