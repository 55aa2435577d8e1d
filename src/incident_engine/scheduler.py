from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler

log = structlog.get_logger(__name__)

Job = Callable[[], Awaitable[Any]]

SWEEP_JOB_ID = "escalation_sweep"
RETENTION_JOB_ID = "retention_purge"


class SweepRunner:
    def __init__(self, sweep_interval_seconds: int = 60, retention_interval_hours: int = 24) -> None:
        self.sweep_interval_seconds = sweep_interval_seconds
        self.retention_interval_hours = retention_interval_hours
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self, sweep: Job, purge: Job | None = None) -> None:
        if self.is_running:
            log.warning("sweep_runner_already_running")
            return

        scheduler = AsyncIOScheduler(timezone="UTC")
        scheduler.add_job(
            sweep,
            "interval",
            seconds=self.sweep_interval_seconds,
            id=SWEEP_JOB_ID,
            name="Escalation sweep",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        if purge is not None:
            scheduler.add_job(
                purge,
                "interval",
                hours=self.retention_interval_hours,
                id=RETENTION_JOB_ID,
                name="Retention purge",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
        scheduler.start()
        self._scheduler = scheduler
        log.info(
            "sweep_runner_started",
            sweep_interval_seconds=self.sweep_interval_seconds,
            retention_enabled=purge is not None,
        )

    def job_ids(self) -> list[str]:
        if self._scheduler is None:
            return []
        return [job.id for job in self._scheduler.get_jobs()]

    def stop(self) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        log.info("sweep_runner_stopped")
