"""APScheduler wrapper running the catalog's background jobs on the event loop."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..config import JobsConfig, ScheduleConfig, ScheduleType
from ..logging_conf import configure_logging, job_logger

JobCallback = Callable[[], Awaitable[None]]


class APSchedulerAdapter:
    """Manage APScheduler jobs for configured catalog tasks."""

    def __init__(self) -> None:
        self.scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self.logger = configure_logging().bind(component="scheduler")
        self.started = False

    def start(self) -> None:
        if not self.started:
            self.scheduler.start()
            self.started = True
            self.logger.info("apscheduler_started")

    def shutdown(self) -> None:
        if self.started:
            self.scheduler.shutdown(wait=False)
            self.started = False
            self.logger.info("apscheduler_stopped")

    def schedule_job(
        self,
        name: str,
        schedule: ScheduleConfig,
        callback: JobCallback,
        run_immediately: bool = False,
    ) -> bool:
        if not schedule.enabled:
            self.logger.info("job_disabled", job=name)
            return False
        options = {}
        if run_immediately:
            options["next_run_time"] = datetime.now(timezone.utc)
        self.scheduler.add_job(
            callback,
            trigger=self._build_trigger(schedule),
            id=f"job::{name}",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            **options,
        )
        self.logger.info("job_scheduled", job=name, schedule=schedule.model_dump(mode="json"))
        return True

    def _build_trigger(self, schedule: ScheduleConfig):
        if schedule.type is ScheduleType.CRON:
            return CronTrigger.from_crontab(str(schedule.value), timezone=timezone.utc)
        if schedule.type is ScheduleType.INTERVAL:
            if isinstance(schedule.value, (int, float)):
                return IntervalTrigger(seconds=float(schedule.value))
            if isinstance(schedule.value, dict):
                return IntervalTrigger(**schedule.value)
            raise ValueError("Interval schedule requires seconds or kwargs dict")
        if schedule.type is ScheduleType.ONCE:
            if schedule.value:
                run_date = datetime.fromisoformat(str(schedule.value))
            else:
                run_date = datetime.now(timezone.utc)
            return DateTrigger(run_date=run_date)
        raise ValueError(f"Unknown schedule type: {schedule.type}")

    def list_jobs(self) -> list[dict]:
        jobs = []
        for job in self.scheduler.get_jobs():
            jobs.append(
                {
                    "id": job.id,
                    "next_run_time": getattr(job, "next_run_time", None),
                    "trigger": str(job.trigger),
                }
            )
        return jobs


class CatalogJobs:
    """The four recurring catalog jobs; each logs its own failures to a job log."""

    def __init__(self, api, jobs: JobsConfig) -> None:
        self.api = api
        self.jobs = jobs
        self.loggers = {
            name: job_logger(name)
            for name in ("dump-import", "recents", "recent-scan", "full-scan")
        }

    async def _guarded(self, name: str, action: Callable[[], Awaitable[object]]) -> None:
        log = self.loggers[name]
        log.info("job_started")
        try:
            result = await action()
        except Exception as exc:  # noqa: BLE001
            log.error("job_failed", error=str(exc), error_type=type(exc).__name__)
            return
        summary = result.summary() if hasattr(result, "summary") else {}
        log.info("job_finished", **summary)

    async def dump_check(self) -> None:
        if not self.api.dump_is_stale():
            self.loggers["dump-import"].debug("dump_import_fresh")
            return
        await self._guarded("dump-import", self.api.import_from_dump)

    async def recents(self) -> None:
        if not self.api.has_completed_dump():
            self.loggers["recents"].debug("waiting_for_dump_import")
            return
        await self._guarded("recents", self.api.import_from_recents)

    async def recent_scan(self) -> None:
        if not self.api.has_completed_dump():
            return
        await self._guarded("recent-scan", self.api.scan_recent_changes)

    async def full_scan(self) -> None:
        if not self.api.has_completed_dump():
            return
        await self._guarded("full-scan", self.api.scan_for_changes)

    def register(self, adapter: APSchedulerAdapter) -> list[str]:
        scheduled = []
        plan = (
            ("dump-import", self.jobs.dump_check, self.dump_check, True),
            ("recents", self.jobs.recents, self.recents, False),
            ("recent-scan", self.jobs.recent_scan, self.recent_scan, False),
            ("full-scan", self.jobs.full_scan, self.full_scan, False),
        )
        for name, schedule, callback, immediate in plan:
            if adapter.schedule_job(name, schedule, callback, run_immediately=immediate):
                scheduled.append(name)
        return scheduled


__all__ = ["APSchedulerAdapter", "CatalogJobs"]
