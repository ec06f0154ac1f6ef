"""Daily sync schedule on APScheduler."""

import time
from typing import Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from costsentry.core.config import Settings, get_settings

logger = structlog.get_logger()

DAILY_SYNC_JOB_ID = "daily_cost_sync"


class SyncScheduler:
    """Runs SyncEngine.sync_all() once a day (UTC)."""

    def __init__(self, engine, settings: Optional[Settings] = None):
        self.engine = engine
        self.settings = settings or get_settings()
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self._last_run_success: bool | None = None

    async def daily_sync_job(self) -> None:
        started = time.time()
        try:
            results = await self.engine.sync_all()
        except Exception as e:
            self._last_run_success = False
            logger.error("scheduled_sync_failed", error=str(e))
            return

        summary = self.engine.summarize(results)
        self._last_run_success = summary.failed == 0
        logger.info(
            "scheduled_sync_completed",
            total=summary.total,
            succeeded=summary.succeeded,
            partial=summary.partial,
            failed=summary.failed,
            duration_seconds=round(time.time() - started, 2),
        )

    def start(self) -> None:
        self.scheduler.add_job(
            self.daily_sync_job,
            trigger=CronTrigger(hour=self.settings.SCHEDULER_HOUR, minute=self.settings.SCHEDULER_MINUTE, timezone="UTC"),
            id=DAILY_SYNC_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        logger.info(
            "sync_scheduler_started",
            hour=self.settings.SCHEDULER_HOUR,
            minute=self.settings.SCHEDULER_MINUTE,
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("sync_scheduler_stopped")

    def get_status(self) -> dict:
        job = self.scheduler.get_job(DAILY_SYNC_JOB_ID)
        return {
            "running": self.scheduler.running,
            "last_run_success": self._last_run_success,
            "next_run_time": job.next_run_time.isoformat() if job and job.next_run_time else None,
        }
