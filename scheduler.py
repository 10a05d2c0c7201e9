import logging
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from runtime import Runtime


logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, runtime: Runtime, blocking: bool = False) -> None:
        self.runtime = runtime
        scheduler_cls = BlockingScheduler if blocking else BackgroundScheduler
        self.scheduler = scheduler_cls(timezone=runtime.settings.timezone)

    def _jobs(self) -> dict[str, Callable[[], object]]:
        return {
            "recurring": lambda: self.runtime.dispatcher().run(),
            "budget_alerts": lambda: self.runtime.budget_alerts().run(),
            "monthly_reports": lambda: self.runtime.monthly_reports().run(),
        }

    def run_job(self, name: str, source: str = "manual") -> Optional[object]:
        job = self._jobs().get(name)
        if job is None:
            raise ValueError(f"Unknown job: {name}")
        logger.info(f"scheduler_run: job={name} source={source}")
        try:
            result = job()
        except Exception:
            logger.exception(f"scheduler_job_failed: job={name} source={source}")
            return None
        logger.info(f"scheduler_done: job={name} source={source} result={result}")
        return result

    def start(self) -> None:
        self.scheduler.add_job(
            self.run_job,
            CronTrigger(hour=0, minute=0),
            args=["recurring", "daily_00:00"],
            id="recurring_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self.run_job,
            CronTrigger(hour="*/6", minute=0),
            args=["budget_alerts", "every_6h"],
            id="budget_alerts",
            replace_existing=True,
            misfire_grace_time=900,
        )
        self.scheduler.add_job(
            self.run_job,
            CronTrigger(day=1, hour=0, minute=0),
            args=["monthly_reports", "monthly_day_1"],
            id="monthly_reports",
            replace_existing=True,
            misfire_grace_time=6 * 3600,
        )
        logger.info("Scheduler started with daily recurring, 6-hourly budget and monthly report jobs")
        self.scheduler.start()

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
