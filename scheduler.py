import logging
from typing import Callable

from apscheduler.schedulers.background import BackgroundScheduler

from config import get_settings

logger = logging.getLogger(__name__)


class SchedulerManager:
    """Runs detached one-off jobs, at most one running instance per job id."""

    def __init__(self) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def submit(self, job_id: str, func: Callable[[], None]) -> None:
        logger.info(f"scheduler_submit: job={job_id}")
        self.scheduler.add_job(
            func,
            trigger="date",
            id=job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
        )

    def start(self) -> None:
        if self.scheduler.running:
            return
        self.scheduler.start()
        logger.info("Scheduler started for background sync jobs")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
