import logging
from datetime import timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from config import settings

logger = logging.getLogger(__name__)

JOB_ID = "license_check"


class LicenseCheckScheduler:
    """
    Periodic re-validation. Each tick calls ``on_scheduled_tick`` once; a
    failed check is never retried before the next tick.
    """

    def __init__(self, license_manager, interval_hours: int = None, scheduler: AsyncIOScheduler = None):
        self.license_manager = license_manager
        self.interval_hours = interval_hours or settings.CHECK_INTERVAL_HOURS
        self.scheduler = scheduler or AsyncIOScheduler()

    def add_check_job(self):
        """
        Register the interval job. The first run happens as soon as a check
        is due, so a restart never pushes re-validation further out.
        """
        if self.scheduler.get_job(JOB_ID) is not None:
            return
        first_run = self.license_manager.next_check_due(timedelta(hours=self.interval_hours))
        self.scheduler.add_job(
            self.license_manager.on_scheduled_tick,
            'interval',
            hours=self.interval_hours,
            id=JOB_ID,
            next_run_time=first_run,
            max_instances=1,
            coalesce=True
        )
        logger.info("License check scheduled every %d hours, next at %s", self.interval_hours, first_run.isoformat())

    def start(self):
        self.add_check_job()
        if not self.scheduler.running:
            self.scheduler.start()

    def stop(self):
        if self.scheduler.get_job(JOB_ID) is not None:
            self.scheduler.remove_job(JOB_ID)
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
