import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from services import WebhookService

logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        self.settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)

    def _run_job(self, source: str = "manual") -> int:
        logger.info(f"scheduler_run: source={source}")
        with session_scope() as session:
            count = WebhookService(session).process_pending(
                self.settings.webhook_max_attempts
            )
        logger.info(f"scheduler_run: source={source} events_processed={count}")
        return count

    def start(self) -> None:
        if not self.settings.scheduler_enabled:
            logger.info("Scheduler disabled")
            return

        self._run_job("startup")

        trigger = IntervalTrigger(minutes=self.settings.webhook_sweep_minutes)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["webhook_sweep"],
            id="webhook_sweep",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with webhook sweep every "
            f"{self.settings.webhook_sweep_minutes} minutes"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
