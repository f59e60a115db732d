import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from recurrence import RecurringMaterializer
from services import PartnerService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: source={source}")
        with session_scope() as session:
            result = RecurringMaterializer(session).run()
            logger.info(
                f"scheduler_run: source={source} ran={result.ran} "
                f"created={result.created_count} annual_updated={result.updated_count}"
            )

    def _cleanup_invitations(self) -> None:
        with session_scope() as session:
            removed = PartnerService(session).cleanup_duplicate_invitations()
            logger.info(f"scheduler_cleanup: duplicate_invitations_removed={removed}")

    def start(self) -> None:
        self._cleanup_invitations()
        self._run_job("startup")

        # The job is a no-op outside the first day of the month.
        trigger = CronTrigger(hour=0, minute=5)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["daily_00:05"],
            id="recurring_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["hourly_safety_net"],
            id="recurring_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.add_job(
            self._cleanup_invitations,
            CronTrigger(hour=3, minute=30),
            id="partner_invitation_cleanup",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info(
            "Scheduler started: recurring at 00:05 plus hourly, invitation cleanup at 03:30"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
