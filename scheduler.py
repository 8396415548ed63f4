import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import sessionmaker

from alerts import LoggingNotificationSink, NotificationSink
from config import get_settings
from database import SessionLocal, session_scope
from periods import local_today, month_key
from services import (
    AlertService,
    LedgerRepository,
    RecurringService,
    SqlAlertStateStore,
)


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(
        self,
        sink: Optional[NotificationSink] = None,
        session_factory: sessionmaker = SessionLocal,
    ) -> None:
        settings = get_settings()
        self.settings = settings
        self.sink = sink or LoggingNotificationSink()
        self.session_factory = session_factory
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> int:
        logger.info(f"alert_evaluation: source={source}")
        with session_scope(self.session_factory) as session:
            store = LedgerRepository(session).load_ledger(self.settings.ledger_key)
            service = AlertService(
                SqlAlertStateStore(session, self.settings.ledger_key), self.sink
            )
            month = month_key(local_today())
            fired = service.evaluate(store, month)
        logger.info(
            f"alert_evaluation: source={source} month={month} fired={len(fired)}"
        )
        return len(fired)

    def _run_recurring(self, source: str = "manual") -> int:
        logger.info(f"recurring_catch_up: source={source}")
        with session_scope(self.session_factory) as session:
            alerts = AlertService(
                SqlAlertStateStore(session, self.settings.ledger_key), self.sink
            )
            service = RecurringService(
                LedgerRepository(session), alerts, self.settings.ledger_key
            )
            count = service.catch_up_all()
        logger.info(f"recurring_catch_up: source={source} posted={count}")
        return count

    def start(self) -> None:
        self._run_recurring("startup")
        self._run_job("startup")

        trigger = IntervalTrigger(minutes=self.settings.alert_interval_minutes)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["interval"],
            id="alert_interval",
            replace_existing=True,
            misfire_grace_time=300,
        )

        # First evaluation of a new month, before anyone opens the app.
        trigger = CronTrigger(day=1, hour=0, minute=5)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["month_start"],
            id="alert_month_start",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = CronTrigger(hour=0, minute=1)
        self.scheduler.add_job(
            self._run_recurring,
            trigger,
            args=["daily"],
            id="recurring_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with {self.settings.alert_interval_minutes} minute "
            "alert evaluation"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
