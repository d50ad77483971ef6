import logging
from datetime import date, timedelta
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import get_settings
from cube_store import CubeStore
from database import session_scope
from ledger import LedgerReader
from schemas import PopulateOptions
from services import PopulationService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def refresh_recent_periods(session, today: Optional[date] = None) -> int:
    """Re-populate the trailing refresh window for every tenant.

    Repairs anything a swallowed cube hook failure left stale, including cube
    rows of tenants whose ledger is now empty. Returns the number of periods
    rebuilt.
    """
    settings = get_settings()
    today = today or date.today()
    start = today - timedelta(days=settings.refresh_window_days)
    tenants = set(LedgerReader(session).tenants()) | set(CubeStore(session).tenants())
    periods = 0
    for tenant_id in sorted(tenants):
        result = PopulationService(session, tenant_id).populate(
            PopulateOptions(start_date=start, end_date=today)
        )
        periods += result.periods_processed
    return periods


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: source={source}")
        with session_scope() as session:
            count = refresh_recent_periods(session)
            logger.info(f"scheduler_run: source={source} periods_refreshed={count}")

    def start(self) -> None:
        self._run_job("startup")

        trigger = CronTrigger(hour=3, minute=15)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["daily_03:15"],
            id="cube_refresh_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info("Scheduler started with daily 03:15 cube refresh")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
