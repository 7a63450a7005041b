import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from core.config import settings
from core.database import async_session_maker
from ingestion.job_store import JobStore
from ingestion.runner import JobRunner

logger = logging.getLogger(__name__)


class SyncScheduler:
    """
    Background trigger for runner passes.

    Two interval jobs:
    - run_pending: one bounded runner pass
    - requeue_stale: return jobs abandoned by a crashed runner to the queue
    """

    def __init__(self, runner: JobRunner = None, session_maker=None):
        self.scheduler = AsyncIOScheduler()
        self.session_maker = session_maker or async_session_maker
        self.runner = runner or JobRunner(session_maker=self.session_maker)

    async def run_pending_job(self):
        """Job to advance queued pipeline jobs"""
        try:
            advanced = await self.runner.run_pending()
            if advanced:
                logger.info(f"Scheduler: advanced {advanced} job(s)")
        except Exception as e:
            logger.exception(f"Scheduler: runner pass failed - {e}")

    async def requeue_stale_job(self):
        """Job to recover jobs stuck in running"""
        async with self.session_maker() as session:
            try:
                await JobStore(session).requeue_stale(settings.STALE_JOB_SECONDS)
            except Exception as e:
                logger.exception(f"Scheduler: stale job sweep failed - {e}")

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.run_pending_job,
            trigger=IntervalTrigger(seconds=settings.RUNNER_INTERVAL_SECONDS),
            id="run_pending",
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )
        self.scheduler.add_job(
            self.requeue_stale_job,
            trigger=IntervalTrigger(seconds=max(settings.STALE_JOB_SECONDS // 3, 60)),
            id="requeue_stale",
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )
        self.scheduler.start()
        logger.info(f"Sync scheduler started (every {settings.RUNNER_INTERVAL_SECONDS}s)")

    def stop(self):
        self.scheduler.shutdown()
        logger.info("Sync scheduler stopped")
