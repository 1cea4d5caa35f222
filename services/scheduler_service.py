from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from database import SessionLocal
from services.crawl_service import CrawlService
from utils.structured_logging import crawl_logger
import logging
from config import config

logger = logging.getLogger("sp5s.scheduler")

class SchedulerService:
    """
    Timer-driven alternative to polling: every interval, each scan still in
    ``crawling`` is pushed forward by one batch. Polling keeps working
    alongside since batches claim queue rows atomically.
    """

    def __init__(self):
        self.scheduler = AsyncIOScheduler()

    def get_crawl_service(self, db) -> CrawlService:
        return CrawlService(db)

    def start(self):
        if not self.scheduler.running:
            self.scheduler.add_job(
                self.advance_crawls_job,
                IntervalTrigger(seconds=config.SCHEDULER_INTERVAL_SECONDS),
                id="advance_crawls",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )

            self.scheduler.start()
            logger.info("Scheduler started.")

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown()
            logger.info("Scheduler stopped.")

    def advance_crawls_job(self):
        """
        Job wrapper to handle database session.
        """
        db = SessionLocal()
        try:
            count = self.get_crawl_service(db).advance_active_crawls()
            if count:
                crawl_logger.info(
                    action="advance_crawls_job",
                    message=f"Advanced {count} active crawl(s)",
                    scan_count=count,
                )
        except Exception as e:
            crawl_logger.error(
                action="advance_crawls_job",
                message="Error in crawl advance job",
                error=e,
            )
        finally:
            db.close()

scheduler_service = SchedulerService()
