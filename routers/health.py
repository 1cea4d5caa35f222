"""
Health check endpoints for the database, the crawl queue and the
configured integrations.
"""

from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import func, text
from sqlalchemy.orm import Session

import models
from config import config
from database import get_db
from services.ai_analysis_service import is_ai_available
from utils.structured_logging import StructuredLogger

router = APIRouter(tags=["health"])

health_logger = StructuredLogger(service="health", logger_name="sp5s.health")


def crawl_health_check(db: Session) -> dict:
    """
    Crawl queue health.

    Returns:
        - active_scans: scans currently in ``crawling``
        - pending_items / processing_items: queue backlog across scans
        - stale_items: processing rows past the staleness window, which the
          next batch of their scan will reclaim
        - status: healthy, or degraded when stale rows are piling up
    """
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=config.CRAWL_STALE_SECONDS)

    active_scans = db.query(func.count(models.Scan.id)).filter(models.Scan.status == "crawling").scalar() or 0
    counts = dict(
        db.query(models.CrawlQueueItem.status, func.count(models.CrawlQueueItem.id))
        .filter(models.CrawlQueueItem.status.in_(("pending", "processing")))
        .group_by(models.CrawlQueueItem.status)
        .all()
    )
    stale_items = db.query(func.count(models.CrawlQueueItem.id)).filter(
        models.CrawlQueueItem.status == "processing",
        models.CrawlQueueItem.claimed_at < cutoff,
    ).scalar() or 0

    return {
        "status": "degraded" if stale_items else "healthy",
        "active_scans": active_scans,
        "pending_items": counts.get("pending", 0),
        "processing_items": counts.get("processing", 0),
        "stale_items": stale_items,
    }


@router.get("/health")
def general_health_check(db: Session = Depends(get_db)):
    """
    General health check.

    Status determination:
        - healthy: database reachable, no stale queue rows
        - degraded: stale queue rows waiting for reclaim
        - unhealthy: database unreachable
    """
    now = datetime.now(timezone.utc)

    try:
        db.execute(text("SELECT 1"))
        database_ok = True
    except Exception as e:
        health_logger.error(action="general_health_check", message="Database check failed", error=e)
        database_ok = False

    crawl = crawl_health_check(db) if database_ok else {"status": "unhealthy"}

    if not database_ok:
        overall_status = "unhealthy"
    else:
        overall_status = crawl["status"]

    health_logger.info(
        action="general_health_check",
        status=overall_status,
        message=f"Overall health: {overall_status}",
        crawl_status=crawl["status"],
    )

    return {
        "overall_status": overall_status,
        "timestamp": now.isoformat(),
        "services": {
            "database": {"status": "healthy" if database_ok else "unhealthy"},
            "crawl": crawl,
            "graph": {"mode": "mock" if config.USE_MOCK_GRAPH else "live"},
            "ai": {"available": is_ai_available(), "model": config.GROQ_MODEL},
            "scheduler": {"enabled": config.SCHEDULER_ENABLED},
        },
    }
