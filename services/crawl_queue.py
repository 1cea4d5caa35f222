"""
Crawl queue store.

Each row of ``crawl_queue`` is one folder whose children still have to be
fetched. Rows move pending -> processing -> done | error; rows left in
processing by a crashed or timed-out worker are handed back to pending once
their claim is older than the staleness window.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

import models

# Keep IN (...) lists well under driver parameter limits
_IN_CHUNK = 500


def _chunks(values: List[str], size: int = _IN_CHUNK) -> Iterable[List[str]]:
    for start in range(0, len(values), size):
        yield values[start:start + size]


class CrawlQueue:
    def __init__(self, db: Session):
        self.db = db

    def enqueue(self, rows: List[dict]) -> None:
        """Add queue rows (not committed; callers commit with their own writes)."""
        now = datetime.now(timezone.utc)
        for row in rows:
            row.setdefault("status", "pending")
            row.setdefault("created_at", now)
            self.db.add(models.CrawlQueueItem(**row))

    def has_items(self, scan_id: str) -> bool:
        return self.db.query(models.CrawlQueueItem.id).filter(
            models.CrawlQueueItem.scan_id == scan_id
        ).first() is not None

    def reclaim_stale(self, scan_id: str, stale_after: timedelta, now: Optional[datetime] = None) -> int:
        """Return processing rows whose claim is older than ``stale_after`` to pending."""
        cutoff = (now or datetime.now(timezone.utc)) - stale_after
        reclaimed = self.db.query(models.CrawlQueueItem).filter(
            models.CrawlQueueItem.scan_id == scan_id,
            models.CrawlQueueItem.status == "processing",
            or_(
                models.CrawlQueueItem.claimed_at < cutoff,
                and_(
                    models.CrawlQueueItem.claimed_at.is_(None),
                    models.CrawlQueueItem.created_at < cutoff,
                ),
            ),
        ).update(
            {"status": "pending", "claimed_at": None},
            synchronize_session=False,
        )
        self.db.commit()
        return reclaimed

    def fetch_pending(self, scan_id: str, limit: int) -> List[models.CrawlQueueItem]:
        """Shallowest folders first, then oldest: breadth-first order."""
        return (
            self.db.query(models.CrawlQueueItem)
            .filter(
                models.CrawlQueueItem.scan_id == scan_id,
                models.CrawlQueueItem.status == "pending",
            )
            .order_by(
                models.CrawlQueueItem.depth.asc(),
                models.CrawlQueueItem.created_at.asc(),
                models.CrawlQueueItem.id.asc(),
            )
            .limit(limit)
            .all()
        )

    def claim(self, item_id: int, now: Optional[datetime] = None) -> bool:
        """
        Atomically move one row from pending to processing.
        Returns False when another worker got there first.
        """
        updated = self.db.query(models.CrawlQueueItem).filter(
            models.CrawlQueueItem.id == item_id,
            models.CrawlQueueItem.status == "pending",
        ).update(
            {"status": "processing", "claimed_at": now or datetime.now(timezone.utc)},
            synchronize_session=False,
        )
        self.db.commit()
        return updated == 1

    def mark_done(self, item_id: int) -> None:
        """Not committed: lands in the same transaction as the folder's rows."""
        self.db.query(models.CrawlQueueItem).filter(
            models.CrawlQueueItem.id == item_id
        ).update(
            {"status": "done", "processed_at": datetime.now(timezone.utc), "error_message": None},
            synchronize_session=False,
        )

    def mark_error(self, item_id: int, message: str) -> None:
        self.db.query(models.CrawlQueueItem).filter(
            models.CrawlQueueItem.id == item_id
        ).update(
            {"status": "error", "processed_at": datetime.now(timezone.utc), "error_message": message},
            synchronize_session=False,
        )
        self.db.commit()

    def count_by_status(self, scan_id: str) -> Dict[str, int]:
        counts = {status: 0 for status in models.QUEUE_STATUSES}
        rows = (
            self.db.query(models.CrawlQueueItem.status, func.count(models.CrawlQueueItem.id))
            .filter(models.CrawlQueueItem.scan_id == scan_id)
            .group_by(models.CrawlQueueItem.status)
            .all()
        )
        for status, count in rows:
            counts[status] = count
        return counts

    def first_error_message(self, scan_id: str) -> Optional[str]:
        row = (
            self.db.query(models.CrawlQueueItem.error_message)
            .filter(
                models.CrawlQueueItem.scan_id == scan_id,
                models.CrawlQueueItem.status == "error",
            )
            .order_by(models.CrawlQueueItem.processed_at.asc(), models.CrawlQueueItem.id.asc())
            .first()
        )
        return row[0] if row else None

    def queued_parents(self, scan_id: str, item_ids: List[str]) -> Set[str]:
        """Remote folder ids that already have a queue row in this scan."""
        found: Set[str] = set()
        for chunk in _chunks(item_ids):
            rows = self.db.query(models.CrawlQueueItem.parent_item_id).filter(
                models.CrawlQueueItem.scan_id == scan_id,
                models.CrawlQueueItem.parent_item_id.in_(chunk),
            ).all()
            found.update(row[0] for row in rows)
        return found
