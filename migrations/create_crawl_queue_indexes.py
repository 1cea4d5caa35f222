"""
Migration script for crawl queue bookkeeping.

Adds the claimed_at column used for stale-claim recovery (older
deployments created crawl_queue without it) and the indexes the batch
cycle and the analysis pass rely on. Every statement is idempotent, so
this runs on each startup when RUN_MIGRATIONS_ON_STARTUP is enabled.
"""

import logging

from sqlalchemy import inspect, text

from database import engine

logger = logging.getLogger("sp5s.migrations")

INDEX_STATEMENTS = [
    # Pending-row selection in BFS order
    """
    CREATE INDEX IF NOT EXISTS idx_crawl_queue_scan_pending
        ON crawl_queue(scan_id, depth, created_at) WHERE status = 'pending';
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_crawl_queue_scan_status
        ON crawl_queue(scan_id, status);
    """,
    # Skip folders already queued when a folder is re-expanded
    """
    CREATE INDEX IF NOT EXISTS idx_crawl_queue_scan_parent
        ON crawl_queue(scan_id, parent_item_id);
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_crawled_files_scan_item
        ON crawled_files(scan_id, graph_item_id);
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_suggestions_scan_decision
        ON suggestions(scan_id, user_decision);
    """,
]


def migrate_create_crawl_queue_indexes():
    """Ensure claimed_at exists and create the crawl/analysis indexes."""
    logger.info("Starting migration: crawl queue indexes")

    inspector = inspect(engine)
    if not inspector.has_table("crawl_queue"):
        logger.info("crawl_queue table not found, skipping (run init_db first)")
        return

    columns = {column["name"] for column in inspector.get_columns("crawl_queue")}

    with engine.begin() as conn:
        if "claimed_at" not in columns:
            logger.info("Adding crawl_queue.claimed_at")
            conn.execute(text("ALTER TABLE crawl_queue ADD COLUMN claimed_at TIMESTAMP WITH TIME ZONE"))

        for stmt in INDEX_STATEMENTS:
            logger.info(f"Executing: {' '.join(stmt.split())[:80]}...")
            conn.execute(text(stmt))

    logger.info("Migration completed: crawl queue indexes ensured")


if __name__ == "__main__":
    migrate_create_crawl_queue_indexes()
