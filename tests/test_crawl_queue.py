"""
Tests for the database-backed crawl queue.
"""

import os
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from database import Base
import models
from services.crawl_queue import CrawlQueue


SQLALCHEMY_DATABASE_URL = "sqlite:///./test_crawl_queue.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False})

@event.listens_for(engine, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()

TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="module", autouse=True)
def setup_module():
    yield
    engine.dispose()
    if os.path.exists("./test_crawl_queue.db"):
        os.remove("./test_crawl_queue.db")


@pytest.fixture
def db_session():
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def scan(db_session):
    scan = models.Scan(user_id="user-1", sharepoint_url="https://contoso.sharepoint.com/sites/Demo", status="crawling")
    db_session.add(scan)
    db_session.commit()
    return scan


def queue_row(scan_id, folder_path, depth=0, **kwargs):
    row = {
        "scan_id": scan_id,
        "drive_id": "drive-1",
        "graph_path": f"/drives/drive-1/root:{folder_path}:/children",
        "parent_item_id": kwargs.pop("parent_item_id", None),
        "depth": depth,
        "folder_path": folder_path,
    }
    row.update(kwargs)
    return row


def test_enqueue_defaults_to_pending(db_session, scan):
    queue = CrawlQueue(db_session)
    assert queue.has_items(scan.id) is False

    queue.enqueue([queue_row(scan.id, "/Documents/")])
    db_session.commit()

    assert queue.has_items(scan.id) is True
    assert queue.count_by_status(scan.id) == {"pending": 1, "processing": 0, "done": 0, "error": 0}


def test_fetch_pending_is_breadth_first(db_session, scan):
    queue = CrawlQueue(db_session)
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    queue.enqueue([
        queue_row(scan.id, "/Documents/A/B/", depth=2, created_at=base),
        queue_row(scan.id, "/Documents/Z/", depth=1, created_at=base + timedelta(seconds=5)),
        queue_row(scan.id, "/Documents/A/", depth=1, created_at=base + timedelta(seconds=1)),
        queue_row(scan.id, "/Documents/", depth=0, created_at=base + timedelta(seconds=9)),
    ])
    db_session.commit()

    paths = [item.folder_path for item in queue.fetch_pending(scan.id, limit=3)]
    assert paths == ["/Documents/", "/Documents/A/", "/Documents/Z/"]


def test_claim_is_atomic(db_session, scan):
    queue = CrawlQueue(db_session)
    queue.enqueue([queue_row(scan.id, "/Documents/")])
    db_session.commit()
    item = queue.fetch_pending(scan.id, limit=1)[0]

    other_session = TestingSessionLocal()
    try:
        assert CrawlQueue(other_session).claim(item.id) is True
    finally:
        other_session.close()

    # The first caller's snapshot still says pending, but the claim is lost
    assert queue.claim(item.id) is False
    db_session.refresh(item)
    assert item.status == "processing"
    assert item.claimed_at is not None


def test_reclaim_stale_only_touches_old_claims(db_session, scan):
    queue = CrawlQueue(db_session)
    now = datetime.now(timezone.utc)
    queue.enqueue([
        queue_row(scan.id, "/Documents/old/", status="processing", claimed_at=now - timedelta(minutes=5)),
        queue_row(scan.id, "/Documents/fresh/", status="processing", claimed_at=now - timedelta(seconds=30)),
        queue_row(scan.id, "/Documents/done/", status="done"),
    ])
    db_session.commit()

    reclaimed = queue.reclaim_stale(scan.id, timedelta(minutes=2), now=now)

    assert reclaimed == 1
    pending = queue.fetch_pending(scan.id, limit=10)
    assert [item.folder_path for item in pending] == ["/Documents/old/"]
    assert pending[0].claimed_at is None


def test_reclaim_stale_falls_back_to_created_at_without_claim(db_session, scan):
    queue = CrawlQueue(db_session)
    now = datetime.now(timezone.utc)
    queue.enqueue([
        queue_row(scan.id, "/Documents/legacy/", status="processing", created_at=now - timedelta(minutes=10)),
    ])
    db_session.commit()

    assert queue.reclaim_stale(scan.id, timedelta(minutes=2), now=now) == 1


def test_mark_done_waits_for_caller_commit(db_session, scan):
    queue = CrawlQueue(db_session)
    queue.enqueue([queue_row(scan.id, "/Documents/")])
    db_session.commit()
    item = queue.fetch_pending(scan.id, limit=1)[0]
    queue.claim(item.id)

    queue.mark_done(item.id)
    db_session.rollback()
    assert queue.count_by_status(scan.id)["processing"] == 1

    queue.mark_done(item.id)
    db_session.commit()
    assert queue.count_by_status(scan.id)["done"] == 1


def test_mark_error_and_first_error_message(db_session, scan):
    queue = CrawlQueue(db_session)
    queue.enqueue([queue_row(scan.id, "/Documents/A/"), queue_row(scan.id, "/Documents/B/")])
    db_session.commit()
    first, second = queue.fetch_pending(scan.id, limit=2)

    queue.mark_error(first.id, "Graph API error 403: accessDenied")
    queue.mark_error(second.id, "Graph API error 404: itemNotFound")

    assert queue.count_by_status(scan.id)["error"] == 2
    assert queue.first_error_message(scan.id) == "Graph API error 403: accessDenied"


def test_queued_parents(db_session, scan):
    queue = CrawlQueue(db_session)
    queue.enqueue([
        queue_row(scan.id, "/Documents/A/", depth=1, parent_item_id="item-a"),
        queue_row(scan.id, "/Documents/B/", depth=1, parent_item_id="item-b"),
    ])
    db_session.commit()

    assert queue.queued_parents(scan.id, ["item-a", "item-c"]) == {"item-a"}
    assert queue.queued_parents(scan.id, []) == set()
