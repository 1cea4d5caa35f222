import os
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import models
from database import Base
from routers.health import crawl_health_check

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_health_service.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="module", autouse=True)
def setup_db():
    yield
    engine.dispose()
    if os.path.exists("./test_health_service.db"):
        os.remove("./test_health_service.db")


@pytest.fixture
def db_session():
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


def add_queue_item(db, scan_id, status, claimed_at=None):
    db.add(models.CrawlQueueItem(
        scan_id=scan_id,
        drive_id="drive-1",
        graph_path="/drives/drive-1/root/children",
        depth=0,
        folder_path="/Documents/",
        status=status,
        claimed_at=claimed_at,
    ))


def test_crawl_health_counts_backlog(db_session):
    scan = models.Scan(user_id="u1", sharepoint_url="https://contoso.sharepoint.com/sites/A", status="crawling")
    db_session.add(scan)
    db_session.commit()

    add_queue_item(db_session, scan.id, "pending")
    add_queue_item(db_session, scan.id, "pending")
    add_queue_item(db_session, scan.id, "processing", claimed_at=datetime.now(timezone.utc))
    add_queue_item(db_session, scan.id, "done")
    db_session.commit()

    health = crawl_health_check(db_session)

    assert health == {
        "status": "healthy",
        "active_scans": 1,
        "pending_items": 2,
        "processing_items": 1,
        "stale_items": 0,
    }


def test_stale_items_degrade_health(db_session):
    scan = models.Scan(user_id="u1", sharepoint_url="https://contoso.sharepoint.com/sites/A", status="crawling")
    db_session.add(scan)
    db_session.commit()

    add_queue_item(db_session, scan.id, "processing", claimed_at=datetime.now(timezone.utc) - timedelta(hours=1))
    db_session.commit()

    health = crawl_health_check(db_session)

    assert health["status"] == "degraded"
    assert health["stale_items"] == 1


def test_empty_database_is_healthy(db_session):
    health = crawl_health_check(db_session)
    assert health["status"] == "healthy"
    assert health["active_scans"] == 0
    assert health["pending_items"] == 0
