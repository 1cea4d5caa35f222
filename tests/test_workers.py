"""
Tests for the scheduler job that advances crawls, and the startup migration.
"""

import os
from unittest.mock import Mock

import pytest
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import sessionmaker

from database import Base
from migrations import create_crawl_queue_indexes as migration
from services import scheduler_service as scheduler_module
from services.crawl_service import CrawlService
from services.graph_client_mock import MockGraphClient

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_workers.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="module", autouse=True)
def setup_module():
    yield
    engine.dispose()
    if os.path.exists("./test_workers.db"):
        os.remove("./test_workers.db")


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
def graph():
    graph = MockGraphClient()
    site_id = graph.add_site("contoso.sharepoint.com", "/sites/Demo")
    drive_id = graph.add_drive(site_id, "Documents")
    folder = graph.add_folder(drive_id, "Reports")
    graph.add_file(drive_id, "q1.pdf", 10, parent_id=folder)
    return graph


class TestAdvanceCrawlsJob:
    def test_job_pushes_crawling_scans_forward(self, db_session, graph, monkeypatch):
        monkeypatch.setattr(scheduler_module, "SessionLocal", TestingSessionLocal)
        service = CrawlService(db_session, graph=graph)
        scan = service.start_crawl("worker-user", "https://contoso.sharepoint.com/sites/Demo")
        service.initialize_crawl(scan.id)

        job = scheduler_module.SchedulerService()
        job.get_crawl_service = lambda db: CrawlService(db, graph=graph)
        job.advance_crawls_job()

        db_session.refresh(scan)
        assert scan.status == "crawled"
        assert scan.total_files == 1

    def test_job_logs_and_swallows_failures(self, monkeypatch):
        session = Mock()
        monkeypatch.setattr(scheduler_module, "SessionLocal", Mock(return_value=session))
        error_log = Mock()
        monkeypatch.setattr(scheduler_module.crawl_logger, "error", error_log)

        job = scheduler_module.SchedulerService()
        broken = Mock()
        broken.advance_active_crawls.side_effect = RuntimeError("database is gone")
        job.get_crawl_service = lambda db: broken

        job.advance_crawls_job()

        error_log.assert_called_once()
        assert error_log.call_args.kwargs["action"] == "advance_crawls_job"
        session.close.assert_called_once()

    def test_shutdown_without_start_is_noop(self):
        scheduler_module.SchedulerService().shutdown()


class TestCrawlQueueMigration:
    def test_skips_when_table_missing(self, monkeypatch):
        monkeypatch.setattr(migration, "engine", engine)
        Base.metadata.drop_all(bind=engine)
        migration.migrate_create_crawl_queue_indexes()
        assert not inspect(engine).has_table("crawl_queue")

    def test_adds_claimed_at_and_indexes(self, monkeypatch):
        monkeypatch.setattr(migration, "engine", engine)
        Base.metadata.create_all(bind=engine)
        try:
            with engine.begin() as conn:
                conn.execute(text("ALTER TABLE crawl_queue DROP COLUMN claimed_at"))

            migration.migrate_create_crawl_queue_indexes()
            # Second run must be a no-op
            migration.migrate_create_crawl_queue_indexes()

            inspector = inspect(engine)
            columns = {c["name"] for c in inspector.get_columns("crawl_queue")}
            indexes = {i["name"] for i in inspector.get_indexes("crawl_queue")}
            assert "claimed_at" in columns
            assert {"idx_crawl_queue_scan_pending", "idx_crawl_queue_scan_parent"} <= indexes
        finally:
            Base.metadata.drop_all(bind=engine)
