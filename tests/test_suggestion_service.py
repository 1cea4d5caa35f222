"""
Tests for suggestion review and execution against the Graph mock.
"""

import os

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
import models
from services.crawl_service import ScanNotFound
from services.graph_client import GraphAPIError
from services.graph_client_mock import MockGraphClient
from services.suggestion_service import InvalidDecision, SuggestionNotFound, SuggestionService


SQLALCHEMY_DATABASE_URL = "sqlite:///./test_suggestion_service.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

USER_ID = "user-suggest-1"


@pytest.fixture(scope="module", autouse=True)
def setup_module():
    yield
    engine.dispose()
    if os.path.exists("./test_suggestion_service.db"):
        os.remove("./test_suggestion_service.db")


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
    graph.drive_id = graph.add_drive(site_id, "Documents")
    return graph


@pytest.fixture
def seeded(db_session, graph):
    scan = models.Scan(user_id=USER_ID, sharepoint_url="https://contoso.sharepoint.com/sites/Demo", status="complete")
    db_session.add(scan)
    db_session.commit()

    def add(name, category, severity, title, confidence, suggested_value=None, source="rules"):
        graph_item_id = graph.add_file(graph.drive_id, name, 10)
        row = models.CrawledFile(
            scan_id=scan.id,
            drive_id=graph.drive_id,
            graph_item_id=graph_item_id,
            name=name,
            path=f"/Documents/{name}",
            size_bytes=10,
            web_url=f"https://contoso.sharepoint.com/{name}",
        )
        db_session.add(row)
        db_session.flush()
        suggestion = models.Suggestion(
            scan_id=scan.id,
            file_id=row.id,
            category=category,
            severity=severity,
            title=title,
            description="",
            current_value=row.path,
            suggested_value=suggested_value,
            confidence=confidence,
            source=source,
        )
        db_session.add(suggestion)
        db_session.flush()
        return suggestion

    rows = {
        "temp": add("~$lock.docx", "delete", "critical", "Temporary file", 1.0),
        "caps": add("ANNUAL REPORT.docx", "rename", "low", "ALL CAPS filename", 0.7, "annual-report.docx"),
        "old": add("ancient.pdf", "archive", "medium", "Stale file", 0.65),
        "ai": add("misc.txt", "delete", "high", "Looks abandoned", 0.9, source="ai"),
    }
    db_session.commit()
    return scan, rows


def test_list_sorted_by_severity_by_default(db_session, graph, seeded):
    scan, rows = seeded
    listed = SuggestionService(db_session, graph=graph).list_suggestions(USER_ID, scan.id)
    assert [s.severity for s in listed] == ["critical", "high", "medium", "low"]


def test_list_sort_options(db_session, graph, seeded):
    scan, rows = seeded
    service = SuggestionService(db_session, graph=graph)

    by_confidence = service.list_suggestions(USER_ID, scan.id, sort_by="confidence")
    assert [s.confidence for s in by_confidence] == [1.0, 0.9, 0.7, 0.65]

    by_name = service.list_suggestions(USER_ID, scan.id, sort_by="name")
    assert [s.current_value for s in by_name] == sorted(s.current_value for s in by_name)

    with pytest.raises(InvalidDecision):
        service.list_suggestions(USER_ID, scan.id, sort_by="size")


def test_list_filters(db_session, graph, seeded):
    scan, rows = seeded
    service = SuggestionService(db_session, graph=graph)

    assert [s.id for s in service.list_suggestions(USER_ID, scan.id, source="ai")] == [rows["ai"].id]
    assert len(service.list_suggestions(USER_ID, scan.id, category="delete")) == 2
    assert service.list_suggestions(USER_ID, scan.id, decision="approved") == []


def test_list_checks_scan_owner(db_session, graph, seeded):
    scan, _ = seeded
    with pytest.raises(ScanNotFound):
        SuggestionService(db_session, graph=graph).list_suggestions("intruder", scan.id)


def test_update_decision(db_session, graph, seeded):
    _, rows = seeded
    service = SuggestionService(db_session, graph=graph)

    updated = service.update_decision(USER_ID, rows["old"].id, "rejected")
    assert updated.user_decision == "rejected"
    assert updated.decided_at is not None

    with pytest.raises(InvalidDecision):
        service.update_decision(USER_ID, rows["old"].id, "executed")
    with pytest.raises(SuggestionNotFound):
        service.update_decision("intruder", rows["old"].id, "approved")


def test_execute_delete_and_rename(db_session, graph, seeded):
    scan, rows = seeded
    service = SuggestionService(db_session, graph=graph)
    service.update_decision(USER_ID, rows["temp"].id, "approved")
    service.update_decision(USER_ID, rows["caps"].id, "approved")
    temp_item = rows["temp"].file.graph_item_id
    caps_item = rows["caps"].file.graph_item_id

    results = service.execute_suggestions(USER_ID, [rows["caps"].id, rows["temp"].id])

    assert results == [
        {"suggestion_id": rows["caps"].id, "status": "success", "action": "rename"},
        {"suggestion_id": rows["temp"].id, "status": "success", "action": "delete"},
    ]
    assert temp_item not in graph.items
    assert graph.items[caps_item]["name"] == "annual-report.docx"
    assert f"PATCH /drives/{graph.drive_id}/items/{caps_item}" in graph.calls

    db_session.refresh(rows["temp"])
    assert rows["temp"].user_decision == "executed"
    actions = db_session.query(models.ExecutedAction).filter_by(scan_id=scan.id).all()
    assert sorted((a.action_type, a.status) for a in actions) == [("delete", "success"), ("rename", "success")]
    assert all(a.user_id == USER_ID for a in actions)

    with pytest.raises(InvalidDecision):
        service.update_decision(USER_ID, rows["temp"].id, "pending")


def test_execute_records_failures(db_session, graph, seeded):
    scan, rows = seeded
    service = SuggestionService(db_session, graph=graph)
    service.update_decision(USER_ID, rows["ai"].id, "approved")
    item_path = f"/drives/{graph.drive_id}/items/{rows['ai'].file.graph_item_id}"
    graph.failures[item_path] = GraphAPIError(403, "accessDenied")

    results = service.execute_suggestions(USER_ID, [rows["ai"].id])

    assert results[0]["status"] == "failed"
    assert results[0]["error"] == "Graph API error 403: accessDenied"
    db_session.refresh(rows["ai"])
    assert rows["ai"].user_decision == "approved"
    action = db_session.query(models.ExecutedAction).filter_by(suggestion_id=rows["ai"].id).one()
    assert action.status == "failed"
    assert "403" in action.error_message


def test_execute_skips_what_cannot_run(db_session, graph, seeded):
    _, rows = seeded
    service = SuggestionService(db_session, graph=graph)
    service.update_decision(USER_ID, rows["old"].id, "approved")

    results = service.execute_suggestions(USER_ID, [rows["caps"].id, rows["old"].id, 424242])

    assert [r["status"] for r in results] == ["skipped", "skipped", "skipped"]
    assert results[0]["reason"] == "decision is pending"
    assert results[1]["reason"] == "archive suggestions are not executable"
    assert results[2] == {"suggestion_id": 424242, "status": "skipped", "reason": "not found"}
    assert list(graph.calls) == []
    assert db_session.query(models.ExecutedAction).count() == 0
