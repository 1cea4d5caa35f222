import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


SCAN_STATUSES = ("pending", "crawling", "crawled", "analyzing", "complete", "error")
QUEUE_STATUSES = ("pending", "processing", "done", "error")
SUGGESTION_CATEGORIES = ("delete", "archive", "rename", "structure")
SUGGESTION_SEVERITIES = ("low", "medium", "high", "critical")
SUGGESTION_SOURCES = ("rules", "ai")
USER_DECISIONS = ("pending", "approved", "rejected", "skipped", "executed")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_uuid() -> str:
    return str(uuid.uuid4())


def _in_check(column: str, values) -> str:
    return f"{column} IN ({', '.join(repr(v) for v in values)})"


class Scan(Base):
    """
    One crawl-and-analyze job against a single SharePoint URL.
    Owns its queue items, crawled files and suggestions.
    """
    __tablename__ = "scans"
    __table_args__ = (
        CheckConstraint(_in_check("status", SCAN_STATUSES), name="scans_status_check"),
    )

    id = Column(String, primary_key=True, default=_new_uuid)
    user_id = Column(String, index=True, nullable=False)  # ID from Supabase Auth
    sharepoint_url = Column(Text, nullable=False)
    status = Column(String, nullable=False, default="pending", index=True)

    # Resolved Graph identifiers
    site_id = Column(String, nullable=True, index=True)
    drive_id = Column(String, nullable=True)

    total_files = Column(Integer, nullable=False, default=0)
    total_folders = Column(Integer, nullable=False, default=0)
    total_size_bytes = Column(BigInteger, nullable=False, default=0)
    crawl_progress = Column(Integer, nullable=False, default=0)  # 0-100
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    queue_items = relationship(
        "CrawlQueueItem", back_populates="scan", cascade="all, delete-orphan", passive_deletes=True
    )
    files = relationship(
        "CrawledFile", back_populates="scan", cascade="all, delete-orphan", passive_deletes=True
    )
    suggestions = relationship(
        "Suggestion", back_populates="scan", cascade="all, delete-orphan", passive_deletes=True
    )


class CrawlQueueItem(Base):
    """
    Database-backed BFS queue: one row per folder whose children still need
    to be fetched from Graph.
    """
    __tablename__ = "crawl_queue"
    __table_args__ = (
        CheckConstraint(_in_check("status", QUEUE_STATUSES), name="crawl_queue_status_check"),
        Index("idx_crawl_queue_scan_status", "scan_id", "status"),
    )

    # Integer key doubles as the insertion-order tie-break for BFS selection
    id = Column(Integer, primary_key=True, index=True)
    scan_id = Column(String, ForeignKey("scans.id", ondelete="CASCADE"), nullable=False)
    drive_id = Column(String, nullable=False)
    graph_path = Column(Text, nullable=False)  # Graph endpoint for this folder's children
    parent_item_id = Column(String, nullable=True)
    depth = Column(Integer, nullable=False, default=0)
    folder_path = Column(Text, nullable=False)
    status = Column(String, nullable=False, default="pending")
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    scan = relationship("Scan", back_populates="queue_items")


class CrawledFile(Base):
    """Flattened inventory row for one file or folder discovered by the crawl."""
    __tablename__ = "crawled_files"
    __table_args__ = (
        Index("idx_crawled_files_scan_item", "scan_id", "graph_item_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    scan_id = Column(String, ForeignKey("scans.id", ondelete="CASCADE"), nullable=False, index=True)
    drive_id = Column(String, nullable=True)
    graph_item_id = Column(String, nullable=False)
    name = Column(Text, nullable=False)
    file_extension = Column(String, nullable=True)  # NULL for folders
    mime_type = Column(String, nullable=True)
    size_bytes = Column(BigInteger, nullable=False, default=0)
    is_folder = Column(Boolean, nullable=False, default=False)
    path = Column(Text, nullable=False)  # folders end with "/"
    depth = Column(Integer, nullable=False, default=0)
    created_at_sp = Column(DateTime(timezone=True), nullable=True)
    modified_at_sp = Column(DateTime(timezone=True), nullable=True)
    created_by = Column(String, nullable=True)
    modified_by = Column(String, nullable=True)
    parent_item_id = Column(String, nullable=True)
    web_url = Column(Text, nullable=True)
    sha256_hash = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    scan = relationship("Scan", back_populates="files")


class Suggestion(Base):
    __tablename__ = "suggestions"
    __table_args__ = (
        CheckConstraint(_in_check("category", SUGGESTION_CATEGORIES), name="suggestions_category_check"),
        CheckConstraint(_in_check("severity", SUGGESTION_SEVERITIES), name="suggestions_severity_check"),
        CheckConstraint(_in_check("source", SUGGESTION_SOURCES), name="suggestions_source_check"),
        CheckConstraint(_in_check("user_decision", USER_DECISIONS), name="suggestions_user_decision_check"),
    )

    id = Column(Integer, primary_key=True, index=True)
    scan_id = Column(String, ForeignKey("scans.id", ondelete="CASCADE"), nullable=False, index=True)
    file_id = Column(Integer, ForeignKey("crawled_files.id", ondelete="SET NULL"), nullable=True)
    category = Column(String, nullable=False)
    severity = Column(String, nullable=False)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    current_value = Column(Text, nullable=True)
    suggested_value = Column(Text, nullable=True)
    confidence = Column(Float, nullable=False, default=0.5)
    source = Column(String, nullable=False, default="rules")
    user_decision = Column(String, nullable=False, default="pending", index=True)
    decided_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    scan = relationship("Scan", back_populates="suggestions")
    file = relationship("CrawledFile")


class ExecutedAction(Base):
    """Ledger of actions carried out against SharePoint for approved suggestions."""
    __tablename__ = "executed_actions"

    id = Column(Integer, primary_key=True, index=True)
    scan_id = Column(String, ForeignKey("scans.id", ondelete="CASCADE"), nullable=False, index=True)
    suggestion_id = Column(Integer, ForeignKey("suggestions.id", ondelete="SET NULL"), nullable=True)
    user_id = Column(String, index=True, nullable=False)
    action_type = Column(String, nullable=False)  # delete, rename, move
    status = Column(String, nullable=False)  # success, failed
    error_message = Column(Text, nullable=True)
    executed_at = Column(DateTime(timezone=True), default=_utcnow)


class ProviderToken(Base):
    """Microsoft Graph delegated tokens captured at sign-in, one row per user."""
    __tablename__ = "provider_tokens"

    user_id = Column(String, primary_key=True)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
