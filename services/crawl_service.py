"""
Crawl engine.

A scan's crawl is a breadth-first walk over SharePoint drives persisted as
rows in ``crawl_queue``. Nothing runs in the background on its own: every
call to ``process_batch`` claims up to N pending folders, expands them
through Graph, records what it found and updates progress. Callers drive it
by polling (``poll_crawl``) or through the optional scheduler job; calling it
again after a crash simply resumes from whatever the queue says.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import unquote

from sqlalchemy import func
from sqlalchemy.orm import Session

import models
from config import config
from database import SessionLocal
from services.crawl_queue import CrawlQueue, _chunks
from services.rules_engine import FOUR_YEARS, TWO_YEARS
from services.graph_client import (
    SharePointLocation,
    get_graph_client,
    parse_graph_datetime,
    parse_sharepoint_url,
)
from utils.prometheus import CRAWL_BATCH_SECONDS, CRAWL_BATCHES, CRAWL_FOLDERS
from utils.structured_logging import crawl_logger


class ScanNotFound(Exception):
    pass


class ScanStateError(Exception):
    pass


@dataclass
class BatchResult:
    done: bool
    processed: int
    remaining: int


@dataclass
class FolderResult:
    files_added: int = 0
    folders_added: int = 0
    size_added: int = 0


def get_extension(filename: str) -> Optional[str]:
    parts = filename.split(".")
    if len(parts) < 2:
        return None
    return parts[-1].lower() or None


def _display_name(identity: Optional[Dict[str, Any]]) -> Optional[str]:
    if not identity:
        return None
    return (identity.get("user") or {}).get("displayName") or None


class CrawlService:
    def __init__(
        self,
        db: Session,
        graph=None,
        batch_size: Optional[int] = None,
        stale_after: Optional[timedelta] = None,
        now_provider: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.graph = graph if graph is not None else get_graph_client(db)
        self.queue = CrawlQueue(db)
        self.batch_size = batch_size or config.CRAWL_BATCH_SIZE
        self.stale_after = stale_after or timedelta(seconds=config.CRAWL_STALE_SECONDS)
        self._now = now_provider or (lambda: datetime.now(timezone.utc))

    # --- Scans ---

    def get_owned_scan(self, user_id: str, scan_id: str) -> models.Scan:
        scan = self.db.query(models.Scan).filter(
            models.Scan.id == scan_id,
            models.Scan.user_id == user_id,
        ).first()
        if scan is None:
            raise ScanNotFound("Scan not found or access denied")
        return scan

    def start_crawl(self, user_id: str, sharepoint_url: str) -> models.Scan:
        """
        Validate the URL and the user's Graph credential, then create the scan.

        Raises InvalidSharePointUrl / GraphAuthError before anything is
        written. Seeding the queue is left to ``initialize_crawl`` so the
        caller can run it after responding.
        """
        parse_sharepoint_url(sharepoint_url)
        self.graph.get_token(user_id)

        scan = models.Scan(user_id=user_id, sharepoint_url=sharepoint_url.strip(), status="crawling")
        self.db.add(scan)
        self.db.commit()
        self.db.refresh(scan)

        crawl_logger.info(action="start_crawl", status="created", message="Scan created", scan_id=scan.id)
        return scan

    def initialize_crawl(self, scan_id: str) -> Optional[BatchResult]:
        """
        Resolve the site and its document libraries, seed one root queue row
        per target drive and process the first batch. Any failure here is
        fatal for the scan.
        """
        scan = self.db.get(models.Scan, scan_id)
        if scan is None:
            raise ScanNotFound(f"Scan {scan_id} not found")

        try:
            location = parse_sharepoint_url(scan.sharepoint_url)
            self._seed_queue(scan, location)
            return self.process_batch(scan_id)
        except Exception as e:
            self.db.rollback()
            crawl_logger.error(action="initialize_crawl", message="Crawl initialization failed", error=e, scan_id=scan_id)
            self.db.query(models.Scan).filter(models.Scan.id == scan_id).update(
                {"status": "error", "error_message": str(e), "updated_at": self._now()},
                synchronize_session=False,
            )
            self.db.commit()
            return None

    def _seed_queue(self, scan: models.Scan, location: SharePointLocation) -> None:
        site = self.graph.request(scan.user_id, f"/sites/{location.hostname}:{location.site_path}")
        scan.site_id = site["id"]
        self.db.commit()

        drives_data = self.graph.request(scan.user_id, f"/sites/{scan.site_id}/drives") or {}
        drives = drives_data.get("value") or []
        if not drives:
            raise ScanStateError("No document libraries found on this site.")

        library_parts: List[str] = []
        if location.library_path:
            library_parts = [p for p in unquote(location.library_path).split("/") if p]

        if library_parts:
            wanted = library_parts[0].lower()
            match = next((d for d in drives if d.get("name", "").lower() == wanted), None)
            target_drives = [match or drives[0]]
        else:
            target_drives = drives

        crawl_logger.info(
            action="seed_queue",
            status="started",
            message=f"Crawling {len(target_drives)} drive(s): {', '.join(d.get('name', '') for d in target_drives)}",
            scan_id=scan.id,
        )

        scan.drive_id = target_drives[0]["id"]

        rows = []
        for drive in target_drives:
            start_path = f"/drives/{drive['id']}/root"
            if len(target_drives) == 1 and len(library_parts) > 1:
                start_path = f"/drives/{drive['id']}/root:/{'/'.join(library_parts[1:])}:"
            rows.append({
                "scan_id": scan.id,
                "drive_id": drive["id"],
                "graph_path": f"{start_path}/children",
                "parent_item_id": None,
                "depth": 0,
                "folder_path": f"/{drive.get('name', '')}/",
            })

        self.queue.enqueue(rows)
        self.db.commit()

    # --- Batch cycle ---

    def process_batch(self, scan_id: str) -> BatchResult:
        """
        Advance the crawl by at most ``batch_size`` folders.

        Safe to call repeatedly and concurrently: rows are claimed with a
        conditional update, so two callers never expand the same folder.
        """
        scan = self.db.get(models.Scan, scan_id)
        if scan is None:
            raise ScanNotFound(f"Scan {scan_id} not found")
        if scan.status != "crawling":
            return BatchResult(done=scan.status != "error", processed=0, remaining=0)

        started = time.monotonic()
        CRAWL_BATCHES.inc()

        reclaimed = self.queue.reclaim_stale(scan_id, self.stale_after, now=self._now())
        if reclaimed:
            crawl_logger.warning(
                action="reclaim_stale",
                message=f"Returned {reclaimed} stuck folder(s) to the queue",
                scan_id=scan_id,
                reclaimed=reclaimed,
            )

        pending_items = self.queue.fetch_pending(scan_id, self.batch_size)

        if not pending_items:
            if not self.queue.has_items(scan_id):
                # Initialization has not seeded the queue yet
                return BatchResult(done=False, processed=0, remaining=0)
            return self._finish_if_drained(scan_id, processed=0)

        crawl_logger.info(
            action="process_batch",
            status="started",
            message=f"Processing batch of {len(pending_items)} folders",
            scan_id=scan_id,
        )

        processed = 0
        totals = FolderResult()
        user_id = scan.user_id

        for item in pending_items:
            item_id = item.id
            if not self.queue.claim(item_id, now=self._now()):
                continue

            try:
                result = self._expand_folder(scan_id, user_id, item)
                self.queue.mark_done(item_id)
                self.db.commit()
            except Exception as e:
                self.db.rollback()
                crawl_logger.error(
                    action="expand_folder",
                    message=f"Error processing folder {item.folder_path}",
                    error=e,
                    scan_id=scan_id,
                    queue_item_id=item_id,
                )
                self.queue.mark_error(item_id, str(e))
                CRAWL_FOLDERS.labels(outcome="error").inc()
                continue

            CRAWL_FOLDERS.labels(outcome="done").inc()
            processed += 1
            totals.files_added += result.files_added
            totals.folders_added += result.folders_added
            totals.size_added += result.size_added

        self._update_progress(scan_id, totals)
        batch_result = self._finish_if_drained(scan_id, processed=processed)
        CRAWL_BATCH_SECONDS.observe(time.monotonic() - started)
        return batch_result

    def _finish_if_drained(self, scan_id: str, processed: int) -> BatchResult:
        counts = self.queue.count_by_status(scan_id)
        remaining = counts["pending"]
        if counts["pending"] == 0 and counts["processing"] == 0:
            self.finalize(scan_id)
            return BatchResult(done=True, processed=processed, remaining=0)
        return BatchResult(done=False, processed=processed, remaining=remaining)

    def _expand_folder(self, scan_id: str, user_id: str, item: models.CrawlQueueItem) -> FolderResult:
        """
        Fetch every page of a folder's children and stage inventory rows and
        child queue rows. Children already recorded for this scan (a folder
        re-expanded after a crash) are skipped.
        """
        children: List[Dict[str, Any]] = []
        for page in self.graph.paginate(user_id, item.graph_path):
            children.extend(page)

        child_ids = [child["id"] for child in children]
        known_ids = self._known_item_ids(scan_id, child_ids)
        queued_ids = self.queue.queued_parents(scan_id, child_ids)

        result = FolderResult()
        file_rows: List[models.CrawledFile] = []
        queue_rows: List[dict] = []
        now = self._now()

        for child in children:
            is_folder = child.get("folder") is not None
            name = child.get("name", "")
            item_path = f"{item.folder_path}{name}{'/' if is_folder else ''}"

            if child["id"] not in known_ids:
                known_ids.add(child["id"])
                file_meta = child.get("file") or {}
                size = child.get("size") or 0
                file_rows.append(models.CrawledFile(
                    scan_id=scan_id,
                    drive_id=item.drive_id,
                    graph_item_id=child["id"],
                    name=name,
                    file_extension=None if is_folder else get_extension(name),
                    mime_type=file_meta.get("mimeType"),
                    size_bytes=size,
                    is_folder=is_folder,
                    path=item_path,
                    depth=item.depth + (1 if is_folder else 0),
                    created_at_sp=parse_graph_datetime(child.get("createdDateTime")),
                    modified_at_sp=parse_graph_datetime(child.get("lastModifiedDateTime")),
                    created_by=_display_name(child.get("createdBy")),
                    modified_by=_display_name(child.get("lastModifiedBy")),
                    parent_item_id=item.parent_item_id,
                    web_url=child.get("webUrl"),
                    sha256_hash=(file_meta.get("hashes") or {}).get("sha256Hash"),
                    created_at=now,
                ))
                if is_folder:
                    result.folders_added += 1
                else:
                    result.files_added += 1
                    result.size_added += size

            if is_folder and child["id"] not in queued_ids:
                queued_ids.add(child["id"])
                queue_rows.append({
                    "scan_id": scan_id,
                    "drive_id": item.drive_id,
                    "graph_path": f"/drives/{item.drive_id}/items/{child['id']}/children",
                    "parent_item_id": child["id"],
                    "depth": item.depth + 1,
                    "folder_path": item_path,
                    "created_at": now,
                })

        if file_rows:
            self.db.add_all(file_rows)
        if queue_rows:
            self.queue.enqueue(queue_rows)
        return result

    def _known_item_ids(self, scan_id: str, item_ids: List[str]) -> set:
        known = set()
        for chunk in _chunks(item_ids):
            rows = self.db.query(models.CrawledFile.graph_item_id).filter(
                models.CrawledFile.scan_id == scan_id,
                models.CrawledFile.graph_item_id.in_(chunk),
            ).all()
            known.update(row[0] for row in rows)
        return known

    def _update_progress(self, scan_id: str, added: FolderResult) -> None:
        counts = self.queue.count_by_status(scan_id)
        total = sum(counts.values())
        progress = min(round(counts["done"] / total * 100), 99) if total else 0

        scan = self.db.get(models.Scan, scan_id)
        self.db.refresh(scan)
        scan.total_files = (scan.total_files or 0) + added.files_added
        scan.total_folders = (scan.total_folders or 0) + added.folders_added
        scan.total_size_bytes = (scan.total_size_bytes or 0) + added.size_added
        # Newly discovered folders grow the denominator; never report going backwards
        if scan.status == "crawling":
            scan.crawl_progress = max(scan.crawl_progress or 0, progress)
        scan.updated_at = self._now()
        self.db.commit()

    def finalize(self, scan_id: str) -> None:
        """
        Close out a drained crawl: fail the scan if every folder errored,
        otherwise recompute exact totals from the inventory and mark it
        crawled.
        """
        counts = self.queue.count_by_status(scan_id)

        if counts["done"] == 0 and counts["error"] > 0:
            message = self.queue.first_error_message(scan_id) or "All folders failed to process"
            crawl_logger.error(
                action="finalize",
                message=f"All {counts['error']} folders failed",
                scan_id=scan_id,
            )
            self.db.query(models.Scan).filter(
                models.Scan.id == scan_id,
                models.Scan.status == "crawling",
            ).update(
                {"status": "error", "error_message": message, "updated_at": self._now()},
                synchronize_session=False,
            )
            self.db.commit()
            return

        folder_count, file_count, total_size = self.db.query(
            func.count(models.CrawledFile.id).filter(models.CrawledFile.is_folder.is_(True)),
            func.count(models.CrawledFile.id).filter(models.CrawledFile.is_folder.is_(False)),
            func.coalesce(
                func.sum(models.CrawledFile.size_bytes).filter(models.CrawledFile.is_folder.is_(False)),
                0,
            ),
        ).filter(models.CrawledFile.scan_id == scan_id).one()

        self.db.query(models.Scan).filter(
            models.Scan.id == scan_id,
            models.Scan.status == "crawling",
        ).update(
            {
                "status": "crawled",
                "crawl_progress": 100,
                "total_files": file_count or 0,
                "total_folders": folder_count or 0,
                "total_size_bytes": int(total_size or 0),
                "updated_at": self._now(),
            },
            synchronize_session=False,
        )
        self.db.commit()

        crawl_logger.info(
            action="finalize",
            status="crawled",
            message=f"Crawl complete: {file_count} files, {folder_count} folders",
            scan_id=scan_id,
            total_size_bytes=int(total_size or 0),
        )

    # --- Caller-facing ---

    def crawl_status(self, user_id: str, scan_id: str) -> Dict[str, Any]:
        scan = self.get_owned_scan(user_id, scan_id)
        return _status_payload(scan)

    def poll_crawl(self, user_id: str, scan_id: str) -> Dict[str, Any]:
        """Report status and, while the scan is crawling, push it one batch forward."""
        scan = self.get_owned_scan(user_id, scan_id)
        if scan.status != "crawling":
            payload = _status_payload(scan)
            payload.update({"done": scan.status == "crawled", "processed": 0, "remaining": 0})
            return payload

        result = self.process_batch(scan_id)
        self.db.refresh(scan)
        payload = _status_payload(scan)
        payload.update({"done": result.done, "processed": result.processed, "remaining": result.remaining})
        return payload

    def list_scans(self, user_id: str, limit: int = 20) -> List[models.Scan]:
        return (
            self.db.query(models.Scan)
            .filter(models.Scan.user_id == user_id)
            .order_by(models.Scan.created_at.desc())
            .limit(limit)
            .all()
        )

    def scan_stats(self, user_id: str, scan_id: str) -> Dict[str, Any]:
        """Inventory summary: totals, extension mix, depth and age profile."""
        self.get_owned_scan(user_id, scan_id)
        rows = self.db.query(
            models.CrawledFile.file_extension,
            models.CrawledFile.size_bytes,
            models.CrawledFile.is_folder,
            models.CrawledFile.depth,
            models.CrawledFile.modified_at_sp,
        ).filter(models.CrawledFile.scan_id == scan_id).all()

        now = self._now()
        stats = {
            "total_files": 0,
            "total_folders": 0,
            "total_size_bytes": 0,
            "type_distribution": {},
            "avg_age_days": 0,
            "max_depth": 0,
            "files_older_than_2yr": 0,
            "files_older_than_4yr": 0,
        }
        total_age = timedelta(0)

        for extension, size, is_folder, depth, modified in rows:
            if is_folder:
                stats["total_folders"] += 1
            else:
                stats["total_files"] += 1
                stats["total_size_bytes"] += size or 0
                ext = (extension or "unknown").lower()
                stats["type_distribution"][ext] = stats["type_distribution"].get(ext, 0) + 1
                if modified is not None:
                    if modified.tzinfo is None:
                        modified = modified.replace(tzinfo=timezone.utc)
                    age = now - modified
                    total_age += age
                    if age > TWO_YEARS:
                        stats["files_older_than_2yr"] += 1
                    if age > FOUR_YEARS:
                        stats["files_older_than_4yr"] += 1
            stats["max_depth"] = max(stats["max_depth"], depth or 0)

        if stats["total_files"]:
            stats["avg_age_days"] = round(total_age.total_seconds() / stats["total_files"] / 86400)
        return stats

    def advance_active_crawls(self) -> int:
        """Run one batch for every crawling scan. Used by the scheduler."""
        scan_ids = [row[0] for row in self.db.query(models.Scan.id).filter(models.Scan.status == "crawling").all()]
        for scan_id in scan_ids:
            try:
                self.process_batch(scan_id)
            except Exception as e:
                self.db.rollback()
                crawl_logger.error(action="advance_active_crawls", message="Batch failed", error=e, scan_id=scan_id)
        return len(scan_ids)


def _status_payload(scan: models.Scan) -> Dict[str, Any]:
    return {
        "scan_id": scan.id,
        "status": scan.status,
        "crawl_progress": scan.crawl_progress or 0,
        "total_files": scan.total_files or 0,
        "total_folders": scan.total_folders or 0,
        "total_size_bytes": scan.total_size_bytes or 0,
        "error_message": scan.error_message,
    }


def run_initialize_crawl(scan_id: str, session_factory=None, graph_factory=None) -> None:
    """
    Background-task entry point. The request's session is closed by the time
    this runs, so it opens its own.
    """
    db = (session_factory or SessionLocal)()
    try:
        graph = (graph_factory or get_graph_client)(db)
        CrawlService(db, graph=graph).initialize_crawl(scan_id)
    finally:
        db.close()
