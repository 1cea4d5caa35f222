"""
Analysis pipeline: rules, optional AI pass, dedup, persistence.

Scan status goes crawled -> analyzing -> complete, or -> error when the
pipeline itself blows up (AI chunk failures do not count).
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

import models
from config import config
from services.ai_analysis_service import AIClassifier, is_ai_available
from services.crawl_service import ScanNotFound, ScanStateError
from services.rules_engine import SuggestionDraft, dedupe_suggestions, run_rules
from utils.prometheus import SUGGESTIONS_CREATED
from utils.structured_logging import analysis_logger


class AnalysisService:
    def __init__(
        self,
        db: Session,
        classifier: Optional[AIClassifier] = None,
        now_provider: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self._classifier = classifier
        self._now = now_provider or (lambda: datetime.now(timezone.utc))

    @property
    def classifier(self) -> AIClassifier:
        if self._classifier is None:
            self._classifier = AIClassifier()
        return self._classifier

    def run_analysis(self, user_id: str, scan_id: str) -> Dict[str, Any]:
        scan = self.db.query(models.Scan).filter(
            models.Scan.id == scan_id,
            models.Scan.user_id == user_id,
        ).first()
        if scan is None:
            raise ScanNotFound("Scan not found")
        if scan.status != "crawled":
            raise ScanStateError(f"Scan is not ready for analysis. Current status: {scan.status}")

        claimed = self.db.query(models.Scan).filter(
            models.Scan.id == scan_id,
            models.Scan.status == "crawled",
        ).update({"status": "analyzing", "updated_at": self._now()}, synchronize_session=False)
        self.db.commit()
        if claimed != 1:
            # Another request moved the scan on between our read and the update
            raise ScanStateError("Scan is already being analyzed")

        try:
            return self._analyze(scan_id)
        except Exception as e:
            self.db.rollback()
            analysis_logger.error(action="run_analysis", message="Analysis failed", error=e, scan_id=scan_id)
            self.db.query(models.Scan).filter(models.Scan.id == scan_id).update(
                {"status": "error", "error_message": str(e), "updated_at": self._now()},
                synchronize_session=False,
            )
            self.db.commit()
            raise

    def _analyze(self, scan_id: str) -> Dict[str, Any]:
        items = (
            self.db.query(models.CrawledFile)
            .filter(models.CrawledFile.scan_id == scan_id)
            .order_by(models.CrawledFile.id.asc())
            .all()
        )

        rules = run_rules(items, now=self._now())
        drafts: List[SuggestionDraft] = list(rules.suggestions)
        analysis_logger.info(
            action="run_rules",
            message=f"Rules produced {len(rules.suggestions)} suggestion(s) over {len(items)} item(s)",
            scan_id=scan_id,
            rules_matched=len(rules.matched_ids),
        )

        ai_available = is_ai_available()
        if ai_available:
            uncaught = [item for item in items if item.id not in rules.matched_ids]
            if uncaught:
                drafts.extend(self.classifier.analyze(items, uncaught, len(rules.matched_ids), scan_id=scan_id))
        else:
            analysis_logger.info(
                action="run_ai",
                status="skipped",
                message="GROQ_API_KEY not set, running rules-only analysis",
                scan_id=scan_id,
            )

        unique = dedupe_suggestions(drafts)
        self._insert(scan_id, unique)

        self.db.query(models.Scan).filter(models.Scan.id == scan_id).update(
            {"status": "complete", "updated_at": self._now()},
            synchronize_session=False,
        )
        self.db.commit()

        categories = {category: 0 for category in models.SUGGESTION_CATEGORIES}
        for draft in unique:
            categories[draft.category] = categories.get(draft.category, 0) + 1
            SUGGESTIONS_CREATED.labels(source=draft.source, category=draft.category).inc()

        result = {
            "suggestion_count": len(unique),
            "categories": categories,
            "rules_matched": len(rules.matched_ids),
            "ai_analyzed": len(items) - len(rules.matched_ids) if ai_available else 0,
            "ai_available": ai_available,
        }
        analysis_logger.info(
            action="run_analysis",
            status="complete",
            message=f"Analysis stored {len(unique)} suggestion(s)",
            scan_id=scan_id,
            categories=categories,
        )
        return result

    def _insert(self, scan_id: str, drafts: List[SuggestionDraft]) -> None:
        batch_size = config.SUGGESTION_INSERT_BATCH
        for start in range(0, len(drafts), batch_size):
            self.db.add_all([
                models.Suggestion(
                    scan_id=scan_id,
                    file_id=draft.file_id,
                    category=draft.category,
                    severity=draft.severity,
                    title=draft.title,
                    description=draft.description,
                    current_value=draft.current_value,
                    suggested_value=draft.suggested_value,
                    confidence=draft.confidence,
                    source=draft.source,
                )
                for draft in drafts[start:start + batch_size]
            ])
            self.db.flush()
