"""
Suggestion review: listing, user decisions and execution of approved
actions against SharePoint. Every execution attempt is written to
``executed_actions``, successful or not.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import case
from sqlalchemy.orm import Session, joinedload

import models
from services.crawl_service import ScanNotFound
from services.graph_client import get_graph_client
from utils.structured_logging import analysis_logger

DECIDABLE = ("pending", "approved", "rejected", "skipped")
SORT_OPTIONS = ("severity", "confidence", "name")

_SEVERITY_RANK = case(
    {"critical": 0, "high": 1, "medium": 2, "low": 3},
    value=models.Suggestion.severity,
    else_=4,
)


class SuggestionNotFound(Exception):
    pass


class InvalidDecision(ValueError):
    pass


class SuggestionService:
    def __init__(self, db: Session, graph=None):
        self.db = db
        self._graph = graph

    @property
    def graph(self):
        if self._graph is None:
            self._graph = get_graph_client(self.db)
        return self._graph

    def _owned_scan(self, user_id: str, scan_id: str) -> models.Scan:
        scan = self.db.query(models.Scan).filter(
            models.Scan.id == scan_id,
            models.Scan.user_id == user_id,
        ).first()
        if scan is None:
            raise ScanNotFound("Scan not found")
        return scan

    def _owned_suggestion(self, user_id: str, suggestion_id: int) -> models.Suggestion:
        suggestion = (
            self.db.query(models.Suggestion)
            .join(models.Scan, models.Scan.id == models.Suggestion.scan_id)
            .filter(models.Suggestion.id == suggestion_id, models.Scan.user_id == user_id)
            .first()
        )
        if suggestion is None:
            raise SuggestionNotFound(f"Suggestion {suggestion_id} not found")
        return suggestion

    def list_suggestions(
        self,
        user_id: str,
        scan_id: str,
        category: Optional[str] = None,
        decision: Optional[str] = None,
        source: Optional[str] = None,
        sort_by: str = "severity",
    ) -> List[models.Suggestion]:
        self._owned_scan(user_id, scan_id)

        if sort_by not in SORT_OPTIONS:
            raise InvalidDecision(f"sort_by must be one of: {', '.join(SORT_OPTIONS)}")

        query = (
            self.db.query(models.Suggestion)
            .options(joinedload(models.Suggestion.file))
            .filter(models.Suggestion.scan_id == scan_id)
        )
        if category:
            query = query.filter(models.Suggestion.category == category)
        if decision:
            query = query.filter(models.Suggestion.user_decision == decision)
        if source:
            query = query.filter(models.Suggestion.source == source)

        if sort_by == "confidence":
            query = query.order_by(models.Suggestion.confidence.desc(), models.Suggestion.id.asc())
        elif sort_by == "name":
            query = query.order_by(models.Suggestion.current_value.asc(), models.Suggestion.id.asc())
        else:
            query = query.order_by(_SEVERITY_RANK, models.Suggestion.confidence.desc(), models.Suggestion.id.asc())

        return query.all()

    def update_decision(self, user_id: str, suggestion_id: int, decision: str) -> models.Suggestion:
        if decision not in DECIDABLE:
            raise InvalidDecision(f"decision must be one of: {', '.join(DECIDABLE)}")

        suggestion = self._owned_suggestion(user_id, suggestion_id)
        if suggestion.user_decision == "executed":
            raise InvalidDecision("Suggestion has already been executed")

        suggestion.user_decision = decision
        suggestion.decided_at = datetime.now(timezone.utc)
        self.db.commit()
        self.db.refresh(suggestion)
        return suggestion

    def execute_suggestions(self, user_id: str, suggestion_ids: List[int]) -> List[Dict[str, Any]]:
        """
        Carry out approved delete/rename suggestions through Graph.
        Returns one result per requested id, in request order.
        """
        results = []
        for suggestion_id in suggestion_ids:
            try:
                suggestion = self._owned_suggestion(user_id, suggestion_id)
            except SuggestionNotFound:
                results.append({"suggestion_id": suggestion_id, "status": "skipped", "reason": "not found"})
                continue
            results.append(self._execute_one(user_id, suggestion))
        return results

    def _execute_one(self, user_id: str, suggestion: models.Suggestion) -> Dict[str, Any]:
        skipped = {"suggestion_id": suggestion.id, "status": "skipped"}
        if suggestion.user_decision != "approved":
            return dict(skipped, reason=f"decision is {suggestion.user_decision}")
        item = suggestion.file
        if item is None:
            return dict(skipped, reason="no inventory item")

        if suggestion.category == "delete":
            action_type, method, body = "delete", "DELETE", None
        elif suggestion.category == "rename" and suggestion.suggested_value:
            action_type, method, body = "rename", "PATCH", {"name": suggestion.suggested_value}
        else:
            return dict(skipped, reason=f"{suggestion.category} suggestions are not executable")

        action = models.ExecutedAction(
            scan_id=suggestion.scan_id,
            suggestion_id=suggestion.id,
            user_id=user_id,
            action_type=action_type,
        )
        try:
            self.graph.request(
                user_id,
                f"/drives/{item.drive_id}/items/{item.graph_item_id}",
                method=method,
                json=body,
            )
        except Exception as e:
            analysis_logger.error(
                action="execute_suggestion",
                message=f"{action_type} failed for {item.path}",
                error=e,
                scan_id=suggestion.scan_id,
                suggestion_id=suggestion.id,
            )
            action.status = "failed"
            action.error_message = str(e)
            self.db.add(action)
            self.db.commit()
            return {"suggestion_id": suggestion.id, "status": "failed", "action": action_type, "error": str(e)}

        action.status = "success"
        suggestion.user_decision = "executed"
        suggestion.decided_at = datetime.now(timezone.utc)
        self.db.add(action)
        self.db.commit()

        analysis_logger.info(
            action="execute_suggestion",
            message=f"{action_type} executed for {item.path}",
            scan_id=suggestion.scan_id,
            suggestion_id=suggestion.id,
        )
        return {"suggestion_id": suggestion.id, "status": "success", "action": action_type}
