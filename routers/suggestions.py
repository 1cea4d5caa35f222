from fastapi import APIRouter, Depends, HTTPException

from auth.dependencies import get_current_user
from auth.jwt import UserContext
from routers.scans import get_suggestion_service, to_suggestion_response
from schemas.suggestions import (
    ExecuteRequest,
    ExecuteResponse,
    ExecuteResult,
    SuggestionResponse,
    UpdateDecisionRequest,
)
from services.suggestion_service import InvalidDecision, SuggestionNotFound, SuggestionService

router = APIRouter(prefix="/api/suggestions", tags=["suggestions"])


@router.patch("/{suggestion_id}", response_model=SuggestionResponse)
def update_decision(
    suggestion_id: int,
    body: UpdateDecisionRequest,
    service: SuggestionService = Depends(get_suggestion_service),
    current_user: UserContext = Depends(get_current_user),
):
    try:
        suggestion = service.update_decision(current_user.id, suggestion_id, body.user_decision)
    except SuggestionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidDecision as e:
        raise HTTPException(status_code=400, detail=str(e))
    return to_suggestion_response(suggestion)


@router.post("/execute", response_model=ExecuteResponse)
def execute_suggestions(
    body: ExecuteRequest,
    service: SuggestionService = Depends(get_suggestion_service),
    current_user: UserContext = Depends(get_current_user),
):
    """Apply approved delete/rename suggestions to SharePoint."""
    results = [ExecuteResult(**r) for r in service.execute_suggestions(current_user.id, body.suggestion_ids)]
    return ExecuteResponse(
        results=results,
        executed=sum(1 for r in results if r.status == "success"),
        failed=sum(1 for r in results if r.status == "failed"),
        skipped=sum(1 for r in results if r.status == "skipped"),
    )
