"""
Schemas for suggestion review and execution.
"""

from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field


class SuggestionResponse(BaseModel):
    id: int
    scan_id: str
    file_id: Optional[int] = None
    category: str
    severity: str
    title: str
    description: Optional[str] = None
    current_value: Optional[str] = None
    suggested_value: Optional[str] = None
    confidence: float
    source: str
    user_decision: str
    decided_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    web_url: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class SuggestionListResponse(BaseModel):
    data: List[SuggestionResponse]
    total: int


class UpdateDecisionRequest(BaseModel):
    user_decision: str = Field(..., pattern="^(pending|approved|rejected|skipped)$")


class ExecuteRequest(BaseModel):
    suggestion_ids: List[int] = Field(..., min_length=1)


class ExecuteResult(BaseModel):
    suggestion_id: int
    status: str
    action: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None


class ExecuteResponse(BaseModel):
    results: List[ExecuteResult]
    executed: int
    failed: int
    skipped: int
