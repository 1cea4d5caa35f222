from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from auth.dependencies import get_current_user
from auth.jwt import UserContext
from database import SessionLocal, get_db
from schemas.scans import (
    AnalysisResponse,
    CrawlPollResponse,
    CrawlStatusResponse,
    ScanListResponse,
    ScanResponse,
    ScanStatsResponse,
    StartScanRequest,
    StartScanResponse,
)
from schemas.suggestions import SuggestionListResponse, SuggestionResponse
from services.analysis_service import AnalysisService
from services.crawl_service import CrawlService, ScanNotFound, ScanStateError, run_initialize_crawl
from services.graph_client import GraphAuthError, InvalidSharePointUrl, get_graph_client
from services.suggestion_service import InvalidDecision, SuggestionService

router = APIRouter(prefix="/api/scans", tags=["scans"])


def get_graph_factory():
    """Builds a Graph client for a session; overridden in tests."""
    return get_graph_client


def get_session_factory():
    return SessionLocal


def get_crawl_service(
    db: Session = Depends(get_db),
    graph_factory=Depends(get_graph_factory),
) -> CrawlService:
    return CrawlService(db, graph=graph_factory(db))


def get_analysis_service(db: Session = Depends(get_db)) -> AnalysisService:
    return AnalysisService(db)


def get_suggestion_service(
    db: Session = Depends(get_db),
    graph_factory=Depends(get_graph_factory),
) -> SuggestionService:
    return SuggestionService(db, graph=graph_factory(db))


def to_suggestion_response(suggestion) -> SuggestionResponse:
    response = SuggestionResponse.model_validate(suggestion)
    if suggestion.file is not None:
        response.web_url = suggestion.file.web_url
    return response


@router.post("", response_model=StartScanResponse, status_code=202)
def start_scan(
    body: StartScanRequest,
    background_tasks: BackgroundTasks,
    service: CrawlService = Depends(get_crawl_service),
    graph_factory=Depends(get_graph_factory),
    session_factory=Depends(get_session_factory),
    current_user: UserContext = Depends(get_current_user),
):
    """
    Create a scan and start crawling it.

    URL and credential problems are reported here; everything after that
    (site resolution, seeding, the first batch) runs in the background and
    surfaces through the scan's status.
    """
    try:
        scan = service.start_crawl(current_user.id, body.sharepoint_url)
    except InvalidSharePointUrl as e:
        raise HTTPException(status_code=400, detail=str(e))
    except GraphAuthError as e:
        raise HTTPException(status_code=401, detail=str(e))

    background_tasks.add_task(
        run_initialize_crawl,
        scan.id,
        session_factory=session_factory,
        graph_factory=graph_factory,
    )
    return StartScanResponse(scan_id=scan.id, status=scan.status)


@router.get("", response_model=ScanListResponse)
def list_scans(
    limit: int = Query(20, ge=1, le=100),
    service: CrawlService = Depends(get_crawl_service),
    current_user: UserContext = Depends(get_current_user),
):
    scans = service.list_scans(current_user.id, limit=limit)
    return ScanListResponse(data=[ScanResponse.model_validate(s) for s in scans], total=len(scans))


@router.get("/{scan_id}", response_model=ScanResponse)
def get_scan(
    scan_id: str,
    service: CrawlService = Depends(get_crawl_service),
    current_user: UserContext = Depends(get_current_user),
):
    try:
        return ScanResponse.model_validate(service.get_owned_scan(current_user.id, scan_id))
    except ScanNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{scan_id}/status", response_model=CrawlStatusResponse)
def get_crawl_status(
    scan_id: str,
    service: CrawlService = Depends(get_crawl_service),
    current_user: UserContext = Depends(get_current_user),
):
    try:
        return service.crawl_status(current_user.id, scan_id)
    except ScanNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{scan_id}/continue", response_model=CrawlPollResponse)
def continue_crawl(
    scan_id: str,
    service: CrawlService = Depends(get_crawl_service),
    current_user: UserContext = Depends(get_current_user),
):
    """Report progress and advance the crawl by one batch."""
    try:
        return service.poll_crawl(current_user.id, scan_id)
    except ScanNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{scan_id}/stats", response_model=ScanStatsResponse)
def get_scan_stats(
    scan_id: str,
    service: CrawlService = Depends(get_crawl_service),
    current_user: UserContext = Depends(get_current_user),
):
    try:
        return service.scan_stats(current_user.id, scan_id)
    except ScanNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{scan_id}/analyze", response_model=AnalysisResponse)
def analyze_scan(
    scan_id: str,
    service: AnalysisService = Depends(get_analysis_service),
    current_user: UserContext = Depends(get_current_user),
):
    try:
        return service.run_analysis(current_user.id, scan_id)
    except ScanNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ScanStateError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/{scan_id}/suggestions", response_model=SuggestionListResponse)
def list_suggestions(
    scan_id: str,
    category: Optional[str] = Query(None, pattern="^(delete|archive|rename|structure)$"),
    decision: Optional[str] = Query(None, pattern="^(pending|approved|rejected|skipped|executed)$"),
    source: Optional[str] = Query(None, pattern="^(rules|ai)$"),
    sort_by: str = Query("severity", pattern="^(severity|confidence|name)$"),
    service: SuggestionService = Depends(get_suggestion_service),
    current_user: UserContext = Depends(get_current_user),
):
    try:
        suggestions = service.list_suggestions(
            current_user.id,
            scan_id,
            category=category,
            decision=decision,
            source=source,
            sort_by=sort_by,
        )
    except ScanNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidDecision as e:
        raise HTTPException(status_code=400, detail=str(e))

    return SuggestionListResponse(
        data=[to_suggestion_response(s) for s in suggestions],
        total=len(suggestions),
    )
