"""
Schemas for scans and crawl progress.
"""

from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field


class StartScanRequest(BaseModel):
    sharepoint_url: str = Field(..., min_length=1)


class StartScanResponse(BaseModel):
    scan_id: str
    status: str


class ScanResponse(BaseModel):
    id: str
    sharepoint_url: str
    status: str
    site_id: Optional[str] = None
    drive_id: Optional[str] = None
    total_files: int
    total_folders: int
    total_size_bytes: int
    crawl_progress: int
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ScanListResponse(BaseModel):
    data: List[ScanResponse]
    total: int


class CrawlStatusResponse(BaseModel):
    scan_id: str
    status: str
    crawl_progress: int
    total_files: int
    total_folders: int
    total_size_bytes: int
    error_message: Optional[str] = None


class CrawlPollResponse(CrawlStatusResponse):
    done: bool
    processed: int
    remaining: int


class ScanStatsResponse(BaseModel):
    total_files: int
    total_folders: int
    total_size_bytes: int
    type_distribution: Dict[str, int]
    avg_age_days: int
    max_depth: int
    files_older_than_2yr: int
    files_older_than_4yr: int


class AnalysisResponse(BaseModel):
    suggestion_count: int
    categories: Dict[str, int]
    rules_matched: int
    ai_analyzed: int
    ai_available: bool
