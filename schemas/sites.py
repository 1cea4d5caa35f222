"""
Schemas for the user's SharePoint sites overview.
"""

from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel


class LatestScan(BaseModel):
    id: str
    status: str
    created_at: Optional[datetime] = None
    total_files: int
    total_size_bytes: int


class ActionsBreakdown(BaseModel):
    deletes: int
    renames: int
    moves: int


class SiteInfo(BaseModel):
    graph_site_id: str
    name: str
    display_name: str
    web_url: str
    description: Optional[str] = None
    has_scans: bool
    scan_count: int
    latest_scan: Optional[LatestScan] = None
    total_actions: int
    actions_breakdown: ActionsBreakdown


class SitesSummary(BaseModel):
    total_sites: int
    scanned_sites: int
    total_actions: int
    total_files_analyzed: int


class MySitesResponse(BaseModel):
    sites: List[SiteInfo]
    summary: SitesSummary
