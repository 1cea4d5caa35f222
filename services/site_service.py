"""
"My sites" overview: the SharePoint sites the user can reach, each joined
with the user's scan history and the actions carried out on it.
"""

import re
from collections import defaultdict
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

import models
from services.graph_client import GraphAPIError, GraphAuthError, get_graph_client
from utils.retry import RetryExhausted
from utils.structured_logging import crawl_logger

SITE_SEARCH_PATH = "/sites?search=*"
_SITE_NAME_RE = re.compile(r"/sites/([^/]+)")


def _empty_breakdown() -> Dict[str, int]:
    return {"deletes": 0, "renames": 0, "moves": 0}


def _latest_scan(scan: models.Scan) -> Dict[str, Any]:
    return {
        "id": scan.id,
        "status": scan.status,
        "created_at": scan.created_at,
        "total_files": scan.total_files or 0,
        "total_size_bytes": scan.total_size_bytes or 0,
    }


class SiteService:
    def __init__(self, db: Session, graph=None):
        self.db = db
        self._graph = graph

    @property
    def graph(self):
        if self._graph is None:
            self._graph = get_graph_client(self.db)
        return self._graph

    def _graph_sites(self, user_id: str) -> List[Dict[str, Any]]:
        sites: List[Dict[str, Any]] = []
        try:
            for page in self.graph.paginate(user_id, SITE_SEARCH_PATH):
                sites.extend(page)
        except (GraphAPIError, GraphAuthError, RetryExhausted) as e:
            # Scan history is still worth showing without a Graph token
            crawl_logger.warning(
                action="list_my_sites",
                message=f"Could not list sites from Graph: {e}",
                user_id=user_id,
            )
        return sites

    def _action_counts(self, scan_ids: List[str]) -> Dict[str, Dict[str, int]]:
        counts: Dict[str, Dict[str, int]] = defaultdict(_empty_breakdown)
        if not scan_ids:
            return counts

        rows = self.db.query(
            models.ExecutedAction.scan_id,
            models.ExecutedAction.action_type,
        ).filter(
            models.ExecutedAction.scan_id.in_(scan_ids),
            models.ExecutedAction.status == "success",
        ).all()

        for scan_id, action_type in rows:
            key = f"{action_type}s"
            if key in counts[scan_id]:
                counts[scan_id][key] += 1
        return counts

    def _site_entry(
        self,
        site_id: str,
        name: str,
        display_name: str,
        web_url: str,
        description: Optional[str],
        scans: List[models.Scan],
        action_counts: Dict[str, Dict[str, int]],
    ) -> Dict[str, Any]:
        breakdown = _empty_breakdown()
        for scan in scans:
            for key, value in action_counts.get(scan.id, {}).items():
                breakdown[key] += value

        return {
            "graph_site_id": site_id,
            "name": name,
            "display_name": display_name,
            "web_url": web_url,
            "description": description,
            "has_scans": bool(scans),
            "scan_count": len(scans),
            "latest_scan": _latest_scan(scans[0]) if scans else None,
            "total_actions": sum(breakdown.values()),
            "actions_breakdown": breakdown,
        }

    def list_my_sites(self, user_id: str) -> Dict[str, Any]:
        """
        Sites from Graph enriched with scan counts, the latest scan and
        successful action counts. Scanned sites Graph no longer returns
        (access revoked, site deleted) are appended from scan history.
        Scanned sites sort first, then by display name.
        """
        graph_sites = self._graph_sites(user_id)

        scans = (
            self.db.query(models.Scan)
            .filter(models.Scan.user_id == user_id)
            .order_by(models.Scan.created_at.desc(), models.Scan.id.desc())
            .all()
        )
        scans_by_site: Dict[str, List[models.Scan]] = defaultdict(list)
        for scan in scans:
            if scan.site_id:
                scans_by_site[scan.site_id].append(scan)

        action_counts = self._action_counts([scan.id for scan in scans])

        sites = []
        for site in graph_sites:
            sites.append(self._site_entry(
                site["id"],
                site.get("name") or "",
                site.get("displayName") or site.get("name") or "Unnamed Site",
                site.get("webUrl") or "",
                site.get("description") or None,
                scans_by_site.get(site["id"], []),
                action_counts,
            ))

        seen = {site["id"] for site in graph_sites}
        for site_id, site_scans in scans_by_site.items():
            if site_id in seen:
                continue
            latest = site_scans[0]
            match = _SITE_NAME_RE.search(latest.sharepoint_url or "")
            name = match.group(1) if match else "Unknown Site"
            sites.append(self._site_entry(
                site_id, name, name, latest.sharepoint_url or "", None, site_scans, action_counts,
            ))

        sites.sort(key=lambda s: (not s["has_scans"], s["display_name"].casefold()))

        scanned = [s for s in sites if s["has_scans"]]
        summary = {
            "total_sites": len(sites),
            "scanned_sites": len(scanned),
            "total_actions": sum(s["total_actions"] for s in scanned),
            "total_files_analyzed": sum(s["latest_scan"]["total_files"] for s in scanned),
        }
        return {"sites": sites, "summary": summary}
