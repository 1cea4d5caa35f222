import re
import uuid
import datetime
from collections import deque
from typing import Any, Deque, Dict, Iterator, List, Optional
from urllib.parse import parse_qs, urlparse

from services.graph_client import GraphAPIError

MOCK_BASE = "mock://graph"
# Most recent requests only; the shared demo instance lives for the whole process
CALL_LOG_SIZE = 1000


def _iso(dt: Optional[datetime.datetime]) -> str:
    dt = dt or datetime.datetime.now(datetime.timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


class MockGraphClient:
    """
    In-memory stand-in for the Graph client used for local development
    (USE_MOCK_GRAPH=true) and tests.

    Holds sites, drives and a driveItem tree; serves the same paths the
    crawler and the action executor call, with real @odata.nextLink paging.
    """

    def __init__(self, page_size: int = 200):
        self.page_size = page_size
        self.sites: Dict[str, Dict[str, Any]] = {}
        self.drives: Dict[str, Dict[str, Any]] = {}
        self.items: Dict[str, Dict[str, Any]] = {}
        # path -> exception raised when that path is requested
        self.failures: Dict[str, Exception] = {}
        self.calls: Deque[str] = deque(maxlen=CALL_LOG_SIZE)

    # --- Tree building ---

    def add_site(
        self,
        hostname: str,
        site_path: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> str:
        site_id = f"{hostname},{uuid.uuid4()},{uuid.uuid4()}"
        short_name = site_path.rsplit("/", 1)[-1]
        self.sites[f"{hostname}:{site_path}"] = {
            "id": site_id,
            "name": short_name,
            "displayName": name or short_name,
            "description": description,
            "webUrl": f"https://{hostname}{site_path}",
        }
        return site_id

    def add_drive(self, site_id: str, name: str) -> str:
        drive_id = f"b!{uuid.uuid4().hex}"
        root_id = f"root-{drive_id}"
        self.drives[drive_id] = {"id": drive_id, "name": name, "site_id": site_id, "root_id": root_id}
        self.items[root_id] = {"id": root_id, "name": "root", "folder": {"childCount": 0}, "drive_id": drive_id, "parent": None}
        return drive_id

    def _add_item(self, drive_id: str, parent_id: Optional[str], item: Dict[str, Any]) -> str:
        parent_id = parent_id or self.drives[drive_id]["root_id"]
        item_id = uuid.uuid4().hex
        item.update({"id": item_id, "drive_id": drive_id, "parent": parent_id})
        self.items[item_id] = item
        return item_id

    def add_folder(self, drive_id: str, name: str, parent_id: Optional[str] = None) -> str:
        return self._add_item(drive_id, parent_id, {
            "name": name,
            "size": 0,
            "folder": {"childCount": 0},
            "createdDateTime": _iso(None),
            "lastModifiedDateTime": _iso(None),
            "createdBy": {"user": {"displayName": "Mock User"}},
            "lastModifiedBy": {"user": {"displayName": "Mock User"}},
        })

    def add_file(
        self,
        drive_id: str,
        name: str,
        size: int = 1024,
        parent_id: Optional[str] = None,
        modified: Optional[datetime.datetime] = None,
        created: Optional[datetime.datetime] = None,
        mime_type: str = "application/octet-stream",
        modified_by: str = "Mock User",
    ) -> str:
        return self._add_item(drive_id, parent_id, {
            "name": name,
            "size": size,
            "file": {"mimeType": mime_type, "hashes": {"sha256Hash": uuid.uuid4().hex}},
            "createdDateTime": _iso(created or modified),
            "lastModifiedDateTime": _iso(modified),
            "createdBy": {"user": {"displayName": "Mock User"}},
            "lastModifiedBy": {"user": {"displayName": modified_by}},
        })

    def _children(self, parent_id: str) -> List[Dict[str, Any]]:
        children = []
        for item in self.items.values():
            if item.get("parent") == parent_id:
                public = {k: v for k, v in item.items() if k not in ("drive_id", "parent")}
                public["webUrl"] = f"https://mock.sharepoint.com/{item['id']}"
                children.append(public)
        return children

    def _resolve_path(self, drive_id: str, sub_path: str) -> str:
        current = self.drives[drive_id]["root_id"]
        for name in [p for p in sub_path.split("/") if p]:
            match = next(
                (i for i in self.items.values()
                 if i.get("parent") == current and i["name"].lower() == name.lower() and "folder" in i),
                None,
            )
            if match is None:
                raise GraphAPIError(404, f'{{"error": {{"code": "itemNotFound", "message": "{sub_path}"}}}}')
            current = match["id"]
        return current

    # --- Client surface ---

    def get_token(self, user_id: str) -> str:
        return f"mock-token-{user_id}"

    def request(self, user_id: str, path: str, method: str = "GET", json: Optional[Dict[str, Any]] = None) -> Any:
        self.calls.append(f"{method} {path}")
        if path in self.failures:
            raise self.failures[path]

        if path.startswith(MOCK_BASE):
            return self._page(path)

        if path.startswith("/sites?search=") and method == "GET":
            return {"value": [dict(site) for site in self.sites.values()]}

        site_match = re.fullmatch(r"/sites/([^/]+:/(?:sites|teams)/[^/]+)", path)
        if site_match and method == "GET":
            site = self.sites.get(site_match.group(1))
            if site is None:
                raise GraphAPIError(404, '{"error": {"code": "itemNotFound"}}')
            return site

        drives_match = re.fullmatch(r"/sites/([^/]+)/drives", path)
        if drives_match:
            site_id = drives_match.group(1)
            return {"value": [
                {"id": d["id"], "name": d["name"], "driveType": "documentLibrary"}
                for d in self.drives.values() if d["site_id"] == site_id
            ]}

        children_match = re.fullmatch(r"/drives/([^/]+)/(root|items/([^/]+)|root:/(.+):)/children", path)
        if children_match:
            drive_id = children_match.group(1)
            if drive_id not in self.drives:
                raise GraphAPIError(404, '{"error": {"code": "itemNotFound"}}')
            if children_match.group(3):
                parent_id = children_match.group(3)
                if parent_id not in self.items:
                    raise GraphAPIError(404, '{"error": {"code": "itemNotFound"}}')
            elif children_match.group(4):
                parent_id = self._resolve_path(drive_id, children_match.group(4))
            else:
                parent_id = self.drives[drive_id]["root_id"]
            return self._page(f"{MOCK_BASE}?parent={parent_id}&skip=0")

        item_match = re.fullmatch(r"/drives/([^/]+)/items/([^/]+)", path)
        if item_match:
            item_id = item_match.group(2)
            if item_id not in self.items:
                raise GraphAPIError(404, '{"error": {"code": "itemNotFound"}}')
            if method == "DELETE":
                self._delete(item_id)
                return None
            if method == "PATCH":
                self.items[item_id].update(json or {})
                return {"id": item_id, "name": self.items[item_id]["name"]}
            return self.items[item_id]

        raise GraphAPIError(400, f'{{"error": {{"code": "invalidRequest", "message": "Unsupported mock path {path}"}}}}')

    def _page(self, link: str) -> Dict[str, Any]:
        query = parse_qs(urlparse(link).query)
        parent_id = query["parent"][0]
        skip = int(query.get("skip", ["0"])[0])
        children = self._children(parent_id)
        page = children[skip:skip + self.page_size]
        data: Dict[str, Any] = {"value": page}
        if skip + self.page_size < len(children):
            data["@odata.nextLink"] = f"{MOCK_BASE}?parent={parent_id}&skip={skip + self.page_size}"
        return data

    def _delete(self, item_id: str):
        for child_id in [i["id"] for i in self.items.values() if i.get("parent") == item_id]:
            self._delete(child_id)
        self.items.pop(item_id, None)

    def paginate(self, user_id: str, path: str) -> Iterator[List[Dict[str, Any]]]:
        url: Optional[str] = path
        while url:
            data = self.request(user_id, url) or {}
            if data.get("value"):
                yield data["value"]
            url = data.get("@odata.nextLink")


_demo_graph: Optional[MockGraphClient] = None


def get_demo_graph() -> MockGraphClient:
    """Shared mock seeded with a small messy library for local runs."""
    global _demo_graph
    if _demo_graph is None:
        graph = MockGraphClient(page_size=50)
        site_id = graph.add_site("contoso.sharepoint.com", "/sites/Demo", name="Demo")
        drive_id = graph.add_drive(site_id, "Documents")
        old = datetime.datetime(2019, 3, 1, tzinfo=datetime.timezone.utc)
        projects = graph.add_folder(drive_id, "Projects")
        graph.add_file(drive_id, "Budget_v2_final.xlsx", 20480, parent_id=projects)
        graph.add_file(drive_id, "Budget_v2_final (1).xlsx", 20480, parent_id=projects)
        graph.add_file(drive_id, "~$Budget.xlsx", 165, parent_id=projects)
        archive = graph.add_folder(drive_id, "Archive 2018")
        graph.add_file(drive_id, "MEETING NOTES.docx", 3072, parent_id=archive, modified=old)
        graph.add_file(drive_id, "empty.txt", 0)
        _demo_graph = graph
    return _demo_graph
