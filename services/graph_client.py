import re
import time
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional
from urllib.parse import parse_qs, unquote, urlparse

import httpx
from sqlalchemy.orm import Session

import models
from config import config
from utils.prometheus import GRAPH_REQUESTS, GRAPH_THROTTLES
from utils.retry import RetryExhausted, exponential_backoff_retry, parse_retry_after

logger = logging.getLogger("sp5s.graph")

TOKEN_REFRESH_BUFFER = timedelta(minutes=5)


class GraphAuthError(Exception):
    """No usable Graph credential for the user; they must sign in again."""
    pass


class GraphAPIError(Exception):
    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(f"Graph API error {status_code}: {body}")


class InvalidSharePointUrl(ValueError):
    pass


@dataclass
class SharePointLocation:
    hostname: str
    site_path: str
    library_path: Optional[str] = None


_VIEW_PAGE_SUFFIXES = (
    re.compile(r"/Forms/AllItems\.aspx$", re.IGNORECASE),
    re.compile(r"/Forms/[^/]+\.aspx$", re.IGNORECASE),
)


def parse_sharepoint_url(url: str) -> SharePointLocation:
    """
    Split a SharePoint URL into hostname, site path and optional library path.

    Supports URLs like:
        https://contoso.sharepoint.com/sites/MySite
        https://contoso.sharepoint.com/sites/MySite/Shared Documents/SubFolder
        https://contoso.sharepoint.com/sites/MySite/Shared%20Documents/Forms/AllItems.aspx?id=%2Fsites%2FMySite%2FShared%20Documents%2FFolder

    View URLs carry the real location in the ``id`` query parameter, which
    wins over the pathname when present.
    """
    if not url or not url.strip():
        raise InvalidSharePointUrl("sharepoint_url is required")

    parsed = urlparse(url.strip())
    hostname = parsed.hostname
    if not hostname:
        raise InvalidSharePointUrl(f"Not a valid URL: {url}")

    id_param = parse_qs(parsed.query).get("id")
    if id_param and id_param[0]:
        effective_path = id_param[0]
    else:
        effective_path = unquote(parsed.path)

    for pattern in _VIEW_PAGE_SUFFIXES:
        effective_path = pattern.sub("", effective_path)

    parts = [part for part in effective_path.split("/") if part]

    site_index = next((i for i, part in enumerate(parts) if part in ("sites", "teams")), -1)
    if site_index == -1 or site_index + 1 >= len(parts):
        raise InvalidSharePointUrl(
            "Could not parse SharePoint site from URL. "
            "Expected format: https://tenant.sharepoint.com/sites/SiteName"
        )

    site_path = f"/{parts[site_index]}/{parts[site_index + 1]}"
    remaining = parts[site_index + 2:]
    library_path = "/" + "/".join(remaining) if remaining else None

    logger.info(
        "Parsed SharePoint URL",
        extra={
            "hostname": hostname,
            "site_path": site_path,
            "library_path": library_path,
            "source": "id param" if id_param else "pathname",
        },
    )
    return SharePointLocation(hostname=hostname, site_path=site_path, library_path=library_path)


_FRACTION_RE = re.compile(r"\.(\d{6})\d+")


def parse_graph_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse Graph's ISO-8601 stamps (``Z`` suffix, up to 7 fractional digits)."""
    if not value:
        return None
    normalized = _FRACTION_RE.sub(r".\1", value.replace("Z", "+00:00"))
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        logger.warning(f"Unparsable Graph timestamp: {value}")
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _ensure_aware(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


_http_client: Optional[httpx.Client] = None


def get_http_client() -> httpx.Client:
    """Process-wide httpx client; every GraphClient reuses its connection pool."""
    global _http_client
    if _http_client is None or _http_client.is_closed:
        _http_client = httpx.Client(timeout=config.GRAPH_TIMEOUT_SECONDS)
    return _http_client


def close_http_client() -> None:
    global _http_client
    if _http_client is not None:
        _http_client.close()
        _http_client = None


class GraphClient:
    """
    Microsoft Graph client acting on behalf of a signed-in user.
    Handles token refresh, pagination and throttling (429 + Retry-After).
    """

    def __init__(
        self,
        db: Session,
        http_client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.http = http_client or get_http_client()
        self._sleep = sleep

    # --- Tokens ---

    def get_token(self, user_id: str) -> str:
        """
        Return a valid access token for the user, refreshing it when it
        expires within the next five minutes.
        """
        token_row = self.db.get(models.ProviderToken, user_id)
        if token_row is None or not (token_row.access_token or token_row.refresh_token):
            raise GraphAuthError("No Graph API token found. Please sign in again.")

        now = datetime.now(timezone.utc)
        expires_at = _ensure_aware(token_row.expires_at)
        if token_row.access_token and expires_at and expires_at - now > TOKEN_REFRESH_BUFFER:
            return token_row.access_token

        if not token_row.refresh_token:
            raise GraphAuthError("No refresh token available. Please sign in again.")

        refreshed = self._refresh_access_token(token_row.refresh_token)

        token_row.access_token = refreshed["access_token"]
        token_row.refresh_token = refreshed.get("refresh_token") or token_row.refresh_token
        token_row.expires_at = now + timedelta(seconds=int(refreshed.get("expires_in", 3600)))
        token_row.updated_at = now
        try:
            self.db.commit()
        except Exception as e:
            # The fresh token is still usable for this call
            self.db.rollback()
            logger.error(f"Failed to persist refreshed token for user {user_id}: {e}")

        return refreshed["access_token"]

    def _refresh_access_token(self, refresh_token: str) -> Dict[str, Any]:
        url = f"{config.GRAPH_TOKEN_ENDPOINT}/{config.AZURE_TENANT_ID}/oauth2/v2.0/token"
        try:
            response = self.http.post(
                url,
                data={
                    "client_id": config.AZURE_CLIENT_ID,
                    "client_secret": config.AZURE_CLIENT_SECRET,
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "scope": config.GRAPH_SCOPES,
                },
            )
        except httpx.TransportError as e:
            raise GraphAuthError(f"Failed to reach the Microsoft token endpoint: {e}") from e

        if not response.is_success:
            logger.error(f"Token refresh failed: {response.status_code} {response.text}")
            raise GraphAuthError("Failed to refresh Microsoft token. Please sign in again.")

        return response.json()

    # --- Requests ---

    @exponential_backoff_retry(
        max_retries=3,
        initial_delay=1.0,
        retriable_exceptions=(httpx.TransportError,),
    )
    def _send(self, method: str, url: str, token: str, json: Optional[Dict[str, Any]] = None) -> httpx.Response:
        response = self.http.request(
            method,
            url,
            json=json,
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
            },
        )
        GRAPH_REQUESTS.labels(status=str(response.status_code)).inc()
        if response.status_code >= 500:
            raise GraphAPIError(response.status_code, response.text)
        return response

    def request(
        self,
        user_id: str,
        path: str,
        method: str = "GET",
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Perform an authorized Graph call and return the decoded JSON body
        (``None`` for empty responses such as 204 No Content).

        429 responses wait for Retry-After seconds and retry the same call,
        up to GRAPH_MAX_THROTTLE_RETRIES times (0 = no limit).
        """
        url = path if path.startswith("http") else f"{config.GRAPH_BASE_URL}{path}"
        max_throttles = config.GRAPH_MAX_THROTTLE_RETRIES
        throttles = 0

        while True:
            token = self.get_token(user_id)
            response = self._send(method, url, token, json=json)

            if response.status_code == 429:
                throttles += 1
                if max_throttles and throttles > max_throttles:
                    raise RetryExhausted(
                        f"Graph API still throttling after {max_throttles} retries: {method} {path}"
                    )
                retry_after = parse_retry_after(
                    response.headers.get("Retry-After"), default=config.GRAPH_DEFAULT_RETRY_AFTER
                )
                GRAPH_THROTTLES.inc()
                logger.info(f"Graph API throttled. Retrying after {retry_after}s...")
                self._sleep(retry_after)
                continue

            if not response.is_success:
                raise GraphAPIError(response.status_code, response.text)

            if response.status_code == 204 or not response.content:
                return None
            return response.json()

    def paginate(self, user_id: str, path: str) -> Iterator[List[Dict[str, Any]]]:
        """Yield each page's ``value`` array, following @odata.nextLink."""
        url: Optional[str] = path
        while url:
            data = self.request(user_id, url) or {}
            if data.get("value"):
                yield data["value"]
            url = data.get("@odata.nextLink")


def get_graph_client(db: Session):
    """Factory honoring USE_MOCK_GRAPH."""
    if config.USE_MOCK_GRAPH:
        from services.graph_client_mock import get_demo_graph
        return get_demo_graph()
    return GraphClient(db)
