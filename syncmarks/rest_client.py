from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import httpx
import pydantic
from pydantic import BaseModel

from .errors import NotAuthenticatedError, PersistenceError
from .log import get_logger
from .model import BookmarkRecord, ServerId
from .validation import validate_bookmark_input

log = get_logger(__name__)

TokenProvider = Callable[[], Optional[str]]


class BookmarkRow(BaseModel):
    id: int
    user_id: str
    title: str
    url: str
    created_at: datetime

    def to_record(self) -> BookmarkRecord:
        return BookmarkRecord(
            id=ServerId(self.id),
            owner_id=self.user_id,
            title=self.title,
            url=self.url,
            created_at=self.created_at,
        )


def extract_error(response: httpx.Response) -> str:
    try:
        body = response.json()
        if isinstance(body, dict):
            if isinstance(body.get("error"), dict):
                msg = body["error"].get("message")
                if msg:
                    return f"HTTP {response.status_code}: {msg}"
            msg = body.get("message") or body.get("msg") or body.get("error_description") or body.get("error")
            if msg:
                return f"HTTP {response.status_code}: {msg}"
    except ValueError:
        pass
    text = (response.text or "").strip()
    if text:
        return f"HTTP {response.status_code}: {text[:300]}"
    return f"HTTP {response.status_code}: request failed"


class RestPersistence:
    """Bookmark rows over a PostgREST endpoint (`<base>/rest/v1/<table>`).

    Row-level access is enforced by the backend; the owner filter is sent
    anyway so a misconfigured policy cannot leak other users' rows into
    the store.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        token_provider: TokenProvider,
        *,
        table: str = "bookmarks",
        timeout_s: float = 20,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.token_provider = token_provider
        self.table = table
        self._client = httpx.Client(
            base_url=f"{self.base_url}/rest/v1",
            timeout=httpx.Timeout(timeout_s, connect=timeout_s),
            transport=transport,
        )

    def __enter__(self) -> "RestPersistence":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def fetch_all(self, owner_id: str) -> List[BookmarkRecord]:
        log.debug("Fetching bookmarks for %s...", owner_id[:8])
        params = {
            "select": "*",
            "user_id": f"eq.{owner_id}",
            "order": "created_at.desc",
        }
        rows = self._rows(self._request("GET", params=params))
        return [r.to_record() for r in rows]

    def create(self, title: str, url: str, owner_id: str) -> BookmarkRecord:
        data = validate_bookmark_input(title, url)
        log.debug("Creating bookmark %r", data.title[:50])
        payload = [{"title": data.title, "url": data.url, "user_id": owner_id}]
        rows = self._rows(
            self._request("POST", json=payload, headers={"Prefer": "return=representation"})
        )
        if not rows:
            raise PersistenceError("Bookmark creation failed - no data returned")
        record = rows[0].to_record()
        log.info("Bookmark created: %s", record.id)
        return record

    def delete(self, record_id: ServerId, owner_id: str) -> bool:
        params = {"id": f"eq.{record_id.value}", "user_id": f"eq.{owner_id}"}
        rows = self._rows(
            self._request("DELETE", params=params, headers={"Prefer": "return=representation"})
        )
        return len(rows) > 0

    def _headers(self) -> Dict[str, str]:
        token = self.token_provider()
        if not token:
            raise NotAuthenticatedError()
        return {
            "apikey": self.api_key,
            "Authorization": f"Bearer {token}",
        }

    def _request(
        self,
        method: str,
        *,
        params: Optional[Dict[str, str]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        all_headers = self._headers()
        if headers:
            all_headers.update(headers)
        try:
            r = self._client.request(method, f"/{self.table}", params=params, json=json, headers=all_headers)
        except httpx.HTTPError as e:
            raise PersistenceError(f"{method} {self.table} failed: {e}") from e
        if r.status_code >= 300:
            raise PersistenceError(extract_error(r), status_code=r.status_code)
        if not r.content:
            return []
        try:
            return r.json()
        except ValueError as e:
            raise PersistenceError(f"{method} {self.table} returned invalid JSON") from e

    def _rows(self, body: Any) -> List[BookmarkRow]:
        if isinstance(body, dict):
            body = [body]
        if not isinstance(body, list):
            raise PersistenceError("Unexpected response format while loading rows.")
        try:
            return [BookmarkRow.model_validate(x) for x in body]
        except pydantic.ValidationError as e:
            raise PersistenceError(f"Malformed bookmark row: {e.errors()[0].get('msg', e)}") from e
