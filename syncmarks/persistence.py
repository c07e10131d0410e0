from __future__ import annotations

import itertools
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Protocol

from .errors import PersistenceError
from .feed import MemoryChangeFeed
from .log import get_logger
from .model import BookmarkRecord, Created, Deleted, ServerId, Updated, utcnow
from .url_norm import normalize_url
from .validation import validate_bookmark_input, validate_title

log = get_logger(__name__)


class Persistence(Protocol):
    def fetch_all(self, owner_id: str) -> List[BookmarkRecord]: ...

    def create(self, title: str, url: str, owner_id: str) -> BookmarkRecord: ...

    def delete(self, record_id: ServerId, owner_id: str) -> bool: ...


class MemoryBackend:
    """In-process backend: storage, per-owner access and a change feed.

    Every mutation is published on `feed`, the way the hosted backend
    notifies all sessions of the owner.
    """

    def __init__(self, feed: Optional[MemoryChangeFeed] = None, *, first_id: int = 1):
        self.feed = feed or MemoryChangeFeed()
        self._lock = threading.Lock()
        self._ids = itertools.count(first_id)
        self._rows: Dict[ServerId, BookmarkRecord] = {}
        self._last_created: Optional[datetime] = None

    def fetch_all(self, owner_id: str) -> List[BookmarkRecord]:
        with self._lock:
            rows = [r for r in self._rows.values() if r.owner_id == owner_id]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return rows

    def create(self, title: str, url: str, owner_id: str) -> BookmarkRecord:
        data = validate_bookmark_input(title, url)
        if not owner_id:
            raise PersistenceError("row violates access policy: missing owner", status_code=403)
        with self._lock:
            created_at = utcnow()
            # Keep created_at strictly increasing so ordering matches id order.
            if self._last_created is not None and created_at <= self._last_created:
                created_at = self._last_created + timedelta(microseconds=1)
            self._last_created = created_at
            record = BookmarkRecord(
                id=ServerId(next(self._ids)),
                owner_id=owner_id,
                title=data.title,
                url=data.url,
                created_at=created_at,
            )
            self._rows[record.id] = record
        log.debug("Memory backend created %s for %s", record.id, owner_id)
        self.feed.publish(owner_id, Created(record))
        return record

    def update(
        self,
        record_id: ServerId,
        owner_id: str,
        *,
        title: Optional[str] = None,
        url: Optional[str] = None,
    ) -> Optional[BookmarkRecord]:
        with self._lock:
            current = self._rows.get(record_id)
            if current is None or current.owner_id != owner_id:
                return None
            record = BookmarkRecord(
                id=current.id,
                owner_id=current.owner_id,
                title=validate_title(title) if title is not None else current.title,
                url=normalize_url(url) if url is not None else current.url,
                created_at=current.created_at,
            )
            self._rows[record_id] = record
        self.feed.publish(owner_id, Updated(record))
        return record

    def delete(self, record_id: ServerId, owner_id: str) -> bool:
        with self._lock:
            current = self._rows.get(record_id)
            if current is None or current.owner_id != owner_id:
                return False
            del self._rows[record_id]
        self.feed.publish(owner_id, Deleted(record_id))
        return True
