from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Dict, Optional, Union


@dataclass(frozen=True)
class ServerId:
    """Identifier assigned by the backend on commit (monotonic, never reused)."""

    value: int

    def __str__(self) -> str:
        return str(self.value)


@dataclass(frozen=True)
class ProvisionalId:
    """Locally generated identifier for a record the backend has not confirmed yet."""

    seq: int

    def __str__(self) -> str:
        return f"provisional-{self.seq}"


Identifier = Union[ServerId, ProvisionalId]


class ProvisionalIds:
    """Thread-safe source of provisional identifiers."""

    def __init__(self, start: int = 1):
        self._counter = itertools.count(start)
        self._lock = threading.Lock()

    def next(self) -> ProvisionalId:
        with self._lock:
            return ProvisionalId(next(self._counter))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class BookmarkRecord:
    id: Identifier
    owner_id: str
    title: str
    url: str
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_provisional(self) -> bool:
        return isinstance(self.id, ProvisionalId)

    def with_id(self, new_id: Identifier) -> "BookmarkRecord":
        return replace(self, id=new_id)

    def as_dict(self) -> Dict[str, object]:
        return {
            "id": self.id.value if isinstance(self.id, ServerId) else str(self.id),
            "user_id": self.owner_id,
            "title": self.title,
            "url": self.url,
            "created_at": self.created_at.isoformat(),
            "provisional": self.is_provisional,
        }


@dataclass(frozen=True)
class User:
    id: str
    email: str = ""
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None


@dataclass(frozen=True)
class Created:
    record: BookmarkRecord


@dataclass(frozen=True)
class Updated:
    record: BookmarkRecord


@dataclass(frozen=True)
class Deleted:
    id: ServerId


ReconciliationEvent = Union[Created, Updated, Deleted]
