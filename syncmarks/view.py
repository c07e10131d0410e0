from __future__ import annotations

from typing import Iterable, List, Optional
from urllib.parse import urlparse

from .model import BookmarkRecord

SORT_ORDERS = ("recent", "title")


def domain_of(url: str) -> str:
    try:
        host = urlparse(url).hostname or ""
    except ValueError:
        return url
    if host.startswith("www."):
        host = host[4:]
    return host or url


def filter_bookmarks(records: Iterable[BookmarkRecord], query: Optional[str]) -> List[BookmarkRecord]:
    """Case-insensitive substring match on title or url; an empty query keeps everything."""
    q = (query or "").strip().lower()
    return [r for r in records if not q or q in r.title.lower() or q in r.url.lower()]


def sort_bookmarks(records: Iterable[BookmarkRecord], order: str = "recent") -> List[BookmarkRecord]:
    if order == "title":
        return sorted(records, key=lambda r: (r.title.casefold(), r.title))
    if order == "recent":
        return sorted(records, key=lambda r: r.created_at, reverse=True)
    raise ValueError(f"unknown sort order {order!r} (expected one of: {', '.join(SORT_ORDERS)})")


def count_label(shown: int, total: int) -> str:
    of_total = f" of {total}" if shown != total else ""
    noun = "bookmark" if shown == 1 else "bookmarks"
    return f"{shown}{of_total} {noun}"
