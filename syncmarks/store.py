from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Set, Tuple

from .model import BookmarkRecord, Identifier, ProvisionalId, ServerId


class RecordStore:
    """Ordered in-memory bookmark records of one user, newest first.

    Not thread-safe on its own; callers serialize access (see BookmarkSession).
    Every operation is total: unknown ids are no-ops, nothing raises.
    """

    def __init__(self) -> None:
        self._records: List[BookmarkRecord] = []
        # Server ids are never reused, so a deleted one must never come back.
        self._tombstones: Set[ServerId] = set()
        # Which server record each committed placeholder became.
        self._resolved: Dict[ProvisionalId, ServerId] = {}
        self.revision = 0

    def __len__(self) -> int:
        return len(self._records)

    def snapshot(self) -> Tuple[BookmarkRecord, ...]:
        return tuple(self._records)

    def find(self, record_id: Identifier) -> Optional[Tuple[int, BookmarkRecord]]:
        for pos, r in enumerate(self._records):
            if r.id == record_id:
                return pos, r
        return None

    def contains(self, record_id: Identifier) -> bool:
        return self._index(record_id) is not None

    def is_deleted(self, record_id: Identifier) -> bool:
        return isinstance(record_id, ServerId) and record_id in self._tombstones

    def resolved_id(self, provisional_id: ProvisionalId) -> Optional[ServerId]:
        return self._resolved.get(provisional_id)

    def provisional_ids(self) -> List[ProvisionalId]:
        return [r.id for r in self._records if isinstance(r.id, ProvisionalId)]

    def find_provisional_match(self, title: str, url: str) -> Optional[ProvisionalId]:
        # Oldest first: provisional records are prepended, so scan from the back.
        for r in reversed(self._records):
            if isinstance(r.id, ProvisionalId) and r.title == title and r.url == url:
                return r.id
        return None

    def replace_all(self, records: Iterable[BookmarkRecord]) -> None:
        seen: Set[Identifier] = set()
        fresh: List[BookmarkRecord] = []
        for r in records:
            if r.id in seen or self.is_deleted(r.id):
                continue
            seen.add(r.id)
            fresh.append(r)
        fresh.sort(key=lambda r: r.created_at, reverse=True)
        self._records = fresh
        self._touch()

    def prepend(self, record: BookmarkRecord) -> None:
        pos = self._index(record.id)
        if pos is not None:
            del self._records[pos]
        self._records.insert(0, record)
        self._touch()

    def insert_provisional(self, record: BookmarkRecord) -> None:
        self.prepend(record)

    def commit_provisional(self, provisional_id: ProvisionalId, server_record: BookmarkRecord) -> None:
        pos = self._index(provisional_id)
        if isinstance(server_record.id, ServerId):
            self._resolved[provisional_id] = server_record.id

        if self.is_deleted(server_record.id) or self.contains(server_record.id):
            # Already reconciled (or deleted) through the feed: just drop the placeholder.
            if pos is not None:
                del self._records[pos]
                self._touch()
            return

        if pos is not None:
            self._records[pos] = server_record
        else:
            self._records.insert(0, server_record)
        self._touch()

    def rollback_provisional(self, provisional_id: ProvisionalId) -> bool:
        return self.remove(provisional_id)

    def replace(self, record: BookmarkRecord) -> bool:
        pos = self._index(record.id)
        if pos is None:
            return False
        if self._records[pos] != record:
            self._records[pos] = record
            self._touch()
        return True

    def remove(self, record_id: Identifier) -> bool:
        pos = self._index(record_id)
        if pos is None:
            return False
        del self._records[pos]
        self._touch()
        return True

    def mark_deleted(self, record_id: Identifier) -> bool:
        removed = self.remove(record_id)
        if isinstance(record_id, ServerId):
            self._tombstones.add(record_id)
        return removed

    def reinstate(self, record: BookmarkRecord, position: int) -> bool:
        if self.is_deleted(record.id) or self.contains(record.id):
            return False
        position = max(0, min(position, len(self._records)))
        self._records.insert(position, record)
        self._touch()
        return True

    def clear(self) -> None:
        self._records = []
        self._tombstones = set()
        self._resolved = {}
        self._touch()

    def _index(self, record_id: Identifier) -> Optional[int]:
        for pos, r in enumerate(self._records):
            if r.id == record_id:
                return pos
        return None

    def _touch(self) -> None:
        self.revision += 1
