from __future__ import annotations

import itertools
import threading
from typing import Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from .errors import AuthError, PersistenceError, SubscriptionError
from .log import get_logger
from .model import BookmarkRecord, Created, Deleted, Identifier, ReconciliationEvent, Updated

log = get_logger(__name__)

EventCallback = Callable[[ReconciliationEvent], None]
StatusCallback = Callable[[bool, Optional[SubscriptionError]], None]


class Subscription:
    """Handle returned by ChangeFeed.subscribe; cancel() is idempotent."""

    def __init__(self, owner_id: str, on_cancel: Callable[[], None]):
        self.owner_id = owner_id
        self._on_cancel = on_cancel
        self._lock = threading.Lock()
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        with self._lock:
            if not self._active:
                return
            self._active = False
        self._on_cancel()


class ChangeFeed(Protocol):
    def subscribe(
        self,
        owner_id: str,
        on_event: EventCallback,
        on_status: Optional[StatusCallback] = None,
    ) -> Subscription: ...


class SnapshotSource(Protocol):
    def fetch_all(self, owner_id: str) -> List[BookmarkRecord]: ...


class MemoryChangeFeed:
    """In-process broker; events are delivered synchronously on the publisher's thread."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._keys = itertools.count(1)
        self._subs: Dict[int, Tuple[str, EventCallback]] = {}

    def subscribe(
        self,
        owner_id: str,
        on_event: EventCallback,
        on_status: Optional[StatusCallback] = None,
    ) -> Subscription:
        with self._lock:
            key = next(self._keys)
            self._subs[key] = (owner_id, on_event)
        log.debug("Memory feed subscription %d for %s", key, owner_id)
        if on_status is not None:
            on_status(True, None)
        return Subscription(owner_id, lambda: self._unsubscribe(key))

    def publish(self, owner_id: str, event: ReconciliationEvent) -> int:
        with self._lock:
            targets = [cb for owner, cb in self._subs.values() if owner == owner_id]
        for cb in targets:
            cb(event)
        return len(targets)

    def subscriber_count(self, owner_id: Optional[str] = None) -> int:
        with self._lock:
            if owner_id is None:
                return len(self._subs)
            return sum(1 for owner, _cb in self._subs.values() if owner == owner_id)

    def _unsubscribe(self, key: int) -> None:
        with self._lock:
            self._subs.pop(key, None)


def diff_snapshots(
    previous: Mapping[Identifier, BookmarkRecord],
    current: Sequence[BookmarkRecord],
) -> List[ReconciliationEvent]:
    """Events that turn `previous` into `current`.

    Created events come oldest first so that prepending them keeps the
    newest-first order.
    """
    events: List[ReconciliationEvent] = []
    seen = set()
    created: List[BookmarkRecord] = []
    for r in current:
        seen.add(r.id)
        old = previous.get(r.id)
        if old is None:
            created.append(r)
        elif old != r:
            events.append(Updated(r))
    created.sort(key=lambda r: r.created_at)
    events[:0] = [Created(r) for r in created]
    for rid in previous:
        if rid not in seen:
            events.append(Deleted(rid))
    return events


class PollingChangeFeed:
    """Change feed built on periodic full fetches of the owner's records.

    For backends without a push channel. Delivery is at-least-once: a poll
    that fails reports the feed as not live and the next one catches up.
    """

    def __init__(self, source: SnapshotSource, *, interval_s: float = 5.0):
        self.source = source
        self.interval_s = max(0.1, float(interval_s))

    def subscribe(
        self,
        owner_id: str,
        on_event: EventCallback,
        on_status: Optional[StatusCallback] = None,
    ) -> Subscription:
        poller = _Poller(self.source, owner_id, on_event, on_status, self.interval_s)
        # Baseline before the caller's own fetch: a change in between is then
        # seen twice (harmless) instead of never.
        poller.poll_once()
        poller.start()
        return Subscription(owner_id, poller.stop)


class _Poller:
    def __init__(
        self,
        source: SnapshotSource,
        owner_id: str,
        on_event: EventCallback,
        on_status: Optional[StatusCallback],
        interval_s: float,
    ):
        self.source = source
        self.owner_id = owner_id
        self.on_event = on_event
        self.on_status = on_status
        self.interval_s = interval_s
        self._baseline: Optional[Dict[Identifier, BookmarkRecord]] = None
        self._live: Optional[bool] = None
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=f"syncmarks-poll-{owner_id[:8]}", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join(timeout=self.interval_s + 5)

    def poll_once(self) -> List[ReconciliationEvent]:
        try:
            rows = self.source.fetch_all(self.owner_id)
        except (PersistenceError, AuthError) as e:
            self._set_live(False, SubscriptionError(f"change feed poll failed: {e}"))
            return []

        events = [] if self._baseline is None else diff_snapshots(self._baseline, rows)
        self._baseline = {r.id: r for r in rows}
        self._set_live(True, None)
        for event in events:
            if self._stop.is_set():
                break
            self.on_event(event)
        return events

    def _run(self) -> None:
        while not self._stop.wait(self.interval_s):
            try:
                self.poll_once()
            except Exception as e:
                log.warning("Change feed poll for %s raised: %s", self.owner_id, e)

    def _set_live(self, live: bool, error: Optional[SubscriptionError]) -> None:
        if self._live is live:
            return
        self._live = live
        if self.on_status is not None:
            self.on_status(live, error)
