from __future__ import annotations

import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, List, Optional, Set, Tuple, Union

from .errors import NotAuthenticatedError, SubscriptionError, SyncmarksError
from .feed import ChangeFeed, Subscription
from .log import get_logger
from .model import (
    BookmarkRecord,
    Identifier,
    ProvisionalId,
    ProvisionalIds,
    ReconciliationEvent,
    ServerId,
)
from .persistence import Persistence
from .reconcile import ChangeFeedReconciler
from .store import RecordStore
from .validation import BookmarkInput, validate_bookmark_input

log = get_logger(__name__)

Snapshot = Tuple[BookmarkRecord, ...]
Listener = Callable[[Snapshot], None]


@dataclass(frozen=True)
class SessionStatus:
    user_id: Optional[str]
    loading: bool
    live: bool
    error: Optional[str]


@dataclass(frozen=True)
class _PendingCreate:
    data: BookmarkInput
    provisional_id: ProvisionalId
    user_id: str
    generation: int


@dataclass(frozen=True)
class _PendingDelete:
    record_id: ServerId
    removed: Optional[Tuple[int, BookmarkRecord]]
    user_id: str
    generation: int


class BookmarkSession:
    """Bookmarks of the signed-in user, kept current with optimistic updates.

    Local intents (create/delete) and remote feed events all mutate the
    store through `_update`, one lock-protected entry point. Remote calls
    run outside the lock, so the store keeps taking feed events while a
    request is outstanding.

    A user switch bumps `_generation`; continuations and feed callbacks
    carrying an older generation are dropped instead of touching the new
    user's records.
    """

    def __init__(
        self,
        persistence: Persistence,
        feed: ChangeFeed,
        *,
        executor: Optional[Executor] = None,
        provisional_ids: Optional[ProvisionalIds] = None,
        max_workers: int = 4,
    ):
        self.persistence = persistence
        self.feed = feed
        self.store = RecordStore()
        self.reconciler = ChangeFeedReconciler(self.store)
        self._ids = provisional_ids or ProvisionalIds()
        self._lock = threading.RLock()
        self._executor = executor
        self._owns_executor = executor is None
        self._max_workers = max(1, max_workers)
        self._listeners: List[Listener] = []

        self._user_id: Optional[str] = None
        self._generation = 0
        self._subscription: Optional[Subscription] = None
        self._withdrawn: Set[ProvisionalId] = set()
        self._fetches = 0
        self._fetch_events: List[ReconciliationEvent] = []
        self._live = False
        self._error: Optional[str] = None

    def __enter__(self) -> "BookmarkSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self.set_user(None)
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def bookmarks(self) -> Snapshot:
        with self._lock:
            return self.store.snapshot()

    @property
    def status(self) -> SessionStatus:
        with self._lock:
            return SessionStatus(
                user_id=self._user_id,
                loading=self._fetches > 0,
                live=self._live,
                error=self._error,
            )

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _remove() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _remove

    # -- user context -------------------------------------------------

    def set_user(self, user_id: Optional[str], *, fetch: bool = True, live: bool = True) -> None:
        """Switch the user context: tear down, clear, resubscribe once, fetch.

        `live=False` skips the change feed (one-shot use).
        """
        with self._lock:
            if user_id == self._user_id:
                return
            old = self._subscription
            self._subscription = None
            self._generation += 1
            generation = self._generation
            self._user_id = user_id
            self._withdrawn.clear()
            self._fetches = 0
            self._fetch_events = []
            self._live = False
            self._error = None
            self._update(generation, self.store.clear)

        # Outside the lock: cancelling may wait for a feed thread that is
        # itself blocked on the lock.
        if old is not None:
            log.debug("Cancelling change feed subscription for %s", old.owner_id[:8])
            old.cancel()

        if user_id is None:
            log.info("Bookmark session cleared")
            return

        log.info("Bookmark session for user %s...", user_id[:8])
        if live:
            self._subscribe(user_id, generation)
        if fetch:
            try:
                self.refresh()
            except SyncmarksError:
                # Already logged and reported through status.error.
                pass

    def _subscribe(self, user_id: str, generation: int) -> None:
        try:
            sub = self.feed.subscribe(
                user_id,
                lambda event: self._on_event(generation, event),
                lambda live, err: self._on_status(generation, live, err),
            )
        except SubscriptionError as e:
            self._on_status(generation, False, e)
            return

        with self._lock:
            if generation == self._generation:
                self._subscription = sub
                return
        # The user changed while subscribing.
        sub.cancel()

    # -- fetch ----------------------------------------------------------

    def refresh(self) -> Snapshot:
        """Reload everything from the backend; keeps the last snapshot on failure."""
        with self._lock:
            user_id, generation = self._user_id, self._generation
            if user_id is None:
                return self.store.snapshot()
            self._fetches += 1
            self._error = None

        try:
            rows = self.persistence.fetch_all(user_id)
        except SyncmarksError as e:
            with self._lock:
                if generation == self._generation:
                    self._fetches -= 1
                    self._error = str(e) or "Failed to load bookmarks"
            log.error("Fetching bookmarks failed: %s", e)
            raise

        with self._lock:
            if generation != self._generation:
                log.debug("Discarding fetch result for a previous user")
                return self.store.snapshot()
            self._fetches -= 1
            replay = list(self._fetch_events)
            if self._fetches == 0:
                self._fetch_events = []
            self._update(generation, lambda: self._replace_all(rows, replay))
            log.debug("Loaded %d bookmarks", len(self.store))
            return self.store.snapshot()

    def _replace_all(self, rows: List[BookmarkRecord], replay: List[ReconciliationEvent]) -> None:
        provisional = [r for r in self.store.snapshot() if r.is_provisional]
        self.store.replace_all(rows)
        # Outstanding creates keep their placeholders, and feed events that
        # raced the fetch are folded in again (they are idempotent).
        for r in reversed(provisional):
            self.store.insert_provisional(r)
        for event in replay:
            self.reconciler.apply(event)

    # -- create ---------------------------------------------------------

    def create(self, title: str, url: str) -> BookmarkRecord:
        pending = self._begin_create(title, url)
        return self._finish_create(pending)

    def submit_create(self, title: str, url: str) -> "Future[BookmarkRecord]":
        """Like create() but persists on the worker pool.

        Validation and the optimistic insert happen before this returns.
        """
        pending = self._begin_create(title, url)
        return self._pool().submit(self._finish_create, pending)

    def _begin_create(self, title: str, url: str) -> _PendingCreate:
        with self._lock:
            user_id, generation = self._user_id, self._generation
        if user_id is None:
            raise NotAuthenticatedError()
        data = validate_bookmark_input(title, url)

        pid = self._ids.next()
        placeholder = BookmarkRecord(id=pid, owner_id=user_id, title=data.title, url=data.url)
        with self._lock:
            if generation != self._generation:
                raise NotAuthenticatedError("User changed before the bookmark was added")
            self._error = None
            self._update(generation, lambda: self.store.insert_provisional(placeholder))
        log.debug("Inserted %s for %r", pid, data.title[:50])
        return _PendingCreate(data=data, provisional_id=pid, user_id=user_id, generation=generation)

    def _finish_create(self, pending: _PendingCreate) -> BookmarkRecord:
        pid = pending.provisional_id
        try:
            record = self.persistence.create(pending.data.title, pending.data.url, pending.user_id)
        except SyncmarksError as e:
            with self._lock:
                if pending.generation == self._generation:
                    self._withdrawn.discard(pid)
                    self._error = str(e) or "Failed to add bookmark"
                    self._update(pending.generation, lambda: self.store.rollback_provisional(pid))
                else:
                    log.debug("Create for a previous user failed; nothing to roll back")
            log.error("Adding bookmark failed: %s", e)
            raise

        with self._lock:
            if pending.generation != self._generation:
                log.warning("Discarding create result %s: user context changed", record.id)
                return record
            withdrawn = pid in self._withdrawn
            self._withdrawn.discard(pid)
            if not withdrawn:
                self._update(pending.generation, lambda: self.store.commit_provisional(pid, record))
                log.info("Bookmark added: %s", record.id)
                return record

        # Deleted locally while still being saved: remove the saved row too.
        log.info("Bookmark %s was withdrawn before it was saved; deleting it", record.id)
        try:
            self._finish_delete(
                _PendingDelete(
                    record_id=record.id,
                    removed=(0, record),
                    user_id=pending.user_id,
                    generation=pending.generation,
                )
            )
        except SyncmarksError:
            # The create itself succeeded; the record is back in the store
            # and the failure is in status.error.
            pass
        return record

    # -- delete ---------------------------------------------------------

    def delete(self, record_id: Identifier) -> bool:
        """Delete a bookmark; False when nothing with that id was known.

        A provisional id still waiting for its create is withdrawn. One
        that was already committed deletes the server record it became.
        """
        pending = self._begin_delete(record_id)
        if isinstance(pending, bool):
            return pending
        return self._finish_delete(pending)

    def submit_delete(self, record_id: Identifier) -> "Future[bool]":
        pending = self._begin_delete(record_id)
        if isinstance(pending, bool):
            done: "Future[bool]" = Future()
            done.set_result(pending)
            return done
        return self._pool().submit(self._finish_delete, pending)

    def _begin_delete(self, record_id: Identifier) -> Union[bool, _PendingDelete]:
        with self._lock:
            user_id, generation = self._user_id, self._generation
            if user_id is None:
                raise NotAuthenticatedError()

            if isinstance(record_id, ProvisionalId):
                if self.store.contains(record_id):
                    self._withdrawn.add(record_id)
                    self._update(generation, lambda: self.store.rollback_provisional(record_id))
                    log.debug("Withdrew %s before it was saved", record_id)
                    return True
                resolved = self.store.resolved_id(record_id)
                if resolved is None:
                    log.debug("Nothing to delete for %s", record_id)
                    return False
                log.debug("%s was saved as %s; deleting that", record_id, resolved)
                record_id = resolved

            removed = self.store.find(record_id)
            if removed is not None:
                self._update(generation, lambda: self.store.remove(record_id))
            self._error = None
        return _PendingDelete(record_id=record_id, removed=removed, user_id=user_id, generation=generation)

    def _finish_delete(self, pending: _PendingDelete) -> bool:
        try:
            ok = self.persistence.delete(pending.record_id, pending.user_id)
        except SyncmarksError as e:
            with self._lock:
                if pending.generation == self._generation:
                    self._error = str(e) or "Delete failed"
                    if pending.removed is not None:
                        position, record = pending.removed
                        self._update(pending.generation, lambda: self.store.reinstate(record, position))
            log.error("Deleting bookmark %s failed: %s", pending.record_id, e)
            raise

        # False means no row matched: it is already gone remotely.
        self._update(pending.generation, lambda: self.store.mark_deleted(pending.record_id))
        if ok:
            log.info("Bookmark deleted: %s", pending.record_id)
        else:
            log.info("Bookmark %s was already deleted", pending.record_id)
        return ok

    # -- feed -----------------------------------------------------------

    def _on_event(self, generation: int, event: ReconciliationEvent) -> None:
        with self._lock:
            if generation != self._generation:
                log.debug("Dropping feed event for a previous user: %r", event)
                return
            log.debug("Feed event %s", type(event).__name__)
            if self._fetches:
                self._fetch_events.append(event)
            self._update(generation, lambda: self.reconciler.apply(event))

    def _on_status(self, generation: int, live: bool, error: Optional[SubscriptionError]) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._live = live
        if live:
            log.info("Change feed live")
        else:
            log.warning("Change feed not live: %s", error or "disconnected")

    # -- internals ------------------------------------------------------

    def _update(self, generation: int, mutate: Callable[[], object]) -> bool:
        """The single mutation entry point; False when `generation` is stale."""
        with self._lock:
            if generation != self._generation:
                return False
            before = self.store.revision
            mutate()
            if self.store.revision != before:
                snapshot = self.store.snapshot()
                for listener in list(self._listeners):
                    try:
                        listener(snapshot)
                    except Exception:
                        # The store is already updated; the caller still has to
                        # commit or roll back.
                        log.exception("Bookmark listener %r failed", listener)
            return True

    def _pool(self) -> Executor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="syncmarks")
            return self._executor
