from __future__ import annotations

from .log import get_logger
from .model import BookmarkRecord, Created, Deleted, ReconciliationEvent, ServerId, Updated
from .store import RecordStore

log = get_logger(__name__)


class ChangeFeedReconciler:
    """Folds remote change events into a RecordStore.

    The feed is at-least-once and unordered, so every branch is idempotent:
    re-applying an event, or applying a stale one, leaves the store as is.
    """

    def __init__(self, store: RecordStore):
        self.store = store

    def apply(self, event: ReconciliationEvent) -> bool:
        """Apply one event; returns True when the store changed."""
        if isinstance(event, Created):
            return self._created(event.record)
        if isinstance(event, Updated):
            return self._updated(event.record)
        if isinstance(event, Deleted):
            return self._deleted(event.id)
        log.warning("Ignoring unknown change event: %r", event)
        return False

    def _created(self, record: BookmarkRecord) -> bool:
        if not isinstance(record.id, ServerId):
            log.warning("Ignoring created event without a server id: %s", record.id)
            return False
        if self.store.contains(record.id) or self.store.is_deleted(record.id):
            log.debug("Created %s already known, skipping", record.id)
            return False

        pending = self.store.find_provisional_match(record.title, record.url)
        if pending is not None:
            log.debug("Created %s reconciles %s", record.id, pending)
            self.store.commit_provisional(pending, record)
            return True

        log.debug("Created %s from another session", record.id)
        self.store.prepend(record)
        return True

    def _updated(self, record: BookmarkRecord) -> bool:
        # Absent means deleted locally in a race; do not resurrect it.
        before = self.store.revision
        if not self.store.replace(record):
            log.debug("Updated %s not present, skipping", record.id)
            return False
        return self.store.revision != before

    def _deleted(self, record_id: ServerId) -> bool:
        return self.store.mark_deleted(record_id)
