import itertools
from datetime import datetime, timedelta, timezone

from syncmarks.model import BookmarkRecord, Created, Deleted, ProvisionalId, ServerId, Updated
from syncmarks.reconcile import ChangeFeedReconciler
from syncmarks.store import RecordStore

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _rec(rid, *, title="Docs", url="https://example.com", minutes=0) -> BookmarkRecord:
    if isinstance(rid, int):
        rid = ServerId(rid)
    return BookmarkRecord(id=rid, owner_id="u1", title=title, url=url, created_at=T0 + timedelta(minutes=minutes))


def _mk():
    store = RecordStore()
    return store, ChangeFeedReconciler(store)


def test_created_reconciles_matching_provisional_once():
    store, rec = _mk()
    store.insert_provisional(_rec(ProvisionalId(1)))

    assert rec.apply(Created(_rec(42))) is True
    assert [r.id for r in store.snapshot()] == [ServerId(42)]

    before = store.snapshot()
    assert rec.apply(Created(_rec(42))) is False
    assert store.snapshot() == before


def test_feed_wins_race_then_persist_response_is_a_no_op():
    store, rec = _mk()
    p = ProvisionalId(1)
    store.insert_provisional(_rec(p))
    rec.apply(Created(_rec(42)))
    snap = store.snapshot()

    store.commit_provisional(p, _rec(42))
    assert store.snapshot() == snap
    assert len(store) == 1


def test_created_from_another_session_is_prepended():
    store, rec = _mk()
    store.replace_all([_rec(1, title="old")])
    store.insert_provisional(_rec(ProvisionalId(1), title="Mine"))
    rec.apply(Created(_rec(2, title="Theirs", minutes=5)))
    assert [r.title for r in store.snapshot()] == ["Theirs", "Mine", "old"]


def test_created_requires_exact_title_and_url_match():
    store, rec = _mk()
    store.insert_provisional(_rec(ProvisionalId(1), url="https://example.com/a"))
    rec.apply(Created(_rec(9, url="https://example.com/b")))
    assert len(store) == 2
    assert store.contains(ProvisionalId(1))


def test_deleted_absent_id_is_a_no_op():
    store, rec = _mk()
    store.replace_all([_rec(1)])
    before = store.snapshot()
    assert rec.apply(Deleted(ServerId(7))) is False
    assert store.snapshot() == before


def test_updated_absent_id_does_not_resurrect():
    store, rec = _mk()
    store.replace_all([_rec(1)])
    before = store.snapshot()
    assert rec.apply(Updated(_rec(5, title="ghost"))) is False
    assert store.snapshot() == before


def test_updated_replaces_fields_in_place():
    store, rec = _mk()
    store.replace_all([_rec(1, minutes=1), _rec(2)])
    assert rec.apply(Updated(_rec(2, title="Renamed"))) is True
    assert [r.title for r in store.snapshot()] == ["Docs", "Renamed"]
    assert rec.apply(Updated(_rec(2, title="Renamed"))) is False


def test_two_deletes_after_local_removal_are_harmless():
    store, rec = _mk()
    store.replace_all([_rec(7), _rec(8, minutes=1)])
    store.remove(ServerId(7))
    before = store.snapshot()
    assert rec.apply(Deleted(ServerId(7))) is False
    assert rec.apply(Deleted(ServerId(7))) is False
    assert store.snapshot() == before


def test_created_and_deleted_converge_to_absent_in_any_order():
    events = [Created(_rec(5)), Deleted(ServerId(5)), Created(_rec(5))]
    for order in itertools.permutations(events):
        store, rec = _mk()
        for ev in order:
            rec.apply(ev)
        assert not store.contains(ServerId(5)), order


def test_unknown_event_is_ignored():
    store, rec = _mk()
    assert rec.apply(object()) is False
    assert len(store) == 0


def test_created_event_records_which_placeholder_it_reconciled():
    store, rec = _mk()
    p = ProvisionalId(3)
    store.insert_provisional(_rec(p))
    rec.apply(Created(_rec(42)))
    assert store.resolved_id(p) == ServerId(42)
