from datetime import datetime, timedelta, timezone

import pytest

from syncmarks.model import BookmarkRecord, ServerId
from syncmarks.view import count_label, domain_of, filter_bookmarks, sort_bookmarks

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _rec(i, title, url, minutes=0):
    return BookmarkRecord(id=ServerId(i), owner_id="u1", title=title, url=url, created_at=T0 + timedelta(minutes=minutes))


RECORDS = [
    _rec(3, "rust book", "https://doc.rust-lang.org/book", minutes=3),
    _rec(2, "Python docs", "https://www.python.org/doc", minutes=2),
    _rec(1, "HTTP client", "https://www.python-httpx.org", minutes=1),
]


def test_domain_of_strips_www_and_port():
    assert domain_of("https://www.python.org/doc") == "python.org"
    assert domain_of("http://localhost:8080/x") == "localhost"
    assert domain_of("https://doc.rust-lang.org/book") == "doc.rust-lang.org"


def test_filter_matches_title_or_url_ignoring_case():
    assert [r.id.value for r in filter_bookmarks(RECORDS, "PYTHON")] == [2, 1]
    assert [r.id.value for r in filter_bookmarks(RECORDS, " book ")] == [3]
    assert filter_bookmarks(RECORDS, "") == RECORDS
    assert filter_bookmarks(RECORDS, None) == RECORDS


def test_sort_by_title_or_recent():
    assert [r.title for r in sort_bookmarks(RECORDS, "title")] == ["HTTP client", "Python docs", "rust book"]
    assert [r.id.value for r in sort_bookmarks(reversed(RECORDS), "recent")] == [3, 2, 1]
    with pytest.raises(ValueError):
        sort_bookmarks(RECORDS, "domain")


def test_count_label():
    assert count_label(3, 3) == "3 bookmarks"
    assert count_label(1, 3) == "1 of 3 bookmarks"
    assert count_label(1, 1) == "1 bookmark"
    assert count_label(0, 0) == "0 bookmarks"
