import pytest

from syncmarks.errors import ValidationError
from syncmarks.url_norm import MAX_URL_LENGTH, normalize_url
from syncmarks.validation import MAX_TITLE_LENGTH, validate_bookmark_input, validate_title


def test_normalize_url_assumes_https_when_scheme_missing():
    assert normalize_url("example.com/a") == "https://example.com/a"
    assert normalize_url("  example.com  ") == "https://example.com"


def test_normalize_url_lowercases_scheme_and_host_only():
    assert normalize_url("HTTP://Example.COM/Path?q=A#Frag") == "http://example.com/Path?q=A#Frag"


def test_normalize_url_keeps_tracking_params_and_trailing_slash_as_typed():
    assert normalize_url("https://example.com/a/?utm_source=x") == "https://example.com/a/?utm_source=x"
    assert normalize_url("https://example.com") == "https://example.com"


@pytest.mark.parametrize(
    "bad",
    [
        "",
        "   ",
        "ftp://example.com/file",
        "https://",
        "https://exa mple.com",
        "https://example.com:99999/",
        "javascript:alert(1)",
        "https://.example.com",
    ],
)
def test_normalize_url_rejects_invalid_urls(bad):
    with pytest.raises(ValidationError):
        normalize_url(bad)


def test_normalize_url_enforces_length_limit():
    base = "https://example.com/"
    ok = base + "a" * (MAX_URL_LENGTH - len(base))
    assert normalize_url(ok) == ok
    with pytest.raises(ValidationError):
        normalize_url(ok + "a")


def test_validate_title_trims_and_bounds_length():
    assert validate_title("  Docs  ") == "Docs"
    assert validate_title("x" * MAX_TITLE_LENGTH) == "x" * MAX_TITLE_LENGTH
    with pytest.raises(ValidationError, match="Title must be 1-500 characters"):
        validate_title("x" * (MAX_TITLE_LENGTH + 1))
    with pytest.raises(ValidationError):
        validate_title(" \t ")


def test_validate_bookmark_input_returns_stored_form():
    data = validate_bookmark_input(" Docs ", "Example.com/x")
    assert data.title == "Docs"
    assert data.url == "https://example.com/x"
