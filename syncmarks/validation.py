from __future__ import annotations

from dataclasses import dataclass

from .errors import ValidationError
from .url_norm import normalize_url

MAX_TITLE_LENGTH = 500


@dataclass(frozen=True)
class BookmarkInput:
    title: str
    url: str


def validate_title(title: str) -> str:
    t = (title or "").strip()
    if not t or len(t) > MAX_TITLE_LENGTH:
        raise ValidationError(f"Title must be 1-{MAX_TITLE_LENGTH} characters")
    return t


def validate_bookmark_input(title: str, url: str) -> BookmarkInput:
    """Trim and check user input; the result is what gets stored and matched."""
    return BookmarkInput(title=validate_title(title), url=normalize_url(url))
