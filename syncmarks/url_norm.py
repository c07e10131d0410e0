from __future__ import annotations

import re
from urllib.parse import urlparse, urlunparse

from .errors import ValidationError

MAX_URL_LENGTH = 2000
ALLOWED_SCHEMES = ("http", "https")

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")


def normalize_url(url: str) -> str:
    """Return `url` as an absolute http(s) URL or raise ValidationError.

    A missing scheme is read as https, scheme and host are lowercased,
    everything else is kept as typed.
    """
    raw = (url or "").strip()
    if not raw:
        raise ValidationError("URL is required")
    if len(raw) > MAX_URL_LENGTH:
        raise ValidationError(f"URL must be at most {MAX_URL_LENGTH} characters")
    if any(ch.isspace() for ch in raw):
        raise ValidationError("Invalid URL format")

    if not _SCHEME_RE.match(raw):
        raw = f"https://{raw}"

    p = urlparse(raw)
    scheme = p.scheme.lower()
    if scheme not in ALLOWED_SCHEMES:
        raise ValidationError(f"Unsupported URL scheme: {p.scheme}")
    try:
        host = p.hostname
        _ = p.port
    except ValueError:
        raise ValidationError("Invalid URL format") from None
    if not host or host.startswith("."):
        raise ValidationError("Invalid URL format")

    normalized = urlunparse(p._replace(scheme=scheme, netloc=p.netloc.lower()))
    if len(normalized) > MAX_URL_LENGTH:
        raise ValidationError(f"URL must be at most {MAX_URL_LENGTH} characters")
    return normalized
