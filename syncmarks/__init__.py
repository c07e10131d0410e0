"""syncmarks: personal bookmarks kept in sync with a hosted backend."""

from importlib import metadata
from pathlib import Path


def _read_version() -> str:
    p = Path(__file__).resolve().parents[1] / "VERSION"
    try:
        return p.read_text(encoding="utf-8").strip()
    except OSError:
        # Installed without the source tree.
        return metadata.version("syncmarks")


__version__ = _read_version()
