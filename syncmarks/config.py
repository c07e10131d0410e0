from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml

from .errors import ConfigError

BACKENDS = ("rest", "memory")


def _env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    return v.strip().lower() in ("1", "true", "yes", "y", "on")


def _env_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return default if v is None else v


def _env_str_first(names: tuple[str, ...], default: str) -> str:
    for name in names:
        v = os.getenv(name)
        if v is None or v == "":
            continue
        return v
    return default


def _default_state_dir() -> str:
    base = os.getenv("XDG_STATE_HOME") or str(Path.home() / ".local" / "state")
    return str(Path(base) / "syncmarks")


@dataclass
class Settings:
    # Backend
    backend: str = "rest"  # rest | memory
    url: str = ""
    anon_key: str = ""
    table: str = "bookmarks"
    http_timeout_s: int = 20

    # Change feed
    poll_interval_s: float = 5.0

    # Auth
    oauth_provider: str = "google"
    redirect_url: str = "http://localhost:3000/bookmarks"
    state_dir: str = ""

    # Logging / UX
    log_level: str = "INFO"
    no_color: bool = False

    def __post_init__(self) -> None:
        if not self.state_dir:
            self.state_dir = _default_state_dir()

    @staticmethod
    def from_env() -> "Settings":
        s = Settings()
        s.backend = _env_str("SYNCMARKS_BACKEND", s.backend)
        # Compat: SUPABASE_* also supported; SYNCMARKS_ variant wins when both are set.
        s.url = _env_str_first(("SYNCMARKS_URL", "SUPABASE_URL"), s.url)
        s.anon_key = _env_str_first(("SYNCMARKS_ANON_KEY", "SUPABASE_ANON_KEY"), s.anon_key)
        s.table = _env_str("SYNCMARKS_TABLE", s.table)
        s.http_timeout_s = _env_int("SYNCMARKS_HTTP_TIMEOUT_S", s.http_timeout_s)

        s.poll_interval_s = _env_float("SYNCMARKS_POLL_INTERVAL_S", s.poll_interval_s)

        s.oauth_provider = _env_str("SYNCMARKS_OAUTH_PROVIDER", s.oauth_provider)
        s.redirect_url = _env_str("SYNCMARKS_REDIRECT_URL", s.redirect_url)
        s.state_dir = _env_str("SYNCMARKS_STATE_DIR", s.state_dir)

        s.log_level = _env_str("SYNCMARKS_LOG_LEVEL", s.log_level)
        s.no_color = _env_bool("SYNCMARKS_NO_COLOR", s.no_color)
        return s

    @staticmethod
    def from_file(path: Path) -> "Settings":
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ConfigError(f"config file must hold a mapping: {path}")
        s = Settings.from_env()
        for k, v in data.items():
            if hasattr(s, k):
                setattr(s, k, v)
        return s

    def require_backend(self) -> None:
        if self.backend not in BACKENDS:
            raise ConfigError(f"unknown backend {self.backend!r} (expected one of: {', '.join(BACKENDS)})")
        if self.backend == "rest" and (not self.url or not self.anon_key):
            raise ConfigError("Missing backend URL or anon key (set SYNCMARKS_URL and SYNCMARKS_ANON_KEY)")


def load_settings(config_path: Optional[str]) -> Settings:
    if config_path:
        return Settings.from_file(Path(config_path))
    return Settings.from_env()
