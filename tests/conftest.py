import sys
from pathlib import Path

import httpx
import pytest

# Allow `import syncmarks` without installing the package.
ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def _block_real_http(monkeypatch):
    """Tests must never reach a real backend; use httpx.MockTransport instead."""

    def _blocked(*_args, **_kwargs):
        raise AssertionError("real HTTP request attempted during tests")

    monkeypatch.setattr(httpx.HTTPTransport, "handle_request", _blocked)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    for name in (
        "SYNCMARKS_BACKEND",
        "SYNCMARKS_URL",
        "SUPABASE_URL",
        "SYNCMARKS_ANON_KEY",
        "SUPABASE_ANON_KEY",
        "SYNCMARKS_TABLE",
        "SYNCMARKS_LOG_LEVEL",
        "SYNCMARKS_POLL_INTERVAL_S",
        "SYNCMARKS_HTTP_TIMEOUT_S",
        "SYNCMARKS_OAUTH_PROVIDER",
        "SYNCMARKS_REDIRECT_URL",
        "SYNCMARKS_NO_COLOR",
        "NO_COLOR",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("SYNCMARKS_STATE_DIR", str(tmp_path / "state"))
