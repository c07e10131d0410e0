import base64
import hashlib
import json
import time

import httpx
import pytest

from syncmarks.auth import AuthClient, AuthEvent, AuthSession, AuthState, SessionFile, make_pkce_pair
from syncmarks.errors import AuthError
from syncmarks.model import User

BASE = "https://proj.example.co"

TOKEN_BODY = {
    "access_token": "acc-1",
    "refresh_token": "ref-1",
    "expires_in": 3600,
    "user": {
        "id": "u1",
        "email": "ada@example.com",
        "user_metadata": {"full_name": "Ada", "avatar_url": "https://img.example/ada.png"},
    },
}


def _client(handler):
    return AuthClient(BASE, "anon-key", transport=httpx.MockTransport(handler))


def _session(expires_at=None, refresh_token="ref-0"):
    return AuthSession(
        access_token="acc-0",
        refresh_token=refresh_token,
        expires_at=int(time.time()) + 3600 if expires_at is None else expires_at,
        user=User(id="u1", email="ada@example.com"),
    )


def test_pkce_challenge_is_s256_of_verifier():
    verifier, challenge = make_pkce_pair()
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    assert challenge == base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    assert make_pkce_pair()[0] != verifier


def test_authorize_url_carries_provider_and_challenge():
    url = httpx.URL(_client(lambda r: httpx.Response(500)).authorize_url("google", "http://localhost/cb", "chal"))
    assert url.path == "/auth/v1/authorize"
    assert url.params["provider"] == "google"
    assert url.params["redirect_to"] == "http://localhost/cb"
    assert url.params["code_challenge"] == "chal"


def test_exchange_code_returns_session_with_user():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=TOKEN_BODY)

    s = _client(handler).exchange_code("code-1", "verifier-1")
    assert s.access_token == "acc-1"
    assert s.user == User(id="u1", email="ada@example.com", full_name="Ada", avatar_url="https://img.example/ada.png")
    assert not s.expired()

    req = seen[0]
    assert req.url.path == "/auth/v1/token"
    assert req.url.params["grant_type"] == "pkce"
    assert req.headers["apikey"] == "anon-key"
    assert json.loads(req.content) == {"auth_code": "code-1", "code_verifier": "verifier-1"}


def test_exchange_code_failure_raises_auth_error():
    client = _client(lambda r: httpx.Response(400, json={"error_description": "invalid flow state"}))
    with pytest.raises(AuthError, match="invalid flow state"):
        client.exchange_code("bad", "v")

    client = _client(lambda r: httpx.Response(200, json={"access_token": "x"}))
    with pytest.raises(AuthError, match="no access token or user id"):
        client.exchange_code("c", "v")


def test_get_user_returns_none_when_not_authenticated():
    assert _client(lambda r: httpx.Response(401, json={"msg": "invalid JWT"})).get_user("t") is None
    user = _client(lambda r: httpx.Response(200, json=TOKEN_BODY["user"])).get_user("t")
    assert user.id == "u1"


def test_sign_out_tolerates_revoked_token():
    _client(lambda r: httpx.Response(401)).sign_out("t")
    with pytest.raises(AuthError):
        _client(lambda r: httpx.Response(500, text="down")).sign_out("t")


def test_auth_state_emits_sign_in_refresh_and_sign_out():
    def handler(request):
        if request.url.path.endswith("/token"):
            return httpx.Response(200, json=TOKEN_BODY)
        return httpx.Response(204)

    client = _client(handler)
    state = AuthState(client)
    events = []
    state.on_change(lambda ev, s: events.append((ev, s.access_token if s else None)))

    state.signed_in(_session(expires_at=0))
    assert state.user.id == "u1"
    assert state.refresh_if_needed() is True
    assert state.access_token() == "acc-1"
    assert state.refresh_if_needed() is False

    state.sign_out()
    assert state.session is None
    assert events == [
        (AuthEvent.SIGNED_IN, "acc-0"),
        (AuthEvent.TOKEN_REFRESHED, "acc-1"),
        (AuthEvent.SIGNED_OUT, None),
    ]


def test_expired_session_without_refresh_token_requires_sign_in():
    state = AuthState(None, _session(expires_at=0, refresh_token=""))
    with pytest.raises(AuthError):
        state.refresh_if_needed()


def test_unsubscribed_listener_gets_nothing():
    state = AuthState()
    events = []
    off = state.on_change(lambda ev, s: events.append(ev))
    off()
    state.signed_in(_session())
    assert events == []


def test_session_file_round_trip_and_verifier(tmp_path):
    f = SessionFile(tmp_path / "state" / "session.json")
    assert f.load() is None
    assert f.pop_verifier() is None

    f.save_verifier("v-1")
    assert f.pop_verifier() == "v-1"
    assert f.pop_verifier() is None

    f.save_verifier("v-2")
    s = _session()
    f.save(s)
    assert f.load() == s
    assert f.pop_verifier() is None
    assert (f.path.stat().st_mode & 0o777) == 0o600

    f.clear()
    assert f.load() is None


def test_session_file_ignores_garbage(tmp_path):
    p = tmp_path / "session.json"
    p.write_text("not json", encoding="utf-8")
    assert SessionFile(p).load() is None
    p.write_text(json.dumps({"session": {"user": {}}}), encoding="utf-8")
    assert SessionFile(p).load() is None


def test_session_file_replaces_readable_file_with_owner_only_one(tmp_path):
    p = tmp_path / "session.json"
    p.write_text("{}", encoding="utf-8")
    p.chmod(0o644)
    f = SessionFile(p)
    s = _session()
    f.save(s)
    assert (p.stat().st_mode & 0o777) == 0o600
    assert f.load() == s
    assert [x.name for x in tmp_path.iterdir()] == ["session.json"]
