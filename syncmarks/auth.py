from __future__ import annotations

import base64
import hashlib
import json
import os
import secrets
import threading
import time
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import httpx
import pydantic
from pydantic import BaseModel, Field

from .errors import AuthError
from .log import get_logger
from .model import User
from .rest_client import extract_error

log = get_logger(__name__)


class UserPayload(BaseModel):
    id: str
    email: Optional[str] = ""
    user_metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_user(self) -> User:
        meta = self.user_metadata or {}
        return User(
            id=self.id,
            email=self.email or "",
            full_name=meta.get("full_name"),
            avatar_url=meta.get("avatar_url"),
        )


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str = ""
    expires_in: int = 3600
    expires_at: Optional[int] = None
    user: UserPayload


@dataclass
class AuthSession:
    access_token: str
    refresh_token: str
    expires_at: int
    user: User

    def expired(self, *, now: Optional[float] = None, leeway_s: int = 60) -> bool:
        now = time.time() if now is None else now
        return self.expires_at - leeway_s <= now

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "AuthSession":
        return AuthSession(
            access_token=str(data["access_token"]),
            refresh_token=str(data.get("refresh_token") or ""),
            expires_at=int(data.get("expires_at") or 0),
            user=User(**data["user"]),
        )


def make_pkce_pair() -> Tuple[str, str]:
    """(verifier, S256 challenge) for the OAuth PKCE flow."""
    verifier = secrets.token_urlsafe(48)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


class AuthClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout_s: float = 20,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._client = httpx.Client(
            base_url=f"{self.base_url}/auth/v1",
            timeout=httpx.Timeout(timeout_s, connect=timeout_s),
            headers={"apikey": api_key},
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def authorize_url(self, provider: str, redirect_to: str, code_challenge: str) -> str:
        query = urlencode(
            {
                "provider": provider,
                "redirect_to": redirect_to,
                "code_challenge": code_challenge,
                "code_challenge_method": "s256",
            }
        )
        return f"{self.base_url}/auth/v1/authorize?{query}"

    def exchange_code(self, code: str, verifier: str) -> AuthSession:
        log.info("Exchanging OAuth code for a session")
        body = self._post("/token", params={"grant_type": "pkce"}, json={"auth_code": code, "code_verifier": verifier})
        return self._session_from(body)

    def refresh(self, refresh_token: str) -> AuthSession:
        body = self._post("/token", params={"grant_type": "refresh_token"}, json={"refresh_token": refresh_token})
        return self._session_from(body)

    def get_user(self, access_token: str) -> Optional[User]:
        try:
            r = self._client.get("/user", headers={"Authorization": f"Bearer {access_token}"})
        except httpx.HTTPError as e:
            log.error("Fetching current user failed: %s", e)
            return None
        if r.status_code >= 300:
            log.debug("No authenticated user found (%s)", extract_error(r))
            return None
        try:
            return UserPayload.model_validate(r.json()).to_user()
        except (ValueError, pydantic.ValidationError) as e:
            log.error("Unexpected user payload: %s", e)
            return None

    def sign_out(self, access_token: str) -> None:
        log.info("User sign out initiated")
        try:
            r = self._client.post("/logout", headers={"Authorization": f"Bearer {access_token}"})
        except httpx.HTTPError as e:
            raise AuthError(f"Sign out failed: {e}") from e
        # 401: token already revoked or expired, which is the goal anyway.
        if r.status_code >= 300 and r.status_code != 401:
            raise AuthError(f"Sign out failed: {extract_error(r)}")
        log.info("User signed out successfully")

    def _post(self, path: str, *, params: Dict[str, str], json: Dict[str, str]) -> Dict[str, Any]:
        try:
            r = self._client.post(path, params=params, json=json)
        except httpx.HTTPError as e:
            raise AuthError(f"{path} request failed: {e}") from e
        if r.status_code >= 300:
            raise AuthError(extract_error(r))
        try:
            return r.json()
        except ValueError as e:
            raise AuthError(f"{path} returned invalid JSON") from e

    @staticmethod
    def _session_from(body: Dict[str, Any]) -> AuthSession:
        try:
            tok = TokenResponse.model_validate(body)
        except pydantic.ValidationError as e:
            raise AuthError("Sign-in returned no access token or user id.") from e
        expires_at = tok.expires_at or int(time.time()) + tok.expires_in
        return AuthSession(
            access_token=tok.access_token,
            refresh_token=tok.refresh_token,
            expires_at=expires_at,
            user=tok.user.to_user(),
        )


class AuthEvent(str, Enum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"


AuthListener = Callable[[AuthEvent, Optional[AuthSession]], None]


class AuthState:
    """Current sign-in state plus change notifications."""

    def __init__(self, client: Optional[AuthClient] = None, session: Optional[AuthSession] = None):
        self.client = client
        self._session = session
        self._lock = threading.Lock()
        self._listeners: List[AuthListener] = []

    @property
    def session(self) -> Optional[AuthSession]:
        return self._session

    @property
    def user(self) -> Optional[User]:
        return self._session.user if self._session else None

    def access_token(self) -> Optional[str]:
        return self._session.access_token if self._session else None

    def on_change(self, listener: AuthListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def signed_in(self, session: AuthSession) -> None:
        self._session = session
        log.info("Auth state changed: signed in as %s", session.user.email or session.user.id)
        self._emit(AuthEvent.SIGNED_IN)

    def refresh_if_needed(self, *, now: Optional[float] = None) -> bool:
        s = self._session
        if s is None or not s.expired(now=now):
            return False
        if self.client is None or not s.refresh_token:
            raise AuthError("Session expired; sign in again")
        self._session = self.client.refresh(s.refresh_token)
        log.info("Auth state changed: token refreshed")
        self._emit(AuthEvent.TOKEN_REFRESHED)
        return True

    def sign_out(self) -> None:
        s = self._session
        if s is None:
            return
        if self.client is not None:
            self.client.sign_out(s.access_token)
        self._session = None
        log.info("Auth state changed: signed out")
        self._emit(AuthEvent.SIGNED_OUT)

    def _emit(self, event: AuthEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for fn in listeners:
            fn(event, self._session)


class SessionFile:
    """Auth session and pending PKCE verifier, kept as JSON in the state dir."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Optional[AuthSession]:
        data = self._read()
        raw = data.get("session")
        if not isinstance(raw, dict):
            return None
        try:
            return AuthSession.from_dict(raw)
        except (KeyError, TypeError, ValueError) as e:
            log.warning("Ignoring unreadable session file %s: %s", self.path, e)
            return None

    def save(self, session: AuthSession) -> None:
        data = self._read()
        data["session"] = session.as_dict()
        data.pop("pkce_verifier", None)
        self._write(data)

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()

    def save_verifier(self, verifier: str) -> None:
        data = self._read()
        data["pkce_verifier"] = verifier
        self._write(data)

    def pop_verifier(self) -> Optional[str]:
        data = self._read()
        verifier = data.pop("pkce_verifier", None)
        if verifier is not None:
            self._write(data)
        return verifier

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            log.warning("Failed to read %s: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # Holds tokens: created owner-only, then swapped into place.
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.unlink(missing_ok=True)
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, self.path)
