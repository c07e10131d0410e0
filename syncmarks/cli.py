from __future__ import annotations

import argparse
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .auth import AuthClient, AuthEvent, AuthSession, AuthState, SessionFile, make_pkce_pair
from .config import Settings, load_settings
from .errors import AuthError, NotAuthenticatedError, SyncmarksError
from .feed import PollingChangeFeed
from .log import LogConfig, get_logger, setup_logging
from .model import BookmarkRecord, ServerId, User
from .persistence import MemoryBackend
from .rest_client import RestPersistence
from .session import BookmarkSession
from .view import SORT_ORDERS, count_label, domain_of, filter_bookmarks, sort_bookmarks

log = get_logger(__name__)

LOCAL_USER = User(id="00000000-0000-0000-0000-000000000000", email="local@localhost", full_name="Local user")


def main(argv: List[str] | None = None, *, console: Optional[Console] = None) -> int:
    p = argparse.ArgumentParser(
        prog="syncmarks",
        description="Personal bookmarks synced with a hosted backend.",
    )
    p.add_argument("-V", "--version", action="version", version=f"syncmarks {__version__}")
    p.add_argument("--config", default=None, help="YAML config file (optional). Env vars override defaults.")
    p.add_argument("--backend", choices=("rest", "memory"), default=None, help="Storage backend (overrides env/config).")
    p.add_argument("--log-level", default=None, help="DEBUG/INFO/WARN/ERROR (overrides env/config).")
    p.add_argument("--no-color", action="store_true", help="Disable colored logging.")
    sub = p.add_subparsers(dest="cmd", required=True)

    login = sub.add_parser("login", help="Sign in with the OAuth provider.")
    login.add_argument("--code", default=None, help="Authorization code from the redirect URL (second step).")
    sub.add_parser("logout", help="Sign out and forget the stored session.")
    sub.add_parser("whoami", help="Show the signed-in user.")
    ls = sub.add_parser("list", help="List bookmarks, newest first.")
    ls.add_argument("--search", default=None, help="Only bookmarks whose title or url contains this text (case-insensitive).")
    ls.add_argument("--sort", choices=SORT_ORDERS, default="recent", help="recent (default) or title.")

    add = sub.add_parser("add", help="Add a bookmark.")
    add.add_argument("--title", required=True)
    add.add_argument("--url", required=True, help="Absolute http(s) URL; https:// is assumed when missing.")

    delete = sub.add_parser("delete", help="Delete a bookmark by id.")
    delete.add_argument("id", type=int)

    watch = sub.add_parser("watch", help="Follow changes made by any session.")
    watch.add_argument("--seconds", type=float, default=0, help="Stop after N seconds (default: until Ctrl-C).")

    args = p.parse_args(argv)
    cfg = load_settings(args.config)
    if args.backend:
        cfg.backend = args.backend
    if args.log_level:
        cfg.log_level = args.log_level
    if args.no_color:
        cfg.no_color = True
    setup_logging(LogConfig(level=cfg.log_level, no_color=cfg.no_color))
    out = console or Console(no_color=cfg.no_color)

    try:
        cfg.require_backend()
        if args.cmd == "login":
            return _cmd_login(args, cfg, out)
        if args.cmd == "logout":
            return _cmd_logout(cfg, out)
        if args.cmd == "whoami":
            return _cmd_whoami(cfg, out)
        if args.cmd == "list":
            return _cmd_list(args, cfg, out)
        if args.cmd == "add":
            return _cmd_add(args, cfg, out)
        if args.cmd == "delete":
            return _cmd_delete(args, cfg, out)
        if args.cmd == "watch":
            return _cmd_watch(args, cfg, out)
    except SyncmarksError as e:
        log.error("%s", e)
        return 2
    return 2


def build_session(cfg: Settings, auth: Optional[AuthState]) -> BookmarkSession:
    """Composition root: wire the store to the configured collaborators."""
    if cfg.backend == "memory":
        backend = MemoryBackend()
        return BookmarkSession(backend, backend.feed)
    if auth is None:
        raise NotAuthenticatedError()
    persistence = RestPersistence(
        cfg.url,
        cfg.anon_key,
        auth.access_token,
        table=cfg.table,
        timeout_s=cfg.http_timeout_s,
    )
    feed = PollingChangeFeed(persistence, interval_s=cfg.poll_interval_s)
    return BookmarkSession(persistence, feed)


@contextmanager
def _open_session(cfg: Settings, auth: Optional[AuthState]) -> Iterator[BookmarkSession]:
    session = build_session(cfg, auth)
    try:
        yield session
    finally:
        session.close()
        close = getattr(session.persistence, "close", None)
        if close is not None:
            close()


def _session_file(cfg: Settings) -> SessionFile:
    return SessionFile(Path(cfg.state_dir) / "session.json")


def _auth_client(cfg: Settings) -> AuthClient:
    return AuthClient(cfg.url, cfg.anon_key, timeout_s=cfg.http_timeout_s)


def _signed_in(cfg: Settings) -> Tuple[User, Optional[AuthState]]:
    if cfg.backend == "memory":
        return LOCAL_USER, None
    files = _session_file(cfg)
    stored = files.load()
    if stored is None:
        raise NotAuthenticatedError("Not signed in; run `syncmarks login` first")
    state = AuthState(_auth_client(cfg), stored)

    def _persist(event: AuthEvent, session: Optional[AuthSession]) -> None:
        if event == AuthEvent.TOKEN_REFRESHED and session is not None:
            files.save(session)

    state.on_change(_persist)
    state.refresh_if_needed()
    return stored.user, state


def _cmd_login(args, cfg: Settings, out: Console) -> int:
    if cfg.backend == "memory":
        out.print(f"Memory backend: signed in as {LOCAL_USER.email}")
        return 0
    files = _session_file(cfg)
    client = _auth_client(cfg)
    try:
        if args.code:
            verifier = files.pop_verifier()
            if not verifier:
                raise AuthError("No pending login; run `syncmarks login` without --code first")
            session = client.exchange_code(args.code, verifier)
            files.save(session)
            out.print(f"Signed in as {session.user.email or session.user.id}")
            return 0

        verifier, challenge = make_pkce_pair()
        files.save_verifier(verifier)
        log.info("%s OAuth initiated", cfg.oauth_provider)
        out.print("Open this URL in a browser and sign in:")
        out.print(client.authorize_url(cfg.oauth_provider, cfg.redirect_url, challenge), soft_wrap=True)
        out.print("Then run: syncmarks login --code <code from the redirect URL>")
        return 0
    finally:
        client.close()


def _cmd_logout(cfg: Settings, out: Console) -> int:
    if cfg.backend == "memory":
        out.print("Memory backend: nothing to sign out of")
        return 0
    files = _session_file(cfg)
    stored = files.load()
    if stored is None:
        out.print("Not signed in")
        return 0
    client = _auth_client(cfg)
    try:
        AuthState(client, stored).sign_out()
    finally:
        client.close()
    files.clear()
    out.print("Signed out")
    return 0


def _cmd_whoami(cfg: Settings, out: Console) -> int:
    user, state = _signed_in(cfg)
    if state is not None and state.client is not None:
        token = state.access_token()
        current = state.client.get_user(token) if token else None
        if current is None:
            raise NotAuthenticatedError("Stored session is no longer valid; run `syncmarks login`")
        user = current
    name = f" ({user.full_name})" if user.full_name else ""
    out.print(f"{user.email or '-'}{name} id={user.id}")
    return 0


def _cmd_list(args, cfg: Settings, out: Console) -> int:
    user, state = _signed_in(cfg)
    with _open_session(cfg, state) as session:
        session.set_user(user.id, live=False)
        status = session.status
        if status.error:
            log.error("Failed to load bookmarks: %s", status.error)
            return 2
        everything = session.bookmarks
        shown = sort_bookmarks(filter_bookmarks(everything, args.search), args.sort)
        out.print(_bookmarks_table(shown))
        out.print(count_label(len(shown), len(everything)))
    return 0


def _cmd_add(args, cfg: Settings, out: Console) -> int:
    user, state = _signed_in(cfg)
    with _open_session(cfg, state) as session:
        session.set_user(user.id, fetch=False, live=False)
        record = session.create(args.title, args.url)
        out.print(f"Added {record.id}: {escape(record.title)} <{escape(record.url)}>")
    return 0


def _cmd_delete(args, cfg: Settings, out: Console) -> int:
    user, state = _signed_in(cfg)
    with _open_session(cfg, state) as session:
        session.set_user(user.id, fetch=False, live=False)
        if session.delete(ServerId(args.id)):
            out.print(f"Deleted {args.id}")
        else:
            out.print(f"Bookmark {args.id} not found")
    return 0


def _cmd_watch(args, cfg: Settings, out: Console) -> int:
    user, state = _signed_in(cfg)
    with _open_session(cfg, state) as session:

        def _changed(snapshot) -> None:
            newest = escape(snapshot[0].title) if snapshot else "-"
            out.print(f"{len(snapshot)} bookmarks (newest: {newest})")

        session.add_listener(_changed)
        if state is not None:
            state.on_change(lambda _event, s: session.set_user(s.user.id if s else None))
        session.set_user(user.id)
        deadline = time.monotonic() + args.seconds if args.seconds > 0 else None
        try:
            while deadline is None or time.monotonic() < deadline:
                time.sleep(0.2)
                if state is not None:
                    # The poller reads the token on every request.
                    state.refresh_if_needed()
        except KeyboardInterrupt:
            log.info("Stopped watching")
    return 0


def _bookmarks_table(records) -> Table:
    table = Table(title="Bookmarks")
    table.add_column("id", justify="right")
    table.add_column("title")
    table.add_column("domain")
    table.add_column("url", overflow="fold")
    table.add_column("created")
    for r in records:
        table.add_row(str(r.id), escape(r.title), escape(domain_of(r.url)), escape(r.url), _created_label(r))
    return table


def _created_label(r: BookmarkRecord) -> str:
    return r.created_at.astimezone().strftime("%Y-%m-%d %H:%M")
