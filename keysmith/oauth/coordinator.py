"""
OAuth Coordinator — local authorization-code capture with PKCE.

Owns the session registry, the loopback callback listener and the expiry
sweeper. It does not exchange codes for tokens: the caller gets the code
(and the PKCE verifier it was issued with) and performs the exchange itself.

Session lifecycle:
    created → completed (callback) → removed (first poll)
    created → removed (expired, by poll or sweeper)

The ``state`` parameter is the session id: unguessable and single-use, so it
doubles as CSRF protection for the callback.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
import webbrowser
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import uvicorn

from keysmith.config import OAuthConfig
from keysmith.errors import CapacityExceededError, ValidationError
from keysmith.oauth.pkce import generate_pkce, generate_session_id

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/oauth/callback"


class PollStatus(StrEnum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"


class CallbackOutcome(StrEnum):
    ACCEPTED = "accepted"
    UNKNOWN_STATE = "unknown_state"
    EXPIRED = "expired"
    ALREADY_COMPLETED = "already_completed"
    INVALID_REQUEST = "invalid_request"


@dataclass(frozen=True)
class OAuthResult:
    code: str | None = None
    error: str | None = None
    error_description: str | None = None


@dataclass
class OAuthSession:
    """One in-flight authorization. Mutated exactly once, by the callback."""

    session_id: str
    redirect_uri: str
    client_id: str
    scopes: list[str]
    created_at: datetime
    expires_at: datetime
    code_verifier: str | None = None
    completed: bool = False
    result: OAuthResult | None = None

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass(frozen=True)
class FlowStart:
    session_id: str
    authorization_url: str
    redirect_uri: str
    code_verifier: str | None = None


@dataclass(frozen=True)
class OAuthPoll:
    status: PollStatus
    code: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"status": self.status.value}
        if self.code is not None:
            data["code"] = self.code
        if self.error is not None:
            data["error"] = self.error
        return data


def build_authorization_url(
    auth_url: str,
    *,
    client_id: str,
    redirect_uri: str,
    scopes: list[str],
    state: str,
    code_challenge: str | None = None,
) -> str:
    """Append the authorization-request parameters, keeping any already present."""
    parts = urlsplit(auth_url)
    params = parse_qsl(parts.query, keep_blank_values=True)
    params += [
        ("client_id", client_id),
        ("redirect_uri", redirect_uri),
        ("response_type", "code"),
        ("scope", " ".join(scopes)),
        ("state", state),
    ]
    if code_challenge:
        params += [("code_challenge", code_challenge), ("code_challenge_method", "S256")]
    return urlunsplit(parts._replace(query=urlencode(params)))


def _utcnow() -> datetime:
    return datetime.now(UTC)


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the host process."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def _callback_server(app: Any) -> _EmbeddedServer:
    uvi_config = uvicorn.Config(app, log_level="warning", lifespan="off", access_log=False)
    return _EmbeddedServer(uvi_config)


class OAuthCoordinator:
    """Registry of OAuth sessions plus the loopback listener that completes them."""

    def __init__(
        self,
        config: OAuthConfig | None = None,
        *,
        opener: Callable[[str], Any] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or OAuthConfig()
        self._opener = opener or webbrowser.open
        self._now = clock or _utcnow
        self._sessions: dict[str, OAuthSession] = {}
        self._server: Any = None
        self._server_task: asyncio.Task[Any] | None = None
        self._sweeper: asyncio.Task[Any] | None = None
        self._port: int | None = None
        self._start_lock = asyncio.Lock()

    # ── Lifecycle ────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._server_task is not None and not self._server_task.done()

    @property
    def port(self) -> int | None:
        return self._port

    @property
    def redirect_uri(self) -> str:
        if self._port is None:
            raise RuntimeError("OAuth callback listener is not running")
        return f"http://{self.config.callback_host}:{self._port}{CALLBACK_PATH}"

    @property
    def live_sessions(self) -> int:
        return len(self._sessions)

    async def start(self) -> None:
        """Bind the callback listener to an ephemeral loopback port and start sweeping."""
        async with self._start_lock:
            if self.running:
                return

            from keysmith.oauth.callback import create_callback_app

            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            sock.bind((self.config.callback_host, 0))
            self._port = sock.getsockname()[1]

            self._server = _callback_server(create_callback_app(self))
            self._server_task = asyncio.create_task(
                self._server.serve(sockets=[sock]), name="oauth-callback"
            )
            while not self._server.started:
                if self._server_task.done():
                    self._server_task.result()
                    raise RuntimeError("OAuth callback listener exited during startup")
                await asyncio.sleep(0.01)

            if self._sweeper is None or self._sweeper.done():
                self._sweeper = asyncio.create_task(self._sweep_loop(), name="oauth-sweeper")
            logger.info("OAuth callback listener on %s", self.redirect_uri)

    async def stop(self) -> None:
        """Stop the sweeper and the listener and forget every session."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None

        if self._server is not None:
            self._server.should_exit = True
        if self._server_task is not None:
            try:
                await asyncio.wait_for(self._server_task, timeout=5)
            except TimeoutError:
                logger.warning("OAuth callback listener did not stop in time")
                self._server_task.cancel()
            except Exception as e:
                logger.warning("OAuth callback listener stopped with error: %s", e)
        self._server = None
        self._server_task = None
        self._port = None
        self._sessions = {}
        logger.info("OAuth coordinator stopped")

    # ── Flow ─────────────────────────────────────────────────────────

    async def start_flow(
        self,
        auth_url: str,
        client_id: str,
        scopes: list[str] | tuple[str, ...] = (),
        use_pkce: bool = True,
    ) -> FlowStart:
        """Register a session, open the provider's consent page, return the session id."""
        parts = urlsplit(auth_url or "")
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValidationError(f"Authorization URL must be an absolute http(s) URL: {auth_url!r}")
        if not client_id or not client_id.strip():
            raise ValidationError("client_id must not be empty")
        if isinstance(scopes, str):
            scopes = scopes.split()
        scope_list = [s for s in scopes if s]

        await self.start()

        if len(self._sessions) >= self.config.max_sessions:
            self.sweep()
            if len(self._sessions) >= self.config.max_sessions:
                raise CapacityExceededError(
                    "Maximum number of active OAuth sessions reached. Please try again later."
                )

        session_id = generate_session_id()
        pkce = generate_pkce() if use_pkce else None
        now = self._now()
        redirect_uri = self.redirect_uri
        session = OAuthSession(
            session_id=session_id,
            redirect_uri=redirect_uri,
            client_id=client_id,
            scopes=scope_list,
            created_at=now,
            expires_at=now + timedelta(seconds=self.config.session_timeout),
            code_verifier=pkce.code_verifier if pkce else None,
        )
        self._sessions[session_id] = session

        url = build_authorization_url(
            auth_url,
            client_id=client_id,
            redirect_uri=redirect_uri,
            scopes=scope_list,
            state=session_id,
            code_challenge=pkce.code_challenge if pkce else None,
        )

        try:
            opened = await asyncio.to_thread(self._opener, url)
            if opened is False:
                logger.warning("No browser available to open the authorization page")
        except Exception as e:
            logger.warning("Failed to open authorization page: %s", e)

        logger.info(
            "Started OAuth flow for client %s (pkce=%s, scopes=%d)",
            client_id,
            bool(pkce),
            len(scope_list),
        )
        return FlowStart(
            session_id=session_id,
            authorization_url=url,
            redirect_uri=redirect_uri,
            code_verifier=pkce.code_verifier if pkce else None,
        )

    def handle_callback(
        self,
        state: str | None,
        code: str | None = None,
        error: str | None = None,
        error_description: str | None = None,
    ) -> CallbackOutcome:
        """Record the provider's redirect. Never creates session state."""
        session = self._sessions.get(state) if state else None
        if session is None:
            logger.warning("OAuth callback with unknown state")
            return CallbackOutcome.UNKNOWN_STATE

        if session.is_expired(self._now()):
            self._sessions.pop(session.session_id, None)
            logger.info("OAuth callback for expired session %s", session.session_id[:8])
            return CallbackOutcome.EXPIRED

        if session.completed:
            logger.warning("Replayed OAuth callback for session %s", session.session_id[:8])
            return CallbackOutcome.ALREADY_COMPLETED

        if error:
            result = OAuthResult(error=error, error_description=error_description)
        elif code:
            result = OAuthResult(code=code)
        else:
            return CallbackOutcome.INVALID_REQUEST

        session.result = result
        session.completed = True
        logger.info(
            "OAuth session %s completed (%s)",
            session.session_id[:8],
            "error" if error else "code",
        )
        return CallbackOutcome.ACCEPTED

    def poll_result(self, session_id: str) -> OAuthPoll:
        """Pending, or the captured result exactly once."""
        session = self._sessions.get(session_id)
        if session is None:
            return OAuthPoll(PollStatus.NOT_FOUND, error="Session not found")

        if session.is_expired(self._now()):
            self._sessions.pop(session_id, None)
            return OAuthPoll(PollStatus.EXPIRED, error="Session has expired")

        if not session.completed:
            return OAuthPoll(PollStatus.PENDING)

        self._sessions.pop(session_id, None)
        result = session.result or OAuthResult()
        if result.error:
            message = result.error
            if result.error_description:
                message = f"{result.error}: {result.error_description}"
            return OAuthPoll(PollStatus.ERROR, error=message)
        return OAuthPoll(PollStatus.SUCCESS, code=result.code)

    def get_session(self, session_id: str) -> OAuthSession | None:
        return self._sessions.get(session_id)

    # ── Cleanup ──────────────────────────────────────────────────────

    def sweep(self) -> int:
        """Remove every session past its deadline, completed or not."""
        now = self._now()
        expired = [sid for sid, s in list(self._sessions.items()) if s.is_expired(now)]
        for sid in expired:
            self._sessions.pop(sid, None)
        if expired:
            logger.info("Swept %d expired OAuth sessions", len(expired))
        return len(expired)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.cleanup_interval)
            try:
                self.sweep()
            except Exception as e:
                logger.warning("OAuth session sweep failed: %s", e)

