"""
Loopback callback listener — the redirect target for provider consent pages.

Serves two routes on 127.0.0.1:
    GET /oauth/callback — completes a session via the coordinator
    GET /health         — liveness for the daemon and tests

Anything arriving from a non-loopback peer is refused before routing.
"""

from __future__ import annotations

import html
import secrets
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse

from keysmith.oauth.coordinator import CALLBACK_PATH, CallbackOutcome

if TYPE_CHECKING:
    from keysmith.oauth.coordinator import OAuthCoordinator

LOOPBACK_HOSTS = frozenset({"127.0.0.1", "::1", "localhost"})

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Cache-Control": "no-store",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
}

_PAGES: dict[CallbackOutcome, tuple[int, str, str]] = {
    CallbackOutcome.UNKNOWN_STATE: (
        400,
        "Authorization Failed",
        "Invalid OAuth callback. Please close this window and try again.",
    ),
    CallbackOutcome.EXPIRED: (
        400,
        "Authorization Expired",
        "This OAuth session has expired. Please start the sign-in again.",
    ),
    CallbackOutcome.ALREADY_COMPLETED: (
        400,
        "Authorization Failed",
        "This authorization has already been completed.",
    ),
    CallbackOutcome.INVALID_REQUEST: (
        400,
        "Authorization Failed",
        "The provider response did not include an authorization code.",
    ),
}


def render_page(title: str, message: str, *, success: bool, auto_close: bool = False) -> HTMLResponse:
    """Small self-contained result page. All text is escaped."""
    nonce = secrets.token_urlsafe(16)
    color = "#1a7f37" if success else "#cf222e"
    script = ""
    if auto_close:
        script = f'<script nonce="{nonce}">setTimeout(function () {{ window.close(); }}, 3000);</script>'
    body = f"""<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>{html.escape(title)}</title>
<style nonce="{nonce}">
body {{ font-family: -apple-system, sans-serif; text-align: center; padding: 48px; }}
h1 {{ color: {color}; }}
</style>
</head>
<body>
<h1>{html.escape(title)}</h1>
<p>{html.escape(message)}</p>
{script}
</body>
</html>"""
    return HTMLResponse(
        body,
        headers={
            "Content-Security-Policy": (
                f"default-src 'none'; script-src 'nonce-{nonce}'; "
                f"style-src 'nonce-{nonce}'; frame-ancestors 'none'"
            )
        },
    )


def create_callback_app(coordinator: OAuthCoordinator) -> FastAPI:
    """Build the callback app bound to one coordinator."""
    app = FastAPI(title="Keysmith OAuth Callback", docs_url=None, redoc_url=None, openapi_url=None)

    @app.middleware("http")
    async def loopback_only(request: Request, call_next):
        peer = request.client.host if request.client else None
        if peer not in LOOPBACK_HOSTS:
            response = PlainTextResponse("Forbidden", status_code=403)
        else:
            response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response

    @app.get(CALLBACK_PATH)
    async def oauth_callback(
        state: str | None = None,
        code: str | None = None,
        error: str | None = None,
        error_description: str | None = None,
    ) -> HTMLResponse:
        outcome = coordinator.handle_callback(state, code, error, error_description)

        if outcome is CallbackOutcome.ACCEPTED:
            if error:
                detail = error_description or error
                return render_page(
                    "Authorization Failed",
                    f"The provider reported an error: {detail}. You can close this window.",
                    success=False,
                    auto_close=True,
                )
            return render_page(
                "Authorization Complete",
                "You have successfully authorized the application. You can close this window.",
                success=True,
                auto_close=True,
            )

        status_code, title, message = _PAGES[outcome]
        response = render_page(title, message, success=False)
        response.status_code = status_code
        return response

    @app.get("/health")
    async def health() -> JSONResponse:
        return JSONResponse({"status": "ok", "sessions": coordinator.live_sessions})

    return app
