"""
Local HTTP API — the UI layer's view of the CredentialService.

Bound to 127.0.0.1 only. Every response body is a structured result
(``Outcome``, ``OAuthPoll`` or ``JobPoll`` as JSON). Failed outcomes also set
an HTTP status derived from their error code.

Requests are rate limited per client (429). Bodies must be JSON (415) and
no larger than the configured limit (413).

Endpoints:
  POST   /secrets              — save (encrypt + upsert) a record
  GET    /secrets              — metadata for every record, never values
  GET    /secrets/{secret_id}  — decrypted record
  DELETE /secrets/{secret_id}  — remove, idempotent
  POST   /vault/export         — password-protected export blob
  POST   /vault/import         — replay an export
  POST   /oauth/start          — open the consent page, return a session id
  GET    /oauth/{session_id}   — poll a session
  POST   /jobs                 — submit an automation job
  GET    /jobs/{job_id}        — poll a job
  GET    /health               — liveness and counters
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from keysmith import __version__
from keysmith.oauth.callback import LOOPBACK_HOSTS, SECURITY_HEADERS

if TYPE_CHECKING:
    from keysmith.service import CredentialService, Outcome

logger = logging.getLogger(__name__)

router = APIRouter()

STATUS_BY_CODE = {
    "validation_error": 400,
    "import_error": 400,
    "not_found": 404,
    "expired": 410,
    "decryption_error": 409,
    "corrupted_secret": 409,
    "capacity_exceeded": 429,
    "resource_error": 503,
    "internal_error": 500,
}

_BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})

# Module-level reference injected by init_api()
_service: CredentialService | None = None


def init_api(service: CredentialService) -> None:
    """Attach the shared service. Called once from the daemon."""
    global _service
    _service = service
    logger.info("API endpoints initialized")


def _require_service() -> CredentialService:
    if _service is None:
        raise RuntimeError("API not initialized")
    return _service


def _respond(outcome: Outcome) -> JSONResponse:
    status = 200 if outcome.success else STATUS_BY_CODE.get(outcome.code or "", 400)
    return JSONResponse(outcome.to_dict(), status_code=status)


class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExportBody(_Body):
    password: str = ""


class ImportBody(_Body):
    data: str
    password: str = ""


class OAuthStartBody(_Body):
    auth_url: str
    client_id: str
    scopes: list[str] = Field(default_factory=list)
    use_pkce: bool = True


class JobBody(_Body):
    service_name: str
    action_name: str
    params: dict[str, Any] = Field(default_factory=dict)


# ─── Vault ───────────────────────────────────────────────────────────────
# Plain ``def`` handlers: FastAPI runs them in its threadpool, keeping
# keychain and SQLite calls off the event loop.


@router.post("/secrets")
def save_secret(record: dict[str, Any]) -> JSONResponse:
    return _respond(_require_service().save_secret(record))


@router.get("/secrets")
def list_secrets() -> JSONResponse:
    return _respond(_require_service().list_secrets())


@router.get("/secrets/{secret_id}")
def get_secret(secret_id: str) -> JSONResponse:
    return _respond(_require_service().get_secret(secret_id))


@router.delete("/secrets/{secret_id}")
def delete_secret(secret_id: str) -> JSONResponse:
    return _respond(_require_service().delete_secret(secret_id))


@router.post("/vault/export")
def export_vault(body: ExportBody) -> JSONResponse:
    return _respond(_require_service().export_vault(body.password))


@router.post("/vault/import")
def import_vault(body: ImportBody) -> JSONResponse:
    return _respond(_require_service().import_vault(body.data, body.password))


# ─── OAuth ───────────────────────────────────────────────────────────────


@router.post("/oauth/start")
async def start_oauth(body: OAuthStartBody) -> JSONResponse:
    outcome = await _require_service().start_oauth(
        body.auth_url, body.client_id, body.scopes, body.use_pkce
    )
    return _respond(outcome)


@router.get("/oauth/{session_id}")
async def poll_oauth(session_id: str) -> dict[str, Any]:
    return _require_service().poll_oauth(session_id).to_dict()


# ─── Automation ──────────────────────────────────────────────────────────


@router.post("/jobs")
async def submit_job(body: JobBody) -> JSONResponse:
    outcome = await _require_service().submit_job(body.service_name, body.action_name, body.params)
    return _respond(outcome)


@router.get("/jobs/{job_id}")
async def poll_job(job_id: str) -> dict[str, Any]:
    return (await _require_service().poll_job(job_id)).to_dict()


# ─── Health ──────────────────────────────────────────────────────────────


@router.get("/health")
async def health() -> dict[str, Any]:
    service = _require_service()
    return {
        "status": "healthy",
        "timestamp": datetime.now(UTC).isoformat(),
        "version": __version__,
        "secrets": len(service.store),
        "oauth_sessions": service.coordinator.live_sessions,
        "running_jobs": service.scheduler.running_count,
    }


def _reject(status_code: int, error: str, code: str) -> JSONResponse:
    return JSONResponse({"success": False, "error": error, "code": code}, status_code=status_code)


def _rate_limited(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning("Rate limit hit by %s: %s", get_remote_address(request), exc.detail)
    return _reject(429, f"Too many requests: {exc.detail}", "rate_limited")


def _screen(request: Request, max_body_bytes: int) -> Response | None:
    """Refuse remote peers, non-JSON bodies and oversized requests."""
    peer = request.client.host if request.client else None
    if peer not in LOOPBACK_HOSTS:
        logger.warning("Refused API request from %s", peer)
        return PlainTextResponse("Forbidden", status_code=403)

    if request.method in _BODY_METHODS:
        content_type = request.headers.get("content-type", "")
        if not content_type.lower().startswith("application/json"):
            return _reject(415, "Content-Type must be application/json", "unsupported_media_type")
    try:
        length = int(request.headers.get("content-length", "0"))
    except ValueError:
        return _reject(400, "Invalid Content-Length header", "validation_error")
    if length > max_body_bytes:
        return _reject(
            413, f"Request body exceeds {max_body_bytes} bytes", "payload_too_large"
        )
    return None


def create_app(
    service: CredentialService,
    *,
    rate_limit: str = "300/minute",
    max_body_bytes: int = 10 * 1024 * 1024,
) -> FastAPI:
    """Create the local API app bound to ``service``.

    ``rate_limit`` applies per client address to every route.
    """
    app = FastAPI(title="Keysmith", version=__version__, docs_url=None, redoc_url=None)
    init_api(service)

    app.state.limiter = Limiter(key_func=get_remote_address, default_limits=[rate_limit])
    app.add_exception_handler(RateLimitExceeded, _rate_limited)
    app.add_middleware(SlowAPIMiddleware)

    @app.middleware("http")
    async def guard_requests(request: Request, call_next):
        response = _screen(request, max_body_bytes)
        if response is None:
            response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response

    app.include_router(router)
    return app
