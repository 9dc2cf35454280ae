"""
Credential Service — the single boundary between the UI layer and the core.

Every method returns a structured result instead of raising for expected
failures: ``Outcome`` for vault, OAuth-start and job-submit operations,
``OAuthPoll`` / ``JobPoll`` for the pollers. KeysmithError subclasses map to
their ``code``; anything else is logged with a traceback and reported as
``internal_error``.

Usage:
    service = create_service(get_config())
    outcome = service.save_secret({"id": "openai", "value": "sk-proj-abc123", "type": "apiKey"})
    outcome.to_dict()  → {"success": True, "data": {...metadata...}}
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, TypeVar

from keysmith.automation.models import JobPoll
from keysmith.automation.scheduler import JobScheduler
from keysmith.errors import KeysmithError, NotFoundError
from keysmith.oauth.coordinator import OAuthCoordinator, OAuthPoll
from keysmith.vault.store import SecretStore, open_store

logger = logging.getLogger(__name__)

INTERNAL_ERROR = "internal_error"

T = TypeVar("T")


@dataclass(frozen=True)
class Outcome:
    success: bool
    data: Any = None
    error: str | None = None
    code: str | None = None

    @classmethod
    def ok(cls, data: Any = None) -> Outcome:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, code: str) -> Outcome:
        return cls(success=False, error=error, code=code)

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, "data": self.data}
        return {"success": False, "error": self.error, "code": self.code}


def _guard(operation: str, fn: Callable[[], T], wrap: Callable[[T], Any] = lambda v: v) -> Outcome:
    try:
        return Outcome.ok(wrap(fn()))
    except KeysmithError as e:
        logger.info("%s failed: %s", operation, e)
        return Outcome.fail(str(e), e.code)
    except Exception:
        logger.exception("%s failed unexpectedly", operation)
        return Outcome.fail(f"{operation} failed", INTERNAL_ERROR)


class CredentialService:
    """Vault, OAuth and automation behind one structured-result API."""

    def __init__(
        self,
        store: SecretStore,
        coordinator: OAuthCoordinator,
        scheduler: JobScheduler,
    ) -> None:
        self.store = store
        self.coordinator = coordinator
        self.scheduler = scheduler

    async def close(self) -> None:
        """Stop the OAuth listener and the job scheduler."""
        await self.coordinator.stop()
        await self.scheduler.stop()

    # ── Vault ────────────────────────────────────────────────────────

    def save_secret(self, record: Mapping[str, Any] | Any) -> Outcome:
        return _guard(
            "save_secret",
            lambda: self.store.save(record),
            lambda meta: meta.model_dump(mode="json", by_alias=True),
        )

    def get_secret(self, secret_id: str) -> Outcome:
        def load() -> dict[str, Any]:
            record = self.store.get(secret_id)
            if record is None:
                raise NotFoundError(f"Secret not found: {secret_id}")
            return record.model_dump(mode="json", by_alias=True)

        return _guard("get_secret", load)

    def list_secrets(self) -> Outcome:
        return _guard(
            "list_secrets",
            self.store.list,
            lambda metas: [m.model_dump(mode="json", by_alias=True) for m in metas],
        )

    def delete_secret(self, secret_id: str) -> Outcome:
        return _guard(
            "delete_secret",
            lambda: self.store.delete(secret_id),
            lambda removed: {"deleted": removed},
        )

    def export_vault(self, password: str) -> Outcome:
        return _guard("export_vault", lambda: self.store.export(password))

    def import_vault(self, data: str, password: str) -> Outcome:
        return _guard(
            "import_vault",
            lambda: self.store.import_(data, password),
            lambda count: {"imported": count},
        )

    # ── OAuth ────────────────────────────────────────────────────────

    async def start_oauth(
        self,
        auth_url: str,
        client_id: str,
        scopes: list[str] | None = None,
        use_pkce: bool = True,
    ) -> Outcome:
        try:
            flow = await self.coordinator.start_flow(auth_url, client_id, scopes or [], use_pkce)
        except KeysmithError as e:
            logger.info("start_oauth failed: %s", e)
            return Outcome.fail(str(e), e.code)
        except Exception:
            logger.exception("start_oauth failed unexpectedly")
            return Outcome.fail("start_oauth failed", INTERNAL_ERROR)

        data: dict[str, Any] = {
            "session_id": flow.session_id,
            "authorization_url": flow.authorization_url,
            "redirect_uri": flow.redirect_uri,
        }
        if flow.code_verifier:
            data["code_verifier"] = flow.code_verifier
        return Outcome.ok(data)

    def poll_oauth(self, session_id: str) -> OAuthPoll:
        return self.coordinator.poll_result(session_id)

    # ── Automation ───────────────────────────────────────────────────

    async def submit_job(
        self,
        service_name: str,
        action_name: str,
        params: dict[str, Any] | None = None,
    ) -> Outcome:
        try:
            job_id = await self.scheduler.submit(service_name, action_name, params)
        except KeysmithError as e:
            logger.info("submit_job %s.%s failed: %s", service_name, action_name, e)
            return Outcome.fail(str(e), e.code)
        except Exception:
            logger.exception("submit_job failed unexpectedly")
            return Outcome.fail("submit_job failed", INTERNAL_ERROR)
        return Outcome.ok({"job_id": job_id})

    async def poll_job(self, job_id: str) -> JobPoll:
        return await self.scheduler.poll_status(job_id)


def create_service(
    config=None,
    *,
    passphrase: str | None = None,
    keyring_api: Any = None,
) -> CredentialService:
    """Wire store, coordinator and scheduler from config."""
    if config is None:
        from keysmith.config import get_config

        config = get_config()
    return CredentialService(
        store=open_store(config, passphrase=passphrase, keyring_api=keyring_api),
        coordinator=OAuthCoordinator(config.oauth),
        scheduler=JobScheduler(config.automation),
    )
