"""Fixtures for the service, API and CLI suites."""

from __future__ import annotations

import pytest

from keysmith.automation.actions import ActionRegistry
from keysmith.automation.scheduler import JobScheduler
from keysmith.oauth.coordinator import OAuthCoordinator
from keysmith.service import CredentialService
from keysmith.vault.store import open_store


@pytest.fixture
def registry(keysmith_config) -> ActionRegistry:
    reg = ActionRegistry(keysmith_config.automation.plugins_dir, builtins=False)

    async def fetch_key(ctx):
        return "sk-automated-" + ctx.params.get("suffix", "x")

    async def broken(ctx):
        raise RuntimeError("login page changed")

    reg.register("demo", "fetchKey", fetch_key)
    reg.register("demo", "broken", broken)
    return reg


@pytest.fixture
async def service(keysmith_config, memory_keyring, pool, registry, clock, monkeypatch):
    """CredentialService over a temp vault, an unbound listener and a fake pool."""
    coordinator = OAuthCoordinator(keysmith_config.oauth, opener=lambda url: True, clock=clock)

    async def fake_start():
        coordinator._port = 48123

    monkeypatch.setattr(coordinator, "start", fake_start)

    svc = CredentialService(
        store=open_store(keysmith_config, keyring_api=memory_keyring),
        coordinator=coordinator,
        scheduler=JobScheduler(keysmith_config.automation, pool=pool, registry=registry, clock=clock),
    )
    yield svc
    await svc.close()
