"""
Root-level shared test fixtures.

Inherited by the vault, oauth and automation suites and by tests/.
Nothing here touches the real OS keychain or launches a browser.
"""

from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from keyring.errors import PasswordDeleteError

from keysmith.automation.resources import ResourcePool
from keysmith.config import (
    AutomationConfig,
    Config,
    OAuthConfig,
    VaultConfig,
    reset_config,
)
from keysmith.errors import ResourceError


class MemoryKeyring:
    """In-memory stand-in for the ``keyring`` module API."""

    def __init__(self):
        self.entries: dict[tuple[str, str], str] = {}

    def get_password(self, service: str, username: str) -> str | None:
        return self.entries.get((service, username))

    def set_password(self, service: str, username: str, password: str) -> None:
        self.entries[(service, username)] = password

    def delete_password(self, service: str, username: str) -> None:
        try:
            del self.entries[(service, username)]
        except KeyError:
            raise PasswordDeleteError("Password not found") from None


class FakeResource:
    def __init__(self, job_id: str):
        self.job_id = job_id


class FakePool(ResourcePool):
    """Tracks acquire/release so tests can assert exclusive ownership."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.acquired: list[FakeResource] = []
        self.released: list[FakeResource] = []
        self.closed = False
        self._active: dict[int, FakeResource] = {}

    async def acquire(self, job_id):
        if self.fail:
            raise ResourceError("browser unavailable")
        resource = FakeResource(job_id)
        self.acquired.append(resource)
        self._active[id(resource)] = resource
        return resource

    async def release(self, resource):
        if self._active.pop(id(resource), None) is not None:
            self.released.append(resource)

    async def close(self):
        self._active.clear()
        self.closed = True

    @property
    def active_count(self):
        return len(self._active)


class FakeClock:
    """Manually advanced UTC clock for expiry tests."""

    def __init__(self):
        self.now = datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def memory_keyring() -> MemoryKeyring:
    return MemoryKeyring()


@pytest.fixture
def pool() -> FakePool:
    return FakePool()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def keysmith_config(tmp_path: Path) -> Config:
    """Config rooted in a temp data dir with short timers."""
    return Config(
        data_dir=tmp_path,
        vault=VaultConfig(backend="keyring", keyring_service="keysmith-test"),
        oauth=OAuthConfig(session_timeout=60, cleanup_interval=3600, max_sessions=5),
        automation=AutomationConfig(
            job_timeout=60,
            cleanup_interval=3600,
            max_concurrent_jobs=2,
            result_retention=30,
            plugins_dir=tmp_path / "plugins",
        ),
    )


@pytest.fixture
def clean_env(monkeypatch):
    """Remove Keysmith env vars that leak between tests."""
    for key in [k for k in os.environ if k.startswith("KEYSMITH_")]:
        monkeypatch.delenv(key, raising=False)
    reset_config()
    yield
    reset_config()
