"""Shared fixtures for OAuth tests."""

from __future__ import annotations

import pytest

from keysmith.oauth.coordinator import OAuthCoordinator


@pytest.fixture
def opened_urls() -> list[str]:
    return []


@pytest.fixture
def coordinator(keysmith_config, clock, opened_urls, monkeypatch) -> OAuthCoordinator:
    """Coordinator whose listener is never actually bound."""
    coord = OAuthCoordinator(keysmith_config.oauth, opener=opened_urls.append, clock=clock)

    async def fake_start():
        coord._port = 48123

    monkeypatch.setattr(coord, "start", fake_start)
    return coord
