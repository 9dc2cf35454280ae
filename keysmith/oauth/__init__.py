"""
Keysmith OAuth — authorization-code capture on a loopback redirect.

Public API:
    coordinator = OAuthCoordinator(config.oauth)
    flow = await coordinator.start_flow(auth_url, client_id, scopes)
    coordinator.poll_result(flow.session_id)  → pending | success | error | expired | not_found
    await coordinator.stop()
"""

from __future__ import annotations

from keysmith.oauth.coordinator import (
    CallbackOutcome,
    FlowStart,
    OAuthCoordinator,
    OAuthPoll,
    OAuthSession,
    PollStatus,
)
from keysmith.oauth.pkce import PKCEPair, code_challenge, generate_pkce

__all__ = [
    "CallbackOutcome",
    "FlowStart",
    "OAuthCoordinator",
    "OAuthPoll",
    "OAuthSession",
    "PKCEPair",
    "PollStatus",
    "code_challenge",
    "generate_pkce",
]
