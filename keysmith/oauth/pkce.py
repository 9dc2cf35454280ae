"""PKCE (RFC 7636) verifier/challenge pairs and session ids."""

from __future__ import annotations

import base64
import hashlib
import secrets
from dataclasses import dataclass

# 64 random bytes → 86 URL-safe chars, inside the RFC's 43..128 range
VERIFIER_BYTES = 64
SESSION_ID_BYTES = 32


@dataclass(frozen=True)
class PKCEPair:
    code_verifier: str
    code_challenge: str
    method: str = "S256"


def code_challenge(verifier: str) -> str:
    """S256 challenge: base64url(SHA-256(verifier)) without padding."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_pkce() -> PKCEPair:
    verifier = secrets.token_urlsafe(VERIFIER_BYTES)
    return PKCEPair(code_verifier=verifier, code_challenge=code_challenge(verifier))


def generate_session_id() -> str:
    """Unguessable id, doubling as the OAuth ``state`` parameter."""
    return secrets.token_urlsafe(SESSION_ID_BYTES)
