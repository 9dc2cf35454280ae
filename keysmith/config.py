"""
Centralized configuration for Keysmith.

All configuration is loaded from environment variables with sensible defaults.

Usage:
    from keysmith.config import get_config
    cfg = get_config()
    print(cfg.data_dir)            # "/home/user/.keysmith" or $KEYSMITH_DATA_DIR
    print(cfg.vault.backend)       # "keyring"
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

VAULT_BACKENDS = ("keyring", "local")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class VaultConfig:
    """Secret store parameters."""

    backend: str = "keyring"  # "keyring" = OS credential store, "local" = passphrase
    keyring_service: str = "keysmith"
    kdf_iterations: int = 100_000


@dataclass(frozen=True)
class OAuthConfig:
    """OAuth callback listener and session limits (seconds)."""

    session_timeout: float = 15 * 60
    cleanup_interval: float = 5 * 60
    max_sessions: int = 100
    callback_host: str = "127.0.0.1"


@dataclass(frozen=True)
class AutomationConfig:
    """Background automation job limits (seconds)."""

    job_timeout: float = 5 * 60
    cleanup_interval: float = 60
    max_concurrent_jobs: int = 3
    result_retention: float = 60
    headless: bool = True
    plugins_dir: Path = field(default_factory=lambda: Path.home() / ".keysmith" / "plugins")
    user_agent: str = "Keysmith/0.1"


@dataclass(frozen=True)
class Config:
    """Top-level Keysmith configuration."""

    data_dir: Path = field(default_factory=lambda: Path.home() / ".keysmith")

    # Local API for the UI layer
    api_host: str = "127.0.0.1"
    api_port: int = 9310
    api_rate_limit: str = "300/minute"  # per client, slowapi syntax
    api_max_body_bytes: int = 10 * 1024 * 1024

    # Components
    vault: VaultConfig = field(default_factory=VaultConfig)
    oauth: OAuthConfig = field(default_factory=OAuthConfig)
    automation: AutomationConfig = field(default_factory=AutomationConfig)

    @property
    def vault_db(self) -> Path:
        return self.data_dir / "vault.db"

    @property
    def api_url(self) -> str:
        return f"http://{self.api_host}:{self.api_port}"


# Singleton
_config: Config | None = None


def get_config() -> Config:
    """Get or create the singleton config from environment variables."""
    global _config
    if _config is not None:
        return _config
    _config = _load_from_env()
    return _config


def _load_from_env() -> Config:
    """Load configuration from environment variables."""
    data_dir = Path(os.environ.get("KEYSMITH_DATA_DIR", Path.home() / ".keysmith"))

    backend = os.environ.get("KEYSMITH_VAULT_BACKEND", "keyring").strip().lower()
    if backend not in VAULT_BACKENDS:
        raise ValueError(
            f"KEYSMITH_VAULT_BACKEND must be one of {', '.join(VAULT_BACKENDS)}, got {backend!r}"
        )

    vault = VaultConfig(
        backend=backend,
        keyring_service=os.environ.get("KEYSMITH_KEYRING_SERVICE", "keysmith"),
        kdf_iterations=int(os.environ.get("KEYSMITH_KDF_ITERATIONS", "100000")),
    )

    oauth = OAuthConfig(
        session_timeout=float(os.environ.get("KEYSMITH_OAUTH_SESSION_TIMEOUT", "900")),
        cleanup_interval=float(os.environ.get("KEYSMITH_OAUTH_CLEANUP_INTERVAL", "300")),
        max_sessions=int(os.environ.get("KEYSMITH_OAUTH_MAX_SESSIONS", "100")),
        callback_host=os.environ.get("KEYSMITH_OAUTH_CALLBACK_HOST", "127.0.0.1"),
    )

    automation = AutomationConfig(
        job_timeout=float(os.environ.get("KEYSMITH_JOB_TIMEOUT", "300")),
        cleanup_interval=float(os.environ.get("KEYSMITH_JOB_CLEANUP_INTERVAL", "60")),
        max_concurrent_jobs=int(os.environ.get("KEYSMITH_MAX_CONCURRENT_JOBS", "3")),
        result_retention=float(os.environ.get("KEYSMITH_JOB_RESULT_RETENTION", "60")),
        headless=_env_bool("KEYSMITH_BROWSER_HEADLESS", True),
        plugins_dir=Path(os.environ.get("KEYSMITH_PLUGINS_DIR", data_dir / "plugins")),
        user_agent=os.environ.get("KEYSMITH_BROWSER_USER_AGENT", "Keysmith/0.1"),
    )

    return Config(
        data_dir=data_dir,
        api_host=os.environ.get("KEYSMITH_API_HOST", "127.0.0.1"),
        api_port=int(os.environ.get("KEYSMITH_API_PORT", "9310")),
        api_rate_limit=os.environ.get("KEYSMITH_API_RATE_LIMIT", "300/minute"),
        api_max_body_bytes=int(os.environ.get("KEYSMITH_API_MAX_BODY_BYTES", "10485760")),
        vault=vault,
        oauth=oauth,
        automation=automation,
    )


def reset_config() -> None:
    """Reset the singleton config (for testing)."""
    global _config
    _config = None
