"""
Keysmith Vault — encrypted secret store backed by the OS keychain or a
passphrase-protected SQLite file, using AES-256-GCM.

Public API:
    store = open_store(config, passphrase=None)
    store.save(record)          → encrypt and upsert
    store.get(id)               → decrypted SecretRecord or None
    store.list()                → metadata only (never values)
    store.delete(id)            → remove, idempotent
    store.export(password)      → portable encrypted blob
    store.import_(blob, pw)     → replay an export through save()
"""

from __future__ import annotations

from keysmith.vault.backends import KeyringSecretBackend, LocalSecretBackend, SecretBackend
from keysmith.vault.models import SecretMetadata, SecretRecord, SecretType
from keysmith.vault.store import SecretStore, open_store

__all__ = [
    "KeyringSecretBackend",
    "LocalSecretBackend",
    "SecretBackend",
    "SecretMetadata",
    "SecretRecord",
    "SecretStore",
    "SecretType",
    "open_store",
]
