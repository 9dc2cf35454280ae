"""
SecretStore — CRUD, export and import over a SecretBackend.

Secret material (value, refresh token) is encrypted as one JSON payload per
record under the vault's MasterKey, with the record id bound as associated
data. Everything else is metadata, stored in the clear for cheap listing.

Writes are serialized by a lock and the in-memory metadata index is replaced
on every write, never mutated, so concurrent readers always see either the
old or the new record.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from keysmith.errors import (
    CorruptedSecretError,
    DecryptionError,
    ValidationError,
    VaultImportError,
)
from keysmith.vault.backends import KeyringSecretBackend, LocalSecretBackend, SecretBackend
from keysmith.vault.crypto import (
    MAX_PBKDF2_ITERATIONS,
    PBKDF2_ITERATIONS,
    SALT_BYTES,
    EncryptedBlob,
    decrypt_text,
    derive_key,
    encrypt,
)
from keysmith.vault.models import SecretMetadata, SecretRecord

logger = logging.getLogger(__name__)

EXPORT_VERSION = 1


def _format_validation_error(e: PydanticValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "record"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


def coerce_record(record: SecretRecord | Mapping[str, Any]) -> SecretRecord:
    """Validate a record or raw mapping into a SecretRecord."""
    if isinstance(record, SecretRecord):
        return record
    if not isinstance(record, Mapping):
        raise ValidationError(f"Expected a secret record, got {type(record).__name__}")
    try:
        return SecretRecord.model_validate(dict(record))
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid secret record: {_format_validation_error(e)}") from e


EXPORT_PASSWORD_MIN_LENGTH = 12
_PASSWORD_RULES = (
    (re.compile(r"[A-Z]"), "an uppercase letter"),
    (re.compile(r"[a-z]"), "a lowercase letter"),
    (re.compile(r"\d"), "a number"),
    (re.compile(r"[!@#$%^&*(),.?\":{}|<>]"), "a special character"),
)


def validate_export_password(password: str) -> None:
    """Reject export passwords too weak to protect a portable file."""
    if not password:
        raise ValidationError("Export password must not be empty")
    problems = []
    if len(password) < EXPORT_PASSWORD_MIN_LENGTH:
        problems.append(f"be at least {EXPORT_PASSWORD_MIN_LENGTH} characters long")
    problems.extend(
        f"contain {what}" for pattern, what in _PASSWORD_RULES if not pattern.search(password)
    )
    if problems:
        raise ValidationError("Export password must " + ", ".join(problems))


class SecretStore:
    """Encrypted secret storage with metadata kept apart from secret bytes."""

    def __init__(self, backend: SecretBackend, *, kdf_iterations: int = PBKDF2_ITERATIONS) -> None:
        self.backend = backend
        self.kdf_iterations = kdf_iterations
        self._key = backend.load_master_key()
        self._write_lock = threading.Lock()
        self._index: dict[str, SecretMetadata] = backend.load_metadata()
        logger.info("Opened %s vault with %d secrets", backend.name, len(self._index))

    # ── CRUD ─────────────────────────────────────────────────────────

    def save(self, record: SecretRecord | Mapping[str, Any]) -> SecretMetadata:
        """Encrypt and upsert a secret. Returns the stored metadata."""
        rec = coerce_record(record)
        payload = json.dumps({"value": rec.value, "refresh_token": rec.refresh_token})

        with self._write_lock:
            now = datetime.now(UTC)
            previous = self._index.get(rec.id)
            meta = SecretMetadata(
                id=rec.id,
                service_id=rec.service_id,
                name=rec.name,
                type=rec.type,
                expires_at=rec.expires_at,
                last_verified=rec.last_verified,
                metadata=dict(rec.metadata),
                has_refresh_token=rec.refresh_token is not None,
                created_at=previous.created_at if previous else now,
                updated_at=now,
            )
            blob = encrypt(payload, self._key, rec.id.encode("utf-8"))
            self.backend.write(meta, blob)

            index = dict(self._index)
            index[rec.id] = meta
            self._index = index

        logger.info("Saved secret %s (service=%s, type=%s)", rec.id, rec.service_id, rec.type.value)
        return meta

    def refresh(self) -> None:
        """Re-read metadata, picking up writes from other processes sharing the vault."""
        with self._write_lock:
            self._index = self.backend.load_metadata()

    def get(self, secret_id: str) -> SecretRecord | None:
        """Retrieve and decrypt a secret. Returns None if not found."""
        meta = self._index.get(secret_id)
        if meta is None:
            self.refresh()
            meta = self._index.get(secret_id)
            if meta is None:
                return None

        try:
            blob = self.backend.read_blob(secret_id)
        except DecryptionError as e:
            raise CorruptedSecretError(f"Secret {secret_id} is corrupted: {e}") from e
        if blob is None:
            self.refresh()
            if secret_id not in self._index:
                return None
            raise CorruptedSecretError(f"Secret {secret_id} has metadata but no ciphertext")

        try:
            payload = json.loads(decrypt_text(blob, self._key, secret_id.encode("utf-8")))
            return SecretRecord(
                id=meta.id,
                service_id=meta.service_id,
                name=meta.name,
                type=meta.type,
                value=payload["value"],
                refresh_token=payload.get("refresh_token"),
                expires_at=meta.expires_at,
                last_verified=meta.last_verified,
                metadata=dict(meta.metadata),
            )
        except DecryptionError as e:
            logger.error("Failed to decrypt secret %s: %s", secret_id, e)
            raise CorruptedSecretError(f"Secret {secret_id} could not be decrypted") from e
        except (ValueError, KeyError, TypeError) as e:
            logger.error("Secret %s decrypted to an unreadable payload: %s", secret_id, e)
            raise CorruptedSecretError(f"Secret {secret_id} has an unreadable payload") from e

    def list(self) -> list[SecretMetadata]:
        """All metadata, sorted by id. Never decrypts anything."""
        self.refresh()
        index = self._index
        return [index[k] for k in sorted(index)]

    def delete(self, secret_id: str) -> bool:
        """Delete a secret. Deleting an absent id is not an error."""
        with self._write_lock:
            removed = self.backend.remove(secret_id)
            if secret_id in self._index:
                index = dict(self._index)
                index.pop(secret_id, None)
                self._index = index
                removed = True
        if removed:
            logger.info("Deleted secret %s", secret_id)
        return removed

    def __len__(self) -> int:
        return len(self._index)

    def __contains__(self, secret_id: object) -> bool:
        return secret_id in self._index

    # ── Export / import ──────────────────────────────────────────────

    def export(self, password: str) -> str:
        """Encrypt the whole credential set under a key derived from ``password``.

        The result is self-contained: it carries its own salt and does not
        depend on this vault's master key.
        """
        return self.export_with_count(password)[0]

    def export_with_count(self, password: str) -> tuple[str, int]:
        """Like :meth:`export`, also returning how many records went in."""
        validate_export_password(password)

        credentials = []
        for meta in self.list():
            try:
                rec = self.get(meta.id)
            except CorruptedSecretError as e:
                logger.warning("Skipping %s in export: %s", meta.id, e)
                continue
            if rec is not None:
                credentials.append(rec.model_dump(mode="json", by_alias=True))

        document = json.dumps(
            {
                "version": EXPORT_VERSION,
                "exported_at": datetime.now(UTC).isoformat(),
                "credentials": credentials,
            }
        )
        key, salt = derive_key(password, iterations=self.kdf_iterations)
        blob = encrypt(document, key)
        logger.info("Exported %d secrets", len(credentials))
        envelope = json.dumps(
            {
                "version": EXPORT_VERSION,
                "salt": salt.hex(),
                "iterations": self.kdf_iterations,
                "encryptedData": blob.to_text(),
            }
        )
        return envelope, len(credentials)

    def import_(self, data: str | bytes, password: str) -> int:
        """Decrypt an export and save every record in it. Returns the count.

        All records are validated before the first save, so a wrong password
        or a malformed payload leaves the vault untouched.
        """
        if not password:
            raise VaultImportError("Import password must not be empty")
        try:
            envelope = json.loads(data)
            salt = bytes.fromhex(envelope["salt"])
            iterations = int(envelope.get("iterations", PBKDF2_ITERATIONS))
            blob = EncryptedBlob.from_text(envelope["encryptedData"])
        except DecryptionError as e:
            raise VaultImportError(f"Invalid import data: {e}") from e
        except (ValueError, KeyError, TypeError) as e:
            raise VaultImportError("Invalid import data format") from e
        if len(salt) < SALT_BYTES or iterations < PBKDF2_ITERATIONS:
            raise VaultImportError("Invalid import data: weak key derivation parameters")
        if iterations > MAX_PBKDF2_ITERATIONS:
            raise VaultImportError(
                f"Invalid import data: more than {MAX_PBKDF2_ITERATIONS} key derivation iterations"
            )

        key, _ = derive_key(password, salt, iterations=iterations)
        try:
            document = json.loads(decrypt_text(blob, key))
        except DecryptionError as e:
            raise VaultImportError("Wrong password or corrupted export") from e
        except ValueError as e:
            raise VaultImportError("Export payload is not valid JSON") from e

        raw = document.get("credentials") if isinstance(document, dict) else None
        if not isinstance(raw, list):
            raise VaultImportError("Invalid import data format: missing credentials list")

        try:
            records = [coerce_record(item) for item in raw]
        except ValidationError as e:
            raise VaultImportError(f"Invalid credential in import: {e}") from e

        for rec in records:
            self.save(rec)
        logger.info("Imported %d secrets", len(records))
        return len(records)


def open_store(config=None, passphrase: str | None = None, keyring_api: Any = None) -> SecretStore:
    """Open the vault using the backend selected in config."""
    if config is None:
        from keysmith.config import get_config

        config = get_config()

    db_path = Path(config.vault_db)
    backend: SecretBackend
    if config.vault.backend == "local":
        if not passphrase:
            raise ValidationError("The local vault backend needs a passphrase")
        backend = LocalSecretBackend(db_path, passphrase, iterations=config.vault.kdf_iterations)
    elif config.vault.backend == "keyring":
        backend = KeyringSecretBackend(
            db_path, service=config.vault.keyring_service, keyring_api=keyring_api
        )
    else:
        raise ValidationError(f"Unknown vault backend: {config.vault.backend}")
    return SecretStore(backend, kdf_iterations=config.vault.kdf_iterations)
