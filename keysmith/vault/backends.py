"""
Vault storage backends — where ciphertext and the master key live.

Two implementations of one SecretBackend contract, chosen once when the
store is opened:

    KeyringSecretBackend  master key + ciphertext in the OS credential store
    LocalSecretBackend    passphrase-derived key, ciphertext in SQLite

Both keep non-secret metadata in the ``secret_metadata`` table of the local
SQLite file so listing never needs the OS keychain or a decryption.
"""

from __future__ import annotations

import base64
import binascii
import logging
import secrets
import sqlite3
import stat
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import closing, contextmanager
from pathlib import Path
from typing import Any

import keyring
from keyring.errors import PasswordDeleteError

from keysmith.errors import DecryptionError
from keysmith.vault.crypto import (
    KEY_BYTES,
    PBKDF2_ITERATIONS,
    EncryptedBlob,
    MasterKey,
    decrypt,
    derive_key,
    encrypt,
)
from keysmith.vault.models import SecretMetadata

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS secret_metadata (
    id          TEXT PRIMARY KEY,
    data        TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS secret_ciphertext (
    id          TEXT PRIMARY KEY,
    blob        BLOB NOT NULL
);
CREATE TABLE IF NOT EXISTS vault_settings (
    key         TEXT PRIMARY KEY,
    value       BLOB NOT NULL
);
"""

MASTER_KEY_ENTRY = "master-key"
_CHECK_PLAINTEXT = b"keysmith-vault-check"
_CHECK_AAD = b"vault-check"


@contextmanager
def _connect(db_path: Path) -> Iterator[sqlite3.Connection]:
    """Open a connection whose ``with`` block is one transaction."""
    with closing(sqlite3.connect(db_path, timeout=10)) as conn, conn:
        yield conn


def init_database(db_path: Path) -> Path:
    """Create the vault database and its tables. Idempotent."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    fresh = not db_path.exists()
    with _connect(db_path) as conn:
        conn.executescript(SCHEMA)
    if fresh:
        db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 600
    return db_path


def _upsert_metadata(conn: sqlite3.Connection, meta: SecretMetadata) -> None:
    updated = meta.updated_at.isoformat() if meta.updated_at else ""
    conn.execute(
        """
        INSERT INTO secret_metadata (id, data, updated_at) VALUES (?, ?, ?)
        ON CONFLICT (id) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at
        """,
        (meta.id, meta.model_dump_json(), updated),
    )


class SecretBackend(ABC):
    """Persistence contract shared by both vault modes."""

    name: str = "abstract"

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        init_database(self.db_path)

    @abstractmethod
    def load_master_key(self) -> MasterKey:
        """Fetch or create the key every payload in this vault is encrypted under."""

    @abstractmethod
    def write(self, meta: SecretMetadata, blob: EncryptedBlob) -> None:
        """Persist metadata and ciphertext for one record."""

    @abstractmethod
    def read_blob(self, secret_id: str) -> EncryptedBlob | None:
        """Return the ciphertext for a record, or None if absent."""

    @abstractmethod
    def remove(self, secret_id: str) -> bool:
        """Remove metadata and ciphertext. Returns True if anything existed."""

    def load_metadata(self) -> dict[str, SecretMetadata]:
        """Read every metadata row. Rows that fail to parse are skipped."""
        entries: dict[str, SecretMetadata] = {}
        with _connect(self.db_path) as conn:
            rows = conn.execute("SELECT id, data FROM secret_metadata ORDER BY id").fetchall()
        for secret_id, data in rows:
            try:
                entries[secret_id] = SecretMetadata.model_validate_json(data)
            except ValueError as e:
                logger.warning("Skipping unreadable metadata for %s: %s", secret_id, e)
        return entries


class KeyringSecretBackend(SecretBackend):
    """OS credential store backend (macOS Keychain, Windows Credential Manager, Secret Service).

    Secret bytes never touch application-controlled disk: the master key and
    each record's ciphertext are stored as keychain entries.
    """

    name = "keyring"

    def __init__(self, db_path: Path, service: str = "keysmith", keyring_api: Any = None) -> None:
        super().__init__(db_path)
        self.service = service
        self.secrets_service = f"{service}-secrets"
        self._keyring = keyring_api if keyring_api is not None else keyring

    def load_master_key(self) -> MasterKey:
        stored = self._keyring.get_password(self.service, MASTER_KEY_ENTRY)
        if stored:
            try:
                material = base64.b64decode(stored, validate=True)
            except binascii.Error as e:
                raise ValueError(f"Master key in keyring service {self.service!r} is corrupted") from e
            if len(material) != KEY_BYTES:
                raise ValueError(f"Vault master key must be {KEY_BYTES} bytes, got {len(material)}")
            return MasterKey(material)

        material = secrets.token_bytes(KEY_BYTES)
        self._keyring.set_password(
            self.service, MASTER_KEY_ENTRY, base64.b64encode(material).decode("ascii")
        )
        logger.info("Generated new vault master key in keyring service %s", self.service)
        return MasterKey(material)

    def write(self, meta: SecretMetadata, blob: EncryptedBlob) -> None:
        # Ciphertext first: metadata is what makes a record visible.
        self._keyring.set_password(self.secrets_service, meta.id, blob.to_text())
        with _connect(self.db_path) as conn:
            _upsert_metadata(conn, meta)

    def read_blob(self, secret_id: str) -> EncryptedBlob | None:
        text = self._keyring.get_password(self.secrets_service, secret_id)
        if text is None:
            return None
        return EncryptedBlob.from_text(text)

    def remove(self, secret_id: str) -> bool:
        with _connect(self.db_path) as conn:
            cur = conn.execute("DELETE FROM secret_metadata WHERE id = ?", (secret_id,))
            removed = cur.rowcount > 0
        try:
            self._keyring.delete_password(self.secrets_service, secret_id)
            removed = True
        except PasswordDeleteError:
            pass
        return removed


class LocalSecretBackend(SecretBackend):
    """Passphrase-encrypted store: ciphertext lives in SQLite under our control.

    Only the PBKDF2 salt, its iteration count and an encrypted check value are
    persisted alongside the ciphertext; the key itself is re-derived every
    session. The configured iteration count applies to new vaults only.
    """

    name = "local"

    def __init__(
        self,
        db_path: Path,
        passphrase: str,
        iterations: int = PBKDF2_ITERATIONS,
    ) -> None:
        super().__init__(db_path)
        self._passphrase = passphrase
        self.iterations = iterations

    def _get_setting(self, conn: sqlite3.Connection, key: str) -> bytes | None:
        row = conn.execute("SELECT value FROM vault_settings WHERE key = ?", (key,)).fetchone()
        return bytes(row[0]) if row else None

    def load_master_key(self) -> MasterKey:
        with _connect(self.db_path) as conn:
            salt = self._get_setting(conn, "salt")
            check = self._get_setting(conn, "check")
            stored_iterations = self._get_setting(conn, "iterations")

        if salt is None:
            key, salt = derive_key(self._passphrase, iterations=self.iterations)
            check_blob = encrypt(_CHECK_PLAINTEXT, key, _CHECK_AAD)
            with _connect(self.db_path) as conn:
                conn.execute(
                    "INSERT OR REPLACE INTO vault_settings (key, value) VALUES (?, ?)",
                    ("salt", salt),
                )
                conn.execute(
                    "INSERT OR REPLACE INTO vault_settings (key, value) VALUES (?, ?)",
                    ("check", check_blob.to_bytes()),
                )
                conn.execute(
                    "INSERT OR REPLACE INTO vault_settings (key, value) VALUES (?, ?)",
                    ("iterations", str(self.iterations).encode("ascii")),
                )
            logger.info("Initialized passphrase vault at %s", self.db_path)
        else:
            if stored_iterations is not None:
                self.iterations = int(stored_iterations.decode("ascii"))
            key, _ = derive_key(self._passphrase, salt, iterations=self.iterations)
            if check is not None:
                try:
                    decrypt(check, key, _CHECK_AAD)
                except DecryptionError as e:
                    raise DecryptionError("Wrong vault passphrase") from e

        self._passphrase = ""
        return key

    def write(self, meta: SecretMetadata, blob: EncryptedBlob) -> None:
        with _connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO secret_ciphertext (id, blob) VALUES (?, ?)
                ON CONFLICT (id) DO UPDATE SET blob = excluded.blob
                """,
                (meta.id, blob.to_bytes()),
            )
            _upsert_metadata(conn, meta)

    def read_blob(self, secret_id: str) -> EncryptedBlob | None:
        with _connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT blob FROM secret_ciphertext WHERE id = ?", (secret_id,)
            ).fetchone()
        if not row:
            return None
        return EncryptedBlob.from_bytes(bytes(row[0]))

    def remove(self, secret_id: str) -> bool:
        with _connect(self.db_path) as conn:
            a = conn.execute("DELETE FROM secret_metadata WHERE id = ?", (secret_id,)).rowcount
            b = conn.execute("DELETE FROM secret_ciphertext WHERE id = ?", (secret_id,)).rowcount
        return (a + b) > 0
