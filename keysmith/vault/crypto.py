"""
AES-256-GCM encryption and PBKDF2 key derivation for vault secrets.

Every encryption draws a fresh 12-byte nonce which is prepended to the
ciphertext (nonce + ciphertext + 16-byte tag). Keys are wrapped in an opaque
MasterKey so raw key bytes never leave this module once loaded.
"""

from __future__ import annotations

import base64
import binascii
import secrets
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from keysmith.errors import DecryptionError, ValidationError

KEY_BYTES = 32
IV_BYTES = 12
TAG_BYTES = 16
SALT_BYTES = 32
PBKDF2_ITERATIONS = 100_000
MAX_PBKDF2_ITERATIONS = 10_000_000


class MasterKey:
    """An AES-256-GCM key that cannot be read back out."""

    __slots__ = ("_cipher",)

    def __init__(self, material: bytes) -> None:
        if len(material) != KEY_BYTES:
            raise ValueError(f"Master key must be {KEY_BYTES} bytes, got {len(material)}")
        self._cipher = AESGCM(material)

    def __repr__(self) -> str:
        return "MasterKey(<redacted>)"

    def __reduce__(self):
        raise TypeError("MasterKey cannot be pickled")


@dataclass(frozen=True)
class EncryptedBlob:
    """A nonce and the AEAD output (ciphertext + tag) it was produced with."""

    iv: bytes
    ciphertext: bytes

    def to_bytes(self) -> bytes:
        return self.iv + self.ciphertext

    def to_text(self) -> str:
        """Base64 form for text-only storage (OS keychains, JSON)."""
        return base64.b64encode(self.to_bytes()).decode("ascii")

    @classmethod
    def from_bytes(cls, data: bytes) -> EncryptedBlob:
        if len(data) < IV_BYTES + TAG_BYTES:
            raise DecryptionError("Encrypted data too short")
        return cls(iv=bytes(data[:IV_BYTES]), ciphertext=bytes(data[IV_BYTES:]))

    @classmethod
    def from_text(cls, text: str) -> EncryptedBlob:
        try:
            raw = base64.b64decode(text.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as e:
            raise DecryptionError(f"Encrypted data is not valid base64: {e}") from e
        return cls.from_bytes(raw)


def generate_salt() -> bytes:
    return secrets.token_bytes(SALT_BYTES)


def generate_key() -> MasterKey:
    """Random 256-bit key for the no-passphrase path."""
    return MasterKey(secrets.token_bytes(KEY_BYTES))


def derive_key(
    passphrase: str,
    salt: bytes | None = None,
    *,
    iterations: int = PBKDF2_ITERATIONS,
) -> tuple[MasterKey, bytes]:
    """Stretch a passphrase into a MasterKey with PBKDF2-HMAC-SHA256.

    Generates a random salt when none is given. Returns the key together with
    the salt that must be persisted to re-derive it later.
    """
    if not passphrase:
        raise ValidationError("Passphrase must not be empty")
    if iterations < PBKDF2_ITERATIONS:
        raise ValueError(f"PBKDF2 needs at least {PBKDF2_ITERATIONS} iterations, got {iterations}")
    if iterations > MAX_PBKDF2_ITERATIONS:
        raise ValueError(f"PBKDF2 iterations capped at {MAX_PBKDF2_ITERATIONS}, got {iterations}")
    if salt is None:
        salt = generate_salt()
    elif len(salt) < SALT_BYTES:
        raise ValueError(f"Salt must be at least {SALT_BYTES} bytes, got {len(salt)}")

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES,
        salt=salt,
        iterations=iterations,
    )
    return MasterKey(kdf.derive(passphrase.encode("utf-8"))), salt


def encrypt(
    plaintext: str | bytes,
    key: MasterKey,
    associated_data: bytes | None = None,
) -> EncryptedBlob:
    """Encrypt with AES-256-GCM under a freshly generated nonce."""
    data = plaintext.encode("utf-8") if isinstance(plaintext, str) else plaintext
    iv = secrets.token_bytes(IV_BYTES)
    ciphertext = key._cipher.encrypt(iv, data, associated_data)
    return EncryptedBlob(iv=iv, ciphertext=ciphertext)


def decrypt(
    blob: EncryptedBlob | bytes,
    key: MasterKey,
    associated_data: bytes | None = None,
) -> bytes:
    """Verify and decrypt. Raises DecryptionError; never returns partial plaintext."""
    if not isinstance(blob, EncryptedBlob):
        blob = EncryptedBlob.from_bytes(blob)
    if len(blob.iv) != IV_BYTES or len(blob.ciphertext) < TAG_BYTES:
        raise DecryptionError("Encrypted data too short")
    try:
        return key._cipher.decrypt(blob.iv, blob.ciphertext, associated_data)
    except InvalidTag as e:
        raise DecryptionError("Authentication failed: wrong key or tampered data") from e


def decrypt_text(
    blob: EncryptedBlob | bytes,
    key: MasterKey,
    associated_data: bytes | None = None,
) -> str:
    plaintext = decrypt(blob, key, associated_data)
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionError("Decrypted data is not valid UTF-8") from e
