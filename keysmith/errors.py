"""
Error taxonomy shared by the vault, OAuth and automation subsystems.

Each error carries a stable ``code`` that the service boundary reports to
callers in structured results.
"""

from __future__ import annotations


class KeysmithError(Exception):
    """Base class for all expected Keysmith failures."""

    code = "keysmith_error"


class ValidationError(KeysmithError):
    """Malformed input, rejected before any side effect."""

    code = "validation_error"


class NotFoundError(KeysmithError):
    """Missing secret, session or job."""

    code = "not_found"


class DecryptionError(KeysmithError):
    """Authentication tag did not verify, or the blob is malformed."""

    code = "decryption_error"


class CorruptedSecretError(DecryptionError):
    """A stored secret exists but its ciphertext cannot be decrypted."""

    code = "corrupted_secret"


class CapacityExceededError(KeysmithError):
    """Session or job ceiling reached. Retry later."""

    code = "capacity_exceeded"


class ExpiredError(KeysmithError):
    """Session or job aged out. Terminal."""

    code = "expired"


class ResourceError(KeysmithError):
    """Failed to acquire or release an automation resource."""

    code = "resource_error"


class VaultImportError(KeysmithError):
    """Wrong export password or structurally invalid export payload."""

    code = "import_error"
