"""Journal Vault.

Per-user master keys and field-level encryption for journal entries
and bug reports.
"""
from .version import __version__
from .data import SessionData
from .exceptions import (
    VaultError,
    KeyUnavailable,
    CryptoError,
    EncryptionFailure,
    DecryptionFailure,
    StorageFailure,
    MigrationBatchFailure,
)

__all__ = (
    "__version__",
    "SessionData",
    "VaultError",
    "KeyUnavailable",
    "CryptoError",
    "EncryptionFailure",
    "DecryptionFailure",
    "StorageFailure",
    "MigrationBatchFailure",
)
