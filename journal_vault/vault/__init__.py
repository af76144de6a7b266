"""Journal Vault — Field-level encryption and master key lifecycle.

Security Note (Threat Model):
    Master keys are random, never derived from a password, and live in
    process memory, the session tier and a local SQLite database. Anyone
    with read access to that database can decrypt the user's fields.
    This is an accepted limitation; wrapping the durable tier with an
    OS keychain or HSM is out of scope.
"""

from .config import (
    EncryptionConfig,
    CollectionConfig,
    generate_master_key,
    generate_secure_password,
    derive_user_key,
)
from .crypto import (
    encrypt,
    decrypt,
    encrypt_fields,
    decrypt_fields,
    decrypt_fields_detailed,
    batch_encrypt,
    batch_decrypt,
    is_envelope,
)
from .key_store import KeyStore, KeyRecord
from .key_manager import KeyManager, KeyContext, SessionKeyCache
from .documents import Document, DocumentStore, MemoryDocumentStore
from .migration import (
    MigrationEngine,
    MigrationResult,
    MigrationState,
    MigrationStatus,
)

__all__ = [
    "EncryptionConfig",
    "CollectionConfig",
    "generate_master_key",
    "generate_secure_password",
    "derive_user_key",
    "encrypt",
    "decrypt",
    "encrypt_fields",
    "decrypt_fields",
    "decrypt_fields_detailed",
    "batch_encrypt",
    "batch_decrypt",
    "is_envelope",
    "KeyStore",
    "KeyRecord",
    "KeyManager",
    "KeyContext",
    "SessionKeyCache",
    "Document",
    "DocumentStore",
    "MemoryDocumentStore",
    "MigrationEngine",
    "MigrationResult",
    "MigrationState",
    "MigrationStatus",
]
