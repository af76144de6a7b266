"""
Vault Configuration — Master key generation and validated settings.

Reads optional overrides from environment variables:
    VAULT_KEY_TTL_HOURS = <int, lifetime of a durable key record>
    VAULT_SESSION_TTL = <int, seconds the session tier stays valid>
    VAULT_KEYSTORE_PATH = <path of the SQLite key database>

Security Note:
    Never log key material. Only log user ids and record ids.
"""
import os
import base64
import secrets
import logging
import warnings

from pydantic import BaseModel, Field, field_validator
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..conf import (
    KEY_LENGTH,
    DEFAULT_KEY_TTL_HOURS,
    DEFAULT_SESSION_TTL,
    DEFAULT_COLLECTIONS,
    MAX_BATCH_SIZE,
    PROFILE_COLLECTION,
)

logger = logging.getLogger("journal.vault")

PBKDF2_ITERATIONS = 100_000


def generate_master_key() -> str:
    """Generate a random 32-byte master key and return as base64 string.

    Returns:
        Base64-encoded 32-byte key string.
    """
    return base64.b64encode(secrets.token_bytes(KEY_LENGTH)).decode("ascii")


def generate_secure_password() -> str:
    """Return 32 random bytes, base64-encoded, usable as a throwaway secret."""
    return base64.b64encode(secrets.token_bytes(32)).decode("ascii")


def derive_user_key(uid: str, password: str) -> str:
    """Derive a key from a password with PBKDF2-HMAC-SHA256.

    Deprecated: master keys are generated randomly by the key manager.
    Kept to read data written by clients that derived their key from the
    account password (uid as salt, 100k iterations).

    Args:
        uid: User identifier, used as salt.
        password: Account password.

    Returns:
        Base64-encoded 32-byte key string.
    """
    warnings.warn(
        "derive_user_key is deprecated, use generate_master_key",
        DeprecationWarning,
        stacklevel=2,
    )
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=uid.encode("utf-8"),
        iterations=PBKDF2_ITERATIONS,
    )
    key = kdf.derive(password.encode("utf-8"))
    return base64.b64encode(key).decode("ascii")


class CollectionConfig(BaseModel):
    """Encryptable fields and batch size of one record collection."""

    name: str = Field(min_length=1)
    fields: tuple[str, ...]
    batch_size: int = Field(default=50, ge=1, le=MAX_BATCH_SIZE)

    model_config = {"frozen": True}

    @field_validator("fields")
    @classmethod
    def validate_fields(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        """At least one field, no blanks, no duplicates."""
        if not v:
            raise ValueError("A collection needs at least one encryptable field")
        if any(not f for f in v):
            raise ValueError("Field names cannot be empty")
        if len(set(v)) != len(v):
            raise ValueError(f"Duplicate field names: {v}")
        return v


def _default_collections() -> tuple[CollectionConfig, ...]:
    return tuple(
        CollectionConfig(name=name, **options)
        for name, options in DEFAULT_COLLECTIONS.items()
    )


class EncryptionConfig(BaseModel):
    """Validated encryption engine configuration."""

    key_ttl_hours: int = Field(default=DEFAULT_KEY_TTL_HOURS, ge=1)
    session_ttl: int = Field(default=DEFAULT_SESSION_TTL, ge=60)
    keystore_path: str = Field(default=":memory:")
    profile_collection: str = Field(default=PROFILE_COLLECTION, min_length=1)
    collections: tuple[CollectionConfig, ...] = Field(
        default_factory=_default_collections
    )

    @field_validator("collections")
    @classmethod
    def validate_collections(
        cls, v: tuple[CollectionConfig, ...]
    ) -> tuple[CollectionConfig, ...]:
        """Collection names must be unique."""
        names = [c.name for c in v]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate collection names: {names}")
        return v

    def collection(self, name: str) -> CollectionConfig:
        """Return the configuration of a collection by name.

        Raises:
            KeyError: If the collection is not configured.
        """
        for cfg in self.collections:
            if cfg.name == name:
                return cfg
        raise KeyError(f"Collection {name!r} is not configured")

    @classmethod
    def from_env(cls) -> "EncryptionConfig":
        """Create EncryptionConfig by loading values from environment.

        Returns:
            Populated EncryptionConfig instance.
        """
        values: dict = {}
        ttl = os.environ.get("VAULT_KEY_TTL_HOURS")
        if ttl is not None:
            values["key_ttl_hours"] = int(ttl)
        session_ttl = os.environ.get("VAULT_SESSION_TTL")
        if session_ttl is not None:
            values["session_ttl"] = int(session_ttl)
        path = os.environ.get("VAULT_KEYSTORE_PATH")
        if path:
            values["keystore_path"] = path
        config = cls(**values)
        logger.debug(
            "Loaded encryption config: key_ttl_hours=%d session_ttl=%d collections=%s",
            config.key_ttl_hours,
            config.session_ttl,
            [c.name for c in config.collections],
        )
        return config
