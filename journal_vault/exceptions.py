"""Journal Vault exceptions."""


class VaultError(Exception):
    """Base exception for the encryption engine."""


class KeyUnavailable(VaultError):
    """No master key could be obtained.

    Callers should prompt for re-authentication or continue without
    encryption.
    """


class CryptoError(VaultError):
    """Base exception for cryptographic errors."""


class EncryptionFailure(CryptoError):
    """Error during encryption."""


class DecryptionFailure(CryptoError):
    """Error during decryption (includes tampering detection)."""


class StorageFailure(VaultError):
    """The durable key tier could not be reached."""


class MigrationBatchFailure(VaultError):
    """A migration batch could not be committed."""

    def __init__(self, collection: str, batch_number: int, record_ids: list, reason):
        self.collection = collection
        self.batch_number = batch_number
        self.record_ids = list(record_ids)
        self.reason = reason
        super().__init__(
            f"Batch {batch_number} of {collection} "
            f"({len(self.record_ids)} records) failed to commit: {reason}"
        )
