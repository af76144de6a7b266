"""
Vault Migration — Batch encryption of records written before encryption.

Scans a collection for a user's records whose ``encrypted`` flag is not set,
encrypts the configured fields in fixed-size batches and commits each batch
as one atomic write. A failed batch is recorded and the run moves on to the
next one. The operation is idempotent: records already marked encrypted are
skipped by the scan, so a partial run can simply be repeated.

Security Note:
    Plaintext exists in memory only while its batch is being encrypted.
    Never log plaintext or ciphertext values.
"""
import enum
import asyncio
import logging
import weakref
from datetime import datetime, timezone
from typing import Optional
from collections.abc import Iterator, Sequence

from pydantic import BaseModel, Field

from ..conf import ENCRYPTED_FLAG
from ..exceptions import CryptoError, KeyUnavailable, MigrationBatchFailure
from .config import CollectionConfig, EncryptionConfig
from .crypto import encrypt_fields
from .documents import Document, DocumentStore
from .key_manager import KeyManager

logger = logging.getLogger("journal.vault")


class MigrationState(str, enum.Enum):
    SCANNING = "scanning"
    BATCHING = "batching"
    ENCRYPTING = "encrypting"
    COMMITTING = "committing"
    DONE = "done"
    PARTIALLY_FAILED = "partially_failed"


class MigrationResult(BaseModel):
    """Aggregate report of one collection migration.

    Reflects eventual, possibly partial, progress; it is not transactional.
    """

    collection: str
    success: bool = True
    total_processed: int = 0
    total_encrypted: int = 0
    errors: list[str] = Field(default_factory=list)
    state: MigrationState = MigrationState.SCANNING

    def fail(self, message: str) -> None:
        self.errors.append(message)
        self.success = False


class MigrationStatus(BaseModel):
    """Unencrypted record counts per collection."""

    needs_migration: bool = False
    unencrypted: dict[str, int] = Field(default_factory=dict)

    @property
    def unencrypted_journal_count(self) -> int:
        return self.unencrypted.get("journal", 0)

    @property
    def unencrypted_bug_count(self) -> int:
        return self.unencrypted.get("bugs", 0)


def chunked(items: Sequence, size: int) -> Iterator[list]:
    """Split items into consecutive lists of at most size elements."""
    if size < 1:
        raise ValueError(f"Batch size must be positive, got {size}")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


class MigrationEngine:
    """Encrypts a user's legacy plaintext records, collection by collection.

    Args:
        documents: Document store holding the records and user profiles.
        key_manager: Source of the user's master key.
        config: Collections to migrate and the profile collection name.
    """

    def __init__(
        self,
        documents: DocumentStore,
        key_manager: KeyManager,
        config: Optional[EncryptionConfig] = None,
    ):
        self._documents = documents
        self._keys = key_manager
        self._config = config or EncryptionConfig()
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, uid: str) -> asyncio.Lock:
        lock = self._locks.get(uid)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[uid] = lock
        return lock

    def _encrypt_batch(
        self,
        batch: list[Document],
        cfg: CollectionConfig,
        key: str,
        result: MigrationResult,
    ) -> tuple[dict[str, dict], int]:
        """Build the partial updates of one batch.

        Returns:
            Tuple of (updates by document id, records with ciphertext).
        """
        updates: dict[str, dict] = {}
        encrypted = 0
        for doc in batch:
            fields = [f for f in cfg.fields if doc.data.get(f) is not None]
            if not fields:
                # nothing to encrypt, flag it to leave future scans
                updates[doc.id] = {ENCRYPTED_FLAG: True}
                continue
            try:
                data = encrypt_fields(doc.data, fields, key)
            except CryptoError as err:
                logger.error(
                    "Failed to encrypt %s record id=%s: %s", cfg.name, doc.id, err,
                )
                result.fail(f"{cfg.name} {doc.id}: {err}")
                continue
            update = {f: data[f] for f in fields}
            update[ENCRYPTED_FLAG] = True
            updates[doc.id] = update
            encrypted += 1
        return updates, encrypted

    async def _migrate(self, uid: str, cfg: CollectionConfig) -> MigrationResult:
        result = MigrationResult(collection=cfg.name)
        try:
            key = await self._keys.active_key(uid)
        except KeyUnavailable as err:
            logger.error("Cannot migrate %s for user=%s: %s", cfg.name, uid, err)
            result.fail(f"Encryption not available: {err}")
            result.state = MigrationState.PARTIALLY_FAILED
            return result

        result.state = MigrationState.SCANNING
        try:
            docs = await self._documents.query_unencrypted(cfg.name, uid)
        except Exception as err:
            logger.error("Scan of %s failed for user=%s: %s", cfg.name, uid, err)
            result.fail(f"Migration failed: {err}")
            result.state = MigrationState.PARTIALLY_FAILED
            return result
        result.total_processed = len(docs)
        if not docs:
            logger.info("No unencrypted %s records for user=%s", cfg.name, uid)
            result.state = MigrationState.DONE
            return result

        result.state = MigrationState.BATCHING
        batches = list(chunked(docs, cfg.batch_size))
        logger.info(
            "Migrating %d %s record(s) for user=%s in %d batch(es) of %d",
            len(docs), cfg.name, uid, len(batches), cfg.batch_size,
        )

        for number, batch in enumerate(batches, start=1):
            result.state = MigrationState.ENCRYPTING
            updates, encrypted = self._encrypt_batch(batch, cfg, key, result)
            if not updates:
                continue
            result.state = MigrationState.COMMITTING
            try:
                await self._documents.commit_batch(cfg.name, updates)
            except Exception as err:
                failure = MigrationBatchFailure(cfg.name, number, list(updates), err)
                logger.error("%s", failure)
                result.fail(str(failure))
                continue
            result.total_encrypted += encrypted
            logger.debug(
                "Committed batch %d of %s (%d rows)", number, cfg.name, len(updates),
            )

        result.state = (
            MigrationState.DONE if result.success
            else MigrationState.PARTIALLY_FAILED
        )
        logger.info(
            "Migration of %s for user=%s finished: processed=%d encrypted=%d errors=%d",
            cfg.name, uid, result.total_processed, result.total_encrypted,
            len(result.errors),
        )
        return result

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def migrate_collection(self, uid: str, cfg: CollectionConfig) -> MigrationResult:
        """Encrypt every unencrypted record of uid in one collection."""
        async with self._lock_for(uid):
            return await self._migrate(uid, cfg)

    async def migrate_journal_entries(self, uid: str) -> MigrationResult:
        return await self.migrate_collection(uid, self._config.collection("journal"))

    async def migrate_bug_reports(self, uid: str) -> MigrationResult:
        return await self.migrate_collection(uid, self._config.collection("bugs"))

    async def migrate_all_user_data(self, uid: str) -> dict[str, MigrationResult]:
        """Migrate every configured collection, in order.

        When all of them succeed, flags the user profile as encrypted. The
        flag is informational; a failure to write it is only logged.
        """
        logger.info("Starting encryption migration for user=%s", uid)
        results: dict[str, MigrationResult] = {}
        for cfg in self._config.collections:
            results[cfg.name] = await self.migrate_collection(uid, cfg)

        if all(r.success for r in results.values()):
            try:
                await self._documents.update(
                    self._config.profile_collection,
                    uid,
                    {
                        "encryptionEnabled": True,
                        "encryptedFields": list(results),
                        "encryptionMigratedAt": datetime.now(timezone.utc),
                    },
                )
            except Exception as err:
                logger.error(
                    "Failed to update encryption status of user=%s: %s", uid, err,
                )
        return results

    async def check_migration_status(self, uid: str) -> MigrationStatus:
        """Count unencrypted records per collection without changing anything."""
        status = MigrationStatus()
        try:
            for cfg in self._config.collections:
                docs = await self._documents.query_unencrypted(cfg.name, uid)
                status.unencrypted[cfg.name] = len(docs)
        except Exception as err:
            logger.error("Error checking migration status of user=%s: %s", uid, err)
            return MigrationStatus()
        status.needs_migration = any(status.unencrypted.values())
        return status
