"""
Tests for the batch migration engine.

Tests cover:
- Batching (120 entries at 50 per batch → 50, 50, 20)
- Idempotence of repeated and overlapping runs
- Records without encryptable fields
- Batch failures recorded without aborting later batches
- Profile flag written only on full success
- Read-only status check
"""
import asyncio

import pytest

from journal_vault.exceptions import StorageFailure
from journal_vault.vault import (
    CollectionConfig,
    EncryptionConfig,
    KeyManager,
    KeyStore,
    MemoryDocumentStore,
    MigrationEngine,
    MigrationState,
    decrypt_fields,
    is_envelope,
)
from journal_vault.vault.migration import chunked

JOURNAL_FIELDS = ["title", "content", "tags"]


class RecordingStore(MemoryDocumentStore):
    """Records batch sizes and fails the commits listed in fail_on (1-based)."""

    def __init__(self, fail_on=()):
        super().__init__()
        self.batches: list[int] = []
        self.fail_on = set(fail_on)

    async def commit_batch(self, collection, updates):
        self.batches.append(len(updates))
        if len(self.batches) in self.fail_on:
            raise StorageFailure("deadline exceeded")
        await super().commit_batch(collection, updates)


def add_journal(store, uid, count, **extra):
    return [
        store.add("journal", {
            "uid": uid,
            "title": f"Day {i}",
            "content": f"Practiced SQL injection lab {i}",
            "tags": ["sqli", "lab"],
            **extra,
        })
        for i in range(count)
    ]


def add_profile(store, uid):
    return store.add("users", {"uid": uid, "username": "h4cker"}, doc_id=uid)


def make_engine(store, key_manager):
    return MigrationEngine(store, key_manager, EncryptionConfig())


class TestChunked:
    """chunked helper."""

    def test_sizes(self):
        """Test the last chunk holds the remainder."""
        assert [len(c) for c in chunked(list(range(120)), 50)] == [50, 50, 20]

    def test_empty(self):
        """Test no chunks for no items."""
        assert list(chunked([], 10)) == []

    def test_invalid_size(self):
        """Test a non-positive size is refused."""
        with pytest.raises(ValueError):
            list(chunked([1], 0))


class TestMigrateJournal:
    """Journal collection migration."""

    @pytest.mark.asyncio
    async def test_end_to_end_120_entries(self, key_manager, uid):
        """Test 120 entries are committed as 50, 50 and 20."""
        store = RecordingStore()
        add_journal(store, uid, 120)
        engine = make_engine(store, key_manager)

        result = await engine.migrate_journal_entries(uid)

        assert store.batches == [50, 50, 20]
        assert result.success is True
        assert result.total_processed == 120
        assert result.total_encrypted == 120
        assert result.errors == []
        assert result.state == MigrationState.DONE
        assert await store.query_unencrypted("journal", uid) == []

    @pytest.mark.asyncio
    async def test_fields_are_decryptable(self, engine, documents, key_manager, uid):
        """Test migrated fields decrypt back with the user's key."""
        doc_id = documents.add("journal", {
            "uid": uid, "title": "Recon", "content": "subdomain enum",
            "tags": ["recon"], "xp": 25,
        })
        await engine.migrate_journal_entries(uid)

        stored = await documents.get("journal", doc_id)
        assert stored["encrypted"] is True
        assert stored["xp"] == 25
        assert all(is_envelope(stored[f]) for f in JOURNAL_FIELDS)

        key = key_manager.get_encryption_key()
        plain = decrypt_fields(stored, JOURNAL_FIELDS, key)
        assert plain["title"] == "Recon"
        assert plain["tags"] == ["recon"]

    @pytest.mark.asyncio
    async def test_second_run_is_empty(self, engine, documents, uid):
        """Test a repeated run finds nothing left to migrate."""
        add_journal(documents, uid, 7)
        first = await engine.migrate_journal_entries(uid)
        second = await engine.migrate_journal_entries(uid)
        assert first.total_processed == 7
        assert second.total_processed == 0
        assert second.total_encrypted == 0
        assert second.success is True

    @pytest.mark.asyncio
    async def test_overlapping_runs_encrypt_once(self, key_manager, uid):
        """Test two concurrent runs for one user encrypt every record once."""
        store = RecordingStore()
        add_journal(store, uid, 60)
        engine = make_engine(store, key_manager)

        first, second = await asyncio.gather(
            engine.migrate_journal_entries(uid),
            engine.migrate_journal_entries(uid),
        )
        assert first.total_processed + second.total_processed == 60
        assert first.total_encrypted + second.total_encrypted == 60
        assert 0 in (first.total_processed, second.total_processed)
        assert sum(store.batches) == 60

        key = key_manager.get_encryption_key()
        for doc in store.documents("journal"):
            plain = decrypt_fields(doc.data, JOURNAL_FIELDS, key)
            assert plain["title"].startswith("Day ")
            assert plain["tags"] == ["sqli", "lab"]

    @pytest.mark.asyncio
    async def test_only_owner_and_unflagged_records(self, engine, documents, uid):
        """Test other users' and already flagged records are skipped."""
        add_journal(documents, uid, 3)
        add_journal(documents, "other-user", 4)
        add_journal(documents, uid, 2, encrypted=True)
        add_journal(documents, uid, 1, encrypted=False)

        result = await engine.migrate_journal_entries(uid)
        assert result.total_processed == 4

    @pytest.mark.asyncio
    async def test_null_fields_untouched(self, engine, documents, uid):
        """Test null and absent fields are neither encrypted nor added."""
        doc_id = documents.add("journal", {"uid": uid, "title": "Only title", "content": None})
        result = await engine.migrate_journal_entries(uid)
        stored = await documents.get("journal", doc_id)
        assert result.total_encrypted == 1
        assert is_envelope(stored["title"])
        assert stored["content"] is None
        assert "tags" not in stored

    @pytest.mark.asyncio
    async def test_batch_failure_continues(self, key_manager, uid):
        """Test a failed batch is recorded and later batches still commit."""
        store = RecordingStore(fail_on={2})
        add_journal(store, uid, 120)
        engine = make_engine(store, key_manager)

        result = await engine.migrate_journal_entries(uid)
        assert store.batches == [50, 50, 20]
        assert result.success is False
        assert result.total_processed == 120
        assert result.total_encrypted == 70
        assert len(result.errors) == 1
        assert "Batch 2 of journal" in result.errors[0]
        assert result.state == MigrationState.PARTIALLY_FAILED

        store.fail_on.clear()
        retry = await engine.migrate_journal_entries(uid)
        assert retry.total_processed == 50
        assert retry.total_encrypted == 50
        assert retry.success is True

    @pytest.mark.asyncio
    async def test_without_key(self, tmp_path, documents, unwritable_session, uid):
        """Test a missing key fails the run before any record is touched."""
        broken = KeyStore(str(tmp_path / "missing" / "keys.db"))
        engine = make_engine(documents, KeyManager(broken, session=unwritable_session))
        add_journal(documents, uid, 2)

        result = await engine.migrate_journal_entries(uid)
        assert result.success is False
        assert result.total_processed == 0
        assert len(await documents.query_unencrypted("journal", uid)) == 2


class TestMigrateBugs:
    """Bug report collection migration."""

    @pytest.mark.asyncio
    async def test_records_without_fields_are_flagged(self, engine, documents, uid):
        """Test records with no populated field are flagged but not counted."""
        empty_id = documents.add("bugs", {"uid": uid, "severity": "low"})
        full_id = documents.add("bugs", {"uid": uid, "description": "Open redirect", "program": None})

        result = await engine.migrate_bug_reports(uid)
        assert result.total_processed == 2
        assert result.total_encrypted == 1

        empty = await documents.get("bugs", empty_id)
        assert empty == {"uid": uid, "severity": "low", "encrypted": True}
        full = await documents.get("bugs", full_id)
        assert is_envelope(full["description"])
        assert full["program"] is None

    @pytest.mark.asyncio
    async def test_custom_batch_size(self, key_manager, uid):
        """Test the configured batch size drives the commits."""
        store = RecordingStore()
        for i in range(7):
            store.add("bugs", {"uid": uid, "description": f"bug {i}"})
        config = EncryptionConfig(collections=[
            CollectionConfig(name="bugs", fields=["description"], batch_size=3),
        ])
        engine = MigrationEngine(store, key_manager, config)
        result = await engine.migrate_bug_reports(uid)
        assert store.batches == [3, 3, 1]
        assert result.total_encrypted == 7


class TestMigrateAll:
    """migrate_all_user_data and check_migration_status."""

    @pytest.mark.asyncio
    async def test_profile_flag_on_success(self, engine, documents, uid):
        """Test the profile records encryption once every collection succeeded."""
        add_profile(documents, uid)
        add_journal(documents, uid, 3)
        documents.add("bugs", {"uid": uid, "description": "CSRF", "program": "acme"})

        results = await engine.migrate_all_user_data(uid)
        assert set(results) == {"journal", "bugs"}
        assert all(r.success for r in results.values())

        profile = await documents.get("users", uid)
        assert profile["username"] == "h4cker"
        assert profile["encryptionEnabled"] is True
        assert profile["encryptedFields"] == ["journal", "bugs"]
        assert profile["encryptionMigratedAt"] is not None

    @pytest.mark.asyncio
    async def test_no_profile_flag_on_failure(self, key_manager, uid):
        """Test a failed collection leaves the profile untouched."""
        store = RecordingStore(fail_on={1})
        add_profile(store, uid)
        add_journal(store, uid, 2)
        engine = make_engine(store, key_manager)

        results = await engine.migrate_all_user_data(uid)
        assert results["journal"].success is False
        assert results["bugs"].success is True
        assert "encryptionEnabled" not in await store.get("users", uid)

    @pytest.mark.asyncio
    async def test_missing_profile_is_not_created(self, engine, documents, uid):
        """Test the flag write never creates a profile document."""
        add_journal(documents, uid, 2)
        results = await engine.migrate_all_user_data(uid)
        assert all(r.success for r in results.values())
        assert await documents.get("users", uid) is None

    @pytest.mark.asyncio
    async def test_status_is_read_only(self, engine, documents, uid):
        """Test the status check counts without changing documents."""
        add_journal(documents, uid, 4)
        documents.add("bugs", {"uid": uid, "description": "XXE"})
        before = documents.documents("journal")

        status = await engine.check_migration_status(uid)
        assert status.needs_migration is True
        assert status.unencrypted_journal_count == 4
        assert status.unencrypted_bug_count == 1
        assert documents.documents("journal") == before

        await engine.migrate_all_user_data(uid)
        status = await engine.check_migration_status(uid)
        assert status.needs_migration is False
        assert status.unencrypted == {"journal": 0, "bugs": 0}


class TestMemoryDocumentStore:
    """Reference document store."""

    @pytest.mark.asyncio
    async def test_update_missing_document(self, documents):
        """Test updating an unknown document raises instead of creating it."""
        with pytest.raises(KeyError):
            await documents.update("users", "ghost", {"encryptionEnabled": True})
        assert await documents.get("users", "ghost") is None

    @pytest.mark.asyncio
    async def test_commit_batch_is_all_or_nothing(self, documents, uid):
        """Test one missing target leaves every document unchanged."""
        doc_id = documents.add("journal", {"uid": uid, "title": "t"})
        with pytest.raises(KeyError):
            await documents.commit_batch("journal", {
                doc_id: {"encrypted": True},
                "ghost": {"encrypted": True},
            })
        assert "encrypted" not in await documents.get("journal", doc_id)
