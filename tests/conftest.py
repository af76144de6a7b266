"""
Shared fixtures for the journal_vault test-suite.

- pytest-asyncio for async test support (explicit ``@pytest.mark.asyncio``)
- every fixture builds independent tiers, nothing is process-global
"""
import pytest

from journal_vault.data import SessionData
from journal_vault.vault import (
    EncryptionConfig,
    KeyContext,
    KeyManager,
    KeyStore,
    MemoryDocumentStore,
    MigrationEngine,
    SessionKeyCache,
    generate_master_key,
)

UID = "user-123"


class FakeClock:
    """Settable clock returning seconds."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class UnwritableSession(dict):
    """Session mapping that rejects every write."""

    def __setitem__(self, key, value):
        raise PermissionError("session storage is read-only")


@pytest.fixture
def uid():
    return UID


@pytest.fixture
def key():
    return generate_master_key()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return EncryptionConfig()


@pytest.fixture
def session_cache():
    return SessionKeyCache(SessionData(max_age=3600))


@pytest.fixture
def key_store(tmp_path, session_cache, clock):
    return KeyStore(str(tmp_path / "keys.db"), fallbacks=[session_cache], clock=clock)


@pytest.fixture
def broken_store(tmp_path, session_cache):
    """A durable tier that cannot be opened; writes fall back to the session."""
    return KeyStore(
        str(tmp_path / "missing" / "keys.db"), fallbacks=[session_cache],
    )


@pytest.fixture
def key_manager(key_store, session_cache, config):
    return KeyManager(
        key_store, session=session_cache, context=KeyContext(), config=config,
    )


@pytest.fixture
def documents():
    return MemoryDocumentStore()


@pytest.fixture
def engine(documents, key_manager, config):
    return MigrationEngine(documents, key_manager, config)


@pytest.fixture
def unwritable_session():
    """Session tier whose writes fail, so no key sink is left."""
    return SessionKeyCache(UnwritableSession())
