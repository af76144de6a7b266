"""
KeyManager — Produces the active master key of a user.

Hides a three-tier cache behind a small API:
- **Process tier**: ``KeyContext``, owned by the application/session lifecycle
- **Session tier**: ``SessionKeyCache`` over a session-scoped mapping
  (``_ek`` / ``_ek_uid``), survives reloads within one session
- **Durable tier**: ``KeyStore`` (SQLite), survives sign-out

Lookup order for ``initialize_encryption()``: process → session → durable
(creating a key when the durable tier has none). All populated tiers hold the
same key for a user.

Security Note:
    Never log key material. Only log user ids and tier names.
"""
import asyncio
import logging
import weakref
from typing import Any, Optional
from collections.abc import MutableMapping

from ..conf import SESSION_KEY, SESSION_UID
from ..data import SessionData
from ..exceptions import KeyUnavailable, StorageFailure
from .config import EncryptionConfig, generate_master_key
from .key_store import KeyStore

logger = logging.getLogger("journal.vault")


class KeyContext:
    """Process-memory copy of the active key and the uid it belongs to.

    Last write wins; there is no versioning.
    """

    def __init__(self) -> None:
        self.key: Optional[str] = None
        self.uid: Optional[str] = None

    def __repr__(self) -> str:
        return f"<KeyContext uid={self.uid!r} loaded={self.key is not None}>"

    def set(self, key: str, uid: Optional[str] = None) -> None:
        self.key = key
        self.uid = uid

    def clear(self) -> None:
        self.key = None
        self.uid = None

    def matches(self, uid: str) -> bool:
        return self.key is not None and self.uid == uid


class SessionKeyCache:
    """Session tier of the key cache.

    Stores the key under ``_ek`` and its owner under ``_ek_uid`` in any
    session-scoped mapping. Also serves as a fallback sink for the
    durable tier.
    """

    def __init__(self, storage: Optional[MutableMapping[str, Any]] = None):
        self._storage = storage if storage is not None else SessionData()

    @property
    def storage(self) -> MutableMapping[str, Any]:
        return self._storage

    def get(self) -> tuple[Optional[str], Optional[str]]:
        """Return (key, uid marker); both None when empty."""
        return self._storage.get(SESSION_KEY), self._storage.get(SESSION_UID)

    def store(self, key: str, uid: Optional[str] = None) -> None:
        self._storage[SESSION_KEY] = key
        if uid is not None:
            self._storage[SESSION_UID] = uid
        else:
            self._storage.pop(SESSION_UID, None)

    def clear(self) -> None:
        self._storage.pop(SESSION_KEY, None)
        self._storage.pop(SESSION_UID, None)


class KeyManager:
    """Orchestrates the process, session and durable key tiers.

    Args:
        key_store: Durable tier.
        session: Session tier; a fresh ``SessionKeyCache`` if omitted.
        context: Process tier; a fresh ``KeyContext`` if omitted.
        config: Engine configuration (key TTL).
    """

    def __init__(
        self,
        key_store: KeyStore,
        session: Optional[SessionKeyCache] = None,
        context: Optional[KeyContext] = None,
        config: Optional[EncryptionConfig] = None,
    ):
        self._store = key_store
        self._config = config or EncryptionConfig()
        self._session = session if session is not None else SessionKeyCache(
            SessionData(max_age=self._config.session_ttl)
        )
        self._context = context if context is not None else KeyContext()
        # the session tier takes the key when the durable write fails
        self._store.add_fallback(self._session)
        # entries vanish once no caller holds or waits on the lock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @property
    def context(self) -> KeyContext:
        return self._context

    @property
    def session(self) -> SessionKeyCache:
        return self._session

    def _lock_for(self, uid: str) -> asyncio.Lock:
        lock = self._locks.get(uid)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[uid] = lock
        return lock

    # ------------------------------------------------------------------
    # Durable tier
    # ------------------------------------------------------------------

    async def get_user_master_key(self, uid: str) -> str:
        """Return the durable key of uid, creating one if absent or expired.

        Creation is serialized per uid and written with insert-if-absent,
        so concurrent first-time callers all receive the same key.

        Raises:
            KeyUnavailable: If uid is empty or no sink accepted a new key.
        """
        if not uid:
            raise KeyUnavailable("A user id is required to obtain a master key")
        async with self._lock_for(uid):
            key = await self._store.get(uid)
            if key:
                logger.debug("Durable key hit for user=%s", uid)
                return key
            candidate = generate_master_key()
            try:
                key = await self._store.put_if_absent(
                    uid, candidate, self._config.key_ttl_hours,
                )
            except StorageFailure as err:
                raise KeyUnavailable(
                    f"Could not persist a master key for user {uid}"
                ) from err
            if key == candidate:
                logger.info("Created master key for user=%s", uid)
            return key

    # ------------------------------------------------------------------
    # Session tier
    # ------------------------------------------------------------------

    async def _restore_from_session(self, uid: str) -> bool:
        """Promote a session-tier key into the process tier.

        Accepts an unmarked key or one marked for the same uid, and
        mirrors it into the durable tier.
        """
        key, owner = self._session.get()
        if not key or (owner is not None and owner != uid):
            return False
        self._context.set(key, uid)
        self._session.store(key, uid)
        try:
            await self._store.put(uid, key, self._config.key_ttl_hours)
        except StorageFailure as err:
            logger.warning(
                "Could not mirror session key of user=%s to durable tier: %s",
                uid, err,
            )
        logger.debug("Restored key for user=%s from session tier", uid)
        return True

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def initialize_encryption(self, uid: str) -> bool:
        """Make a key active for uid. Called once per session/login.

        Returns:
            True when a key is active, False when none could be obtained
            (the caller decides whether to re-authenticate or continue
            without encryption). Never raises.
        """
        if self._context.key and self._context.uid in (None, uid):
            return True
        try:
            if await self._restore_from_session(uid):
                return True
            key = await self.get_user_master_key(uid)
        except Exception as err:
            logger.error("Encryption initialization failed for user=%s: %s", uid, err)
            return False
        if not key:
            return False
        self.store_encryption_key(key, uid)
        logger.info("Encryption initialized for user=%s", uid)
        return True

    async def check_and_restore_encryption(self, uid: str) -> bool:
        """Idempotent: process hit, else session restore, else full init."""
        if self._context.matches(uid):
            return True
        try:
            if await self._restore_from_session(uid):
                return True
        except Exception as err:
            logger.warning("Session restore failed for user=%s: %s", uid, err)
        return await self.initialize_encryption(uid)

    async def active_key(self, uid: str) -> str:
        """Return the active key of uid, initializing it if needed.

        Raises:
            KeyUnavailable: If no key could be obtained.
        """
        if not await self.check_and_restore_encryption(uid):
            raise KeyUnavailable(f"No encryption key available for user {uid}")
        return self._context.key

    def store_encryption_key(self, key: str, uid: Optional[str] = None) -> None:
        """Set the process and session tiers explicitly."""
        self._context.set(key, uid)
        self._session.store(key, uid)

    def get_encryption_key(self) -> Optional[str]:
        if self._context.key:
            return self._context.key
        key, _ = self._session.get()
        return key

    def is_encryption_available(self) -> bool:
        return bool(self.get_encryption_key())

    def clear_encryption_key(self) -> None:
        """Ordinary sign-out: drop process and session tiers.

        The durable record stays, so the same key comes back on the next
        sign-in.
        """
        self._context.clear()
        self._session.clear()
        logger.debug("Cleared cached encryption key")

    async def permanently_delete_encryption_key(self, uid: str) -> None:
        """Account deletion: drop every tier, including the durable record.

        Data encrypted with the old key becomes unreadable.
        """
        self.clear_encryption_key()
        await self._store.delete(uid)
        logger.info("Permanently deleted encryption key of user=%s", uid)
