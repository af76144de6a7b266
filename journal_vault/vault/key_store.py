"""
KeyStore — Durable, per-user master key records with expiration.

Backed by an embedded SQLite database. Every call runs in a worker thread
(``asyncio.to_thread``) and calls are serialized on one connection, so the
event loop never blocks on disk I/O.

Writes go through an ordered list of sinks: the durable tier first, then any
fallback sinks (normally the session key cache). The first sink that accepts
the key wins; a write only fails when every sink failed.

Security Note:
    Never log key material. Only log user ids and record ids.
"""
import time
import asyncio
import sqlite3
import logging
from typing import Any, Optional, Protocol
from collections.abc import Callable

from pydantic import BaseModel

from ..conf import KEY_RECORD_PREFIX
from ..exceptions import StorageFailure

logger = logging.getLogger("journal.vault")

# ---------------------------------------------------------------------------
# SQL statements
# ---------------------------------------------------------------------------

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS key_records (
    id TEXT PRIMARY KEY,
    uid TEXT NOT NULL UNIQUE,
    key TEXT NOT NULL,
    expiration_time INTEGER NOT NULL,
    created_at INTEGER NOT NULL
)
"""

_UPSERT_KEY = """
INSERT INTO key_records (id, uid, key, expiration_time, created_at)
VALUES (?, ?, ?, ?, ?)
ON CONFLICT (uid)
DO UPDATE SET key = excluded.key,
              expiration_time = excluded.expiration_time,
              created_at = excluded.created_at
"""

_INSERT_IF_ABSENT = """
INSERT INTO key_records (id, uid, key, expiration_time, created_at)
VALUES (?, ?, ?, ?, ?)
ON CONFLICT (uid) DO NOTHING
"""

_DELETE_EXPIRED = """
DELETE FROM key_records WHERE uid = ? AND expiration_time <= ?
"""

_SELECT_KEY = """
SELECT id, uid, key, expiration_time, created_at
FROM key_records
WHERE uid = ?
"""

_DELETE_KEY = """
DELETE FROM key_records WHERE uid = ?
"""


def record_id(uid: str) -> str:
    """Durable record id for a user."""
    return f"{KEY_RECORD_PREFIX}{uid}"


class KeyRecord(BaseModel):
    """Durable tier record of a user's master key (timestamps in epoch ms)."""

    id: str
    uid: str
    key: str
    expiration_time: int
    created_at: int

    def is_expired(self, now_ms: int) -> bool:
        return self.expiration_time <= now_ms


class KeySink(Protocol):
    """A place a master key can be written to when the durable tier fails."""

    def store(self, key: str, uid: Optional[str] = None) -> None:
        ...


class KeyStore:
    """SQLite-backed durable key tier.

    Args:
        path: SQLite database path, ``":memory:"`` for a private database.
        fallbacks: Ordered sinks tried when the durable write fails.
        clock: Returns the current time in seconds (``time.time``).
    """

    def __init__(
        self,
        path: str = ":memory:",
        fallbacks: Optional[list[KeySink]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._path = path
        self._fallbacks: list[KeySink] = list(fallbacks or [])
        self._clock = clock
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = asyncio.Lock()

    def add_fallback(self, sink: KeySink) -> None:
        """Append a fallback sink; a sink already registered is skipped."""
        if any(existing is sink for existing in self._fallbacks):
            return
        self._fallbacks.append(sink)

    @property
    def fallbacks(self) -> list[KeySink]:
        return list(self._fallbacks)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # ------------------------------------------------------------------
    # SQLite helpers
    # ------------------------------------------------------------------

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            conn = sqlite3.connect(self._path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            with conn:
                conn.execute(_CREATE_TABLE)
            self._conn = conn
        return self._conn

    async def _run(self, fn: Callable[[sqlite3.Connection], Any]) -> Any:
        """Run fn(conn) in a worker thread, one call at a time.

        Raises:
            StorageFailure: On any SQLite error.
        """
        def call():
            conn = self._connection()
            with conn:
                return fn(conn)

        async with self._lock:
            try:
                return await asyncio.to_thread(call)
            except sqlite3.Error as err:
                raise StorageFailure(f"Key store unavailable: {err}") from err

    # ------------------------------------------------------------------
    # Tiered writes
    # ------------------------------------------------------------------

    async def _write(
        self,
        uid: str,
        key: str,
        durable: Callable[[sqlite3.Connection], str],
    ) -> tuple[str, str]:
        """Try the durable tier, then every fallback sink in order.

        Returns:
            Tuple of (sink name, key now stored for uid).
        """
        errors: list[str] = []
        try:
            stored = await self._run(durable)
            return "durable", stored
        except StorageFailure as err:
            logger.warning(
                "Durable key write failed for user=%s, trying fallbacks: %s",
                uid, err,
            )
            errors.append(f"durable: {err}")
        for sink in self._fallbacks:
            name = type(sink).__name__
            try:
                sink.store(key, uid)
            except Exception as err:
                logger.warning("Key sink %s failed for user=%s: %s", name, uid, err)
                errors.append(f"{name}: {err}")
                continue
            logger.info("Key for user=%s kept in fallback sink %s", uid, name)
            return name, key
        raise StorageFailure(
            f"No key sink accepted the key for user {uid}: {'; '.join(errors)}"
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def put(self, uid: str, key: str, ttl_hours: int) -> str:
        """Persist the key for uid, replacing any previous record.

        Returns:
            Name of the sink that accepted the key ("durable" normally).
        """
        now = self._now_ms()
        expires = now + ttl_hours * 3600 * 1000

        def upsert(conn: sqlite3.Connection) -> str:
            conn.execute(_UPSERT_KEY, (record_id(uid), uid, key, expires, now))
            return key

        sink, _ = await self._write(uid, key, upsert)
        logger.debug("Stored key record for user=%s in %s", uid, sink)
        return sink

    async def put_if_absent(self, uid: str, key: str, ttl_hours: int) -> str:
        """Insert the key only if uid has no live record.

        An expired record is replaced. Runs in a single transaction, so
        concurrent callers for the same uid all get the same key back.

        Returns:
            The key stored for uid after the call (the winner).
        """
        now = self._now_ms()
        expires = now + ttl_hours * 3600 * 1000

        def insert(conn: sqlite3.Connection) -> str:
            conn.execute(_DELETE_EXPIRED, (uid, now))
            conn.execute(
                _INSERT_IF_ABSENT, (record_id(uid), uid, key, expires, now)
            )
            row = conn.execute(_SELECT_KEY, (uid,)).fetchone()
            return row["key"]

        _, stored = await self._write(uid, key, insert)
        return stored

    async def get_record(self, uid: str) -> Optional[KeyRecord]:
        """Return the raw record for uid, expired or not.

        Raises:
            StorageFailure: If the durable tier cannot be read.
        """
        def select(conn: sqlite3.Connection):
            return conn.execute(_SELECT_KEY, (uid,)).fetchone()

        row = await self._run(select)
        if row is None:
            return None
        return KeyRecord(**dict(row))

    async def get(self, uid: str) -> Optional[str]:
        """Return the live key for uid, or None.

        An expired record is deleted in the same transaction as the read,
        and only while it is still expired. Storage errors are logged and
        read as "no key".
        """
        now = self._now_ms()

        def select_live(conn: sqlite3.Connection):
            row = conn.execute(_SELECT_KEY, (uid,)).fetchone()
            if row is None:
                return None, False
            if row["expiration_time"] <= now:
                conn.execute(_DELETE_EXPIRED, (uid, now))
                return None, True
            return row["key"], False

        try:
            key, expired = await self._run(select_live)
        except StorageFailure as err:
            logger.error("Could not read key record for user=%s: %s", uid, err)
            return None
        if expired:
            logger.info("Key record for user=%s expired, removed", uid)
        return key

    async def delete(self, uid: str) -> bool:
        """Remove the record for uid unconditionally.

        Returns:
            True if a record was removed.
        """
        def remove(conn: sqlite3.Connection) -> int:
            return conn.execute(_DELETE_KEY, (uid,)).rowcount

        removed = await self._run(remove)
        logger.info("Deleted key record for user=%s (removed=%d)", uid, removed)
        return removed > 0

    async def close(self) -> None:
        async with self._lock:
            if self._conn is not None:
                await asyncio.to_thread(self._conn.close)
                self._conn = None
