"""
Short-lived key/value state with expiry.

Used for OAuth CSRF state tokens: a value is written when an authorization
flow starts and consumed exactly once when the provider redirects back.

Tiers:
    - SQLiteStateStore: durable, shared by every process using the database
    - MemoryStateStore: process-local; does not survive a restart and is not
      visible to other instances of the service
    - TieredStateStore: writes and reads the durable tier, falling back to
      the local tier when the durable tier fails. Callers cannot tell which
      tier served a value.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from recipevault.storage.recipe_store import StorageError

logger = logging.getLogger(__name__)

CREATE_STATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS oauth_states (
    key TEXT PRIMARY KEY,
    value_json TEXT NOT NULL,
    expires_at REAL NOT NULL
);
"""


class StateStore(ABC):
    """Interface for single-use values with a time to live."""

    @abstractmethod
    def put(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        """Store a value that expires after ttl_seconds."""
        pass

    @abstractmethod
    def pop(self, key: str) -> dict[str, Any] | None:
        """Remove and return a value, or None if missing or expired."""
        pass


class MemoryStateStore(StateStore):
    """Process-local state store."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._values: dict[str, tuple[dict[str, Any], float]] = {}
        self._lock = threading.Lock()

    def put(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        with self._lock:
            self._purge_expired()
            self._values[key] = (value, self._clock() + ttl_seconds)

    def pop(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            entry = self._values.pop(key, None)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            return None
        return value

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [k for k, (_, expires_at) in self._values.items() if expires_at <= now]
        for key in expired:
            del self._values[key]


class SQLiteStateStore(StateStore):
    """Durable state store kept in the RecipeVault database."""

    def __init__(self, db_path: Path | str, clock: Callable[[], float] = time.time) -> None:
        self.db_path = Path(db_path)
        self._clock = clock
        with self._get_connection() as conn:
            conn.executescript(CREATE_STATE_TABLE_SQL)

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        try:
            conn = sqlite3.connect(
                str(self.db_path),
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open state store: {e}") from e
        try:
            yield conn
        finally:
            conn.close()

    def put(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        now = self._clock()
        with self._get_connection() as conn:
            try:
                conn.execute("DELETE FROM oauth_states WHERE expires_at <= ?", (now,))
                conn.execute(
                    "INSERT OR REPLACE INTO oauth_states (key, value_json, expires_at) "
                    "VALUES (?, ?, ?)",
                    (key, json.dumps(value), now + ttl_seconds),
                )
            except sqlite3.Error as e:
                raise StorageError(f"Failed to store state: {e}") from e

    def pop(self, key: str) -> dict[str, Any] | None:
        with self._get_connection() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    "SELECT value_json, expires_at FROM oauth_states WHERE key = ?", (key,)
                ).fetchone()
                conn.execute("DELETE FROM oauth_states WHERE key = ?", (key,))
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise StorageError(f"Failed to read state: {e}") from e

        if row is None or row[1] <= self._clock():
            return None
        value: dict[str, Any] = json.loads(row[0])
        return value


class TieredStateStore(StateStore):
    """
    Durable store with a process-local fallback.

    If the durable tier raises StorageError, the value is kept in the local
    tier instead and a warning is logged. Values held only locally are lost
    on restart and are not visible to other service instances.
    """

    def __init__(self, durable: StateStore, local: StateStore | None = None) -> None:
        self.durable = durable
        self.local = local or MemoryStateStore()

    def put(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        try:
            self.durable.put(key, value, ttl_seconds)
        except StorageError as e:
            logger.warning(f"Durable state store unavailable, using process-local store: {e}")
            self.local.put(key, value, ttl_seconds)

    def pop(self, key: str) -> dict[str, Any] | None:
        try:
            value = self.durable.pop(key)
        except StorageError as e:
            logger.warning(f"Durable state store unavailable, reading process-local store: {e}")
            value = None
        if value is not None:
            return value
        return self.local.pop(key)
