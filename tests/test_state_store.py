"""Tests for the OAuth state stores."""

from __future__ import annotations

import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock

from recipevault.storage.recipe_store import StorageError
from recipevault.storage.state_store import (
    MemoryStateStore,
    SQLiteStateStore,
    TieredStateStore,
)


class FakeClock:
    """Settable time source."""

    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestMemoryStateStore(unittest.TestCase):
    """Tests for MemoryStateStore."""

    def setUp(self) -> None:
        self.clock = FakeClock()
        self.store = MemoryStateStore(clock=self.clock)

    def test_put_and_pop(self) -> None:
        self.store.put("state-1", {"account_id": "a"}, 60)
        self.assertEqual(self.store.pop("state-1"), {"account_id": "a"})

    def test_pop_is_single_use(self) -> None:
        """Test that a value can only be consumed once."""
        self.store.put("state-1", {"account_id": "a"}, 60)
        self.store.pop("state-1")
        self.assertIsNone(self.store.pop("state-1"))

    def test_expired_value(self) -> None:
        self.store.put("state-1", {"account_id": "a"}, 60)
        self.clock.now += 61
        self.assertIsNone(self.store.pop("state-1"))

    def test_missing_key(self) -> None:
        self.assertIsNone(self.store.pop("nope"))


class TestSQLiteStateStore(unittest.TestCase):
    """Tests for SQLiteStateStore."""

    def setUp(self) -> None:
        self.temp_dir = tempfile.mkdtemp()
        self.clock = FakeClock()
        self.db_path = Path(self.temp_dir) / "state.db"
        self.store = SQLiteStateStore(self.db_path, clock=self.clock)

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_put_and_pop(self) -> None:
        self.store.put("state-1", {"account_id": "a", "provider": "dropbox"}, 60)
        self.assertEqual(
            self.store.pop("state-1"), {"account_id": "a", "provider": "dropbox"}
        )
        self.assertIsNone(self.store.pop("state-1"))

    def test_shared_between_instances(self) -> None:
        """Test that another store on the same database sees the value."""
        self.store.put("state-1", {"account_id": "a"}, 60)
        other = SQLiteStateStore(self.db_path, clock=self.clock)
        self.assertEqual(other.pop("state-1"), {"account_id": "a"})
        self.assertIsNone(self.store.pop("state-1"))

    def test_expired_value(self) -> None:
        self.store.put("state-1", {"account_id": "a"}, 60)
        self.clock.now += 60
        self.assertIsNone(self.store.pop("state-1"))


class TestTieredStateStore(unittest.TestCase):
    """Tests for TieredStateStore."""

    def test_uses_durable_tier(self) -> None:
        durable = MemoryStateStore()
        local = MemoryStateStore()
        store = TieredStateStore(durable, local)

        store.put("k", {"v": 1}, 60)

        self.assertIsNone(local.pop("k"))
        self.assertEqual(store.pop("k"), {"v": 1})

    def test_falls_back_to_local_tier(self) -> None:
        """Test that values survive a failing durable tier."""
        durable = MagicMock()
        durable.put.side_effect = StorageError("disk full")
        durable.pop.side_effect = StorageError("disk full")
        store = TieredStateStore(durable, MemoryStateStore())

        with self.assertLogs("recipevault.storage.state_store", level="WARNING"):
            store.put("k", {"v": 1}, 60)
        with self.assertLogs("recipevault.storage.state_store", level="WARNING"):
            self.assertEqual(store.pop("k"), {"v": 1})

    def test_reads_local_when_durable_misses(self) -> None:
        durable = MemoryStateStore()
        local = MemoryStateStore()
        local.put("k", {"v": 2}, 60)
        store = TieredStateStore(durable, local)

        self.assertEqual(store.pop("k"), {"v": 2})


if __name__ == "__main__":
    unittest.main()
