"""
Tests for storage backends and transaction support
"""

import pytest
import tempfile
import threading
import os
from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from fincore.storage import (
    InMemoryStorage, SQLiteStorage, StorageRecord, create_storage
)


# Test data
test_data = {
    "id": "test_001",
    "name": "Test Record",
    "amount": "100.50",
    "created_at": datetime.now(timezone.utc).isoformat(),
    "updated_at": datetime.now(timezone.utc).isoformat()
}


class Colour(Enum):
    RED = "red"
    BLUE = "blue"


@dataclass
class SampleRecord(StorageRecord):
    amount: Decimal
    colour: Colour
    due: date
    settled_at: Optional[datetime] = None
    note: Optional[str] = None


class TestStorageRecord:
    """Test dictionary conversion of records"""

    def test_round_trip_restores_types(self):
        """Decimal, Enum, date and datetime fields survive to_dict/from_dict"""
        now = datetime.now(timezone.utc)
        record = SampleRecord(
            id="r1", created_at=now, updated_at=now,
            amount=Decimal("12.50"), colour=Colour.BLUE, due=date(2024, 3, 31),
            settled_at=now
        )

        data = record.to_dict()
        assert data["amount"] == "12.50"
        assert data["colour"] == "blue"
        assert data["due"] == "2024-03-31"

        restored = SampleRecord.from_dict(data)
        assert restored == record

    def test_unknown_keys_are_ignored(self):
        """Storage bookkeeping keys do not break record construction"""
        now = datetime.now(timezone.utc)
        record = SampleRecord(
            id="r2", created_at=now, updated_at=now,
            amount=Decimal("1.00"), colour=Colour.RED, due=date(2024, 1, 1)
        )
        data = record.to_dict()
        data["deleted_at"] = now.isoformat()

        restored = SampleRecord.from_dict(data)
        assert restored.id == "r2"
        assert restored.settled_at is None


class TestInMemoryStorage:
    """Test InMemoryStorage operations and transactions"""

    def test_basic_operations(self):
        """Test basic CRUD operations"""
        storage = InMemoryStorage()

        storage.save("test_table", "record_1", test_data)
        assert storage.load("test_table", "record_1") == test_data
        assert storage.exists("test_table", "record_1")
        assert not storage.exists("test_table", "non_existent")

        storage.save("test_table", "record_2", {"id": "record_2", "name": "Other"})
        assert len(storage.load_all("test_table")) == 2

        results = storage.find("test_table", {"name": "Test Record"})
        assert len(results) == 1
        assert results[0]["id"] == "test_001"

        assert storage.count("test_table") == 2
        assert storage.delete("test_table", "record_1")
        assert not storage.delete("test_table", "record_1")
        assert storage.count("test_table") == 1

    def test_loaded_records_are_copies(self):
        """Mutating a loaded dict does not change stored data"""
        storage = InMemoryStorage()
        storage.save("t", "a", {"id": "a", "balance": "10.00"})

        loaded = storage.load("t", "a")
        loaded["balance"] = "999.00"

        assert storage.load("t", "a")["balance"] == "10.00"

    def test_find_matches_enum_and_decimal_filters(self):
        """Filter values are converted the same way records are"""
        storage = InMemoryStorage()
        storage.save("t", "a", {"id": "a", "colour": "red", "amount": "5.00"})
        storage.save("t", "b", {"id": "b", "colour": "blue", "amount": "5.00"})

        assert [r["id"] for r in storage.find("t", {"colour": Colour.RED})] == ["a"]
        assert len(storage.find("t", {"amount": Decimal("5.00")})) == 2

    def test_rollback_restores_previous_state(self):
        """An exception inside atomic() undoes every write of the unit"""
        storage = InMemoryStorage()
        storage.save("accounts", "a", {"id": "a", "balance": "100.00"})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("accounts", "a", {"id": "a", "balance": "0.00"})
                storage.save("accounts", "b", {"id": "b", "balance": "100.00"})
                raise RuntimeError("boom")

        assert storage.load("accounts", "a")["balance"] == "100.00"
        assert storage.load("accounts", "b") is None
        assert not storage.in_transaction

    def test_commit_keeps_writes(self):
        storage = InMemoryStorage()
        with storage.atomic():
            storage.save("t", "a", {"id": "a"})
        assert storage.exists("t", "a")
        assert not storage.in_transaction

    def test_nested_rollback_only_undoes_inner_unit(self):
        """Inner units behave as savepoints"""
        storage = InMemoryStorage()

        with storage.atomic():
            storage.save("t", "outer", {"id": "outer"})
            with pytest.raises(ValueError):
                with storage.atomic():
                    storage.save("t", "inner", {"id": "inner"})
                    raise ValueError("inner failure")

        assert storage.exists("t", "outer")
        assert not storage.exists("t", "inner")

    def test_outer_rollback_undoes_committed_inner_unit(self):
        storage = InMemoryStorage()

        with pytest.raises(RuntimeError):
            with storage.atomic():
                with storage.atomic():
                    storage.save("t", "inner", {"id": "inner"})
                raise RuntimeError("outer failure")

        assert not storage.exists("t", "inner")

    def test_soft_delete_hides_record_from_find(self):
        storage = InMemoryStorage()
        storage.save("t", "a", {"id": "a", "kind": "x"})
        storage.save("t", "b", {"id": "b", "kind": "x"})

        assert storage.soft_delete("t", "a")
        assert not storage.soft_delete("t", "missing")

        assert [r["id"] for r in storage.find("t", {"kind": "x"})] == ["b"]
        assert len(storage.find("t", {"kind": "x"}, include_deleted=True)) == 2
        # Still loadable by id
        assert storage.load("t", "a")["deleted_at"] is not None

    def test_next_sequence_increments_per_name(self):
        storage = InMemoryStorage()

        assert storage.next_sequence("loan:2024") == 1
        assert storage.next_sequence("loan:2024") == 2
        assert storage.next_sequence("loan:2025") == 1

    def test_next_sequence_unique_under_concurrency(self):
        """Concurrent callers never receive the same value"""
        storage = InMemoryStorage()
        values = []
        lock = threading.Lock()

        def worker():
            for _ in range(25):
                value = storage.next_sequence("txn:20240101")
                with lock:
                    values.append(value)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(values) == list(range(1, 101))


class TestSQLiteStorage:
    """Test SQLiteStorage persistence and transactions"""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "fincore_test.db")
        self.storage = SQLiteStorage(self.db_path)

    def teardown_method(self):
        self.storage.close()

    def test_basic_operations(self):
        self.storage.save("test_table", "record_1", test_data)
        assert self.storage.load("test_table", "record_1") == test_data
        assert self.storage.exists("test_table", "record_1")
        assert self.storage.count("test_table") == 1
        assert self.storage.find("test_table", {"name": "Test Record"})[0]["id"] == "test_001"
        assert self.storage.delete("test_table", "record_1")
        assert self.storage.load("test_table", "record_1") is None

    def test_persists_across_connections(self):
        self.storage.save("t", "a", {"id": "a", "value": "1"})
        self.storage.close()

        reopened = SQLiteStorage(self.db_path)
        try:
            assert reopened.load("t", "a") == {"id": "a", "value": "1"}
        finally:
            reopened.close()
        self.storage = SQLiteStorage(self.db_path)

    def test_rollback(self):
        self.storage.save("t", "a", {"id": "a", "balance": "100.00"})

        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.storage.save("t", "a", {"id": "a", "balance": "0.00"})
                raise RuntimeError("boom")

        assert self.storage.load("t", "a")["balance"] == "100.00"

    def test_table_created_in_rolled_back_unit(self):
        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.storage.save("fresh", "a", {"id": "a"})
                raise RuntimeError("boom")

        assert self.storage.load("fresh", "a") is None
        self.storage.save("fresh", "b", {"id": "b"})
        assert self.storage.exists("fresh", "b")

    def test_nested_savepoint_rollback(self):
        with self.storage.atomic():
            self.storage.save("t", "outer", {"id": "outer"})
            with pytest.raises(ValueError):
                with self.storage.atomic():
                    self.storage.save("t", "inner", {"id": "inner"})
                    raise ValueError("inner failure")

        assert self.storage.exists("t", "outer")
        assert not self.storage.exists("t", "inner")

    def test_next_sequence(self):
        assert self.storage.next_sequence("loan:2024") == 1
        assert self.storage.next_sequence("loan:2024") == 2
        assert self.storage.next_sequence("other") == 1

    def test_soft_delete(self):
        self.storage.save("t", "a", {"id": "a", "kind": "x"})
        self.storage.soft_delete("t", "a")
        assert self.storage.find("t", {"kind": "x"}) == []
        assert len(self.storage.load_all("t", include_deleted=True)) == 1


class TestCreateStorage:
    """Test backend selection by URL"""

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_urls(self):
        storage = create_storage("sqlite://")
        assert isinstance(storage, SQLiteStorage)
        assert storage.db_path == ":memory:"
        storage.close()

        temp_dir = tempfile.mkdtemp()
        path = os.path.join(temp_dir, "x.db")
        storage = create_storage(f"sqlite:///{path}")
        assert storage.db_path == path
        storage.close()

    def test_unsupported_url(self):
        with pytest.raises(ValueError, match="Unsupported database URL"):
            create_storage("mongodb://localhost")
