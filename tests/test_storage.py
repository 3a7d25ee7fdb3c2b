"""
Tests for storage backends and unit-of-work support
"""

import pytest
import tempfile
import os
from datetime import datetime, timezone

from loan_servicing.storage import (
    InMemoryStorage, SQLiteStorage, unit_of_work, storage_from_url
)
from loan_servicing.exceptions import StorageError, ValidationError


test_data = {
    "id": "test_001",
    "name": "Test Record",
    "amount": "100.50",
    "created_at": datetime.now(timezone.utc).isoformat(),
    "updated_at": datetime.now(timezone.utc).isoformat()
}


class TestInMemoryStorage:

    def test_basic_operations(self):
        storage = InMemoryStorage()

        storage.save("test_table", "record_1", test_data)
        assert storage.load("test_table", "record_1") == test_data
        assert storage.exists("test_table", "record_1")
        assert not storage.exists("test_table", "missing")

        storage.save("test_table", "record_2", {"id": "record_2", "name": "Other"})
        assert storage.count("test_table") == 2
        assert len(storage.find("test_table", {"name": "Other"})) == 1

        assert storage.delete("test_table", "record_1")
        assert not storage.delete("test_table", "record_1")

        storage.clear_table("test_table")
        assert storage.count("test_table") == 0

    def test_loaded_records_are_copies(self):
        storage = InMemoryStorage()
        storage.save("t", "1", {"id": "1", "value": "a"})
        loaded = storage.load("t", "1")
        loaded["value"] = "b"
        assert storage.load("t", "1")["value"] == "a"

    def test_atomic_commit(self):
        storage = InMemoryStorage()
        with storage.atomic():
            storage.save("t", "1", {"id": "1"})
            storage.save("t", "2", {"id": "2"})
        assert storage.count("t") == 2
        assert not storage.in_transaction

    def test_atomic_rollback(self):
        storage = InMemoryStorage()
        storage.save("t", "1", {"id": "1", "value": "original"})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("t", "1", {"id": "1", "value": "changed"})
                storage.save("t", "2", {"id": "2"})
                raise RuntimeError("boom")

        assert storage.load("t", "1")["value"] == "original"
        assert not storage.exists("t", "2")

    def test_nested_atomic_joins_outer_unit(self):
        storage = InMemoryStorage()

        with pytest.raises(RuntimeError):
            with storage.atomic():
                with storage.atomic():
                    storage.save("t", "inner", {"id": "inner"})
                assert storage.in_transaction
                raise RuntimeError("outer fails after inner finished")

        assert not storage.exists("t", "inner")


class TestSQLiteStorage:

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        self.storage = SQLiteStorage(self.db_path)

    def teardown_method(self):
        self.storage.close()

    def test_basic_operations(self):
        self.storage.save("test_table", "record_1", test_data)
        assert self.storage.load("test_table", "record_1") == test_data
        assert self.storage.exists("test_table", "record_1")
        assert self.storage.count("test_table") == 1
        assert self.storage.find("test_table", {"name": "Test Record"}) == [test_data]
        assert self.storage.delete("test_table", "record_1")
        assert self.storage.load("test_table", "record_1") is None

    def test_persistence(self):
        self.storage.save("t", "1", {"id": "1", "loan_id": "L1"})
        self.storage.close()

        self.storage = SQLiteStorage(self.db_path)
        assert self.storage.find("t", {"loan_id": "L1"}) == [{"id": "1", "loan_id": "L1"}]

    def test_atomic_rollback(self):
        self.storage.save("t", "1", {"id": "1", "value": "original"})

        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.storage.save("t", "1", {"id": "1", "value": "changed"})
                self.storage.save("t", "2", {"id": "2"})
                raise RuntimeError("boom")

        assert self.storage.load("t", "1")["value"] == "original"
        assert not self.storage.exists("t", "2")

    def test_table_created_in_rolled_back_unit(self):
        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.storage.save("fresh", "1", {"id": "1"})
                raise RuntimeError("boom")

        assert self.storage.count("fresh") == 0
        self.storage.save("fresh", "2", {"id": "2"})
        assert self.storage.count("fresh") == 1


class TestUnitOfWork:

    def test_wraps_backend_failures(self):
        storage = InMemoryStorage()
        with pytest.raises(StorageError) as exc_info:
            with unit_of_work(storage, "Test write"):
                storage.save("t", "1", {"id": "1"})
                raise OSError("disk full")

        assert "Test write failed" in str(exc_info.value)
        assert isinstance(exc_info.value.cause, OSError)
        assert not storage.exists("t", "1")

    def test_engine_errors_pass_through(self):
        storage = InMemoryStorage()
        with pytest.raises(ValidationError):
            with unit_of_work(storage, "Test write"):
                storage.save("t", "1", {"id": "1"})
                raise ValidationError("bad input")
        assert not storage.exists("t", "1")


class TestStorageFromUrl:

    def test_memory(self):
        assert isinstance(storage_from_url("memory://"), InMemoryStorage)

    def test_sqlite(self):
        storage = storage_from_url("sqlite://")
        assert isinstance(storage, SQLiteStorage)
        assert storage.db_path == ":memory:"
        storage.close()

    def test_sqlite_file(self):
        temp_dir = tempfile.mkdtemp()
        path = os.path.join(temp_dir, "x.db")
        storage = storage_from_url(f"sqlite:///{path}")
        assert isinstance(storage, SQLiteStorage)
        storage.close()

    def test_unsupported(self):
        with pytest.raises(ValueError):
            storage_from_url("postgresql://localhost/db")
