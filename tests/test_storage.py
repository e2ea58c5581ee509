"""
Tests for storage backends and transaction support
"""

import pytest

from token_ledger.storage import InMemoryStorage, SQLiteStorage, create_storage


def exercise_basic_operations(storage):
    storage.save("balances", "alice", {"account": "alice", "balance": "10"})
    storage.save("balances", "bob", {"account": "bob", "balance": "0"})

    assert storage.load("balances", "alice") == {"account": "alice", "balance": "10"}
    assert storage.load("balances", "nobody") is None
    assert storage.exists("balances", "bob")
    assert not storage.exists("balances", "nobody")
    assert storage.count("balances") == 2
    assert len(storage.load_all("balances")) == 2
    assert storage.find("balances", {"balance": "0"}) == [{"account": "bob", "balance": "0"}]

    storage.save("balances", "alice", {"account": "alice", "balance": "3"})
    assert storage.load("balances", "alice")["balance"] == "3"
    assert storage.count("balances") == 2

    assert storage.delete("balances", "alice")
    assert not storage.delete("balances", "alice")
    storage.clear_table("balances")
    assert storage.count("balances") == 0


class TestInMemoryStorage:
    """Test the in-memory backend"""

    def test_basic_operations(self):
        """Test CRUD operations"""
        exercise_basic_operations(InMemoryStorage())

    def test_load_returns_copy(self):
        """Test that callers cannot mutate stored records"""
        storage = InMemoryStorage()
        storage.save("t", "1", {"value": "a"})

        storage.load("t", "1")["value"] = "b"

        assert storage.load("t", "1") == {"value": "a"}

    def test_find_null_values(self):
        """Test matching on None"""
        storage = InMemoryStorage()
        storage.save("t", "1", {"sender": None})
        storage.save("t", "2", {"sender": "alice"})
        storage.save("t", "3", {"owner": "alice"})

        assert storage.find("t", {"sender": None}) == [{"sender": None}]

    def test_atomic_commit(self):
        """Test that writes in a committed block are kept"""
        storage = InMemoryStorage()

        with storage.atomic():
            storage.save("t", "1", {"value": "a"})

        assert storage.exists("t", "1")

    def test_atomic_rollback(self):
        """Test that an exception restores the data"""
        storage = InMemoryStorage()
        storage.save("t", "1", {"value": "a"})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("t", "1", {"value": "b"})
                storage.save("t", "2", {"value": "c"})
                raise RuntimeError("boom")

        assert storage.load("t", "1") == {"value": "a"}
        assert not storage.exists("t", "2")

    def test_nested_atomic_rolls_back_outer(self):
        """Test that the outermost rollback undoes inner committed blocks"""
        storage = InMemoryStorage()

        with pytest.raises(RuntimeError):
            with storage.atomic():
                with storage.atomic():
                    storage.save("t", "1", {"value": "a"})
                raise RuntimeError("boom")

        assert not storage.exists("t", "1")

    def test_rollback_restores_deleted_and_cleared_records(self):
        """Test that deletes and table clears are undone as well"""
        storage = InMemoryStorage()
        storage.save("t", "1", {"value": "a"})
        storage.save("u", "1", {"value": "b"})
        storage.save("u", "2", {"value": "c"})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.delete("t", "1")
                storage.save("u", "2", {"value": "changed"})
                storage.clear_table("u")
                storage.save("u", "3", {"value": "d"})
                raise RuntimeError("boom")

        assert storage.load("t", "1") == {"value": "a"}
        assert storage.load("u", "1") == {"value": "b"}
        assert storage.load("u", "2") == {"value": "c"}
        assert not storage.exists("u", "3")

    def test_rollback_leaves_untouched_records(self):
        """Test that records outside the failed block keep their values"""
        storage = InMemoryStorage()
        storage.save("t", "kept", {"value": "a"})

        with storage.atomic():
            storage.save("t", "committed", {"value": "b"})
        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("t", "discarded", {"value": "c"})
                raise RuntimeError("boom")

        assert storage.count("t") == 2
        assert storage.load("t", "committed") == {"value": "b"}


class TestSQLiteStorage:
    """Test the SQLite backend"""

    def test_basic_operations(self):
        """Test CRUD operations"""
        exercise_basic_operations(SQLiteStorage(":memory:"))

    def test_persistence_across_connections(self, tmp_path):
        """Test that data survives reopening the file"""
        db_path = tmp_path / "ledger.db"
        storage = SQLiteStorage(db_path)
        storage.save("balances", "alice", {"account": "alice", "balance": "10"})
        storage.close()

        reopened = SQLiteStorage(db_path)
        assert reopened.load("balances", "alice") == {"account": "alice", "balance": "10"}
        reopened.close()

    def test_atomic_rollback(self, tmp_path):
        """Test that an exception discards uncommitted writes"""
        storage = SQLiteStorage(tmp_path / "ledger.db")
        storage.save("t", "1", {"value": "a"})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("t", "1", {"value": "b"})
                raise RuntimeError("boom")

        assert storage.load("t", "1") == {"value": "a"}

    def test_load_all_keeps_insertion_order(self):
        """Test ordering of records written in quick succession"""
        storage = SQLiteStorage(":memory:")
        for i in range(5):
            storage.save("t", f"{i:03d}", {"sequence": i})

        assert [r["sequence"] for r in storage.load_all("t")] == [0, 1, 2, 3, 4]

    def test_update_keeps_position(self):
        """Test that rewriting a record does not move it to the end"""
        storage = SQLiteStorage(":memory:")
        storage.save("t", "a", {"value": 1})
        storage.save("t", "b", {"value": 2})
        storage.save("t", "a", {"value": 3})

        assert storage.load_all("t") == [{"value": 3}, {"value": 2}]
        assert storage.count("t") == 2


class TestCreateStorage:
    """Test backend selection from a URL"""

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_url(self, tmp_path):
        storage = create_storage(f"sqlite:///{tmp_path / 'ledger.db'}")

        assert isinstance(storage, SQLiteStorage)
        assert storage.db_path == str(tmp_path / "ledger.db")

    def test_sqlite_memory_url(self):
        storage = create_storage("sqlite://")

        assert isinstance(storage, SQLiteStorage)
        assert storage.db_path == ":memory:"

    def test_unsupported_url(self):
        with pytest.raises(ValueError, match="Unsupported database URL"):
            create_storage("postgresql://localhost/ledger")
