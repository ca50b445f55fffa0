"""
Tests for storage backends and unit-of-work support
"""

import sqlite3
import tempfile
import threading
from pathlib import Path

import pytest

from minibank.errors import TransientStoreFailure
from minibank.storage import (
    InMemoryStorage, SQLiteStorage, PostgreSQLStorage, create_storage
)


test_data = {
    "id": "record_1",
    "name": "Test Record",
    "balance": 100
}


@pytest.fixture(params=["memory", "sqlite", "postgres"])
def storage(request, tmp_path):
    """Each test runs against every backend; PostgreSQL only when configured"""
    if request.param == "memory":
        backend = InMemoryStorage()
    elif request.param == "sqlite":
        backend = SQLiteStorage(tmp_path / "test.db")
    else:
        backend = request.getfixturevalue("postgres_factory")(tables=("test_table",))
    yield backend
    backend.close()


class TestBasicOperations:
    """Test CRUD operations shared by all backends"""

    def test_save_load_exists(self, storage):
        """Test save, load and exists"""
        storage.save("test_table", "record_1", test_data)

        assert storage.load("test_table", "record_1") == test_data
        assert storage.exists("test_table", "record_1")
        assert not storage.exists("test_table", "missing")
        assert storage.load("test_table", "missing") is None

    def test_load_returns_copy(self, storage):
        """Mutating a loaded record does not change the stored one"""
        storage.save("test_table", "record_1", test_data)

        loaded = storage.load("test_table", "record_1")
        loaded["balance"] = 999

        assert storage.load("test_table", "record_1")["balance"] == 100

    def test_find_count_delete_clear(self, storage):
        """Test find, count, delete and clear_table"""
        storage.save("test_table", "a", {"id": "a", "email": "a@example.com"})
        storage.save("test_table", "b", {"id": "b", "email": "b@example.com"})

        results = storage.find("test_table", {"email": "b@example.com"})
        assert len(results) == 1
        assert results[0]["id"] == "b"
        assert storage.count("test_table") == 2

        assert storage.delete("test_table", "a")
        assert not storage.delete("test_table", "a")
        assert storage.count("test_table") == 1

        storage.clear_table("test_table")
        assert storage.count("test_table") == 0

    def test_load_all_keeps_insertion_order(self, storage):
        """Records come back in the order they were first saved"""
        for i in range(5):
            storage.save("test_table", f"r{i}", {"id": f"r{i}", "n": i})

        assert [r["n"] for r in storage.load_all("test_table")] == [0, 1, 2, 3, 4]

    def test_insert_if_absent(self, storage):
        """Only the first insert of an id wins, the record is not overwritten"""
        assert storage.insert_if_absent("test_table", "claim", {"owner": "first"})
        assert not storage.insert_if_absent("test_table", "claim", {"owner": "second"})

        assert storage.load("test_table", "claim") == {"owner": "first"}
        assert storage.count("test_table") == 1

    def test_find_by_json_field(self, storage):
        """find matches on stored fields, including nested values"""
        storage.save("test_table", "a", {"id": "a", "kind": "x", "meta": {"tier": 1}})
        storage.save("test_table", "b", {"id": "b", "kind": "y", "meta": {"tier": 2}})
        storage.save("test_table", "c", {"id": "c", "kind": "x", "meta": {"tier": 2}})

        assert [r["id"] for r in storage.find("test_table", {"kind": "x"})] == ["a", "c"]
        assert [r["id"] for r in storage.find("test_table", {"meta": {"tier": 2}})] == ["b", "c"]
        assert storage.find("test_table", {"kind": "z"}) == []


class TestUnitOfWork:
    """Test atomic() commit, rollback and nesting"""

    def test_atomic_commits(self, storage):
        """Writes inside a successful unit are visible afterwards"""
        with storage.atomic():
            storage.save("test_table", "record_1", test_data)
            assert storage.in_transaction

        assert not storage.in_transaction
        assert storage.exists("test_table", "record_1")

    def test_atomic_rolls_back_on_error(self, storage):
        """Saves, updates and deletes are all undone on failure"""
        storage.save("test_table", "keep", {"id": "keep", "balance": 10})
        storage.save("test_table", "gone", {"id": "gone", "balance": 20})

        with pytest.raises(ValueError):
            with storage.atomic():
                storage.save("test_table", "keep", {"id": "keep", "balance": 0})
                storage.save("test_table", "new", {"id": "new"})
                storage.delete("test_table", "gone")
                raise ValueError("boom")

        assert storage.load("test_table", "keep")["balance"] == 10
        assert storage.exists("test_table", "gone")
        assert not storage.exists("test_table", "new")
        assert not storage.in_transaction

    def test_clear_table_rolls_back(self, storage):
        """clear_table inside a failed unit is undone"""
        storage.save("test_table", "a", {"id": "a"})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.clear_table("test_table")
                raise RuntimeError("boom")

        assert storage.count("test_table") == 1

    def test_nested_units_commit_once(self, storage):
        """An inner unit joins the outer one"""
        with storage.atomic():
            storage.save("test_table", "outer", {"id": "outer"})
            with storage.atomic():
                storage.save("test_table", "inner", {"id": "inner"})
            assert storage.in_transaction

        assert storage.exists("test_table", "outer")
        assert storage.exists("test_table", "inner")

    def test_failed_nested_unit_dooms_outer(self, storage):
        """Swallowing an inner failure still rolls the whole unit back"""
        with pytest.raises(TransientStoreFailure) as exc_info:
            with storage.atomic():
                storage.save("test_table", "outer", {"id": "outer"})
                try:
                    with storage.atomic():
                        storage.save("test_table", "inner", {"id": "inner"})
                        raise ValueError("inner failure")
                except ValueError:
                    pass

        assert exc_info.value.stage == "commit"
        assert not storage.exists("test_table", "outer")
        assert not storage.exists("test_table", "inner")

    def test_insert_if_absent_rolls_back(self, storage):
        """A claim made in a failed unit is released"""
        with pytest.raises(RuntimeError):
            with storage.atomic():
                assert storage.insert_if_absent("test_table", "claim", {"owner": "first"})
                raise RuntimeError("boom")

        assert storage.insert_if_absent("test_table", "claim", {"owner": "second"})
        assert storage.load("test_table", "claim") == {"owner": "second"}

    def test_load_for_update_inside_unit(self, storage):
        """Locked reads see the unit's own writes"""
        storage.save("test_table", "record_1", test_data)

        with storage.atomic():
            locked = storage.load_for_update("test_table", "record_1")
            storage.save("test_table", "record_1", dict(locked, balance=locked["balance"] + 1))
            assert storage.load_for_update("test_table", "record_1")["balance"] == 101
            assert storage.load_for_update("test_table", "missing") is None

        assert storage.load("test_table", "record_1")["balance"] == 101

    def test_commit_outside_unit_is_an_error(self, storage):
        """commit() and rollback() need an open unit"""
        with pytest.raises(RuntimeError):
            storage.commit()
        with pytest.raises(RuntimeError):
            storage.rollback()


class FailingBeginStorage(InMemoryStorage):
    def _begin(self):
        raise sqlite3.OperationalError("database is locked")


class FailingCommitStorage(InMemoryStorage):
    def _commit(self):
        raise sqlite3.OperationalError("disk I/O error")


class TestTransientFailures:
    """Infrastructure failures surface as TransientStoreFailure"""

    def test_begin_failure(self):
        """A unit that cannot begin raises and leaves no lock behind"""
        storage = FailingBeginStorage()

        with pytest.raises(TransientStoreFailure) as exc_info:
            with storage.atomic():
                pytest.fail("body must not run")

        assert exc_info.value.stage == "begin"
        assert not storage.in_transaction
        # Lock was released, plain operations still work
        storage.save("test_table", "a", {"id": "a"})
        assert storage.exists("test_table", "a")

    def test_commit_failure_rolls_back(self):
        """A failed commit undoes the unit's writes"""
        storage = FailingCommitStorage()

        with pytest.raises(TransientStoreFailure) as exc_info:
            with storage.atomic():
                storage.save("test_table", "a", {"id": "a"})

        assert exc_info.value.stage == "commit"
        assert isinstance(exc_info.value.__cause__, sqlite3.OperationalError)
        assert not storage.exists("test_table", "a")
        assert not storage.in_transaction


class TestSQLitePersistence:
    """SQLite specifics"""

    def test_data_survives_reopen(self):
        """Committed data is on disk"""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "persist.db"

            storage = SQLiteStorage(db_path)
            with storage.atomic():
                storage.save("test_table", "record_1", test_data)
            storage.close()

            reopened = SQLiteStorage(db_path)
            assert reopened.load("test_table", "record_1") == test_data
            reopened.close()

    def test_second_connection_sees_only_committed_data(self, tmp_path):
        """Another connection never observes an open unit's writes"""
        db_path = tmp_path / "shared.db"
        writer = SQLiteStorage(db_path)
        reader = SQLiteStorage(db_path)
        writer.save("test_table", "record_1", {"id": "record_1", "balance": 1})
        assert reader.load("test_table", "record_1")["balance"] == 1

        writer.begin_transaction()
        writer.save("test_table", "record_1", {"id": "record_1", "balance": 2})
        assert reader.load("test_table", "record_1")["balance"] == 1
        writer.commit()

        assert reader.load("test_table", "record_1")["balance"] == 2
        writer.close()
        reader.close()


class TestPostgreSQLLocking:
    """Row locks and id claims across two PostgreSQL connections"""

    def open_pair(self, postgres_factory):
        first = postgres_factory(tables=("test_table",))
        second = postgres_factory(clear=False)
        # Create the table on both connections before any unit is open
        first.count("test_table")
        second.count("test_table")
        return first, second

    def test_uncommitted_writes_invisible(self, postgres_factory):
        writer, reader = self.open_pair(postgres_factory)
        writer.save("test_table", "record_1", {"id": "record_1", "balance": 1})

        writer.begin_transaction()
        writer.save("test_table", "record_1", {"id": "record_1", "balance": 2})
        assert reader.load("test_table", "record_1")["balance"] == 1
        writer.rollback()

        assert reader.load("test_table", "record_1")["balance"] == 1

    def test_load_for_update_waits_for_holder(self, postgres_factory):
        """A second locking read blocks until the first unit commits"""
        first, second = self.open_pair(postgres_factory)
        first.save("test_table", "record_1", {"id": "record_1", "balance": 100})
        seen = []

        def second_unit():
            with second.atomic():
                seen.append(second.load_for_update("test_table", "record_1")["balance"])

        with first.atomic():
            first.load_for_update("test_table", "record_1")
            thread = threading.Thread(target=second_unit)
            thread.start()
            thread.join(timeout=0.5)
            assert thread.is_alive()
            first.save("test_table", "record_1", {"id": "record_1", "balance": 40})

        thread.join(timeout=10)
        assert seen == [40]

    def test_insert_if_absent_waits_for_other_claim(self, postgres_factory):
        """A competing claim on the same id loses once the first commits"""
        first, second = self.open_pair(postgres_factory)
        claimed = []

        def second_unit():
            with second.atomic():
                claimed.append(second.insert_if_absent("test_table", "claim", {"owner": "second"}))

        with first.atomic():
            assert first.insert_if_absent("test_table", "claim", {"owner": "first"})
            thread = threading.Thread(target=second_unit)
            thread.start()
            thread.join(timeout=0.5)
            assert thread.is_alive()

        thread.join(timeout=10)
        assert claimed == [False]
        assert second.load("test_table", "claim") == {"owner": "first"}


class TestCreateStorage:
    """Backend selection from database URLs"""

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_urls(self, tmp_path):
        in_memory = create_storage("sqlite://")
        assert isinstance(in_memory, SQLiteStorage)
        assert in_memory.db_path == ":memory:"

        db_file = tmp_path / "ledger.db"
        on_disk = create_storage(f"sqlite:///{db_file}")
        assert isinstance(on_disk, SQLiteStorage)
        assert on_disk.db_path == str(db_file)

        in_memory.close()
        on_disk.close()

    def test_postgres_url(self, monkeypatch):
        """PostgreSQL URLs go to the psycopg2 backend"""
        monkeypatch.setattr(PostgreSQLStorage, "_connect", lambda self: None)
        assert isinstance(create_storage("postgresql://user@localhost/ledger"), PostgreSQLStorage)

    def test_unknown_url(self):
        with pytest.raises(ValueError):
            create_storage("mysql://localhost/ledger")
