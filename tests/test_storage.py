"""
Test suite for storage backends

Covers record CRUD, filtering and transaction semantics for the in-memory
and SQLite backends.
"""

import pytest

from loan_ledger.storage import InMemoryStorage, SQLiteStorage, create_storage


@pytest.fixture(params=["memory", "sqlite"])
def backend(request, tmp_path):
    if request.param == "memory":
        store = InMemoryStorage()
    else:
        store = SQLiteStorage(tmp_path / "ledger.db")
    yield store
    store.close()


class TestRecords:
    """Test basic record operations"""

    def test_save_and_load(self, backend):
        backend.save("loans", "l1", {"id": "l1", "amount": "100.00"})
        assert backend.load("loans", "l1") == {"id": "l1", "amount": "100.00"}
        assert backend.exists("loans", "l1")
        assert backend.count("loans") == 1

    def test_load_missing(self, backend):
        assert backend.load("loans", "missing") is None
        assert not backend.exists("loans", "missing")

    def test_save_replaces(self, backend):
        backend.save("loans", "l1", {"id": "l1", "status": "active"})
        backend.save("loans", "l1", {"id": "l1", "status": "paid_off"})
        assert backend.load("loans", "l1")["status"] == "paid_off"
        assert backend.count("loans") == 1

    def test_delete(self, backend):
        backend.save("loans", "l1", {"id": "l1"})
        assert backend.delete("loans", "l1") is True
        assert backend.delete("loans", "l1") is False
        assert backend.load("loans", "l1") is None

    def test_find_matches_all_filters(self, backend):
        backend.save("loans", "l1", {"id": "l1", "tenant_id": "a", "status": "active"})
        backend.save("loans", "l2", {"id": "l2", "tenant_id": "a", "status": "overdue"})
        backend.save("loans", "l3", {"id": "l3", "tenant_id": "b", "status": "active"})

        found = backend.find("loans", {"tenant_id": "a", "status": "active"})
        assert [r["id"] for r in found] == ["l1"]
        assert len(backend.find("loans", {"tenant_id": "a"})) == 2

    def test_loaded_records_are_copies(self, backend):
        backend.save("loans", "l1", {"id": "l1", "tags": ["x"]})
        record = backend.load("loans", "l1")
        record["tags"].append("y")
        assert backend.load("loans", "l1")["tags"] == ["x"]

    def test_clear_table(self, backend):
        backend.save("loans", "l1", {"id": "l1"})
        backend.clear_table("loans")
        assert backend.count("loans") == 0


class TestTransactions:
    """Test atomic blocks"""

    def test_commit(self, backend):
        with backend.atomic():
            backend.save("loans", "l1", {"id": "l1"})
            backend.save("payments", "p1", {"id": "p1"})
        assert backend.exists("loans", "l1")
        assert backend.exists("payments", "p1")

    def test_rollback_discards_every_write(self, backend):
        backend.save("loans", "l1", {"id": "l1", "status": "active"})

        with pytest.raises(RuntimeError):
            with backend.atomic():
                backend.save("loans", "l1", {"id": "l1", "status": "paid_off"})
                backend.save("payments", "p1", {"id": "p1"})
                backend.delete("loans", "l1")
                raise RuntimeError("boom")

        assert backend.load("loans", "l1") == {"id": "l1", "status": "active"}
        assert not backend.exists("payments", "p1")

    def test_nested_block_commits_with_outermost(self, backend):
        with pytest.raises(RuntimeError):
            with backend.atomic():
                with backend.atomic():
                    backend.save("loans", "l1", {"id": "l1"})
                raise RuntimeError("outer failure")

        assert not backend.exists("loans", "l1")

    def test_nested_blocks_commit(self, backend):
        with backend.atomic():
            with backend.atomic():
                backend.save("loans", "l1", {"id": "l1"})
            backend.save("loans", "l2", {"id": "l2"})
        assert backend.count("loans") == 2

    def test_lock_record_reads_inside_transaction(self, backend):
        backend.save("loans", "l1", {"id": "l1", "version": 3})
        with backend.atomic():
            assert backend.lock_record("loans", "l1")["version"] == 3


class TestSQLitePersistence:

    def test_data_survives_reopen(self, tmp_path):
        path = tmp_path / "ledger.db"
        store = SQLiteStorage(path)
        store.save("loans", "l1", {"id": "l1", "amount": "10.00"})
        store.close()

        reopened = SQLiteStorage(path)
        assert reopened.load("loans", "l1") == {"id": "l1", "amount": "10.00"}
        reopened.close()


class TestCreateStorage:
    """Test backend selection from database URLs"""

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_url(self, tmp_path):
        store = create_storage(f"sqlite:///{tmp_path / 'ledger.db'}")
        assert isinstance(store, SQLiteStorage)
        store.close()

    def test_unsupported_url(self):
        with pytest.raises(ValueError, match="Unsupported database URL"):
            create_storage("mysql://localhost/ledger")
