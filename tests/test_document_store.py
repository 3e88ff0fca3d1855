"""
Document Store - Tests
======================
Versioned writes, transaction atomicity and error mapping for the in-memory
and PostgreSQL stores (PostgreSQL connections mocked).
"""

import pytest
from unittest.mock import MagicMock

import psycopg2
from psycopg2 import errors as pg_errors

from result_engine.errors import ConflictError, PersistenceError, ValidationBlocked
from result_engine.store import InMemoryDocumentStore, PostgresDocumentStore
from result_engine.store.postgres import SQL_INSERT, SQL_UPDATE


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def pg():
    """(store, connection, cursor) with a single shared mock connection."""
    conn = MagicMock()
    cursor = MagicMock()
    conn.cursor.return_value = cursor
    return PostgresDocumentStore(conn_factory=lambda: conn), conn, cursor


# ============================================================
# TEST: IN-MEMORY STORE
# ============================================================

class TestInMemoryStore:

    def test_insert_and_read(self, store):
        assert store.put("r1", {"status": "pending"}, 0) == 1
        stored = store.get("r1")
        assert stored.version == 1
        assert stored.doc == {"status": "pending"}

    def test_versions_increment(self, store):
        store.put("r1", {"n": 1}, 0)
        assert store.put("r1", {"n": 2}, 1) == 2
        assert store.get("r1").doc == {"n": 2}

    def test_stale_version_conflicts(self, store):
        store.put("r1", {"n": 1}, 0)
        store.put("r1", {"n": 2}, 1)
        with pytest.raises(ConflictError) as exc:
            store.put("r1", {"n": 3}, 1)
        assert (exc.value.expected_version, exc.value.actual_version) == (1, 2)
        assert store.get("r1").doc == {"n": 2}

    def test_duplicate_insert_conflicts(self, store):
        store.put("r1", {"n": 1}, 0)
        with pytest.raises(ConflictError):
            store.put("r1", {"n": 1}, 0)

    def test_failed_transaction_writes_nothing(self, store):
        store.put("r1", {"n": 1}, 0)
        with pytest.raises(ValidationBlocked):
            with store.transaction() as tx:
                tx.put("r1", {"n": 2}, 1)
                tx.put("r2", {"n": 1}, 0)
                raise ValidationBlocked(["nope"])
        assert store.get("r1").doc == {"n": 1}
        assert store.get("r2") is None
        assert len(store) == 1

    def test_transaction_reads_its_own_writes(self, store):
        with store.transaction() as tx:
            tx.put("r1", {"patientId": "p1"}, 0)
            assert [d.id for d in tx.query({"patientId": "p1"})] == ["r1"]

    def test_query_filters_and_sorts(self, store):
        store.put("b", {"patientId": "p1", "testId": "K"}, 0)
        store.put("a", {"patientId": "p1", "testId": "K"}, 0)
        store.put("c", {"patientId": "p2", "testId": "K"}, 0)
        assert [d.id for d in store.query({"patientId": "p1", "testId": "K"})] == ["a", "b"]

    def test_returned_documents_are_copies(self, store):
        store.put("r1", {"tags": ["a"]}, 0)
        store.get("r1").doc["tags"].append("b")
        assert store.get("r1").doc == {"tags": ["a"]}


# ============================================================
# TEST: POSTGRES STORE
# ============================================================

class TestPostgresStore:

    def test_get(self, pg):
        store, conn, cursor = pg
        cursor.fetchall.return_value = [{"id": "r1", "doc": {"status": "entered"}, "version": 3}]
        stored = store.get("r1")
        assert stored.version == 3
        assert stored.doc["status"] == "entered"
        conn.commit.assert_called()

    def test_get_missing(self, pg):
        store, conn, cursor = pg
        cursor.fetchall.return_value = []
        assert store.get("nope") is None

    def test_insert_uses_version_zero_path(self, pg):
        store, conn, cursor = pg
        cursor.rowcount = 1
        assert store.put("r1", {"status": "pending"}, 0) == 1
        assert cursor.execute.call_args[0][0] == SQL_INSERT

    def test_conditional_update(self, pg):
        store, conn, cursor = pg
        cursor.rowcount = 1
        assert store.put("r1", {"status": "final"}, 4) == 5
        sql, params = cursor.execute.call_args[0]
        assert sql == SQL_UPDATE
        assert params[1:] == ("r1", 4)

    def test_lost_update_conflicts(self, pg):
        store, conn, cursor = pg
        cursor.rowcount = 0
        cursor.fetchall.return_value = [{"id": "r1", "doc": {}, "version": 5}]
        with pytest.raises(ConflictError) as exc:
            store.put("r1", {"status": "final"}, 4)
        assert exc.value.actual_version == 5
        conn.rollback.assert_called()

    def test_serialization_failure_is_conflict(self, pg):
        store, conn, cursor = pg
        cursor.execute.side_effect = [None, pg_errors.SerializationFailure("could not serialize access")]
        with pytest.raises(ConflictError):
            store.get("r1")
        conn.rollback.assert_called()

    def test_driver_error_is_persistence_error(self, pg):
        store, conn, cursor = pg
        cursor.execute.side_effect = [None, psycopg2.OperationalError("connection reset")]
        with pytest.raises(PersistenceError) as exc:
            store.get("r1")
        assert "connection reset" in exc.value.reason
        conn.rollback.assert_called()

    def test_tables_created_once(self, pg):
        store, conn, cursor = pg
        cursor.fetchall.return_value = []
        store.get("a")
        store.get("b")
        create_calls = [c for c in cursor.execute.call_args_list if "CREATE TABLE" in c[0][0]]
        assert len(create_calls) == 1

    def test_missing_database_url(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        with pytest.raises(PersistenceError):
            PostgresDocumentStore().get("r1")
