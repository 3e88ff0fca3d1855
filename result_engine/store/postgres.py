"""
PostgreSQL document store.

Documents live in one JSONB table with an integer version column. Each
transaction runs at REPEATABLE READ so the delta-check history read and the
conditional write see the same snapshot; a serialization failure from a
concurrent writer surfaces as ConflictError.

Database Requirements:
    result_documents(id TEXT PRIMARY KEY, version INTEGER, doc JSONB, updated_at TIMESTAMPTZ)
    Created on first use by ``ensure_tables``.
"""

import logging
import os
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2.extensions import ISOLATION_LEVEL_REPEATABLE_READ
from psycopg2.extras import Json, RealDictCursor

from result_engine.errors import ConflictError, PersistenceError, ResultEngineError
from result_engine.store.base import DocumentStore, DocumentTransaction, StoredDocument

logger = logging.getLogger("result_engine.store")


SQL_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS result_documents (
    id TEXT PRIMARY KEY,
    version INTEGER NOT NULL,
    doc JSONB NOT NULL,
    updated_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_result_documents_patient_test
    ON result_documents ((doc->>'patientId'), (doc->>'testId'));
CREATE INDEX IF NOT EXISTS idx_result_documents_status
    ON result_documents ((doc->>'status'));
"""

SQL_GET = "SELECT id, doc, version FROM result_documents WHERE id = %s;"

SQL_QUERY = "SELECT id, doc, version FROM result_documents WHERE doc @> %s ORDER BY id;"

SQL_INSERT = """
INSERT INTO result_documents (id, version, doc)
VALUES (%s, 1, %s)
ON CONFLICT (id) DO NOTHING;
"""

SQL_UPDATE = """
UPDATE result_documents
SET doc = %s, version = version + 1, updated_at = NOW()
WHERE id = %s AND version = %s;
"""


class _PostgresTransaction(DocumentTransaction):

    def __init__(self, conn):
        self._conn = conn

    def _fetchall(self, sql: str, params: tuple) -> List[Dict[str, Any]]:
        cur = self._conn.cursor(cursor_factory=RealDictCursor)
        try:
            cur.execute(sql, params)
            return cur.fetchall()
        finally:
            cur.close()

    def get(self, doc_id: str) -> Optional[StoredDocument]:
        rows = self._fetchall(SQL_GET, (doc_id,))
        if not rows:
            return None
        row = rows[0]
        return StoredDocument(id=row["id"], doc=row["doc"], version=row["version"])

    def query(self, filter: Dict[str, Any]) -> List[StoredDocument]:
        rows = self._fetchall(SQL_QUERY, (Json(filter),))
        return [StoredDocument(id=r["id"], doc=r["doc"], version=r["version"]) for r in rows]

    def put(self, doc_id: str, doc: Dict[str, Any], expected_version: int) -> int:
        cur = self._conn.cursor()
        try:
            if expected_version == 0:
                cur.execute(SQL_INSERT, (doc_id, Json(doc)))
            else:
                cur.execute(SQL_UPDATE, (Json(doc), doc_id, expected_version))
            written = cur.rowcount
        finally:
            cur.close()

        if written != 1:
            current = self.get(doc_id)
            raise ConflictError(doc_id, expected_version, current.version if current else 0)
        return expected_version + 1


class PostgresDocumentStore(DocumentStore):
    """
    Args:
        database_url: DSN; defaults to the DATABASE_URL environment variable
        conn_factory: optional callable returning a connection (overrides the DSN)
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        conn_factory: Optional[Callable[[], Any]] = None,
    ):
        self._db_url = database_url or os.getenv("DATABASE_URL")
        self._conn_factory = conn_factory
        self._tables_ready = False

    def _get_conn(self):
        try:
            if self._conn_factory is not None:
                return self._conn_factory()
            if not self._db_url:
                raise PersistenceError("DATABASE_URL is not configured")
            return psycopg2.connect(self._db_url)
        except psycopg2.Error as e:
            logger.error(f"DB connection failed: {e}")
            raise PersistenceError(f"database connection failed: {e}") from e

    def ensure_tables(self) -> None:
        if self._tables_ready:
            return
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(SQL_CREATE_TABLES)
            conn.commit()
            cur.close()
            self._tables_ready = True
        except psycopg2.Error as e:
            conn.rollback()
            logger.error(f"Table creation failed: {e}")
            raise PersistenceError(f"table creation failed: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[DocumentTransaction]:
        self.ensure_tables()
        conn = self._get_conn()
        try:
            conn.set_session(isolation_level=ISOLATION_LEVEL_REPEATABLE_READ)
            yield _PostgresTransaction(conn)
            conn.commit()
        except ResultEngineError:
            conn.rollback()
            raise
        except (pg_errors.SerializationFailure, pg_errors.UniqueViolation) as e:
            conn.rollback()
            logger.info(f"CONFLICT: concurrent write detected by database: {e}")
            raise ConflictError("", None, None) from e
        except psycopg2.Error as e:
            conn.rollback()
            logger.error(f"Transaction failed: {e}")
            raise PersistenceError(f"database error: {e}") from e
        finally:
            conn.close()
