"""
In-memory document store.

Single-process, thread-safe. One re-entrant lock serialises transactions, so
a transaction sees a stable snapshot; its writes are staged and applied only
when the block exits without an exception.
"""

import copy
from contextlib import contextmanager
from threading import RLock
from typing import Any, Dict, Iterator, List, Optional, Tuple

from result_engine.errors import ConflictError
from result_engine.store.base import (
    DocumentStore,
    DocumentTransaction,
    StoredDocument,
    matches,
)


class _MemoryTransaction(DocumentTransaction):

    def __init__(self, store: "InMemoryDocumentStore"):
        self._store = store
        self._staged: Dict[str, Tuple[Dict[str, Any], int]] = {}

    def _current(self, doc_id: str) -> Optional[Tuple[Dict[str, Any], int]]:
        if doc_id in self._staged:
            return self._staged[doc_id]
        return self._store._docs.get(doc_id)

    def get(self, doc_id: str) -> Optional[StoredDocument]:
        current = self._current(doc_id)
        if current is None:
            return None
        doc, version = current
        return StoredDocument(id=doc_id, doc=copy.deepcopy(doc), version=version)

    def query(self, filter: Dict[str, Any]) -> List[StoredDocument]:
        ids = sorted(set(self._store._docs) | set(self._staged))
        found = []
        for doc_id in ids:
            stored = self.get(doc_id)
            if stored is not None and matches(stored.doc, filter):
                found.append(stored)
        return found

    def put(self, doc_id: str, doc: Dict[str, Any], expected_version: int) -> int:
        current = self._current(doc_id)
        actual = current[1] if current else 0
        if actual != expected_version:
            raise ConflictError(doc_id, expected_version, actual)
        new_version = actual + 1
        self._staged[doc_id] = (copy.deepcopy(doc), new_version)
        return new_version

    def commit(self) -> None:
        self._store._docs.update(self._staged)
        self._staged = {}


class InMemoryDocumentStore(DocumentStore):

    def __init__(self):
        self._docs: Dict[str, Tuple[Dict[str, Any], int]] = {}
        self._lock = RLock()

    @contextmanager
    def transaction(self) -> Iterator[DocumentTransaction]:
        with self._lock:
            tx = _MemoryTransaction(self)
            yield tx
            tx.commit()

    def __len__(self) -> int:
        with self._lock:
            return len(self._docs)
