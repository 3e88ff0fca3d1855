"""
Document Store Contract

The engine persists whole JSON documents keyed by id, each with an integer
version token. Writes are conditional on the version the caller read:

    put(id, doc, expected_version=0)   create; fails if the id exists
    put(id, doc, expected_version=n)   replace; fails unless stored version is n

A failed condition raises ConflictError and writes nothing. Any other
storage failure raises PersistenceError.

``transaction()`` groups reads and writes into one consistent unit: reads see
a single snapshot and the writes commit together or not at all.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional


@dataclass(frozen=True)
class StoredDocument:
    id: str
    doc: Dict[str, Any]
    version: int


class DocumentReader(ABC):
    """Read side of the contract; also what transition functions get to see."""

    @abstractmethod
    def get(self, doc_id: str) -> Optional[StoredDocument]:
        """Document and version, or None when absent."""

    @abstractmethod
    def query(self, filter: Dict[str, Any]) -> List[StoredDocument]:
        """Documents whose top-level fields equal every entry of ``filter``."""


class DocumentTransaction(DocumentReader):

    @abstractmethod
    def put(self, doc_id: str, doc: Dict[str, Any], expected_version: int) -> int:
        """Conditional write. Returns the new version."""


class DocumentStore(DocumentTransaction):
    """A store is usable directly; each call is then its own transaction."""

    @abstractmethod
    @contextmanager
    def transaction(self) -> Iterator[DocumentTransaction]:
        """Consistent read-modify-write unit."""

    def get(self, doc_id: str) -> Optional[StoredDocument]:
        with self.transaction() as tx:
            return tx.get(doc_id)

    def query(self, filter: Dict[str, Any]) -> List[StoredDocument]:
        with self.transaction() as tx:
            return tx.query(filter)

    def put(self, doc_id: str, doc: Dict[str, Any], expected_version: int) -> int:
        with self.transaction() as tx:
            return tx.put(doc_id, doc, expected_version)


def matches(doc: Dict[str, Any], filter: Dict[str, Any]) -> bool:
    return all(doc.get(key) == value for key, value in filter.items())
