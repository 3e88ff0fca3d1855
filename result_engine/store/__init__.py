"""
Document Store

Versioned JSON-document persistence with optimistic-concurrency writes.
"""

from .base import (
    StoredDocument,
    DocumentReader,
    DocumentTransaction,
    DocumentStore,
)
from .memory import InMemoryDocumentStore
from .postgres import PostgresDocumentStore

__all__ = [
    "StoredDocument",
    "DocumentReader",
    "DocumentTransaction",
    "DocumentStore",
    "InMemoryDocumentStore",
    "PostgresDocumentStore",
]
