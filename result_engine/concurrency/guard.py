"""
Concurrency Guard

Serialises conflicting transitions on the same result with optimistic
versioning. Each call is one store transaction:

    read current (doc, version)
    compare version with the caller's token       -> ConflictError on mismatch
    compute the new state via ``transition_fn``
    write conditionally on the version unchanged  -> ConflictError if it moved

The guard never overwrites a concurrent change and never retries on its
own; retry policy belongs to the caller.
"""

import logging
from typing import Callable, Optional

from result_engine.errors import ConflictError, ResultNotFound
from result_engine.lifecycle.models import TestResult
from result_engine.store.base import DocumentReader, DocumentStore

logger = logging.getLogger("result_engine.concurrency")

TransitionFn = Callable[[TestResult, DocumentReader], TestResult]


class ConcurrencyGuard:

    def __init__(self, store: DocumentStore):
        self.store = store

    def apply_transition(
        self,
        result_id: str,
        expected_version: Optional[int],
        transition_fn: TransitionFn,
    ) -> TestResult:
        """
        Apply ``transition_fn`` to the stored result and commit it.

        ``transition_fn`` receives the current result and a read-only view of
        the same transaction (for consistent history reads). Exceptions it
        raises abort the transaction with nothing written.

        Args:
            expected_version: version the caller read; None means "whatever is
                current" and relies on the conditional write alone

        Returns:
            The committed result carrying its new version.
        """
        try:
            with self.store.transaction() as tx:
                stored = tx.get(result_id)
                if stored is None:
                    raise ResultNotFound(result_id)

                if expected_version is not None and stored.version != expected_version:
                    logger.info(
                        f"CONFLICT: result {result_id} expected v{expected_version}, found v{stored.version}"
                    )
                    raise ConflictError(result_id, expected_version, stored.version)

                current = TestResult.from_document(stored.doc, stored.version)
                updated = transition_fn(current, tx)

                new_version = tx.put(result_id, updated.to_document(), stored.version)
        except ConflictError as e:
            if e.result_id:
                raise
            raise ConflictError(result_id, expected_version, None) from e

        return updated.model_copy(update={"version": new_version})

    def create(self, result: TestResult) -> TestResult:
        """Insert a brand-new result (expected version 0)."""
        with self.store.transaction() as tx:
            new_version = tx.put(result.id, result.to_document(), 0)
        return result.model_copy(update={"version": new_version})
