"""
Result Engine Error Taxonomy

Every refusal carries a stable ``kind``, a human-readable ``reason`` and a
structured ``details`` dict so the calling layer never has to re-derive
"why" from raw state.

    ValidationBlocked               evaluator (or payload) blocked the transition
    InvalidTransition               event not legal from the current status
    CriticalAcknowledgmentRequired  approve on a critical result without notification
    ConflictError                   optimistic version mismatch, re-read and retry
    PersistenceError                store-level I/O failure
    ResultNotFound                  unknown result id
"""

from typing import Any, Dict, List, Optional


class ResultEngineError(Exception):
    """Base class for all engine errors."""

    kind = "result_engine_error"

    def __init__(self, reason: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(reason)
        self.reason = reason
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "reason": self.reason,
            "details": self.details,
        }


class ValidationBlocked(ResultEngineError):
    """Blocking validation errors; the stored result is unchanged."""

    kind = "validation_blocked"

    def __init__(self, errors: List[str], outcome: Any = None):
        self.errors = list(errors)
        self.outcome = outcome
        details: Dict[str, Any] = {"errors": self.errors}
        if outcome is not None:
            details["outcome"] = outcome.model_dump(mode="json")
        super().__init__("; ".join(self.errors) or "validation blocked", details)


class InvalidTransition(ResultEngineError):
    """Event is not legal from the current status."""

    kind = "invalid_transition"

    def __init__(self, status: str, event: str, hint: Optional[str] = None):
        self.status = status
        self.event = event
        reason = f"cannot {event} a result in status '{status}'"
        if hint:
            reason = f"{reason}: {hint}"
        super().__init__(reason, {"status": status, "event": event})


class CriticalAcknowledgmentRequired(ResultEngineError):
    """Critical result approval attempted without notification metadata."""

    kind = "critical_acknowledgment_required"

    def __init__(self, missing_fields: List[str], flags: Optional[List[str]] = None):
        self.missing_fields = list(missing_fields)
        super().__init__(
            "critical result requires notification acknowledgment before approval "
            f"(missing: {', '.join(self.missing_fields)})",
            {"missing_fields": self.missing_fields, "flags": flags or []},
        )


class ConflictError(ResultEngineError):
    """The stored version no longer matches the version the caller read."""

    kind = "conflict"

    def __init__(self, result_id: str, expected_version: Optional[int], actual_version: Optional[int]):
        self.result_id = result_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"result {result_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version}); re-read and retry",
            {
                "result_id": result_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
        )


class PersistenceError(ResultEngineError):
    """Store-level failure. Nothing was written."""

    kind = "persistence_error"

    def __init__(self, reason: str):
        super().__init__(reason)


class ResultNotFound(ResultEngineError):
    kind = "not_found"

    def __init__(self, result_id: str):
        self.result_id = result_id
        super().__init__(f"result {result_id} not found", {"result_id": result_id})
