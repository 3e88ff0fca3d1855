"""
Result Validation & Lifecycle Engine

Validates laboratory test result values against configured rules, drives
each result through its regulated lifecycle, keeps an append-only amendment
history and serialises concurrent edits with optimistic versioning.
"""

from .errors import (
    ResultEngineError,
    ValidationBlocked,
    InvalidTransition,
    CriticalAcknowledgmentRequired,
    ConflictError,
    PersistenceError,
    ResultNotFound,
)
from .evaluator import EvaluationInput, ValidationOutcome, RuleEvaluator
from .lifecycle import ResultStatus, TransitionEvent, TestResult, TransitionPayload
from .service import ResultEngine, BatchItemOutcome

__version__ = "1.0.0"

__all__ = [
    "__version__",
    # Facade
    "ResultEngine",
    "BatchItemOutcome",
    # Models
    "EvaluationInput",
    "ValidationOutcome",
    "RuleEvaluator",
    "ResultStatus",
    "TransitionEvent",
    "TestResult",
    "TransitionPayload",
    # Errors
    "ResultEngineError",
    "ValidationBlocked",
    "InvalidTransition",
    "CriticalAcknowledgmentRequired",
    "ConflictError",
    "PersistenceError",
    "ResultNotFound",
]
