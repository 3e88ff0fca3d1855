"""
Rule Store

Per-test validation rule definitions (range, critical, absurd, delta) and
reference ranges. Pure data access; no rule logic.
"""

from .models import (
    RuleType,
    RuleAction,
    DeltaType,
    ResultType,
    ValidationRule,
    ReferenceRange,
)
from .repository import (
    RuleRepository,
    InMemoryRuleRepository,
    JsonRuleRepository,
    CachedRuleRepository,
    PostgresRuleRepository,
    DEFAULT_RULES_PATH,
)

__all__ = [
    # Models
    "RuleType",
    "RuleAction",
    "DeltaType",
    "ResultType",
    "ValidationRule",
    "ReferenceRange",
    # Repositories
    "RuleRepository",
    "InMemoryRuleRepository",
    "JsonRuleRepository",
    "CachedRuleRepository",
    "PostgresRuleRepository",
    "DEFAULT_RULES_PATH",
]
