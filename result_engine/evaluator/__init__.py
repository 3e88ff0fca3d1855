"""
Rule Evaluator

Pure evaluation of a candidate value against a test's rules, reference
range and the patient's prior results.
"""

from .models import (
    ResultFlag,
    OutcomeFlag,
    PriorValue,
    ConfigurationWarning,
    DeltaCheck,
    EvaluationInput,
    ValidationOutcome,
)
from .evaluate import (
    RuleEvaluator,
    evaluate_rules,
    parse_numeric,
    select_previous,
)

__all__ = [
    # Models
    "ResultFlag",
    "OutcomeFlag",
    "PriorValue",
    "ConfigurationWarning",
    "DeltaCheck",
    "EvaluationInput",
    "ValidationOutcome",
    # Functions
    "RuleEvaluator",
    "evaluate_rules",
    "parse_numeric",
    "select_previous",
]
