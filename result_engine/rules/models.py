"""
Rule Store Models

Pydantic contracts for per-test validation rules and reference data.
Rules are read-only from the engine's point of view; the administration
module that owns them lives outside this package.

Persisted field names are camelCase (``testId``, ``ruleType``, ``minValue``...)
and Python attributes are snake_case.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel


class RuleType(str, Enum):
    RANGE = "range"
    CRITICAL = "critical"
    ABSURD = "absurd"
    DELTA = "delta"


class RuleAction(str, Enum):
    WARN = "warn"
    BLOCK = "block"


class DeltaType(str, Enum):
    ABSOLUTE = "absolute"
    PERCENT = "percent"


class ResultType(str, Enum):
    NUMERIC = "numeric"
    QUALITATIVE = "qualitative"
    TEXT = "text"


class ValidationRule(BaseModel):
    """
    One rule of one type for one test.

    Only the bounds that belong to ``rule_type`` are read; the others are
    ignored. A rule whose own bounds are all missing is treated as inactive
    and reported as a configuration warning by the evaluator.
    """
    id: str = Field(..., description="Rule identifier")
    test_id: str = Field(..., description="Test this rule applies to")
    rule_type: RuleType
    action: RuleAction = RuleAction.WARN
    active: bool = True
    requires_review: bool = Field(default=False, description="Force review when this rule fires")
    message: Optional[str] = Field(default=None, description="Custom message replacing the default text")

    # range
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    # critical
    critical_low: Optional[float] = None
    critical_high: Optional[float] = None
    # absurd
    absurd_low: Optional[float] = None
    absurd_high: Optional[float] = None
    # delta
    delta_threshold: Optional[float] = None
    delta_type: DeltaType = DeltaType.PERCENT

    @field_validator("delta_type", mode="before")
    @classmethod
    def normalize_delta_type(cls, v):
        if isinstance(v, str) and v.lower().strip() in ("percentage", "pct", "%"):
            return DeltaType.PERCENT
        return v

    def has_bounds(self) -> bool:
        """True when the rule carries at least one bound for its own type."""
        if self.rule_type == RuleType.RANGE:
            return self.min_value is not None or self.max_value is not None
        if self.rule_type == RuleType.CRITICAL:
            return self.critical_low is not None or self.critical_high is not None
        if self.rule_type == RuleType.ABSURD:
            return self.absurd_low is not None or self.absurd_high is not None
        return self.delta_threshold is not None

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        frozen = True


class ReferenceRange(BaseModel):
    """
    Reference data for a test, copied onto each result at entry time.

    ``low``/``high`` bound the normal interval for numeric tests.
    ``allowed_values`` lists the accepted answers of a qualitative test.
    """
    low: Optional[float] = None
    high: Optional[float] = None
    unit: Optional[str] = None
    text: Optional[str] = Field(default=None, description="Display form, e.g. '70-100 mg/dL'")
    result_type: Optional[ResultType] = None
    allowed_values: List[str] = Field(default_factory=list)

    def has_bounds(self) -> bool:
        return self.low is not None or self.high is not None

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        frozen = True
