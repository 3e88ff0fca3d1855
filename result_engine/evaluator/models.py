"""
Rule Evaluator Models

ValidationOutcome is never persisted on its own; it is embedded into
transition decisions and copied (flag, warnings) onto the result.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from result_engine.rules.models import ReferenceRange
from result_engine.shared.hashing import canonicalize_and_hash


class ResultFlag(str, Enum):
    """Classification stored on a TestResult."""
    NORMAL = "normal"
    ABNORMAL_LOW = "abnormal_low"
    ABNORMAL_HIGH = "abnormal_high"
    CRITICAL_LOW = "critical_low"
    CRITICAL_HIGH = "critical_high"
    ABSURD = "absurd"


class OutcomeFlag(str, Enum):
    """Flags an evaluation can raise. ResultFlag values plus the delta marker."""
    NORMAL = "normal"
    ABNORMAL_LOW = "abnormal_low"
    ABNORMAL_HIGH = "abnormal_high"
    CRITICAL_LOW = "critical_low"
    CRITICAL_HIGH = "critical_high"
    ABSURD = "absurd"
    DELTA_EXCEEDED = "delta_exceeded"


# Severity order used for ``flags`` and for picking the primary flag
FLAG_PRIORITY = [
    OutcomeFlag.ABSURD,
    OutcomeFlag.CRITICAL_LOW,
    OutcomeFlag.CRITICAL_HIGH,
    OutcomeFlag.ABNORMAL_LOW,
    OutcomeFlag.ABNORMAL_HIGH,
    OutcomeFlag.DELTA_EXCEEDED,
]


class PriorValue(BaseModel):
    """A previous result of the same test for the same patient."""
    value: str
    entered_at: datetime
    result_id: str = ""
    patient_id: Optional[str] = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        frozen = True


class ConfigurationWarning(BaseModel):
    """
    Non-fatal configuration problem found during evaluation.
    Evaluation proceeds with the offending rule treated as inactive.
    """
    test_id: str
    rule_id: Optional[str] = None
    message: str

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        frozen = True


class DeltaCheck(BaseModel):
    """Details of the delta comparison that was performed, if any."""
    rule_id: str
    previous_value: float
    previous_result_id: str = ""
    change: float
    threshold: float
    delta_type: str
    exceeded: bool

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        frozen = True


class EvaluationInput(BaseModel):
    """Everything ``evaluate`` needs; the function is pure over this."""
    test_id: str
    candidate_value: Optional[str] = None
    patient_id: Optional[str] = None
    reference_range: Optional[ReferenceRange] = None
    prior_values: List[PriorValue] = Field(default_factory=list)

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class ValidationOutcome(BaseModel):
    """
    Merged outcome of every applicable rule.

    ``errors`` is non-empty only when a blocking rule fired (absurd values
    always block). ``is_critical`` is set exactly when a critical rule matched,
    even when an absurd rule also blocked.
    """
    is_valid: bool = True
    is_critical: bool = False
    requires_review: bool = False
    flags: List[OutcomeFlag] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    configuration_warnings: List[ConfigurationWarning] = Field(default_factory=list)
    numeric_value: Optional[float] = None
    delta: Optional[DeltaCheck] = None

    @property
    def primary_flag(self) -> ResultFlag:
        """Most severe non-delta flag, ``normal`` when none fired."""
        for flag in self.flags:
            if flag != OutcomeFlag.DELTA_EXCEEDED:
                return ResultFlag(flag.value)
        return ResultFlag.NORMAL

    @property
    def delta_exceeded(self) -> bool:
        return OutcomeFlag.DELTA_EXCEEDED in self.flags

    def fingerprint(self) -> str:
        return canonicalize_and_hash(self.model_dump(mode="json"))

    class Config:
        alias_generator = to_camel
        populate_by_name = True
