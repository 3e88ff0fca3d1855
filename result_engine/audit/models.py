"""
Audit Models

An Amendment is one immutable change record in a result's history.
Corrections (before finalization) and amendments (after) share the record
shape; ``kind`` tells them apart and only amendments require a reason code.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from result_engine.evaluator.models import ResultFlag


class ReasonCode(str, Enum):
    DATA_ENTRY_ERROR = "data_entry_error"
    TRANSCRIPTION_ERROR = "transcription_error"
    EQUIPMENT_MALFUNCTION = "equipment_malfunction"
    SAMPLE_MIX_UP = "sample_mix_up"
    REPEAT_TEST = "repeat_test"
    CLINICAL_REVIEW = "clinical_review"
    QUALITY_CONTROL = "quality_control"
    OTHER = "other"


class ChangeKind(str, Enum):
    CORRECTION = "correction"
    AMENDMENT = "amendment"


class Amendment(BaseModel):
    """
    One historical change record. Never mutated or removed once appended.

    ``entry_hash`` chains each record to its predecessor (``prev_hash``) so
    any rewrite of history is detectable.
    """
    sequence: int = Field(..., ge=1, description="1-based position in the result's history")
    kind: ChangeKind
    timestamp: datetime
    actor: str
    previous_value: Optional[str] = None
    new_value: str
    previous_flag: Optional[ResultFlag] = None
    new_flag: Optional[ResultFlag] = None
    reason_code: Optional[ReasonCode] = None
    notes: Optional[str] = None
    prev_hash: Optional[str] = None
    entry_hash: str = ""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        frozen = True
