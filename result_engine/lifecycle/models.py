"""
Result Lifecycle Models

TestResult is the legal record of one measured value. It is frozen: the
state machine is the only producer of new instances, and the document
store only ever sees whole, serialized results.

Results are never physically deleted; rejection is a status.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from result_engine.audit.models import Amendment
from result_engine.evaluator.models import ResultFlag
from result_engine.rules.models import ReferenceRange


class ResultStatus(str, Enum):
    PENDING = "pending"
    ENTERED = "entered"
    PRELIMINARY = "preliminary"
    PENDING_REVIEW = "pending_review"
    VERIFIED = "verified"
    FINAL = "final"
    REJECTED = "rejected"
    AMENDED = "amended"
    CORRECTED = "corrected"


class TransitionEvent(str, Enum):
    ENTER_VALUE = "enter_value"
    EDIT_VALUE = "edit_value"
    MARK_PRELIMINARY = "mark_preliminary"
    SUBMIT_FOR_REVIEW = "submit_for_review"
    REQUEST_SENIOR_REVIEW = "request_senior_review"
    ACKNOWLEDGE_CRITICAL = "acknowledge_critical"
    VERIFY = "verify"
    APPROVE = "approve"
    REJECT = "reject"
    AMEND = "amend"


# Statuses in which a plain correction is still allowed
PRE_FINAL_STATUSES = frozenset([
    ResultStatus.ENTERED,
    ResultStatus.CORRECTED,
    ResultStatus.PRELIMINARY,
    ResultStatus.PENDING_REVIEW,
])

# Statuses in which only a reasoned amendment may change the value
POST_FINAL_STATUSES = frozenset([
    ResultStatus.FINAL,
    ResultStatus.AMENDED,
])

TERMINAL_STATUSES = frozenset([
    ResultStatus.REJECTED,
])


class CriticalNotification(BaseModel):
    """Record that a clinician was told about a critical value."""
    notified_person: str
    notification_time: str
    notification_method: Optional[str] = None
    recorded_by: str
    recorded_at: datetime

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        frozen = True


class TestResult(BaseModel):
    """
    One measured/observed value for one test on one sample/order.

    ``version`` is the optimistic-concurrency token assigned by the store;
    it is not part of the persisted document.
    """
    __test__ = False  # not a pytest class

    id: str
    tenant_id: Optional[str] = None
    order_id: str
    sample_id: str
    patient_id: str
    test_id: str
    test_name: Optional[str] = None

    value: Optional[str] = None
    unit: Optional[str] = None
    reference_range_snapshot: Optional[ReferenceRange] = None

    flag: Optional[ResultFlag] = None
    is_critical: bool = False
    delta_flagged: bool = False
    validation_warnings: Tuple[str, ...] = ()

    status: ResultStatus = ResultStatus.PENDING

    entered_by: Optional[str] = None
    entered_at: Optional[datetime] = None
    verified_by: Optional[str] = None
    verified_at: Optional[datetime] = None
    finalized_by: Optional[str] = None
    finalized_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    corrected_by: Optional[str] = None
    corrected_at: Optional[datetime] = None
    amended_by: Optional[str] = None
    amended_at: Optional[datetime] = None

    review_note: Optional[str] = None
    override_note: Optional[str] = None
    senior_review_requested: bool = False
    senior_review_requested_by: Optional[str] = None
    senior_review_requested_at: Optional[datetime] = None
    critical_notification: Optional[CriticalNotification] = None

    amendments: Tuple[Amendment, ...] = ()

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = Field(default=0, exclude=True)

    def to_document(self) -> Dict[str, Any]:
        """JSON-ready document with the camelCase contract field names."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_document(cls, doc: Dict[str, Any], version: int) -> "TestResult":
        return cls.model_validate(doc).model_copy(update={"version": version})

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        frozen = True


class TransitionPayload(BaseModel):
    """
    Event-specific input. Which fields are required depends on the event;
    the state machine checks them and refuses with a readable reason.
    """
    value: Optional[str] = None
    new_value: Optional[str] = None
    unit: Optional[str] = None
    notes: Optional[str] = None
    reason_code: Optional[str] = None
    rejection_reason: Optional[str] = None
    review_note: Optional[str] = None
    notified_person: Optional[str] = None
    notification_time: Optional[str] = None
    notification_method: Optional[str] = None
    override: bool = False
    override_note: Optional[str] = None
    reference_range: Optional[ReferenceRange] = None

    @property
    def effective_value(self) -> Optional[str]:
        candidate = self.new_value if self.new_value is not None else self.value
        if candidate is None:
            return None
        return str(candidate).strip() or None

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        coerce_numbers_to_str = True
