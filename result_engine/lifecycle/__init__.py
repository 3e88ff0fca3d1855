"""
Result Lifecycle

TestResult model, the transition table and the state machine that is the
only producer of new TestResult states.
"""

from .models import (
    ResultStatus,
    TransitionEvent,
    PRE_FINAL_STATUSES,
    POST_FINAL_STATUSES,
    TERMINAL_STATUSES,
    CriticalNotification,
    TestResult,
    TransitionPayload,
)
from .machine import (
    TRANSITION_TABLE,
    ResultStateMachine,
    TransitionDecision,
    allowed_events,
    next_status,
    requires_evaluation,
)

__all__ = [
    # Models
    "ResultStatus",
    "TransitionEvent",
    "PRE_FINAL_STATUSES",
    "POST_FINAL_STATUSES",
    "TERMINAL_STATUSES",
    "CriticalNotification",
    "TestResult",
    "TransitionPayload",
    # State machine
    "TRANSITION_TABLE",
    "ResultStateMachine",
    "TransitionDecision",
    "allowed_events",
    "next_status",
    "requires_evaluation",
]
