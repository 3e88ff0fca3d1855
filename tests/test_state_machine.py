"""
Result Lifecycle State Machine - Tests
======================================
Transition table, per-event guards and effects, the critical-result
approval gate and the correction/amendment boundary.
"""

import itertools
import pytest

from result_engine.audit import AuditRecorder, ChangeKind, ReasonCode
from result_engine.clock import ManualClock
from result_engine.errors import (
    CriticalAcknowledgmentRequired,
    InvalidTransition,
    ValidationBlocked,
)
from result_engine.evaluator import PriorValue, ResultFlag, RuleEvaluator
from result_engine.lifecycle import (
    TRANSITION_TABLE,
    ResultStateMachine,
    ResultStatus,
    TestResult,
    TransitionEvent,
    TransitionPayload,
    allowed_events,
    next_status,
)
from result_engine.rules import InMemoryRuleRepository, JsonRuleRepository, RuleType, ValidationRule


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def machine(clock):
    return ResultStateMachine(RuleEvaluator(JsonRuleRepository()), AuditRecorder(clock), clock)


def make_result(status=ResultStatus.PENDING, test_id="K", value=None, **extra):
    return TestResult(
        id="r1", order_id="o1", sample_id="s1", patient_id="p1", test_id=test_id,
        value=value, status=status, **extra,
    )


def payload(**fields):
    return TransitionPayload(**fields)


LEGAL_PAIRS = {(status, event) for event, sources in TRANSITION_TABLE.items() for status in sources}
ILLEGAL_PAIRS = [
    (status, event)
    for status, event in itertools.product(ResultStatus, TransitionEvent)
    if (status, event) not in LEGAL_PAIRS
]


# ============================================================
# TEST: TRANSITION TABLE
# ============================================================

class TestTransitionTable:
    """Everything outside the table is refused."""

    @pytest.mark.parametrize("status,event", ILLEGAL_PAIRS)
    def test_illegal_pairs_refused(self, machine, status, event):
        result = make_result(status=status, value="4.0")
        with pytest.raises(InvalidTransition) as exc:
            machine.apply(result, event, payload(value="4.2", reason_code="other"), "tech1")
        assert exc.value.kind == "invalid_transition"
        assert exc.value.details == {"status": status.value, "event": event.value}

    def test_pending_only_accepts_entry(self):
        assert allowed_events(ResultStatus.PENDING) == [TransitionEvent.ENTER_VALUE]

    def test_rejected_is_terminal(self):
        assert allowed_events(ResultStatus.REJECTED) == []

    def test_final_only_accepts_amend(self):
        assert allowed_events(ResultStatus.FINAL) == [TransitionEvent.AMEND]

    def test_edit_on_final_points_to_amend(self):
        with pytest.raises(InvalidTransition) as exc:
            next_status(ResultStatus.FINAL, TransitionEvent.EDIT_VALUE)
        assert "amend" in exc.value.reason

    @pytest.mark.parametrize("status,event,target", [
        (ResultStatus.PENDING, TransitionEvent.ENTER_VALUE, ResultStatus.ENTERED),
        (ResultStatus.ENTERED, TransitionEvent.SUBMIT_FOR_REVIEW, ResultStatus.PENDING_REVIEW),
        (ResultStatus.PRELIMINARY, TransitionEvent.EDIT_VALUE, ResultStatus.CORRECTED),
        (ResultStatus.CORRECTED, TransitionEvent.MARK_PRELIMINARY, ResultStatus.PRELIMINARY),
        (ResultStatus.PENDING_REVIEW, TransitionEvent.VERIFY, ResultStatus.VERIFIED),
        (ResultStatus.VERIFIED, TransitionEvent.APPROVE, ResultStatus.FINAL),
        (ResultStatus.VERIFIED, TransitionEvent.ACKNOWLEDGE_CRITICAL, ResultStatus.VERIFIED),
        (ResultStatus.AMENDED, TransitionEvent.AMEND, ResultStatus.AMENDED),
    ])
    def test_targets(self, status, event, target):
        assert next_status(status, event) == target


# ============================================================
# TEST: ENTRY & CORRECTION
# ============================================================

class TestEnterValue:

    def test_entry_sets_value_and_flags(self, machine, clock):
        decision = machine.apply(make_result(), TransitionEvent.ENTER_VALUE, payload(value="5.5"), "tech1")
        result = decision.result
        assert result.status == ResultStatus.ENTERED
        assert result.value == "5.5"
        assert result.unit == "mmol/L"
        assert result.flag == ResultFlag.ABNORMAL_HIGH
        assert result.validation_warnings == ("above reference range",)
        assert result.entered_by == "tech1"
        assert result.entered_at == clock.now()
        assert result.reference_range_snapshot.high == 5.1
        assert decision.previous_status == ResultStatus.PENDING

    def test_numeric_payload_coerced_to_text(self, machine):
        decision = machine.apply(make_result(), TransitionEvent.ENTER_VALUE, payload(value=4.2), "tech1")
        assert decision.result.value == "4.2"

    def test_critical_entry_saves(self, machine):
        result = machine.apply(make_result(), TransitionEvent.ENTER_VALUE, payload(value="6.5"), "tech1").result
        assert result.is_critical is True
        assert result.flag == ResultFlag.CRITICAL_HIGH

    def test_absurd_entry_blocked(self, machine):
        with pytest.raises(ValidationBlocked) as exc:
            machine.apply(make_result(), TransitionEvent.ENTER_VALUE, payload(value="40"), "tech1")
        assert exc.value.errors == ["Value 40 is absurdly high (> 15)"]
        assert exc.value.details["outcome"]["is_critical"] is True

    def test_missing_value_blocked(self, machine):
        with pytest.raises(ValidationBlocked) as exc:
            machine.apply(make_result(), TransitionEvent.ENTER_VALUE, payload(), "tech1")
        assert exc.value.errors == ["value is required"]

    def test_payload_reference_range_snapshotted(self, machine):
        decision = machine.apply(
            make_result(), TransitionEvent.ENTER_VALUE,
            TransitionPayload.model_validate({"value": "5.5", "referenceRange": {"low": 3.0, "high": 6.0}}),
            "tech1",
        )
        assert decision.result.flag == ResultFlag.NORMAL
        assert decision.result.reference_range_snapshot.high == 6.0

    def test_text_with_untyped_payload_range_blocked(self, machine):
        with pytest.raises(ValidationBlocked) as exc:
            machine.apply(
                make_result(), TransitionEvent.ENTER_VALUE,
                TransitionPayload.model_validate({"value": "abc", "referenceRange": {"low": 3.0, "high": 6.0}}),
                "tech1",
            )
        assert exc.value.errors == ["Value 'abc' is not numeric"]

    def test_delta_uses_history(self, machine, clock):
        history = [PriorValue(value="3.8", entered_at=clock.now(), result_id="r0", patient_id="p1")]
        decision = machine.apply(
            make_result(), TransitionEvent.ENTER_VALUE, payload(value="5.0"), "tech1",
            history=lambda result: history,
        )
        assert decision.result.delta_flagged is True
        assert decision.outcome.delta.previous_result_id == "r0"


class TestCorrection:
    """Pre-final edits append a correction record; no reason code needed."""

    def test_edit_appends_correction(self, machine):
        result = make_result(ResultStatus.ENTERED, value="4.0", flag=ResultFlag.NORMAL)
        updated = machine.apply(result, TransitionEvent.EDIT_VALUE, payload(new_value="4.4"), "tech2").result
        assert updated.status == ResultStatus.CORRECTED
        assert updated.value == "4.4"
        assert updated.corrected_by == "tech2"
        assert len(updated.amendments) == 1
        record = updated.amendments[0]
        assert record.kind == ChangeKind.CORRECTION
        assert record.reason_code is None
        assert (record.previous_value, record.new_value) == ("4.0", "4.4")

    def test_edit_blocked_by_absurd_value(self, machine):
        result = make_result(ResultStatus.PENDING_REVIEW, value="4.0")
        with pytest.raises(ValidationBlocked):
            machine.apply(result, TransitionEvent.EDIT_VALUE, payload(new_value="0.1"), "tech2")

    def test_edit_clears_previous_acknowledgment(self, machine, clock):
        result = make_result(ResultStatus.ENTERED, value="6.5", is_critical=True)
        acked = machine.apply(
            result, TransitionEvent.ACKNOWLEDGE_CRITICAL,
            payload(notified_person="Dr. Smith", notification_time="14:30"), "tech1",
        ).result
        assert acked.critical_notification is not None
        edited = machine.apply(acked, TransitionEvent.EDIT_VALUE, payload(new_value="6.8"), "tech1").result
        assert edited.critical_notification is None


# ============================================================
# TEST: REVIEW WORKFLOW
# ============================================================

class TestReviewWorkflow:

    def test_reject_requires_reason(self, machine):
        with pytest.raises(ValidationBlocked) as exc:
            machine.apply(make_result(ResultStatus.PENDING_REVIEW, value="4.0"), TransitionEvent.REJECT, payload(), "dr1")
        assert "rejectionReason" in exc.value.reason

    def test_reject(self, machine):
        result = machine.apply(
            make_result(ResultStatus.PRELIMINARY, value="4.0"), TransitionEvent.REJECT,
            payload(rejection_reason="hemolysed sample"), "dr1",
        ).result
        assert result.status == ResultStatus.REJECTED
        assert result.rejection_reason == "hemolysed sample"
        assert result.rejected_by == "dr1"

    def test_senior_review_keeps_status(self, machine):
        result = machine.apply(
            make_result(ResultStatus.PENDING_REVIEW, value="4.0"), TransitionEvent.REQUEST_SENIOR_REVIEW,
            payload(review_note="borderline, please check"), "dr1",
        ).result
        assert result.status == ResultStatus.PENDING_REVIEW
        assert result.senior_review_requested is True
        assert result.senior_review_requested_by == "dr1"
        assert result.review_note == "borderline, please check"

    def test_verify(self, machine):
        result = machine.apply(
            make_result(ResultStatus.PENDING_REVIEW, value="4.0"), TransitionEvent.VERIFY, payload(), "dr1",
        ).result
        assert result.status == ResultStatus.VERIFIED
        assert result.verified_by == "dr1"

    def test_approve_normal_result(self, machine, clock):
        result = machine.apply(
            make_result(ResultStatus.PENDING_REVIEW, value="4.0"), TransitionEvent.APPROVE, payload(), "dr1",
        ).result
        assert result.status == ResultStatus.FINAL
        assert result.finalized_by == "dr1"
        assert result.finalized_at == clock.now()
        assert result.verified_by == "dr1"


class TestOverride:
    """A blocked outcome at review time passes only with an override note."""

    @pytest.fixture
    def strict_machine(self, clock):
        repository = InMemoryRuleRepository([
            ValidationRule(id="x-absurd", test_id="X", rule_type=RuleType.ABSURD, absurd_high=100),
        ])
        return ResultStateMachine(RuleEvaluator(repository), AuditRecorder(clock), clock)

    def test_blocked_without_override(self, strict_machine):
        with pytest.raises(ValidationBlocked):
            strict_machine.apply(make_result(ResultStatus.PENDING_REVIEW, "X", "150"), TransitionEvent.APPROVE, payload(), "dr1")

    def test_override_needs_note(self, strict_machine):
        with pytest.raises(ValidationBlocked) as exc:
            strict_machine.apply(
                make_result(ResultStatus.PENDING_REVIEW, "X", "150"), TransitionEvent.APPROVE,
                payload(override=True), "dr1",
            )
        assert "overrideNote is required to override blocking errors" in exc.value.errors

    def test_override_with_note(self, strict_machine):
        result = strict_machine.apply(
            make_result(ResultStatus.PENDING_REVIEW, "X", "150"), TransitionEvent.APPROVE,
            payload(override=True, override_note="confirmed on rerun"), "dr1",
        ).result
        assert result.status == ResultStatus.FINAL
        assert result.override_note == "confirmed on rerun"


# ============================================================
# TEST: CRITICAL GATE
# ============================================================

class TestCriticalGate:
    """Critical results need a recorded clinician notification before final."""

    @pytest.fixture
    def critical_result(self, machine):
        entered = machine.apply(make_result(), TransitionEvent.ENTER_VALUE, payload(value="6.5"), "tech1").result
        return machine.apply(entered, TransitionEvent.SUBMIT_FOR_REVIEW, payload(), "tech1").result

    def test_approve_without_notification(self, machine, critical_result):
        with pytest.raises(CriticalAcknowledgmentRequired) as exc:
            machine.apply(critical_result, TransitionEvent.APPROVE, payload(), "dr1")
        assert exc.value.missing_fields == ["notifiedPerson", "notificationTime"]
        assert exc.value.details["flags"] == ["critical_high"]

    def test_partial_notification(self, machine, critical_result):
        with pytest.raises(CriticalAcknowledgmentRequired) as exc:
            machine.apply(critical_result, TransitionEvent.APPROVE, payload(notified_person="Dr. Smith"), "dr1")
        assert exc.value.missing_fields == ["notificationTime"]

    def test_approve_with_notification(self, machine, critical_result):
        result = machine.apply(
            critical_result, TransitionEvent.APPROVE,
            payload(notified_person="Dr. Smith", notification_time="14:30", notification_method="phone"), "dr1",
        ).result
        assert result.status == ResultStatus.FINAL
        assert result.critical_notification.notified_person == "Dr. Smith"
        assert result.critical_notification.notification_time == "14:30"
        assert result.critical_notification.recorded_by == "dr1"

    def test_prior_acknowledgment_accepted(self, machine, critical_result):
        acked = machine.apply(
            critical_result, TransitionEvent.ACKNOWLEDGE_CRITICAL,
            payload(notified_person="Dr. Smith", notification_time="14:30"), "tech1",
        ).result
        assert acked.status == ResultStatus.PENDING_REVIEW
        result = machine.apply(acked, TransitionEvent.APPROVE, payload(), "dr1").result
        assert result.status == ResultStatus.FINAL

    def test_acknowledge_requires_fields(self, machine, critical_result):
        with pytest.raises(ValidationBlocked):
            machine.apply(critical_result, TransitionEvent.ACKNOWLEDGE_CRITICAL, payload(notified_person=" "), "tech1")


# ============================================================
# TEST: AMENDMENT
# ============================================================

class TestAmendment:
    """Post-final changes need a reason code and keep the original in history."""

    def test_amend_final_result(self, machine):
        final = make_result(ResultStatus.FINAL, value="5.0", flag=ResultFlag.NORMAL)
        result = machine.apply(
            final, TransitionEvent.AMEND, payload(new_value="5.8", reason_code="dilution_correction"), "dr1",
        ).result
        assert result.status == ResultStatus.AMENDED
        assert result.value == "5.8"
        assert result.flag == ResultFlag.ABNORMAL_HIGH
        assert result.amended_by == "dr1"
        record = result.amendments[-1]
        assert record.kind == ChangeKind.AMENDMENT
        assert (record.previous_value, record.new_value) == ("5.0", "5.8")
        assert record.reason_code == ReasonCode.OTHER
        assert "dilution_correction" in record.notes

    def test_amend_requires_reason(self, machine):
        with pytest.raises(ValidationBlocked):
            machine.apply(make_result(ResultStatus.FINAL, value="5.0"), TransitionEvent.AMEND, payload(new_value="5.8"), "dr1")

    def test_amend_blocked_by_absurd_value(self, machine):
        with pytest.raises(ValidationBlocked):
            machine.apply(
                make_result(ResultStatus.FINAL, value="5.0"), TransitionEvent.AMEND,
                payload(new_value="99", reason_code="repeat_test"), "dr1",
            )

    def test_amend_pre_final_refused(self, machine):
        with pytest.raises(InvalidTransition) as exc:
            machine.apply(
                make_result(ResultStatus.ENTERED, value="5.0"), TransitionEvent.AMEND,
                payload(new_value="5.8", reason_code="repeat_test"), "dr1",
            )
        assert "edit_value" in exc.value.reason

    def test_repeated_amendments_keep_history(self, machine):
        result = make_result(ResultStatus.FINAL, value="5.0")
        result = machine.apply(result, TransitionEvent.AMEND, payload(new_value="5.8", reason_code="repeat_test"), "dr1").result
        first = result.amendments[0]
        result = machine.apply(result, TransitionEvent.AMEND, payload(new_value="5.6", reason_code="repeat_test"), "dr1").result
        assert len(result.amendments) == 2
        assert result.amendments[0] == first
        assert result.amendments[1].previous_value == "5.8"
