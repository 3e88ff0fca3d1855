"""
Result Lifecycle State Machine

Enforces the legal status transitions of a TestResult, attaches actor and
timestamp metadata, and re-runs the Rule Evaluator whenever a transition
depends on the value (entry, correction, verification, approval, amendment).

    pending -> entered -> preliminary -> pending_review -> verified -> final
    rejected            reachable from every pre-final status; terminal
    corrected           pre-final edits (audit-flavoured, optional reason)
    amended             post-final edits (mandatory reason code)

Every (status, event) pair missing from TRANSITION_TABLE is refused with
InvalidTransition. Refusals never produce a new result.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from result_engine.audit.recorder import AuditRecorder
from result_engine.clock import Clock
from result_engine.errors import (
    CriticalAcknowledgmentRequired,
    InvalidTransition,
    ValidationBlocked,
)
from result_engine.evaluator.evaluate import RuleEvaluator
from result_engine.evaluator.models import PriorValue, ValidationOutcome
from result_engine.lifecycle.models import (
    POST_FINAL_STATUSES,
    PRE_FINAL_STATUSES,
    CriticalNotification,
    ResultStatus,
    TestResult,
    TransitionEvent,
    TransitionPayload,
)

logger = logging.getLogger("result_engine.lifecycle")

HistoryLoader = Callable[[TestResult], List[PriorValue]]


# =============================================================================
# TRANSITION TABLE
# =============================================================================

TRANSITION_TABLE: Dict[TransitionEvent, Dict[ResultStatus, ResultStatus]] = {
    TransitionEvent.ENTER_VALUE: {
        ResultStatus.PENDING: ResultStatus.ENTERED,
    },
    TransitionEvent.EDIT_VALUE: {
        status: ResultStatus.CORRECTED for status in PRE_FINAL_STATUSES
    },
    TransitionEvent.MARK_PRELIMINARY: {
        ResultStatus.ENTERED: ResultStatus.PRELIMINARY,
        ResultStatus.CORRECTED: ResultStatus.PRELIMINARY,
    },
    TransitionEvent.SUBMIT_FOR_REVIEW: {
        ResultStatus.ENTERED: ResultStatus.PENDING_REVIEW,
        ResultStatus.CORRECTED: ResultStatus.PENDING_REVIEW,
        ResultStatus.PRELIMINARY: ResultStatus.PENDING_REVIEW,
    },
    TransitionEvent.REQUEST_SENIOR_REVIEW: {
        ResultStatus.PENDING_REVIEW: ResultStatus.PENDING_REVIEW,
    },
    TransitionEvent.ACKNOWLEDGE_CRITICAL: {
        status: status for status in PRE_FINAL_STATUSES | {ResultStatus.VERIFIED}
    },
    TransitionEvent.VERIFY: {
        ResultStatus.PENDING_REVIEW: ResultStatus.VERIFIED,
    },
    TransitionEvent.APPROVE: {
        ResultStatus.PENDING_REVIEW: ResultStatus.FINAL,
        ResultStatus.VERIFIED: ResultStatus.FINAL,
    },
    TransitionEvent.REJECT: {
        status: ResultStatus.REJECTED for status in PRE_FINAL_STATUSES
    },
    TransitionEvent.AMEND: {
        ResultStatus.FINAL: ResultStatus.AMENDED,
        ResultStatus.AMENDED: ResultStatus.AMENDED,
    },
}

# Events whose guards depend on the evaluator
EVALUATED_EVENTS = frozenset([
    TransitionEvent.ENTER_VALUE,
    TransitionEvent.EDIT_VALUE,
    TransitionEvent.VERIFY,
    TransitionEvent.APPROVE,
    TransitionEvent.AMEND,
])


def next_status(status: ResultStatus, event: TransitionEvent) -> ResultStatus:
    """Target status, or InvalidTransition when the pair is not in the table."""
    target = TRANSITION_TABLE.get(event, {}).get(status)
    if target is None:
        hint = None
        if event == TransitionEvent.EDIT_VALUE and status in POST_FINAL_STATUSES:
            hint = "finalized results can only change through 'amend' with a reasonCode"
        elif event == TransitionEvent.AMEND and status in PRE_FINAL_STATUSES:
            hint = "results that are not final are changed through 'edit_value'"
        elif status == ResultStatus.REJECTED:
            hint = "rejected results are terminal; create a new result"
        raise InvalidTransition(status.value, event.value, hint)
    return target


def allowed_events(status: ResultStatus) -> List[TransitionEvent]:
    return [event for event, sources in TRANSITION_TABLE.items() if status in sources]


def requires_evaluation(event: TransitionEvent) -> bool:
    return event in EVALUATED_EVENTS


# =============================================================================
# STATE MACHINE
# =============================================================================

@dataclass
class TransitionDecision:
    """A committed-to-be transition: the new result and what justified it."""
    event: TransitionEvent
    previous_status: ResultStatus
    result: TestResult
    outcome: Optional[ValidationOutcome] = None


class ResultStateMachine:
    """
    Pure decision logic: takes a result and an event, returns the new result
    or raises. Persistence and retries are the caller's business.
    """

    def __init__(self, evaluator: RuleEvaluator, recorder: AuditRecorder, clock: Optional[Clock] = None):
        self.evaluator = evaluator
        self.recorder = recorder
        self.clock = clock or recorder.clock

    def apply(
        self,
        result: TestResult,
        event: TransitionEvent,
        payload: TransitionPayload,
        actor: str,
        history: Optional[HistoryLoader] = None,
    ) -> TransitionDecision:
        target = next_status(result.status, event)
        handler = getattr(self, f"_on_{event.value}")
        updated, outcome = handler(result, payload, actor, history)
        updated = updated.model_copy(update={"status": target, "updated_at": self.clock.now()})
        logger.info(
            f"TRANSITION: result {result.id} {result.status.value} -[{event.value}]-> {target.value} by {actor}"
        )
        return TransitionDecision(event=event, previous_status=result.status, result=updated, outcome=outcome)

    # ----- helpers -----

    def _evaluate(self, result: TestResult, value: Optional[str], history: Optional[HistoryLoader], reference=None):
        reference = (
            reference
            or result.reference_range_snapshot
            or self.evaluator.repository.get_reference_range(result.test_id)
        )
        prior = history(result) if history else []
        return self.evaluator.evaluate(
            result.test_id,
            value,
            patient_id=result.patient_id,
            reference_range=reference,
            prior_values=prior,
        )

    @staticmethod
    def _outcome_fields(outcome: ValidationOutcome) -> dict:
        return {
            "flag": outcome.primary_flag,
            "is_critical": outcome.is_critical,
            "delta_flagged": outcome.delta_exceeded,
            "validation_warnings": tuple(outcome.warnings),
        }

    @staticmethod
    def _require_value(payload: TransitionPayload) -> str:
        value = payload.effective_value
        if value is None:
            raise ValidationBlocked(["value is required"])
        return value

    @staticmethod
    def _check_override(outcome: ValidationOutcome, payload: TransitionPayload) -> Optional[str]:
        """Blocked outcomes pass only with an explicit reviewer override and note."""
        if outcome.is_valid:
            return None
        if payload.override and payload.override_note and payload.override_note.strip():
            logger.warning(f"OVERRIDE: blocking errors overridden: {'; '.join(outcome.errors)}")
            return payload.override_note.strip()
        errors = list(outcome.errors)
        if payload.override:
            errors.append("overrideNote is required to override blocking errors")
        raise ValidationBlocked(errors, outcome)

    # ----- handlers -----

    def _on_enter_value(self, result, payload, actor, history):
        value = self._require_value(payload)
        reference = (
            payload.reference_range
            or result.reference_range_snapshot
            or self.evaluator.repository.get_reference_range(result.test_id)
        )
        outcome = self._evaluate(result, value, history, reference=reference)
        if not outcome.is_valid:
            raise ValidationBlocked(outcome.errors, outcome)

        now = self.clock.now()
        unit = payload.unit or result.unit or (reference.unit if reference else None)
        return result.model_copy(update={
            "value": value,
            "unit": unit,
            "reference_range_snapshot": reference,
            "entered_by": actor,
            "entered_at": now,
            **self._outcome_fields(outcome),
        }), outcome

    def _on_edit_value(self, result, payload, actor, history):
        value = self._require_value(payload)
        outcome = self._evaluate(result, value, history)
        if not outcome.is_valid:
            raise ValidationBlocked(outcome.errors, outcome)

        amendment = self.recorder.record_change(
            result, value, actor,
            reason_code=payload.reason_code,
            notes=payload.notes,
            new_flag=outcome.primary_flag,
        )
        updated = self.recorder.append(result, amendment)
        return updated.model_copy(update={
            "value": value,
            "unit": payload.unit or result.unit,
            "corrected_by": actor,
            "corrected_at": amendment.timestamp,
            "critical_notification": None,
            **self._outcome_fields(outcome),
        }), outcome

    def _on_mark_preliminary(self, result, payload, actor, history):
        return result.model_copy(update={"review_note": payload.review_note or result.review_note}), None

    def _on_submit_for_review(self, result, payload, actor, history):
        return result.model_copy(update={"review_note": payload.review_note or result.review_note}), None

    def _on_request_senior_review(self, result, payload, actor, history):
        return result.model_copy(update={
            "senior_review_requested": True,
            "senior_review_requested_by": actor,
            "senior_review_requested_at": self.clock.now(),
            "review_note": payload.review_note or payload.notes or result.review_note,
        }), None

    def _on_acknowledge_critical(self, result, payload, actor, history):
        missing = self._missing_notification_fields(payload)
        if missing:
            raise ValidationBlocked([f"{field} is required to acknowledge a critical result" for field in missing])
        return result.model_copy(update={
            "critical_notification": self._notification(payload, actor),
        }), None

    def _on_verify(self, result, payload, actor, history):
        outcome = self._evaluate(result, result.value, history)
        override_note = self._check_override(outcome, payload)
        return result.model_copy(update={
            "verified_by": actor,
            "verified_at": self.clock.now(),
            "override_note": override_note or result.override_note,
            "review_note": payload.review_note or result.review_note,
            **self._outcome_fields(outcome),
        }), outcome

    def _on_approve(self, result, payload, actor, history):
        outcome = self._evaluate(result, result.value, history)
        override_note = self._check_override(outcome, payload)

        notification = result.critical_notification
        if outcome.is_critical:
            missing = self._missing_notification_fields(payload)
            if not missing:
                notification = self._notification(payload, actor)
            elif notification is None:
                logger.info(f"CRITICAL_ACK_REQUIRED: result {result.id} missing {missing}")
                raise CriticalAcknowledgmentRequired(missing, [f.value for f in outcome.flags])

        now = self.clock.now()
        return result.model_copy(update={
            "verified_by": result.verified_by or actor,
            "verified_at": result.verified_at or now,
            "finalized_by": actor,
            "finalized_at": now,
            "critical_notification": notification,
            "override_note": override_note or result.override_note,
            "review_note": payload.review_note or result.review_note,
            **self._outcome_fields(outcome),
        }), outcome

    def _on_reject(self, result, payload, actor, history):
        reason = (payload.rejection_reason or "").strip()
        if not reason:
            raise ValidationBlocked(["rejectionReason is required to reject a result"])
        return result.model_copy(update={
            "rejected_by": actor,
            "rejected_at": self.clock.now(),
            "rejection_reason": reason,
            "review_note": payload.review_note or result.review_note,
        }), None

    def _on_amend(self, result, payload, actor, history):
        value = self._require_value(payload)
        outcome = self._evaluate(result, value, history)
        if not outcome.is_valid:
            raise ValidationBlocked(outcome.errors, outcome)

        amendment = self.recorder.record_change(
            result, value, actor,
            reason_code=payload.reason_code,
            notes=payload.notes,
            new_flag=outcome.primary_flag,
        )
        updated = self.recorder.append(result, amendment)
        return updated.model_copy(update={
            "value": value,
            "unit": payload.unit or result.unit,
            "amended_by": actor,
            "amended_at": amendment.timestamp,
            "critical_notification": None,
            **self._outcome_fields(outcome),
        }), outcome

    # ----- critical notification -----

    @staticmethod
    def _missing_notification_fields(payload: TransitionPayload) -> List[str]:
        missing = []
        if not (payload.notified_person or "").strip():
            missing.append("notifiedPerson")
        if not (payload.notification_time or "").strip():
            missing.append("notificationTime")
        return missing

    def _notification(self, payload: TransitionPayload, actor: str) -> CriticalNotification:
        return CriticalNotification(
            notified_person=payload.notified_person.strip(),
            notification_time=payload.notification_time.strip(),
            notification_method=payload.notification_method,
            recorded_by=actor,
            recorded_at=self.clock.now(),
        )
