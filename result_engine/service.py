"""
Result Engine Facade

The single entry point the host application talks to:

    evaluate(input)                                  pure, no side effects
    transition(result_id, event, payload, actor)     the only mutating call
    get_history(result_id)                           ordered change records

plus the workflow helpers around them (create, read, list, batch approval,
audit-chain verification).

A transition is one store transaction: load, evaluate against a history read
from the same snapshot, decide, conditional write. Version conflicts are
retried when the caller did not pin a version; validation refusals never are.
Notifications go out only after the write has committed.
"""

import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import BaseModel
from pydantic.alias_generators import to_camel

from result_engine.audit.models import Amendment
from result_engine.audit.recorder import AuditRecorder, verify_chain
from result_engine.clock import Clock
from result_engine.concurrency.guard import ConcurrencyGuard
from result_engine.errors import (
    ConflictError,
    InvalidTransition,
    ResultEngineError,
    ResultNotFound,
    ValidationBlocked,
)
from result_engine.evaluator.evaluate import RuleEvaluator
from result_engine.evaluator.models import EvaluationInput, PriorValue, ValidationOutcome
from result_engine.lifecycle.machine import ResultStateMachine, TransitionDecision, allowed_events
from result_engine.lifecycle.models import (
    ResultStatus,
    TestResult,
    TransitionEvent,
    TransitionPayload,
)
from result_engine.notifications.dispatcher import (
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    NotificationEvent,
    NotificationKind,
)
from result_engine.rules.repository import RuleRepository
from result_engine.store.base import DocumentReader, DocumentStore
from result_engine.store.memory import InMemoryDocumentStore

logger = logging.getLogger("result_engine.service")

DEFAULT_MAX_RETRIES = 3

# Results that never count as a "previous value" for delta checks
_NO_HISTORY_STATUSES = (ResultStatus.PENDING, ResultStatus.REJECTED)


class BatchItemOutcome(BaseModel):
    """Per-result outcome of a batch approval."""
    result_id: str
    success: bool
    result: Optional[Dict[str, Any]] = None
    version: Optional[int] = None
    error: Optional[Dict[str, Any]] = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class ResultEngine:
    """
    Args:
        repository: rule store (read-only)
        store: document store for results; in-memory when omitted
        dispatcher: post-commit notifications; logging dispatcher when omitted
        clock: injectable time source
        max_retries: automatic retries on version conflict when no version was pinned
    """

    def __init__(
        self,
        repository: RuleRepository,
        store: Optional[DocumentStore] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Optional[Clock] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ):
        self.repository = repository
        self.store = store if store is not None else InMemoryDocumentStore()
        self.dispatcher = dispatcher or LoggingNotificationDispatcher()
        self.clock = clock or Clock()
        self.max_retries = max(0, max_retries)

        self.evaluator = RuleEvaluator(repository)
        self.recorder = AuditRecorder(self.clock)
        self.machine = ResultStateMachine(self.evaluator, self.recorder, self.clock)
        self.guard = ConcurrencyGuard(self.store)

    # =========================================================================
    # READ PATHS
    # =========================================================================

    def evaluate(self, data: Union[EvaluationInput, Dict[str, Any]]) -> ValidationOutcome:
        """Pure evaluation; the reference range defaults to the configured one."""
        if not isinstance(data, EvaluationInput):
            data = EvaluationInput.model_validate(data)
        return self.evaluator.evaluate_input(data)

    def get_result(self, result_id: str) -> TestResult:
        stored = self.store.get(result_id)
        if stored is None:
            raise ResultNotFound(result_id)
        return TestResult.from_document(stored.doc, stored.version)

    def list_results(self, **filters: Any) -> List[TestResult]:
        """
        Results whose fields equal every given filter, e.g.
        ``list_results(status=ResultStatus.PENDING_REVIEW)`` for a review queue.
        """
        query = {
            to_camel(key): getattr(value, "value", value)
            for key, value in filters.items()
            if value is not None
        }
        return [TestResult.from_document(s.doc, s.version) for s in self.store.query(query)]

    def get_history(self, result_id: str) -> List[Amendment]:
        """Change records in append order (non-decreasing timestamps)."""
        return list(self.get_result(result_id).amendments)

    def verify_history(self, result_id: str) -> bool:
        """True when the hash chain over the result's change records is intact."""
        intact = verify_chain(self.get_result(result_id).amendments)
        if not intact:
            logger.error(f"AUDIT_CHAIN_BROKEN: result {result_id}")
        return intact

    def available_events(self, result_id: str) -> List[TransitionEvent]:
        return allowed_events(self.get_result(result_id).status)

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    def create_result(
        self,
        order_id: str,
        sample_id: str,
        patient_id: str,
        test_id: str,
        test_name: Optional[str] = None,
        unit: Optional[str] = None,
        tenant_id: Optional[str] = None,
        result_id: Optional[str] = None,
    ) -> TestResult:
        """Register an ordered test as ``pending``. Values arrive via ``enter_value``."""
        now = self.clock.now()
        result = TestResult(
            id=result_id or uuid.uuid4().hex,
            tenant_id=tenant_id,
            order_id=order_id,
            sample_id=sample_id,
            patient_id=patient_id,
            test_id=test_id,
            test_name=test_name,
            unit=unit,
            created_at=now,
            updated_at=now,
        )
        created = self.guard.create(result)
        logger.info(f"CREATED: result {created.id} ({test_id}) for patient {patient_id}")
        return created

    def transition(
        self,
        result_id: str,
        event: Union[TransitionEvent, str],
        payload: Union[TransitionPayload, Dict[str, Any], None] = None,
        actor: str = "",
        expected_version: Optional[int] = None,
    ) -> TestResult:
        """
        Apply ``event`` to a stored result.

        Args:
            expected_version: the version the caller read. When given, a
                mismatch surfaces immediately as ConflictError. When omitted,
                conflicts are retried up to ``max_retries`` times.

        Raises:
            ValidationBlocked, InvalidTransition, CriticalAcknowledgmentRequired,
            ConflictError, ResultNotFound, PersistenceError
        """
        event = self._coerce_event(result_id, event)
        if payload is None:
            payload = TransitionPayload()
        elif not isinstance(payload, TransitionPayload):
            payload = TransitionPayload.model_validate(payload)
        if not actor or not actor.strip():
            raise ValidationBlocked(["actor is required"])

        attempts = 1 if expected_version is not None else self.max_retries + 1
        for attempt in range(1, attempts + 1):
            decisions: List[TransitionDecision] = []

            def transition_fn(current: TestResult, view: DocumentReader) -> TestResult:
                decision = self.machine.apply(
                    current, event, payload, actor,
                    history=lambda result: self._prior_values(view, result),
                )
                decisions.append(decision)
                return decision.result

            try:
                committed = self.guard.apply_transition(result_id, expected_version, transition_fn)
            except ConflictError:
                if attempt < attempts:
                    logger.info(f"RETRY: {event.value} on result {result_id} (attempt {attempt + 1}/{attempts})")
                    continue
                raise
            except ResultEngineError as e:
                logger.info(f"REFUSED: {event.value} on result {result_id} by {actor}: [{e.kind}] {e.reason}")
                raise

            self._notify(decisions[-1], committed, actor)
            return committed

        raise ConflictError(result_id, expected_version, None)

    def approve_batch(
        self,
        result_ids: Iterable[str],
        actor: str,
        payload: Union[TransitionPayload, Dict[str, Any], None] = None,
    ) -> List[BatchItemOutcome]:
        """Approve each result independently; one refusal does not stop the rest."""
        outcomes = []
        for result_id in result_ids:
            try:
                result = self.transition(result_id, TransitionEvent.APPROVE, payload, actor)
                outcomes.append(BatchItemOutcome(
                    result_id=result_id,
                    success=True,
                    result=result.to_document(),
                    version=result.version,
                ))
            except ResultEngineError as e:
                outcomes.append(BatchItemOutcome(result_id=result_id, success=False, error=e.to_dict()))

        approved = sum(1 for o in outcomes if o.success)
        logger.info(f"BATCH_APPROVE: {approved}/{len(outcomes)} approved by {actor}")
        return outcomes

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _coerce_event(self, result_id: str, event: Union[TransitionEvent, str]) -> TransitionEvent:
        if isinstance(event, TransitionEvent):
            return event
        try:
            return TransitionEvent(str(event).strip().lower())
        except ValueError:
            current = self.get_result(result_id)
            raise InvalidTransition(current.status.value, str(event), "unknown event")

    @staticmethod
    def _prior_values(view: DocumentReader, result: TestResult) -> List[PriorValue]:
        """
        Same patient, same test, entered values only; read inside the write transaction.

        Once the result itself has been entered, only results entered before it
        (ties broken on id) count as prior.
        """
        cutoff = (result.entered_at, result.id) if result.entered_at is not None else None
        prior = []
        for stored in view.query({"patientId": result.patient_id, "testId": result.test_id}):
            if stored.id == result.id:
                continue
            other = TestResult.from_document(stored.doc, stored.version)
            if other.status in _NO_HISTORY_STATUSES or other.value is None or other.entered_at is None:
                continue
            if cutoff is not None and (other.entered_at, other.id) >= cutoff:
                continue
            prior.append(PriorValue(
                value=other.value,
                entered_at=other.entered_at,
                result_id=other.id,
                patient_id=other.patient_id,
            ))
        return prior

    def _notify(self, decision: TransitionDecision, result: TestResult, actor: str) -> None:
        kinds = []
        if decision.event == TransitionEvent.APPROVE:
            kinds.append(NotificationKind.RESULT_FINALIZED)
        if decision.event == TransitionEvent.AMEND:
            kinds.append(NotificationKind.RESULT_AMENDED)
        if (
            decision.outcome is not None
            and decision.outcome.is_critical
            and decision.event in (TransitionEvent.ENTER_VALUE, TransitionEvent.EDIT_VALUE, TransitionEvent.AMEND)
        ):
            kinds.append(NotificationKind.CRITICAL_RESULT)

        for kind in kinds:
            self.dispatcher.dispatch(NotificationEvent(
                kind=kind,
                result_id=result.id,
                patient_id=result.patient_id,
                test_id=result.test_id,
                status=result.status.value,
                value=result.value,
                flag=result.flag.value if result.flag else None,
                actor=actor,
                occurred_at=result.updated_at or self.clock.now(),
                version=result.version,
                details={
                    "isCritical": result.is_critical,
                    "previousStatus": decision.previous_status.value,
                    "warnings": list(result.validation_warnings),
                },
            ))
