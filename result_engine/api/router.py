"""
Result Engine HTTP Endpoints

Routes:
- GET  /api/v1/results/health                     - Health check + ruleset info
- POST /api/v1/results/evaluate                   - Pure evaluation, nothing stored
- POST /api/v1/results/                           - Register a pending result
- GET  /api/v1/results/                           - List results (status/patient/test filters)
- GET  /api/v1/results/{result_id}                - Read a result with its version
- GET  /api/v1/results/{result_id}/history        - Amendment/correction records
- POST /api/v1/results/{result_id}/transitions    - Apply a lifecycle event
- POST /api/v1/results/batch/approve              - Approve several results independently

Engine refusals map to HTTP as:
    422 validation_blocked   409 invalid_transition / conflict
    428 critical_acknowledgment_required   404 not_found   503 persistence_error
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from result_engine.config import build_engine
from result_engine.errors import ResultEngineError
from result_engine.evaluator.models import EvaluationInput
from result_engine.lifecycle.machine import allowed_events
from result_engine.lifecycle.models import ResultStatus, TestResult, TransitionEvent, TransitionPayload
from result_engine.service import ResultEngine

router = APIRouter(prefix="/api/v1/results", tags=["results"])

ERROR_STATUS_CODES = {
    "validation_blocked": 422,
    "invalid_transition": 409,
    "conflict": 409,
    "critical_acknowledgment_required": 428,
    "not_found": 404,
    "persistence_error": 503,
}

_engine: Optional[ResultEngine] = None


def get_engine() -> ResultEngine:
    """Process-wide engine, built from the environment on first use."""
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine


def set_engine(engine: Optional[ResultEngine]) -> None:
    global _engine
    _engine = engine


def _raise_http(err: ResultEngineError) -> None:
    raise HTTPException(
        status_code=ERROR_STATUS_CODES.get(err.kind, 400),
        detail={"success": False, "error": err.to_dict()},
    )


def _result_body(result: TestResult) -> Dict[str, Any]:
    return {
        "success": True,
        "result": result.to_document(),
        "version": result.version,
        "allowedEvents": [e.value for e in allowed_events(result.status)],
    }


class _CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True


class CreateResultRequest(_CamelModel):
    """Request body for registering an ordered test."""
    order_id: str
    sample_id: str
    patient_id: str
    test_id: str
    test_name: Optional[str] = None
    unit: Optional[str] = None
    tenant_id: Optional[str] = None
    id: Optional[str] = None


class TransitionRequest(_CamelModel):
    """Request body for a lifecycle event."""
    event: TransitionEvent
    actor: str
    expected_version: Optional[int] = None
    payload: TransitionPayload = Field(default_factory=TransitionPayload)


class BatchApproveRequest(_CamelModel):
    """Request body for batch approval."""
    result_ids: List[str]
    actor: str
    payload: TransitionPayload = Field(default_factory=TransitionPayload)


@router.get("/health")
def results_health(engine: ResultEngine = Depends(get_engine)) -> Dict[str, Any]:
    """Health check with the active store and ruleset."""
    inner = getattr(engine.repository, "inner", engine.repository)
    return {
        "status": "healthy",
        "store": type(engine.store).__name__,
        "rules": type(inner).__name__,
        "ruleset_version": getattr(inner, "ruleset_version", None),
        "max_retries": engine.max_retries,
    }


@router.post("/evaluate")
def evaluate_value(request: EvaluationInput, engine: ResultEngine = Depends(get_engine)) -> Dict[str, Any]:
    """
    Evaluate a candidate value without storing anything.

    Returns:
        The validation outcome plus the primary flag it would store.
    """
    outcome = engine.evaluate(request)
    return {
        "success": True,
        "outcome": outcome.model_dump(mode="json", by_alias=True),
        "flag": outcome.primary_flag.value,
        "fingerprint": outcome.fingerprint(),
    }


@router.post("/", status_code=201)
def create_result(request: CreateResultRequest, engine: ResultEngine = Depends(get_engine)) -> Dict[str, Any]:
    try:
        result = engine.create_result(
            order_id=request.order_id,
            sample_id=request.sample_id,
            patient_id=request.patient_id,
            test_id=request.test_id,
            test_name=request.test_name,
            unit=request.unit,
            tenant_id=request.tenant_id,
            result_id=request.id,
        )
    except ResultEngineError as e:
        _raise_http(e)
    return _result_body(result)


@router.get("/")
def list_results(
    status: Optional[ResultStatus] = None,
    patient_id: Optional[str] = None,
    test_id: Optional[str] = None,
    engine: ResultEngine = Depends(get_engine),
) -> Dict[str, Any]:
    """List results, e.g. ``?status=pending_review`` for the review queue."""
    try:
        results = engine.list_results(status=status, patient_id=patient_id, test_id=test_id)
    except ResultEngineError as e:
        _raise_http(e)
    return {
        "success": True,
        "count": len(results),
        "results": [dict(r.to_document(), version=r.version) for r in results],
    }


@router.get("/{result_id}")
def get_result(result_id: str, engine: ResultEngine = Depends(get_engine)) -> Dict[str, Any]:
    try:
        result = engine.get_result(result_id)
    except ResultEngineError as e:
        _raise_http(e)
    return _result_body(result)


@router.get("/{result_id}/history")
def get_history(result_id: str, engine: ResultEngine = Depends(get_engine)) -> Dict[str, Any]:
    """Change records in order, plus whether the hash chain is intact."""
    try:
        history = engine.get_history(result_id)
        intact = engine.verify_history(result_id)
    except ResultEngineError as e:
        _raise_http(e)
    return {
        "success": True,
        "result_id": result_id,
        "count": len(history),
        "chain_intact": intact,
        "amendments": [a.model_dump(mode="json", by_alias=True) for a in history],
    }


@router.post("/{result_id}/transitions")
def apply_transition(
    result_id: str,
    request: TransitionRequest,
    engine: ResultEngine = Depends(get_engine),
) -> Dict[str, Any]:
    """
    Apply one lifecycle event.

    Raises:
        422: blocking validation errors or missing mandatory fields
        409: illegal event for the current status, or stale expectedVersion
        428: critical result approved without notification acknowledgment
    """
    try:
        result = engine.transition(
            result_id,
            request.event,
            request.payload,
            request.actor,
            expected_version=request.expected_version,
        )
    except ResultEngineError as e:
        _raise_http(e)
    return _result_body(result)


@router.post("/batch/approve")
def approve_batch(request: BatchApproveRequest, engine: ResultEngine = Depends(get_engine)) -> Dict[str, Any]:
    outcomes = engine.approve_batch(request.result_ids, request.actor, request.payload)
    return {
        "success": all(o.success for o in outcomes),
        "approved": sum(1 for o in outcomes if o.success),
        "failed": sum(1 for o in outcomes if not o.success),
        "outcomes": [o.model_dump(mode="json", by_alias=True) for o in outcomes],
    }
