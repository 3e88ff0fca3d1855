"""
Rule Evaluator

Given a candidate value, the test's reference data and the patient's prior
results, computes flags, warnings and a block/warn classification.

Numeric values are checked in a fixed order, most severe first:
  1. absurd    physiologically impossible, always blocks
  2. critical  life-threatening, demands review, never blocks
  3. range     outside the normal interval, warn (or block if configured)
  4. delta     too large a swing vs. the most recent prior result

Qualitative and free-text values skip all four; only the required-field and
allowed-value checks apply.

The evaluator never raises for data-quality problems. Missing bounds make a
rule inactive and are reported as configuration warnings.
"""

import logging
import math
from typing import Iterable, List, Optional, Sequence

from result_engine.evaluator.models import (
    FLAG_PRIORITY,
    ConfigurationWarning,
    DeltaCheck,
    EvaluationInput,
    OutcomeFlag,
    PriorValue,
    ValidationOutcome,
)
from result_engine.rules.models import (
    DeltaType,
    ReferenceRange,
    ResultType,
    RuleAction,
    RuleType,
    ValidationRule,
)
from result_engine.rules.repository import RuleRepository

logger = logging.getLogger("result_engine.evaluator")


def parse_numeric(value: Optional[str]) -> Optional[float]:
    """Parse a result value to a finite float, or None."""
    if value is None:
        return None
    try:
        number = float(str(value).strip())
    except ValueError:
        return None
    if not math.isfinite(number):
        return None
    return number


def _fmt(number: float) -> str:
    return f"{number:g}"


def select_previous(prior_values: Iterable[PriorValue], patient_id: Optional[str] = None) -> Optional[PriorValue]:
    """
    Most recently entered numeric prior value.

    Ties on ``entered_at`` go to the greatest ``result_id``. Priors belonging
    to another patient (when both sides carry a patient id) are ignored.
    """
    candidates = [
        p for p in prior_values
        if parse_numeric(p.value) is not None
        and not (patient_id and p.patient_id and p.patient_id != patient_id)
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda p: (p.entered_at, p.result_id))


class _OutcomeBuilder:
    """Collects rule hits and merges them into a ValidationOutcome."""

    def __init__(self, test_id: str):
        self.test_id = test_id
        self.flags = set()
        self.warnings: List[str] = []
        self.errors: List[str] = []
        self.config_warnings: List[ConfigurationWarning] = []
        self.is_critical = False
        self.requires_review = False
        self.numeric_value: Optional[float] = None
        self.delta: Optional[DeltaCheck] = None

    def hit(self, rule: Optional[ValidationRule], message: str, action: RuleAction = RuleAction.WARN) -> None:
        if rule is not None:
            action = rule.action
            if rule.message:
                message = rule.message
            if rule.requires_review:
                self.requires_review = True
        if action == RuleAction.BLOCK:
            self.errors.append(message)
        else:
            self.warnings.append(message)

    def block(self, message: str) -> None:
        self.errors.append(message)

    def missing_config(self, message: str, rule_id: Optional[str] = None) -> None:
        logger.warning(f"MISSING_CONFIG: {self.test_id}: {message}")
        self.config_warnings.append(ConfigurationWarning(test_id=self.test_id, rule_id=rule_id, message=message))
        self.warnings.append(message)

    def build(self) -> ValidationOutcome:
        outcome = ValidationOutcome(
            is_valid=not self.errors,
            is_critical=self.is_critical,
            requires_review=self.requires_review or self.is_critical,
            flags=[f for f in FLAG_PRIORITY if f in self.flags],
            warnings=self.warnings,
            errors=self.errors,
            configuration_warnings=self.config_warnings,
            numeric_value=self.numeric_value,
            delta=self.delta,
        )
        if self.errors:
            logger.info(f"BLOCKED: {self.test_id}: {'; '.join(self.errors)}")
        return outcome


def evaluate_rules(
    test_id: str,
    candidate_value: Optional[str],
    rules: Sequence[ValidationRule],
    reference_range: Optional[ReferenceRange] = None,
    prior_values: Iterable[PriorValue] = (),
    patient_id: Optional[str] = None,
) -> ValidationOutcome:
    """
    Evaluate a candidate value against a fixed set of rules.

    Pure: no I/O, no clock, no randomness. Identical input gives an
    identical outcome.
    """
    out = _OutcomeBuilder(test_id)
    raw = "" if candidate_value is None else str(candidate_value).strip()

    if not raw:
        out.block("value is required")
        return out.build()

    number = parse_numeric(raw)
    result_type = _infer_result_type(reference_range, rules, number)

    if result_type != ResultType.NUMERIC:
        allowed = reference_range.allowed_values if reference_range else []
        if allowed and raw.lower() not in {a.lower() for a in allowed}:
            out.block(f"Value '{raw}' is not one of the allowed values: {', '.join(allowed)}")
        return out.build()

    if number is None:
        out.block(f"Value '{raw}' is not numeric")
        return out.build()

    out.numeric_value = number
    active = [r for r in rules if r.active]
    usable = []
    for rule in active:
        if rule.has_bounds():
            usable.append(rule)
        else:
            out.missing_config(f"{rule.rule_type.value} rule {rule.id} has no bounds configured", rule.id)

    # 1. absurd
    for rule in (r for r in usable if r.rule_type == RuleType.ABSURD):
        if rule.absurd_low is not None and number < rule.absurd_low:
            out.flags.add(OutcomeFlag.ABSURD)
            out.block(rule.message or f"Value {_fmt(number)} is absurdly low (< {_fmt(rule.absurd_low)})")
        elif rule.absurd_high is not None and number > rule.absurd_high:
            out.flags.add(OutcomeFlag.ABSURD)
            out.block(rule.message or f"Value {_fmt(number)} is absurdly high (> {_fmt(rule.absurd_high)})")

    # 2. critical
    for rule in (r for r in usable if r.rule_type == RuleType.CRITICAL):
        message = None
        if rule.critical_low is not None and number < rule.critical_low:
            out.flags.add(OutcomeFlag.CRITICAL_LOW)
            message = f"Critical low value: {_fmt(number)} (< {_fmt(rule.critical_low)})"
        elif rule.critical_high is not None and number > rule.critical_high:
            out.flags.add(OutcomeFlag.CRITICAL_HIGH)
            message = f"Critical high value: {_fmt(number)} (> {_fmt(rule.critical_high)})"
        if message:
            # critical never blocks save regardless of action; approval is gated instead
            out.is_critical = True
            out.warnings.append(rule.message or message)

    # 3. range
    for rule in (r for r in usable if r.rule_type == RuleType.RANGE):
        if rule.min_value is not None and number < rule.min_value:
            if not out.is_critical:
                out.flags.add(OutcomeFlag.ABNORMAL_LOW)
            out.hit(rule, f"Value {_fmt(number)} is below acceptable range ({_range_text(rule)})")
        elif rule.max_value is not None and number > rule.max_value:
            if not out.is_critical:
                out.flags.add(OutcomeFlag.ABNORMAL_HIGH)
            out.hit(rule, f"Value {_fmt(number)} is above acceptable range ({_range_text(rule)})")

    if reference_range is not None:
        if not reference_range.has_bounds():
            out.missing_config("reference range has no bounds configured")
        elif not out.is_critical:
            if reference_range.low is not None and number < reference_range.low:
                out.flags.add(OutcomeFlag.ABNORMAL_LOW)
                out.warnings.append("below reference range")
            elif reference_range.high is not None and number > reference_range.high:
                out.flags.add(OutcomeFlag.ABNORMAL_HIGH)
                out.warnings.append("above reference range")

    # 4. delta
    delta_rules = [r for r in usable if r.rule_type == RuleType.DELTA]
    previous = select_previous(prior_values, patient_id) if delta_rules else None
    if previous is not None:
        previous_number = parse_numeric(previous.value)
        for rule in delta_rules:
            _check_delta(out, rule, number, previous_number, previous.result_id)

    return out.build()


def _infer_result_type(
    reference_range: Optional[ReferenceRange],
    rules: Sequence[ValidationRule],
    number: Optional[float],
) -> ResultType:
    """Declared type first, then the test configuration, then the value itself."""
    if reference_range is not None and reference_range.result_type is not None:
        return reference_range.result_type
    if (reference_range is not None and reference_range.has_bounds()) or any(r.active for r in rules):
        # all rule types compare numbers
        return ResultType.NUMERIC
    return ResultType.NUMERIC if number is not None else ResultType.QUALITATIVE


def _range_text(rule: ValidationRule) -> str:
    low = _fmt(rule.min_value) if rule.min_value is not None else ""
    high = _fmt(rule.max_value) if rule.max_value is not None else ""
    return f"{low}-{high}"


def _check_delta(
    out: _OutcomeBuilder,
    rule: ValidationRule,
    number: float,
    previous: float,
    previous_result_id: str,
) -> None:
    if rule.delta_type == DeltaType.PERCENT:
        if previous == 0:
            logger.debug(f"DELTA_SKIPPED: {out.test_id}: previous value is 0")
            return
        change = (number - previous) / abs(previous) * 100
        unit = "%"
    else:
        change = number - previous
        unit = ""

    exceeded = abs(change) > rule.delta_threshold
    out.delta = DeltaCheck(
        rule_id=rule.id,
        previous_value=previous,
        previous_result_id=previous_result_id,
        change=round(change, 4),
        threshold=rule.delta_threshold,
        delta_type=rule.delta_type.value,
        exceeded=exceeded,
    )
    if exceeded:
        out.flags.add(OutcomeFlag.DELTA_EXCEEDED)
        out.hit(
            rule,
            f"Significant delta from previous result: {abs(change):.1f}{unit} change "
            f"(previous: {_fmt(previous)}, current: {_fmt(number)}, threshold: {_fmt(rule.delta_threshold)}{unit})",
        )


class RuleEvaluator:
    """
    Evaluator bound to a rule repository.

    Rules are loaded per call; caching, if any, is the repository's concern.
    """

    def __init__(self, repository: RuleRepository):
        self.repository = repository

    def evaluate(
        self,
        test_id: str,
        candidate_value: Optional[str],
        patient_id: Optional[str] = None,
        reference_range: Optional[ReferenceRange] = None,
        prior_values: Iterable[PriorValue] = (),
    ) -> ValidationOutcome:
        rules = self.repository.get_rules(test_id)
        return evaluate_rules(
            test_id,
            candidate_value,
            rules,
            reference_range=reference_range,
            prior_values=list(prior_values),
            patient_id=patient_id,
        )

    def evaluate_input(self, data: EvaluationInput) -> ValidationOutcome:
        reference_range = data.reference_range or self.repository.get_reference_range(data.test_id)
        return self.evaluate(
            data.test_id,
            data.candidate_value,
            patient_id=data.patient_id,
            reference_range=reference_range,
            prior_values=data.prior_values,
        )
