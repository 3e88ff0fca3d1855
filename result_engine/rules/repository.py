"""
Rule Store

Read-only access to per-test validation rules and reference ranges.
No rule logic lives here; the evaluator consumes whatever this returns.

Implementations:
- InMemoryRuleRepository   rules handed in directly (tests, embedding)
- JsonRuleRepository       versioned JSON ruleset on disk
- CachedRuleRepository     per-test memoisation with explicit invalidation
- PostgresRuleRepository   validation_rules / test_reference_ranges tables
"""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import psycopg2
from psycopg2.extras import RealDictCursor
from pydantic import ValidationError

from result_engine.errors import PersistenceError
from result_engine.rules.models import ReferenceRange, ValidationRule

logger = logging.getLogger("result_engine.rules")

DEFAULT_RULES_PATH = Path(__file__).resolve().parent.parent / "data" / "validation_rules_v1_0.json"


class RuleRepository(ABC):
    """Read-only source of rule definitions."""

    @abstractmethod
    def get_rules(self, test_id: str) -> List[ValidationRule]:
        """Active rules for a test, in definition order."""

    @abstractmethod
    def get_reference_range(self, test_id: str) -> Optional[ReferenceRange]:
        """Default reference range for a test, if any."""


class InMemoryRuleRepository(RuleRepository):

    def __init__(
        self,
        rules: Iterable[ValidationRule] = (),
        reference_ranges: Optional[Dict[str, ReferenceRange]] = None,
    ):
        self._rules: Dict[str, List[ValidationRule]] = {}
        for rule in rules:
            self._rules.setdefault(rule.test_id, []).append(rule)
        self._ranges = dict(reference_ranges or {})

    def get_rules(self, test_id: str) -> List[ValidationRule]:
        return [r for r in self._rules.get(test_id, []) if r.active]

    def get_reference_range(self, test_id: str) -> Optional[ReferenceRange]:
        return self._ranges.get(test_id)


class JsonRuleRepository(RuleRepository):
    """
    Ruleset loaded from a JSON file.

    File shape:
        {
          "version": "1.0",
          "reference_ranges": [{"testId": "...", "low": .., "high": .., ...}],
          "rules": [{"id": "...", "testId": "...", "ruleType": "...", ...}]
        }

    A missing or unparseable file leaves the ruleset empty. Entries that fail
    schema validation are skipped and logged. Neither is fatal.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else DEFAULT_RULES_PATH
        self._version = "?"
        self._rules: Dict[str, List[ValidationRule]] = {}
        self._ranges: Dict[str, ReferenceRange] = {}
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            logger.error(f"Ruleset not found: {self.path}")
            return

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            logger.error(f"VALIDATION_ERROR: ruleset {self.path} is not valid JSON: {e}")
            return

        self._version = str(data.get("version", "?"))

        for entry in data.get("reference_ranges", []):
            test_id = entry.get("testId") or entry.get("test_id")
            if not test_id:
                logger.error(f"VALIDATION_ERROR: reference range without testId: {entry}")
                continue
            try:
                self._ranges[test_id] = ReferenceRange.model_validate(entry)
            except ValidationError as e:
                logger.error(f"VALIDATION_ERROR: reference range for '{test_id}': {e}")

        for entry in data.get("rules", []):
            try:
                rule = ValidationRule.model_validate(entry)
            except ValidationError as e:
                logger.error(f"VALIDATION_ERROR: rule {entry.get('id', '?')}: {e}")
                continue
            self._rules.setdefault(rule.test_id, []).append(rule)

        rule_count = sum(len(v) for v in self._rules.values())
        logger.info(f"Loaded ruleset v{self._version} ({rule_count} rules, {len(self._ranges)} reference ranges)")

    @property
    def ruleset_version(self) -> str:
        return f"rules_v{self._version}"

    @property
    def test_ids(self) -> List[str]:
        return sorted(set(self._rules) | set(self._ranges))

    def get_rules(self, test_id: str) -> List[ValidationRule]:
        return [r for r in self._rules.get(test_id, []) if r.active]

    def get_reference_range(self, test_id: str) -> Optional[ReferenceRange]:
        return self._ranges.get(test_id)


class CachedRuleRepository(RuleRepository):
    """
    Memoises another repository per test id.

    Cached rules are frozen models and are never mutated; configuration
    changes become visible only after ``invalidate``.
    """

    def __init__(self, inner: RuleRepository):
        self.inner = inner
        self._cache: Dict[str, Tuple[List[ValidationRule], Optional[ReferenceRange]]] = {}
        self._lock = Lock()

    def _entry(self, test_id: str) -> Tuple[List[ValidationRule], Optional[ReferenceRange]]:
        with self._lock:
            cached = self._cache.get(test_id)
        if cached is not None:
            return cached
        entry = (list(self.inner.get_rules(test_id)), self.inner.get_reference_range(test_id))
        with self._lock:
            self._cache[test_id] = entry
        return entry

    def get_rules(self, test_id: str) -> List[ValidationRule]:
        return list(self._entry(test_id)[0])

    def get_reference_range(self, test_id: str) -> Optional[ReferenceRange]:
        return self._entry(test_id)[1]

    def invalidate(self, test_id: Optional[str] = None) -> None:
        with self._lock:
            if test_id is None:
                self._cache.clear()
            else:
                self._cache.pop(test_id, None)


SQL_GET_RULES = """
SELECT
    id, test_id, rule_type, action, active, requires_review, message,
    min_value, max_value, critical_low, critical_high,
    absurd_low, absurd_high, delta_threshold, delta_type
FROM validation_rules
WHERE test_id = %s AND active = TRUE
ORDER BY id;
"""

SQL_GET_REFERENCE_RANGE = """
SELECT low, high, unit, text, result_type, allowed_values
FROM test_reference_ranges
WHERE test_id = %s
LIMIT 1;
"""


class PostgresRuleRepository(RuleRepository):
    """
    Rules stored in PostgreSQL.

    Args:
        conn_factory: callable returning a psycopg2 connection
    """

    def __init__(self, conn_factory: Callable[[], Any]):
        self._conn_factory = conn_factory

    def _fetch(self, sql: str, params: tuple) -> List[Dict[str, Any]]:
        try:
            conn = self._conn_factory()
        except psycopg2.Error as e:
            raise PersistenceError(f"rule store connection failed: {e}") from e
        try:
            cur = conn.cursor(cursor_factory=RealDictCursor)
            try:
                cur.execute(sql, params)
                return [dict(row) for row in cur.fetchall()]
            finally:
                cur.close()
        except psycopg2.Error as e:
            raise PersistenceError(f"rule store query failed: {e}") from e
        finally:
            conn.close()

    def get_rules(self, test_id: str) -> List[ValidationRule]:
        rules = []
        for row in self._fetch(SQL_GET_RULES, (test_id,)):
            row = {k: v for k, v in row.items() if v is not None}
            try:
                rules.append(ValidationRule.model_validate(row))
            except ValidationError as e:
                logger.error(f"VALIDATION_ERROR: rule {row.get('id', '?')}: {e}")
        return rules

    def get_reference_range(self, test_id: str) -> Optional[ReferenceRange]:
        rows = self._fetch(SQL_GET_REFERENCE_RANGE, (test_id,))
        if not rows:
            return None
        row = {k: v for k, v in rows[0].items() if v is not None}
        try:
            return ReferenceRange.model_validate(row)
        except ValidationError as e:
            logger.error(f"VALIDATION_ERROR: reference range for '{test_id}': {e}")
            return None
