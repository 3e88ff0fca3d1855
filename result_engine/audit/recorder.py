"""
Amendment/Correction Recorder

Builds the immutable change records appended to a result's history.

- Before finalization a change is a *correction*; the reason code is optional.
- After finalization it is an *amendment*; a reason code is mandatory.
- Timestamps never go backwards within one result; equal timestamps are
  ordered by ``sequence``.
- Each record is hash-chained to its predecessor.
"""

import logging
from typing import Optional, Sequence, Tuple

from result_engine.audit.models import Amendment, ChangeKind, ReasonCode
from result_engine.clock import Clock
from result_engine.errors import ValidationBlocked
from result_engine.evaluator.models import ResultFlag
from result_engine.shared.hashing import canonicalize_and_hash, verify_hash

logger = logging.getLogger("result_engine.audit")

# Status values after which edits are amendments. Kept as plain strings so the
# recorder does not import the lifecycle package.
_POST_FINAL = ("final", "amended")


def normalize_reason_code(raw: Optional[str]) -> Tuple[Optional[ReasonCode], Optional[str]]:
    """
    Map a caller-supplied reason code onto the enumerated list.

    Returns (code, note). Unknown codes become ``other`` and the raw text is
    returned as a note so it is not lost.
    """
    if raw is None or not str(raw).strip():
        return None, None
    text = str(raw).strip()
    try:
        return ReasonCode(text.lower()), None
    except ValueError:
        logger.info(f"REASON_CODE_UNKNOWN: '{text}' recorded as 'other'")
        return ReasonCode.OTHER, f"reason: {text}"


def compute_entry_hash(amendment: Amendment) -> str:
    body = amendment.model_dump(mode="json", exclude={"entry_hash"})
    return canonicalize_and_hash(body, exclude_volatile=False)


def verify_chain(amendments: Sequence[Amendment]) -> bool:
    """True when every record's hash and back-link are intact."""
    prev_hash = None
    for index, amendment in enumerate(amendments, start=1):
        if amendment.sequence != index or amendment.prev_hash != prev_hash:
            return False
        body = amendment.model_dump(mode="json", exclude={"entry_hash"})
        if not verify_hash(body, amendment.entry_hash, exclude_volatile=False):
            return False
        prev_hash = amendment.entry_hash
    return True


class AuditRecorder:
    """Creates and appends change records; never edits existing ones."""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or Clock()

    def record_change(
        self,
        result,
        new_value: str,
        actor: str,
        reason_code: Optional[str] = None,
        notes: Optional[str] = None,
        new_flag: Optional[ResultFlag] = None,
    ) -> Amendment:
        """
        Build the next change record for ``result``.

        Raises:
            ValidationBlocked: amendment without a reason code
        """
        status = getattr(result.status, "value", result.status)
        kind = ChangeKind.AMENDMENT if status in _POST_FINAL else ChangeKind.CORRECTION

        code, extra_note = normalize_reason_code(reason_code)
        if kind == ChangeKind.AMENDMENT and code is None:
            raise ValidationBlocked(["reasonCode is required to amend a finalized result"])
        if extra_note:
            notes = f"{extra_note}; {notes}" if notes else extra_note

        history = result.amendments
        last = history[-1] if history else None
        timestamp = self.clock.now()
        if last is not None and timestamp < last.timestamp:
            timestamp = last.timestamp

        draft = Amendment(
            sequence=len(history) + 1,
            kind=kind,
            timestamp=timestamp,
            actor=actor,
            previous_value=result.value,
            new_value=new_value,
            previous_flag=result.flag,
            new_flag=new_flag,
            reason_code=code,
            notes=notes,
            prev_hash=last.entry_hash if last else None,
        )
        amendment = draft.model_copy(update={"entry_hash": compute_entry_hash(draft)})
        logger.info(
            f"AUDIT: {kind.value} #{amendment.sequence} on result {result.id} by {actor}: "
            f"{result.value!r} -> {new_value!r}"
        )
        return amendment

    @staticmethod
    def append(result, amendment: Amendment):
        """Return a copy of ``result`` with ``amendment`` appended to its history."""
        return result.model_copy(update={"amendments": tuple(result.amendments) + (amendment,)})
