"""
Amendment/Correction Recorder

Append-only change history for test results.
"""

from .models import (
    ReasonCode,
    ChangeKind,
    Amendment,
)
from .recorder import (
    AuditRecorder,
    normalize_reason_code,
    compute_entry_hash,
    verify_chain,
)

__all__ = [
    "ReasonCode",
    "ChangeKind",
    "Amendment",
    "AuditRecorder",
    "normalize_reason_code",
    "compute_entry_hash",
    "verify_chain",
]
