"""
Result Engine Canonical Hashing Layer
Single source of truth for hashing audit records and evaluation outcomes.
"""

import hashlib
import json
from typing import Any

# Fields excluded from hashing by default (volatile/generated)
VOLATILE_FIELDS = frozenset([
    "updatedAt",
    "updated_at",
    "version",
    "_metadata"
])


def canonicalize(obj: Any, exclude_volatile: bool = True) -> str:
    """
    Convert object to canonical JSON string.
    Deterministic: same input always produces same output.
    """
    def _clean(o: Any) -> Any:
        if isinstance(o, dict):
            return {
                k: _clean(v)
                for k, v in sorted(o.items())
                if not (exclude_volatile and k in VOLATILE_FIELDS)
            }
        elif isinstance(o, (list, tuple)):
            return [_clean(i) for i in o]
        elif isinstance(o, float):
            # Normalize floats to avoid precision issues
            return round(o, 10)
        return o

    cleaned = _clean(obj)
    return json.dumps(cleaned, sort_keys=True, separators=(',', ':'), ensure_ascii=True, default=str)


def canonicalize_and_hash(obj: Any, exclude_volatile: bool = True) -> str:
    """
    Canonical hash used for audit chains and outcome fingerprints.
    Returns: "sha256:<64-char-hex>"
    """
    canonical = canonicalize(obj, exclude_volatile)
    digest = hashlib.sha256(canonical.encode('utf-8')).hexdigest()
    return f"sha256:{digest}"


def verify_hash(obj: Any, expected_hash: str, exclude_volatile: bool = True) -> bool:
    """
    Verify object matches expected hash.
    """
    return canonicalize_and_hash(obj, exclude_volatile) == expected_hash
