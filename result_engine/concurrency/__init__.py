"""
Concurrency Guard

Optimistic, version-checked read-modify-write for test results.
"""

from .guard import ConcurrencyGuard, TransitionFn

__all__ = [
    "ConcurrencyGuard",
    "TransitionFn",
]
