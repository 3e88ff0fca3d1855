"""
Result Engine API

FastAPI router exposing the engine facade.
"""

from .router import router, get_engine, set_engine, ERROR_STATUS_CODES

__all__ = [
    "router",
    "get_engine",
    "set_engine",
    "ERROR_STATUS_CODES",
]
