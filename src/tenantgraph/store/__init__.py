"""
Store module - engine setup and store error translation.
"""

from __future__ import annotations

from .database import close_db, create_engine, drop_db, init_db
from .errors import store_errors, translate_error

__all__ = [
    "create_engine",
    "init_db",
    "drop_db",
    "close_db",
    "store_errors",
    "translate_error",
]
