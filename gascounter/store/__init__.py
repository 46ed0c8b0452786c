"""
Store module for GasCounter - the local SQLite database.

This module handles:
- Resolving the canonical database path (with legacy migration)
- The Counter data model
- The single connection to the database and all queries over it

Invariants:
    - Only CounterStore touches rows
    - The connection is opened lazily and can be closed and reopened freely
    - Uniqueness of counter_id is a query the caller checks before saving
"""

from .counter_store import CounterStore, CycleStats, StoreOpenError
from .models import Counter
from .paths import PathResolver

__all__ = [
    "Counter",
    "CounterStore",
    "CycleStats",
    "PathResolver",
    "StoreOpenError",
]
