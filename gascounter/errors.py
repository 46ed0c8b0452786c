"""
Error types for GasCounter.

Invariants:
    - All package exceptions inherit from GasCounterError
    - Snapshot and restore failures are reported as booleans, not exceptions
"""

from __future__ import annotations


class GasCounterError(Exception):
    """Base exception for all GasCounter errors."""

    pass
