"""
GasCounter Test Suite.

This package contains:
- unit/: Unit tests (temporary directories, real SQLite files)
- integration/: Integration tests (snapshot/restore cycles, service wiring)
"""
