"""
TigerDorm Test Suite.

This package contains:
- unit/: Unit tests (in-memory SQLite, no store)
- integration/: Integration tests (StateStore on a temporary database)
"""
