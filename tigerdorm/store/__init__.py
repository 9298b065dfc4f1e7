"""
Store module for TigerDorm - the guarded relational state.

This module handles:
- SQLite schema with the structural constraints (schema.py)
- Row types (models.py)
- Derived rows and timestamps (invariants.py)
- Policy-guarded CRUD with atomic transactions (state_store.py)

Import StateStore from tigerdorm.store.state_store; this package keeps no
re-exports so the access package can import models without a cycle.
"""
