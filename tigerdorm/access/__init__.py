"""
Access module for TigerDorm - who is acting and what they may touch.

This module handles:
- Principal extraction from verified identity claims
- Policy-exempt membership lookups
- Row-level access predicates per entity and operation

Invariants:
    - Identity resolution and predicates never raise
    - Predicates only read membership data through MembershipDirectory
"""

from .directory import MembershipDirectory, MembershipRef, MembershipSnapshot
from .identity import resolve_principal
from .policy import Operation, PolicyEngine, get_policy_engine

__all__ = [
    "MembershipDirectory",
    "MembershipRef",
    "MembershipSnapshot",
    "resolve_principal",
    "Operation",
    "PolicyEngine",
    "get_policy_engine",
]
