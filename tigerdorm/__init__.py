"""
TigerDorm - access control and presence state for shared dorm rooms.

This package implements the authorization and invariant-maintenance layer
that sits between an API service and the relational store:
- Geofences (dorm rooms) owned by one user and shared with members
- Per-member presence status reported by an external location service
- One GPS device binding per user
- Row-level access policies evaluated per principal, per row

Architecture:
    ┌──────────────┐   claims   ┌──────────────┐  principal  ┌──────────────┐
    │  API service │──────────▶│   Identity   │────────────▶│  StateStore  │
    │  (external)  │            │   Resolver   │             │  (SQLite)    │
    └──────────────┘            └──────────────┘             └──────┬───────┘
                                                                    │
                        ┌───────────────────────┬───────────────────┤
                        ▼                       ▼                   ▼
                 ┌─────────────┐        ┌──────────────┐     ┌─────────────┐
                 │   Policy    │───────▶│  Membership  │     │  Invariant  │
                 │   Engine    │        │  Directory   │     │  Maintainer │
                 └─────────────┘        └──────────────┘     └─────────────┘
                                                                    │
                                                                    ▼
                                                             ┌─────────────┐
                                                             │ Change feed │
                                                             └─────────────┘

Invariants:
    - Every store operation takes the acting principal explicitly
    - A missing principal denies everything
    - A geofence never exists without its owner membership
    - Membership lookups used inside policies never evaluate policies

How to change safely:
    - New predicates must stay pure and must not query protected entities
      except through the membership directory
    - New mutating operations must run inside StateStore.transaction()
      so that change events follow commit order
"""

from ._version import __version__

__all__ = ["__version__"]
