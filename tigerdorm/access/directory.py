"""
Membership directory: which geofences a principal belongs to.

Every geofence and membership visibility decision asks this question. The
lookup reads geofence_members directly with one flat query and never goes
through the policy engine; otherwise checking geofence visibility would
need geofence visibility to answer itself.

Invariants:
    - Queries touch geofence_members (and geofences for invite codes) only
    - No function here evaluates an access predicate
    - Not part of the caller-facing StateStore surface
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field

from ..store.models import Role


@dataclass(frozen=True)
class MembershipRef:
    """One (geofence, role) pair held by a principal."""

    geofence_id: str
    role: Role


@dataclass(frozen=True)
class MembershipSnapshot:
    """A principal's memberships at one point inside a transaction.

    Attributes:
        principal: The principal the snapshot belongs to (None = no identity)
        refs: Memberships held by the principal
    """

    principal: str | None
    refs: tuple[MembershipRef, ...] = ()
    _ids: frozenset[str] = field(default=frozenset(), repr=False, compare=False)
    _owned: frozenset[str] = field(default=frozenset(), repr=False, compare=False)

    @classmethod
    def build(cls, principal: str | None, refs: list[MembershipRef]) -> MembershipSnapshot:
        return cls(
            principal=principal,
            refs=tuple(refs),
            _ids=frozenset(r.geofence_id for r in refs),
            _owned=frozenset(r.geofence_id for r in refs if r.role is Role.OWNER),
        )

    def geofence_ids(self) -> frozenset[str]:
        """Geofences the principal is a member of, in any role."""
        return self._ids

    def owned_geofence_ids(self) -> frozenset[str]:
        """Geofences the principal owns."""
        return self._owned


class MembershipDirectory:
    """Policy-exempt lookups over raw membership rows.

    Thread safety:
        Stateless; the caller supplies the connection.
    """

    def list_memberships(
        self,
        conn: sqlite3.Connection,
        principal: str | None,
    ) -> list[MembershipRef]:
        """List (geofence_id, role) for every membership of a principal.

        Args:
            conn: Connection (usually inside the caller's transaction)
            principal: Principal to look up

        Returns:
            Memberships, empty when the principal is missing
        """
        if not principal:
            return []

        cursor = conn.execute(
            "SELECT id_geofence, role FROM geofence_members WHERE id_user = ?",
            (principal,),
        )
        return [MembershipRef(row[0], Role(row[1])) for row in cursor.fetchall()]

    def snapshot(
        self,
        conn: sqlite3.Connection,
        principal: str | None,
    ) -> MembershipSnapshot:
        """Take a membership snapshot for predicate evaluation."""
        return MembershipSnapshot.build(principal, self.list_memberships(conn, principal))

    def resolve_invite_code(
        self,
        conn: sqlite3.Connection,
        invite_code: str,
    ) -> str | None:
        """Resolve an invite code to a geofence id.

        Only the id is returned: a caller joining by code is not yet a
        member and must not see the geofence row itself.
        """
        cursor = conn.execute(
            "SELECT id_geofence FROM geofences WHERE invite_code = ?",
            (invite_code,),
        )
        row = cursor.fetchone()
        return row[0] if row else None
