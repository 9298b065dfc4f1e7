"""
Cross-entity invariants maintained by the store itself.

Callers cannot skip these; StateStore runs them inside the same
transaction as the write that triggers them:
- A new geofence gets its owner membership (role owner, status AWAY)
- Updates to users and geofences refresh updated_at, whatever the caller sent
- Presence reports refresh last_updated only when the status changes

Invariants:
    - add_owner_membership bypasses the membership insert policy
    - A failure writing the owner row surfaces as InvariantFailure, and the
      surrounding transaction rolls the geofence back
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any

from ..errors import InvariantFailure
from .models import Geofence, Membership, PresenceStatus, Role, utc_now

logger = logging.getLogger(__name__)

TIMESTAMP_FIELDS = frozenset({"created_at", "updated_at"})


class InvariantMaintainer:
    """Writes derived rows and timestamps for the state store."""

    def add_owner_membership(self, conn: sqlite3.Connection, geofence: Geofence) -> Membership:
        """Enroll a new geofence's owner as its owner member.

        Args:
            conn: Connection inside the geofence-creation transaction
            geofence: The geofence just inserted

        Returns:
            The owner membership row

        Raises:
            InvariantFailure: If the row could not be written
        """
        membership = Membership(
            id_geofence=geofence.id_geofence,
            id_user=geofence.id_user,
            role=Role.OWNER,
            status=PresenceStatus.AWAY,
            last_updated=geofence.created_at,
            last_gps_update=None,
            joined_at=geofence.created_at,
        )
        try:
            self._insert_owner_row(conn, membership)
        except sqlite3.Error as e:
            logger.error(
                f"Owner membership insert failed: {e}",
                extra={"geofence_id": geofence.id_geofence, "owner": geofence.id_user},
            )
            raise InvariantFailure(geofence.id_geofence, e) from e

        logger.debug(
            "Owner enrolled",
            extra={"geofence_id": geofence.id_geofence, "owner": geofence.id_user},
        )
        return membership

    def _insert_owner_row(self, conn: sqlite3.Connection, membership: Membership) -> None:
        conn.execute(
            """
            INSERT INTO geofence_members (id_geofence, id_user, role, status,
                                          last_updated, last_gps_update, joined_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                membership.id_geofence,
                membership.id_user,
                membership.role.value,
                membership.status.value,
                membership.last_updated,
                membership.last_gps_update,
                membership.joined_at,
            ),
        )

    def stamp_update(self, values: dict[str, Any]) -> dict[str, Any]:
        """Drop caller-supplied timestamps and set updated_at to now."""
        stamped = {k: v for k, v in values.items() if k not in TIMESTAMP_FIELDS}
        stamped["updated_at"] = utc_now()
        return stamped

    def stamp_status(
        self,
        existing: Membership,
        status: PresenceStatus,
        reported_at: str,
    ) -> dict[str, Any]:
        """Column values for a presence report on an existing membership."""
        values: dict[str, Any] = {"last_gps_update": reported_at}
        if status is not existing.status:
            values["status"] = status.value
            values["last_updated"] = reported_at
        return values
