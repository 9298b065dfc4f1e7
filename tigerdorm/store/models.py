"""
Row types for the TigerDorm state store.

Each dataclass mirrors one table. Column names follow the table
(``id_user``, ``id_geofence``) so that rows round-trip without renaming.
"""

from __future__ import annotations

import sqlite3
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class Role(str, Enum):
    """Role of a user within a geofence."""

    OWNER = "owner"
    MEMBER = "member"


class PresenceStatus(str, Enum):
    """Presence of a member relative to a geofence."""

    IN_ROOM = "IN_ROOM"
    AWAY = "AWAY"


class Entity(str, Enum):
    """Entities guarded by the policy engine."""

    USER = "user"
    GEOFENCE = "geofence"
    MEMBERSHIP = "membership"
    DEVICE_BINDING = "device_binding"


def utc_now() -> str:
    """Current time as an ISO-8601 UTC string."""
    return datetime.now(timezone.utc).isoformat()


@dataclass
class User:
    """A user as known from the identity provider.

    Attributes:
        id_user: Subject identifier issued by the identity provider
        email: Unique email address
        full_name: Display name
        created_at: Creation timestamp
        updated_at: Last modification timestamp
    """

    id_user: str
    email: str
    full_name: str | None
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> User:
        return cls(
            id_user=row["id_user"],
            email=row["email"],
            full_name=row["full_name"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Geofence:
    """A dorm room location shared by its members.

    Attributes:
        id_geofence: Generated identifier
        id_user: Owner, fixed at creation
        name: Human-readable name
        invite_code: Unique code used to join
        center_latitude: Center latitude in degrees
        center_longitude: Center longitude in degrees
        radius_meters: Radius of the fence
        hysteresis_meters: Buffer preventing status flapping at the boundary
        created_at: Creation timestamp
        updated_at: Last modification timestamp
    """

    id_geofence: str
    id_user: str
    name: str
    invite_code: str
    center_latitude: float
    center_longitude: float
    radius_meters: int
    hysteresis_meters: int
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Geofence:
        return cls(
            id_geofence=row["id_geofence"],
            id_user=row["id_user"],
            name=row["name"],
            invite_code=row["invite_code"],
            center_latitude=row["center_latitude"],
            center_longitude=row["center_longitude"],
            radius_meters=row["radius_meters"],
            hysteresis_meters=row["hysteresis_meters"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Membership:
    """A user's membership in a geofence.

    Attributes:
        id_geofence: Geofence identifier
        id_user: Member identifier
        role: owner or member
        status: Current presence status
        last_updated: When the status last changed
        last_gps_update: When a location report was last received
        joined_at: When the membership was created
    """

    id_geofence: str
    id_user: str
    role: Role
    status: PresenceStatus
    last_updated: str
    last_gps_update: str | None
    joined_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Membership:
        return cls(
            id_geofence=row["id_geofence"],
            id_user=row["id_user"],
            role=Role(row["role"]),
            status=PresenceStatus(row["status"]),
            last_updated=row["last_updated"],
            last_gps_update=row["last_gps_update"],
            joined_at=row["joined_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["role"] = self.role.value
        data["status"] = self.status.value
        return data


@dataclass
class DeviceBinding:
    """The GPS device bound to a user.

    Attributes:
        id: Generated identifier
        device_id: External device identifier
        id_user: Bound user (one binding per user)
        enabled: Whether location reports from the device are used
        created_at: Creation timestamp
        last_location_update: When the device last reported a location
    """

    id: str
    device_id: str
    id_user: str
    enabled: bool
    created_at: str
    last_location_update: str | None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> DeviceBinding:
        return cls(
            id=row["id"],
            device_id=row["device_id"],
            id_user=row["id_user"],
            enabled=bool(row["enabled"]),
            created_at=row["created_at"],
            last_location_update=row["last_location_update"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


Row = User | Geofence | Membership | DeviceBinding
