"""
SQLite schema for the TigerDorm state store.

Table schema:
    users:
        - id_user TEXT PRIMARY KEY (identity provider subject)
        - email TEXT UNIQUE NOT NULL
        - full_name TEXT
        - created_at, updated_at TEXT (ISO-8601 UTC)

    geofences:
        - id_geofence TEXT PRIMARY KEY (UUID)
        - id_user TEXT -> users ON DELETE CASCADE
        - name TEXT NOT NULL
        - invite_code TEXT UNIQUE NOT NULL
        - center_latitude, center_longitude REAL NOT NULL
        - radius_meters, hysteresis_meters INTEGER NOT NULL
        - created_at, updated_at TEXT

    geofence_members:
        - id_geofence TEXT -> geofences ON DELETE CASCADE
        - id_user TEXT -> users ON DELETE CASCADE
        - role TEXT CHECK IN ('owner', 'member')
        - status TEXT CHECK IN ('IN_ROOM', 'AWAY') DEFAULT 'AWAY'
        - last_updated, last_gps_update, joined_at TEXT
        - PRIMARY KEY (id_geofence, id_user)
        - UNIQUE (id_geofence) WHERE role = 'owner'

    device_mappings:
        - id TEXT PRIMARY KEY (UUID)
        - device_id TEXT UNIQUE NOT NULL
        - id_user TEXT UNIQUE -> users ON DELETE CASCADE
        - enabled INTEGER DEFAULT 1
        - created_at, last_location_update TEXT

How to change safely:
    - Bump SCHEMA_VERSION and append a migration, never edit the DDL of
      a released version in place
    - Keep constraint names stable; ConstraintViolation reports them
"""

from __future__ import annotations

import sqlite3

SCHEMA_VERSION = 1

SCHEMA_DDL = """
    CREATE TABLE IF NOT EXISTS schema_version (
        version INTEGER PRIMARY KEY,
        applied_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS users (
        id_user TEXT PRIMARY KEY,
        email TEXT UNIQUE NOT NULL,
        full_name TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS geofences (
        id_geofence TEXT PRIMARY KEY,
        id_user TEXT NOT NULL REFERENCES users(id_user) ON DELETE CASCADE,
        name TEXT NOT NULL,
        invite_code TEXT UNIQUE NOT NULL,
        center_latitude REAL NOT NULL CHECK (center_latitude BETWEEN -90 AND 90),
        center_longitude REAL NOT NULL CHECK (center_longitude BETWEEN -180 AND 180),
        radius_meters INTEGER NOT NULL DEFAULT 50 CHECK (radius_meters > 0),
        hysteresis_meters INTEGER NOT NULL DEFAULT 10 CHECK (hysteresis_meters >= 0),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS geofence_members (
        id_geofence TEXT NOT NULL REFERENCES geofences(id_geofence) ON DELETE CASCADE,
        id_user TEXT NOT NULL REFERENCES users(id_user) ON DELETE CASCADE,
        role TEXT NOT NULL CHECK (role IN ('owner', 'member')),
        status TEXT NOT NULL DEFAULT 'AWAY' CHECK (status IN ('IN_ROOM', 'AWAY')),
        last_updated TEXT NOT NULL,
        last_gps_update TEXT,
        joined_at TEXT NOT NULL,
        PRIMARY KEY (id_geofence, id_user)
    );

    CREATE UNIQUE INDEX IF NOT EXISTS uq_geofence_members_owner
        ON geofence_members(id_geofence) WHERE role = 'owner';

    CREATE TABLE IF NOT EXISTS device_mappings (
        id TEXT PRIMARY KEY,
        device_id TEXT UNIQUE NOT NULL,
        id_user TEXT UNIQUE NOT NULL REFERENCES users(id_user) ON DELETE CASCADE,
        enabled INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        last_location_update TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_users_email ON users(email);
    CREATE INDEX IF NOT EXISTS idx_geofences_owner ON geofences(id_user);
    CREATE INDEX IF NOT EXISTS idx_geofences_invite_code ON geofences(invite_code);
    CREATE INDEX IF NOT EXISTS idx_geofence_members_user ON geofence_members(id_user);
    CREATE INDEX IF NOT EXISTS idx_geofence_members_geofence ON geofence_members(id_geofence);
    CREATE INDEX IF NOT EXISTS idx_device_mappings_user ON device_mappings(id_user);
    CREATE INDEX IF NOT EXISTS idx_device_mappings_device ON device_mappings(device_id);
"""

TABLES = ("users", "geofences", "geofence_members", "device_mappings")


def create_schema(conn: sqlite3.Connection) -> None:
    """Create all tables and indexes if they do not exist."""
    conn.executescript(SCHEMA_DDL)
    conn.execute(
        """
        INSERT OR IGNORE INTO schema_version (version, applied_at)
        VALUES (?, strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
        """,
        (SCHEMA_VERSION,),
    )


def constraint_name(error: sqlite3.IntegrityError) -> str:
    """Name the constraint an IntegrityError refers to.

    SQLite reports e.g. "UNIQUE constraint failed: users.email" or
    "CHECK constraint failed: role IN ('owner', 'member')". Composite
    keys come back as "geofence_members.id_geofence, geofence_members.id_user".
    """
    message = str(error)
    if "FOREIGN KEY" in message:
        return "foreign_key"
    if ":" in message:
        detail = message.split(":", 1)[1].strip()
        if message.startswith("UNIQUE") and detail == "geofence_members.id_geofence":
            return "uq_geofence_members_owner"
        return detail
    return message
