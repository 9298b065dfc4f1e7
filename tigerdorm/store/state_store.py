"""
Policy-guarded SQLite store for users, geofences, memberships and devices.

Every caller-facing operation:
- Takes the acting principal explicitly as its first argument
- Opens one transaction, takes a membership snapshot, and checks the
  access predicate against each candidate row inside that transaction
- Runs the invariant maintainer where a write triggers derived rows
- Publishes its committed changes to the change feed in commit order

Invariants:
    - A geofence and its owner membership commit together or not at all
    - Reads return None or [] for rows the principal may not see
    - Updates and deletes of missing or forbidden rows raise PolicyDenied
      with the same message either way
    - Owner and role columns are not updatable here

How to change safely:
    - Route new writes through transaction() so they roll back as a unit
      and reach the change feed
    - Record feed changes after the row exists (insert/update) or before
      it is removed (delete)
    - Service-role methods (initialize, purge_user, get_stats) bypass
      policies; keep them out of request-handling code paths
"""

from __future__ import annotations

import logging
import secrets
import sqlite3
import string
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ..access.directory import MembershipDirectory, MembershipSnapshot
from ..access.policy import Operation, PolicyEngine, get_policy_engine
from ..config import GeofenceDefaults, ServerConfig
from ..errors import ConstraintViolation, NoIdentity, PolicyDenied, ValidationError
from ..feed import FEED_ENTITIES, ChangeFeed, PendingChange
from .invariants import TIMESTAMP_FIELDS, InvariantMaintainer
from .models import (
    DeviceBinding,
    Entity,
    Geofence,
    Membership,
    PresenceStatus,
    Role,
    Row,
    User,
    utc_now,
)
from .schema import TABLES, constraint_name, create_schema

logger = logging.getLogger(__name__)

USER_MUTABLE = frozenset({"email", "full_name"})
GEOFENCE_MUTABLE = frozenset(
    {
        "name",
        "invite_code",
        "center_latitude",
        "center_longitude",
        "radius_meters",
        "hysteresis_meters",
    }
)
MEMBERSHIP_MUTABLE = frozenset({"status", "last_gps_update"})

INVITE_ALPHABET = string.ascii_uppercase + string.digits
INVITE_CODE_LENGTH = 6


def generate_invite_code(length: int = INVITE_CODE_LENGTH) -> str:
    """Random human-shareable invite code, e.g. "K7Q2ZD"."""
    return "".join(secrets.choice(INVITE_ALPHABET) for _ in range(length))


def _check_fields(entity: Entity, changes: dict[str, Any], mutable: frozenset[str]) -> dict[str, Any]:
    """Reject non-updatable fields; silently drop timestamps."""
    values = {}
    for name, value in changes.items():
        if name in TIMESTAMP_FIELDS:
            continue
        if name not in mutable:
            raise ValidationError(f"Field '{name}' of {entity.value} cannot be updated", name)
        values[name] = value
    return values


class Transaction:
    """An open store transaction.

    Collects feed changes as they happen; the store publishes them only
    after COMMIT.
    """

    def __init__(self, store: StateStore, conn: sqlite3.Connection) -> None:
        self.store = store
        self.conn = conn
        self.changes: list[PendingChange] = []

    def snapshot(self, principal: str | None) -> MembershipSnapshot:
        """Membership snapshot for a principal as of now in this transaction."""
        return self.store.directory.snapshot(self.conn, principal)

    def record(
        self,
        entity: Entity,
        operation: Operation,
        row: Row,
        old_row: Row | None = None,
    ) -> None:
        """Record a change for the feed, deciding its recipients now."""
        if entity not in FEED_ENTITIES:
            return

        recipients = frozenset(
            principal
            for principal in self.store.feed.subscriber_principals()
            if self.store.policy.check(
                entity, Operation.SELECT, principal, row, self.snapshot(principal)
            )
        )
        self.changes.append(
            PendingChange(
                entity=entity,
                operation=operation.value,
                row=row.to_dict(),
                old_row=old_row.to_dict() if old_row is not None else None,
                recipients=recipients,
            )
        )


class StateStore:
    """SQLite store with row-level access policies.

    Thread safety:
        Each operation opens its own connection. SQLite serializes writers
        (BEGIN IMMEDIATE); the publish lock keeps feed order equal to
        commit order.

    Example:
        >>> store = StateStore("/tmp/tigerdorm.db")
        >>> await store.initialize()
        >>> await store.create_user("u1", email="u1@example.edu")
        >>> room = await store.create_geofence(
        ...     "u1", name="Room 204", invite_code="ABC123",
        ...     center_latitude=40.3431, center_longitude=-74.6551,
        ... )
    """

    def __init__(
        self,
        db_path: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -16000,
        feed: ChangeFeed | None = None,
        policy: PolicyEngine | None = None,
        directory: MembershipDirectory | None = None,
        invariants: InvariantMaintainer | None = None,
        geofence_defaults: GeofenceDefaults | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            db_path: SQLite database file
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
            feed: Change feed to publish to (a private one if omitted)
            policy: Policy engine (the default engine if omitted)
            directory: Membership directory
            invariants: Invariant maintainer
            geofence_defaults: Radius and hysteresis defaults
        """
        self.db_path = Path(db_path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages
        self.feed = feed or ChangeFeed()
        self.policy = policy or get_policy_engine()
        self.directory = directory or MembershipDirectory()
        self.invariants = invariants or InvariantMaintainer()
        self.geofence_defaults = geofence_defaults or GeofenceDefaults()
        self._publish_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: ServerConfig, feed: ChangeFeed | None = None) -> StateStore:
        """Build a store from server configuration."""
        return cls(
            db_path=config.storage.db_path,
            wal_mode=config.storage.wal_mode,
            busy_timeout_ms=config.storage.busy_timeout_ms,
            cache_size_pages=config.storage.cache_size_pages,
            feed=feed
            or ChangeFeed(
                history_size=config.feed.history_size,
                queue_size=config.feed.queue_size,
            ),
            geofence_defaults=config.geofence_defaults,
        )

    # ------------------------------------------------------------------
    # Connections and transactions
    # ------------------------------------------------------------------

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            conn.execute("PRAGMA foreign_keys = ON")

            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self, write: bool = True) -> Iterator[Transaction]:
        """Run a block in one transaction.

        Commits and publishes recorded changes on success. Rolls back on
        any exception; IntegrityError is re-raised as ConstraintViolation.

        Args:
            write: Take the write lock up front (BEGIN IMMEDIATE); reads
                pass False for a deferred transaction
        """
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
            tx = Transaction(self, conn)
            try:
                yield tx
            except sqlite3.IntegrityError as e:
                conn.execute("ROLLBACK")
                constraint = constraint_name(e)
                logger.warning(
                    f"Constraint violation: {e}",
                    extra={"constraint": constraint},
                )
                raise ConstraintViolation(f"Constraint violated: {constraint}", constraint) from e
            except BaseException:
                conn.execute("ROLLBACK")
                raise

            with self._publish_lock:
                conn.execute("COMMIT")
                self.feed.publish(tx.changes)

    @staticmethod
    def _require(principal: str | None, operation: str) -> str:
        if not principal:
            raise NoIdentity(operation)
        return principal

    # ------------------------------------------------------------------
    # Raw row access (no policy; callers check)
    # ------------------------------------------------------------------

    @staticmethod
    def _fetch_user(conn: sqlite3.Connection, id_user: str) -> User | None:
        row = conn.execute("SELECT * FROM users WHERE id_user = ?", (id_user,)).fetchone()
        return User.from_row(row) if row else None

    @staticmethod
    def _fetch_geofence(conn: sqlite3.Connection, geofence_id: str) -> Geofence | None:
        row = conn.execute(
            "SELECT * FROM geofences WHERE id_geofence = ?", (geofence_id,)
        ).fetchone()
        return Geofence.from_row(row) if row else None

    @staticmethod
    def _fetch_membership(
        conn: sqlite3.Connection, geofence_id: str, id_user: str
    ) -> Membership | None:
        row = conn.execute(
            "SELECT * FROM geofence_members WHERE id_geofence = ? AND id_user = ?",
            (geofence_id, id_user),
        ).fetchone()
        return Membership.from_row(row) if row else None

    @staticmethod
    def _fetch_device(conn: sqlite3.Connection, binding_id: str) -> DeviceBinding | None:
        row = conn.execute("SELECT * FROM device_mappings WHERE id = ?", (binding_id,)).fetchone()
        return DeviceBinding.from_row(row) if row else None

    @staticmethod
    def _update_row(
        conn: sqlite3.Connection,
        table: str,
        key: dict[str, str],
        values: dict[str, Any],
    ) -> None:
        # Column names come from the *_MUTABLE allow-lists, never from callers
        assignments = ", ".join(f"{name} = ?" for name in values)
        where = " AND ".join(f"{name} = ?" for name in key)
        conn.execute(
            f"UPDATE {table} SET {assignments} WHERE {where}",
            (*values.values(), *key.values()),
        )

    def _guarded(
        self,
        tx: Transaction,
        entity: Entity,
        operation: Operation,
        principal: str,
        row: Row | None,
        key: str,
    ) -> Row:
        """Return row if the predicate allows operation, else raise PolicyDenied."""
        if row is None:
            raise PolicyDenied(entity.value, operation.value, key)
        self.policy.check_or_raise(entity, operation, principal, row, tx.snapshot(principal))
        return row

    # ------------------------------------------------------------------
    # Lifecycle (service role)
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Create the database file and schema if they don't exist."""
        with self._get_connection() as conn:
            create_schema(conn)
        logger.info(f"Initialized database: {self.db_path}")

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def create_user(
        self,
        principal: str | None,
        email: str,
        full_name: str | None = None,
        id_user: str | None = None,
    ) -> User:
        """Create the principal's own user record on first contact.

        Args:
            principal: Acting principal
            email: Unique email address
            full_name: Display name
            id_user: User id (defaults to the principal)

        Raises:
            NoIdentity: If principal is missing
            PolicyDenied: If id_user is not the principal
            ConstraintViolation: If the id or email is taken
        """
        principal = self._require(principal, "insert user")
        now = utc_now()
        user = User(
            id_user=id_user or principal,
            email=email,
            full_name=full_name,
            created_at=now,
            updated_at=now,
        )

        with self.transaction() as tx:
            self.policy.check_or_raise(
                Entity.USER, Operation.INSERT, principal, user, tx.snapshot(principal)
            )
            tx.conn.execute(
                """
                INSERT INTO users (id_user, email, full_name, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (user.id_user, user.email, user.full_name, user.created_at, user.updated_at),
            )

        logger.info("Created user", extra={"id_user": user.id_user})
        return user

    async def get_user(self, principal: str | None, id_user: str | None = None) -> User | None:
        """Get a user record; only the principal's own record is visible."""
        principal = self._require(principal, "select user")
        with self.transaction(write=False) as tx:
            user = self._fetch_user(tx.conn, id_user or principal)
            if user is None or not self.policy.check(
                Entity.USER, Operation.SELECT, principal, user, tx.snapshot(principal)
            ):
                return None
            return user

    async def update_user(
        self,
        principal: str | None,
        changes: dict[str, Any],
        id_user: str | None = None,
    ) -> User:
        """Update email or full_name of the principal's user record.

        Raises:
            PolicyDenied: If the record is missing or not the principal's
            ValidationError: If changes name a non-updatable field
        """
        principal = self._require(principal, "update user")
        values = _check_fields(Entity.USER, changes, USER_MUTABLE)
        id_user = id_user or principal

        with self.transaction() as tx:
            self._guarded(
                tx,
                Entity.USER,
                Operation.UPDATE,
                principal,
                self._fetch_user(tx.conn, id_user),
                id_user,
            )
            self._update_row(
                tx.conn, "users", {"id_user": id_user}, self.invariants.stamp_update(values)
            )
            return self._fetch_user(tx.conn, id_user)

    # ------------------------------------------------------------------
    # Geofences
    # ------------------------------------------------------------------

    async def create_geofence(
        self,
        principal: str | None,
        name: str,
        center_latitude: float,
        center_longitude: float,
        invite_code: str | None = None,
        radius_meters: int | None = None,
        hysteresis_meters: int | None = None,
        owner_id: str | None = None,
    ) -> Geofence:
        """Create a geofence owned by the principal, enrolling the owner.

        The owner membership (role owner, status AWAY) is written in the
        same transaction; if it fails, the geofence is rolled back.

        Args:
            principal: Acting principal
            name: Human-readable name
            center_latitude: Center latitude in degrees
            center_longitude: Center longitude in degrees
            invite_code: Unique invite code (generated if omitted)
            radius_meters: Radius (configured default if omitted)
            hysteresis_meters: Hysteresis margin (configured default if omitted)
            owner_id: Owner (defaults to the principal)

        Raises:
            NoIdentity: If principal is missing
            PolicyDenied: If owner_id is not the principal
            ConstraintViolation: If the invite code is taken or the owner
                has no user record
            InvariantFailure: If the owner membership could not be written
        """
        principal = self._require(principal, "insert geofence")
        if not name:
            raise ValidationError("Geofence name is required", "name")

        now = utc_now()
        geofence = Geofence(
            id_geofence=str(uuid.uuid4()),
            id_user=owner_id or principal,
            name=name,
            invite_code=invite_code or generate_invite_code(),
            center_latitude=center_latitude,
            center_longitude=center_longitude,
            radius_meters=(
                radius_meters if radius_meters is not None else self.geofence_defaults.radius_meters
            ),
            hysteresis_meters=(
                hysteresis_meters
                if hysteresis_meters is not None
                else self.geofence_defaults.hysteresis_meters
            ),
            created_at=now,
            updated_at=now,
        )

        with self.transaction() as tx:
            self.policy.check_or_raise(
                Entity.GEOFENCE, Operation.INSERT, principal, geofence, tx.snapshot(principal)
            )
            tx.conn.execute(
                """
                INSERT INTO geofences (id_geofence, id_user, name, invite_code,
                                       center_latitude, center_longitude,
                                       radius_meters, hysteresis_meters,
                                       created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    geofence.id_geofence,
                    geofence.id_user,
                    geofence.name,
                    geofence.invite_code,
                    geofence.center_latitude,
                    geofence.center_longitude,
                    geofence.radius_meters,
                    geofence.hysteresis_meters,
                    geofence.created_at,
                    geofence.updated_at,
                ),
            )
            owner_membership = self.invariants.add_owner_membership(tx.conn, geofence)

            tx.record(Entity.GEOFENCE, Operation.INSERT, geofence)
            tx.record(Entity.MEMBERSHIP, Operation.INSERT, owner_membership)

        logger.info(
            "Created geofence",
            extra={"geofence_id": geofence.id_geofence, "owner": geofence.id_user},
        )
        return geofence

    async def get_geofence(self, principal: str | None, geofence_id: str) -> Geofence | None:
        """Get a geofence the principal is a member of, else None."""
        principal = self._require(principal, "select geofence")
        with self.transaction(write=False) as tx:
            geofence = self._fetch_geofence(tx.conn, geofence_id)
            if geofence is None or not self.policy.check(
                Entity.GEOFENCE, Operation.SELECT, principal, geofence, tx.snapshot(principal)
            ):
                return None
            return geofence

    async def list_geofences(self, principal: str | None) -> list[Geofence]:
        """List every geofence the principal is a member of."""
        principal = self._require(principal, "select geofence")
        with self.transaction(write=False) as tx:
            snapshot = tx.snapshot(principal)
            cursor = tx.conn.execute(
                """
                SELECT g.* FROM geofences g
                JOIN geofence_members m ON m.id_geofence = g.id_geofence
                WHERE m.id_user = ?
                ORDER BY g.created_at, g.id_geofence
                """,
                (principal,),
            )
            candidates = [Geofence.from_row(row) for row in cursor.fetchall()]
            return self.policy.filter_rows(Entity.GEOFENCE, principal, candidates, snapshot)

    async def update_geofence(
        self,
        principal: str | None,
        geofence_id: str,
        changes: dict[str, Any],
    ) -> Geofence:
        """Update a geofence the principal owns.

        Raises:
            PolicyDenied: If the geofence is missing or not owned by the principal
            ValidationError: If changes name the owner or another fixed field
            ConstraintViolation: If the new invite code is taken
        """
        principal = self._require(principal, "update geofence")
        values = _check_fields(Entity.GEOFENCE, changes, GEOFENCE_MUTABLE)

        with self.transaction() as tx:
            old = self._guarded(
                tx,
                Entity.GEOFENCE,
                Operation.UPDATE,
                principal,
                self._fetch_geofence(tx.conn, geofence_id),
                geofence_id,
            )
            self._update_row(
                tx.conn,
                "geofences",
                {"id_geofence": geofence_id},
                self.invariants.stamp_update(values),
            )
            geofence = self._fetch_geofence(tx.conn, geofence_id)
            tx.record(Entity.GEOFENCE, Operation.UPDATE, geofence, old)
            return geofence

    async def delete_geofence(self, principal: str | None, geofence_id: str) -> None:
        """Delete a geofence the principal owns, with all its memberships.

        Raises:
            PolicyDenied: If the geofence is missing or not owned by the principal
        """
        principal = self._require(principal, "delete geofence")
        with self.transaction() as tx:
            geofence = self._guarded(
                tx,
                Entity.GEOFENCE,
                Operation.DELETE,
                principal,
                self._fetch_geofence(tx.conn, geofence_id),
                geofence_id,
            )
            self._delete_geofence_rows(tx, geofence)

        logger.info("Deleted geofence", extra={"geofence_id": geofence_id})

    def _delete_geofence_rows(self, tx: Transaction, geofence: Geofence) -> None:
        """Delete a geofence, recording its cascaded memberships for the feed."""
        cursor = tx.conn.execute(
            "SELECT * FROM geofence_members WHERE id_geofence = ?",
            (geofence.id_geofence,),
        )
        for row in cursor.fetchall():
            membership = Membership.from_row(row)
            tx.record(Entity.MEMBERSHIP, Operation.DELETE, membership, membership)
        tx.record(Entity.GEOFENCE, Operation.DELETE, geofence, geofence)

        tx.conn.execute("DELETE FROM geofences WHERE id_geofence = ?", (geofence.id_geofence,))

    # ------------------------------------------------------------------
    # Memberships
    # ------------------------------------------------------------------

    async def add_membership(
        self,
        principal: str | None,
        geofence_id: str,
        id_user: str | None = None,
        role: Role | str = Role.MEMBER,
    ) -> Membership:
        """Insert a membership row for the principal.

        Raises:
            PolicyDenied: If id_user is not the principal
            ConstraintViolation: If already a member, if the geofence does
                not exist, or if a second owner row is attempted
        """
        principal = self._require(principal, "insert membership")
        with self.transaction() as tx:
            return self._insert_membership(tx, principal, geofence_id, id_user or principal, role)

    async def join_geofence(self, principal: str | None, invite_code: str) -> Membership:
        """Join a geofence by invite code as a member.

        Raises:
            PolicyDenied: If no geofence has this invite code
            ConstraintViolation: If the principal is already a member
        """
        principal = self._require(principal, "join geofence")
        with self.transaction() as tx:
            geofence_id = self.directory.resolve_invite_code(tx.conn, invite_code)
            if geofence_id is None:
                raise PolicyDenied(Entity.GEOFENCE.value, "join")
            membership = self._insert_membership(tx, principal, geofence_id, principal, Role.MEMBER)

        logger.info(
            "Joined geofence",
            extra={"geofence_id": geofence_id, "id_user": principal},
        )
        return membership

    def _insert_membership(
        self,
        tx: Transaction,
        principal: str,
        geofence_id: str,
        id_user: str,
        role: Role | str,
    ) -> Membership:
        try:
            role = Role(role)
        except ValueError:
            raise ValidationError(f"Invalid role '{role}'", "role")

        now = utc_now()
        membership = Membership(
            id_geofence=geofence_id,
            id_user=id_user,
            role=role,
            status=PresenceStatus.AWAY,
            last_updated=now,
            last_gps_update=None,
            joined_at=now,
        )
        self.policy.check_or_raise(
            Entity.MEMBERSHIP, Operation.INSERT, principal, membership, tx.snapshot(principal)
        )
        tx.conn.execute(
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
        tx.record(Entity.MEMBERSHIP, Operation.INSERT, membership)
        return membership

    async def get_membership(
        self,
        principal: str | None,
        geofence_id: str,
        id_user: str,
    ) -> Membership | None:
        """Get one membership row if the principal shares its geofence."""
        principal = self._require(principal, "select membership")
        with self.transaction(write=False) as tx:
            membership = self._fetch_membership(tx.conn, geofence_id, id_user)
            if membership is None or not self.policy.check(
                Entity.MEMBERSHIP, Operation.SELECT, principal, membership, tx.snapshot(principal)
            ):
                return None
            return membership

    async def list_memberships(
        self,
        principal: str | None,
        geofence_id: str | None = None,
    ) -> list[Membership]:
        """List memberships visible to the principal.

        Args:
            principal: Acting principal
            geofence_id: Restrict to one geofence (all visible ones if omitted)

        Returns:
            Memberships of geofences the principal belongs to
        """
        principal = self._require(principal, "select membership")
        with self.transaction(write=False) as tx:
            snapshot = tx.snapshot(principal)
            query = """
                SELECT m.* FROM geofence_members m
                WHERE m.id_geofence IN (
                    SELECT id_geofence FROM geofence_members WHERE id_user = ?
                )
            """
            params: list[Any] = [principal]
            if geofence_id is not None:
                query += " AND m.id_geofence = ?"
                params.append(geofence_id)
            query += " ORDER BY m.id_geofence, m.joined_at, m.id_user"

            candidates = [Membership.from_row(row) for row in tx.conn.execute(query, params)]
            return self.policy.filter_rows(Entity.MEMBERSHIP, principal, candidates, snapshot)

    async def update_membership(
        self,
        principal: str | None,
        geofence_id: str,
        changes: dict[str, Any],
        id_user: str | None = None,
    ) -> Membership:
        """Update status or last_gps_update on the principal's own membership.

        Changes that name only timestamp columns leave the row untouched
        and publish nothing.

        Raises:
            PolicyDenied: If the membership is missing or not the principal's
            ValidationError: If changes name role or another fixed field, or
                carry an invalid status
        """
        principal = self._require(principal, "update membership")
        values = _check_fields(Entity.MEMBERSHIP, changes, MEMBERSHIP_MUTABLE)
        if "status" in values:
            status = self._parse_status(values["status"])
            values["status"] = status.value

        with self.transaction() as tx:
            old = self._guarded_membership(tx, Operation.UPDATE, principal, geofence_id, id_user)
            if not values:
                return old
            if "status" in values and values["status"] != old.status.value:
                values["last_updated"] = utc_now()
            return self._apply_membership_update(tx, old, values)

    async def report_presence(
        self,
        principal: str | None,
        geofence_id: str,
        status: PresenceStatus | str,
        reported_at: str | None = None,
    ) -> Membership:
        """Record a presence status reported for the principal.

        last_gps_update is always set; last_updated only moves when the
        status changes. The principal's device binding, if any, has its
        last_location_update refreshed in the same transaction.

        Raises:
            PolicyDenied: If the principal is not a member of the geofence
            ValidationError: If status is not IN_ROOM or AWAY
        """
        principal = self._require(principal, "update membership")
        status = self._parse_status(status)
        reported_at = reported_at or utc_now()

        with self.transaction() as tx:
            old = self._guarded_membership(tx, Operation.UPDATE, principal, geofence_id, None)
            membership = self._apply_membership_update(
                tx, old, self.invariants.stamp_status(old, status, reported_at)
            )

            row = tx.conn.execute(
                "SELECT * FROM device_mappings WHERE id_user = ?", (principal,)
            ).fetchone()
            if row is not None:
                device = DeviceBinding.from_row(row)
                self._touch_device(tx, principal, device, device.id, reported_at)

        logger.debug(
            "Presence reported",
            extra={"geofence_id": geofence_id, "id_user": principal, "status": status.value},
        )
        return membership

    @staticmethod
    def _parse_status(status: PresenceStatus | str) -> PresenceStatus:
        try:
            return PresenceStatus(status)
        except ValueError:
            raise ValidationError(f"Invalid status '{status}'", "status")

    def _guarded_membership(
        self,
        tx: Transaction,
        operation: Operation,
        principal: str,
        geofence_id: str,
        id_user: str | None,
    ) -> Membership:
        id_user = id_user or principal
        return self._guarded(
            tx,
            Entity.MEMBERSHIP,
            operation,
            principal,
            self._fetch_membership(tx.conn, geofence_id, id_user),
            f"{geofence_id}/{id_user}",
        )

    def _apply_membership_update(
        self,
        tx: Transaction,
        old: Membership,
        values: dict[str, Any],
    ) -> Membership:
        self._update_row(
            tx.conn,
            "geofence_members",
            {"id_geofence": old.id_geofence, "id_user": old.id_user},
            values,
        )
        membership = self._fetch_membership(tx.conn, old.id_geofence, old.id_user)
        tx.record(Entity.MEMBERSHIP, Operation.UPDATE, membership, old)
        return membership

    async def delete_membership(
        self,
        principal: str | None,
        geofence_id: str,
        id_user: str,
    ) -> None:
        """Remove a membership.

        Allowed when a member leaves (their own row, role member) or when
        the geofence owner removes someone else. Owners cannot leave their
        own geofence; deleting the geofence is the only way out.

        Raises:
            PolicyDenied: If neither rule allows it or the row is missing
        """
        principal = self._require(principal, "delete membership")
        with self.transaction() as tx:
            membership = self._guarded_membership(
                tx, Operation.DELETE, principal, geofence_id, id_user
            )
            tx.record(Entity.MEMBERSHIP, Operation.DELETE, membership, membership)
            tx.conn.execute(
                "DELETE FROM geofence_members WHERE id_geofence = ? AND id_user = ?",
                (geofence_id, id_user),
            )

        logger.info(
            "Removed membership",
            extra={"geofence_id": geofence_id, "id_user": id_user, "by": principal},
        )

    # ------------------------------------------------------------------
    # Device bindings
    # ------------------------------------------------------------------

    async def bind_device(
        self,
        principal: str | None,
        device_id: str,
        id_user: str | None = None,
        enabled: bool = True,
    ) -> DeviceBinding:
        """Bind a GPS device to the principal.

        Raises:
            PolicyDenied: If id_user is not the principal
            ConstraintViolation: If the device is bound elsewhere or the
                principal already has a device (unbind it first)
        """
        principal = self._require(principal, "insert device_binding")
        device = DeviceBinding(
            id=str(uuid.uuid4()),
            device_id=device_id,
            id_user=id_user or principal,
            enabled=enabled,
            created_at=utc_now(),
            last_location_update=None,
        )

        with self.transaction() as tx:
            self.policy.check_or_raise(
                Entity.DEVICE_BINDING, Operation.INSERT, principal, device, tx.snapshot(principal)
            )
            tx.conn.execute(
                """
                INSERT INTO device_mappings (id, device_id, id_user, enabled,
                                             created_at, last_location_update)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    device.id,
                    device.device_id,
                    device.id_user,
                    int(device.enabled),
                    device.created_at,
                    device.last_location_update,
                ),
            )
            tx.record(Entity.DEVICE_BINDING, Operation.INSERT, device)

        logger.info("Bound device", extra={"device_id": device_id, "id_user": device.id_user})
        return device

    async def get_device_binding(self, principal: str | None) -> DeviceBinding | None:
        """Get the principal's device binding, if any."""
        principal = self._require(principal, "select device_binding")
        with self.transaction(write=False) as tx:
            row = tx.conn.execute(
                "SELECT * FROM device_mappings WHERE id_user = ?", (principal,)
            ).fetchone()
            if row is None:
                return None
            device = DeviceBinding.from_row(row)
            if not self.policy.check(
                Entity.DEVICE_BINDING, Operation.SELECT, principal, device, tx.snapshot(principal)
            ):
                return None
            return device

    async def set_device_enabled(
        self,
        principal: str | None,
        binding_id: str,
        enabled: bool,
    ) -> DeviceBinding:
        """Enable or disable the principal's device binding."""
        principal = self._require(principal, "update device_binding")
        with self.transaction() as tx:
            old = self._guarded(
                tx,
                Entity.DEVICE_BINDING,
                Operation.UPDATE,
                principal,
                self._fetch_device(tx.conn, binding_id),
                binding_id,
            )
            tx.conn.execute(
                "UPDATE device_mappings SET enabled = ? WHERE id = ?",
                (int(enabled), binding_id),
            )
            device = self._fetch_device(tx.conn, binding_id)
            tx.record(Entity.DEVICE_BINDING, Operation.UPDATE, device, old)
            return device

    async def record_device_location(
        self,
        principal: str | None,
        binding_id: str,
        reported_at: str | None = None,
    ) -> DeviceBinding:
        """Stamp last_location_update on the principal's device binding."""
        principal = self._require(principal, "update device_binding")
        with self.transaction() as tx:
            old = self._fetch_device(tx.conn, binding_id)
            return self._touch_device(tx, principal, old, binding_id, reported_at or utc_now())

    def _touch_device(
        self,
        tx: Transaction,
        principal: str,
        old: DeviceBinding | None,
        binding_id: str,
        reported_at: str,
    ) -> DeviceBinding:
        old = self._guarded(
            tx,
            Entity.DEVICE_BINDING,
            Operation.UPDATE,
            principal,
            old,
            binding_id,
        )
        tx.conn.execute(
            "UPDATE device_mappings SET last_location_update = ? WHERE id = ?",
            (reported_at, old.id),
        )
        device = self._fetch_device(tx.conn, old.id)
        tx.record(Entity.DEVICE_BINDING, Operation.UPDATE, device, old)
        return device

    async def unbind_device(self, principal: str | None, binding_id: str) -> None:
        """Remove the principal's device binding."""
        principal = self._require(principal, "delete device_binding")
        with self.transaction() as tx:
            device = self._guarded(
                tx,
                Entity.DEVICE_BINDING,
                Operation.DELETE,
                principal,
                self._fetch_device(tx.conn, binding_id),
                binding_id,
            )
            tx.record(Entity.DEVICE_BINDING, Operation.DELETE, device, device)
            tx.conn.execute("DELETE FROM device_mappings WHERE id = ?", (binding_id,))

        logger.info("Unbound device", extra={"device_id": device.device_id, "id_user": principal})

    # ------------------------------------------------------------------
    # Service role
    # ------------------------------------------------------------------

    async def purge_user(self, id_user: str) -> bool:
        """Remove a user deleted at the identity provider.

        Cascades to the user's geofences (and their memberships), the
        user's own memberships and device binding. Not policy-checked:
        call only from identity-provider webhooks or admin tooling.

        Returns:
            True if the user existed
        """
        with self.transaction() as tx:
            if self._fetch_user(tx.conn, id_user) is None:
                return False

            row = tx.conn.execute(
                "SELECT * FROM device_mappings WHERE id_user = ?", (id_user,)
            ).fetchone()
            if row is not None:
                device = DeviceBinding.from_row(row)
                tx.record(Entity.DEVICE_BINDING, Operation.DELETE, device, device)

            owned = tx.conn.execute(
                "SELECT * FROM geofences WHERE id_user = ?", (id_user,)
            ).fetchall()
            for geofence_row in owned:
                self._delete_geofence_rows(tx, Geofence.from_row(geofence_row))

            for member_row in tx.conn.execute(
                "SELECT * FROM geofence_members WHERE id_user = ?", (id_user,)
            ).fetchall():
                membership = Membership.from_row(member_row)
                tx.record(Entity.MEMBERSHIP, Operation.DELETE, membership, membership)

            tx.conn.execute("DELETE FROM users WHERE id_user = ?", (id_user,))

        logger.info("Purged user", extra={"id_user": id_user})
        return True

    async def get_stats(self) -> dict[str, int]:
        """Row counts per table (service role)."""
        with self._get_connection() as conn:
            return {
                table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for table in TABLES
            }
