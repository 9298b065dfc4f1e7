"""
Integration tests for the policy-guarded state store.

Tests cover:
- Users: self-only visibility and updates
- Geofences: creation with owner enrollment, member visibility, owner writes
- Memberships: joining, presence reports, leaving and removal
- Device bindings
- Constraint and invariant failures rolling back cleanly
- Service-role purge and stats
"""

import asyncio
import os
import sqlite3
import tempfile
from concurrent.futures import ThreadPoolExecutor

import pytest

from tigerdorm.access.directory import MembershipDirectory
from tigerdorm.access.policy import PolicyEngine
from tigerdorm.config import GeofenceDefaults
from tigerdorm.errors import (
    ConstraintViolation,
    InvariantFailure,
    NoIdentity,
    PolicyDenied,
    ValidationError,
)
from tigerdorm.store.invariants import InvariantMaintainer
from tigerdorm.store.models import PresenceStatus, Role
from tigerdorm.store.state_store import StateStore, generate_invite_code


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def store(data_dir):
    """Create a store in the temporary directory."""
    return StateStore(os.path.join(data_dir, "tigerdorm.db"), wal_mode=False)


async def seed_users(store, *users):
    await store.initialize()
    for user in users:
        await store.create_user(user, email=f"{user}@example.edu")


async def make_room(store, owner="u1", invite_code="ABC123", name="Room 204"):
    return await store.create_geofence(
        owner,
        name=name,
        invite_code=invite_code,
        center_latitude=40.3431,
        center_longitude=-74.6551,
    )


def raw_count(store, sql, params=()):
    conn = sqlite3.connect(str(store.db_path))
    try:
        return conn.execute(sql, params).fetchone()[0]
    finally:
        conn.close()


class TestUsers:
    """Users see and change only their own record."""

    @pytest.mark.asyncio
    async def test_create_and_get_self(self, store):
        """A user reads back their own record."""
        await seed_users(store, "u1")

        user = await store.get_user("u1")

        assert user.id_user == "u1"
        assert user.email == "u1@example.edu"

    @pytest.mark.asyncio
    async def test_other_user_invisible(self, store):
        """Another user's record reads as None."""
        await seed_users(store, "u1", "u2")
        assert await store.get_user("u2", "u1") is None

    @pytest.mark.asyncio
    async def test_cannot_create_someone_else(self, store):
        await seed_users(store)
        with pytest.raises(PolicyDenied):
            await store.create_user("u1", email="u2@example.edu", id_user="u2")

    @pytest.mark.asyncio
    async def test_duplicate_email(self, store):
        await seed_users(store, "u1")
        with pytest.raises(ConstraintViolation) as exc:
            await store.create_user("u2", email="u1@example.edu")
        assert exc.value.constraint == "users.email"

    @pytest.mark.asyncio
    async def test_update_self(self, store):
        await seed_users(store, "u1")
        before = await store.get_user("u1")

        user = await store.update_user(
            "u1",
            {
                "full_name": "Alice",
                "created_at": "1999-01-01T00:00:00+00:00",
                "updated_at": "1999-01-01T00:00:00+00:00",
            },
        )

        assert user.full_name == "Alice"
        assert user.created_at == before.created_at
        assert user.updated_at != "1999-01-01T00:00:00+00:00"
        assert user.updated_at >= before.updated_at
        assert await store.get_user("u1") == user

    @pytest.mark.asyncio
    async def test_update_other_denied(self, store):
        await seed_users(store, "u1", "u2")
        with pytest.raises(PolicyDenied):
            await store.update_user("u2", {"full_name": "Mallory"}, id_user="u1")

    @pytest.mark.asyncio
    async def test_update_id_rejected(self, store):
        await seed_users(store, "u1")
        with pytest.raises(ValidationError) as exc:
            await store.update_user("u1", {"id_user": "u9"})
        assert exc.value.field_name == "id_user"

    @pytest.mark.asyncio
    async def test_missing_principal(self, store):
        await seed_users(store)
        with pytest.raises(NoIdentity):
            await store.get_user(None)
        with pytest.raises(NoIdentity):
            await store.create_user("", email="x@example.edu")


class TestGeofenceCreation:
    """A geofence and its owner membership are created together."""

    @pytest.mark.asyncio
    async def test_owner_enrolled(self, store):
        """u1 creates "Room 204" and immediately sees it as owner."""
        await seed_users(store, "u1")

        room = await make_room(store)

        assert room.id_user == "u1"
        assert room.radius_meters == 50
        assert room.hysteresis_meters == 10
        assert [g.id_geofence for g in await store.list_geofences("u1")] == [room.id_geofence]

        members = await store.list_memberships("u1", room.id_geofence)
        assert len(members) == 1
        assert members[0].id_user == "u1"
        assert members[0].role is Role.OWNER
        assert members[0].status is PresenceStatus.AWAY

    @pytest.mark.asyncio
    async def test_configured_defaults(self, data_dir):
        store = StateStore(
            os.path.join(data_dir, "tigerdorm.db"),
            wal_mode=False,
            geofence_defaults=GeofenceDefaults(radius_meters=80, hysteresis_meters=5),
        )
        await seed_users(store, "u1")

        room = await make_room(store)

        assert (room.radius_meters, room.hysteresis_meters) == (80, 5)

    @pytest.mark.asyncio
    async def test_generated_invite_code(self, store):
        await seed_users(store, "u1")
        room = await store.create_geofence("u1", name="Room", center_latitude=0, center_longitude=0)
        assert len(room.invite_code) == 6
        assert all(c.isupper() or c.isdigit() for c in room.invite_code)

    @pytest.mark.asyncio
    async def test_cannot_create_for_someone_else(self, store):
        await seed_users(store, "u1", "u2")
        with pytest.raises(PolicyDenied):
            await store.create_geofence(
                "u2", name="Room", center_latitude=0, center_longitude=0, owner_id="u1"
            )
        assert raw_count(store, "SELECT COUNT(*) FROM geofences") == 0

    @pytest.mark.asyncio
    async def test_empty_name(self, store):
        await seed_users(store, "u1")
        with pytest.raises(ValidationError):
            await store.create_geofence("u1", name="", center_latitude=0, center_longitude=0)

    @pytest.mark.asyncio
    async def test_duplicate_invite_code_rolls_back(self, store):
        await seed_users(store, "u1", "u2")
        await make_room(store, "u1")

        with pytest.raises(ConstraintViolation) as exc:
            await make_room(store, "u2")

        assert exc.value.constraint == "geofences.invite_code"
        assert raw_count(store, "SELECT COUNT(*) FROM geofences") == 1
        assert raw_count(store, "SELECT COUNT(*) FROM geofence_members") == 1

    @pytest.mark.asyncio
    async def test_owner_without_user_record(self, store):
        """The owner must exist in users."""
        await seed_users(store)
        with pytest.raises(ConstraintViolation) as exc:
            await make_room(store, "ghost")
        assert exc.value.constraint == "foreign_key"

    @pytest.mark.asyncio
    async def test_invariant_failure_rolls_back_geofence(self, data_dir):
        """If the owner row cannot be written, no geofence remains."""

        class BrokenMaintainer(InvariantMaintainer):
            def _insert_owner_row(self, conn, membership):
                raise sqlite3.OperationalError("disk I/O error")

        store = StateStore(
            os.path.join(data_dir, "tigerdorm.db"),
            wal_mode=False,
            invariants=BrokenMaintainer(),
        )
        await seed_users(store, "u1")

        with pytest.raises(InvariantFailure):
            await make_room(store)

        assert raw_count(store, "SELECT COUNT(*) FROM geofences") == 0
        assert raw_count(store, "SELECT COUNT(*) FROM geofence_members") == 0
        assert await store.list_geofences("u1") == []

    def test_concurrent_creation(self, store):
        """Every concurrently created geofence has exactly one owner row."""
        users = [f"u{i}" for i in range(8)]
        asyncio.run(seed_users(store, *users))

        def create(user):
            return asyncio.run(make_room(store, user, invite_code=f"CODE{user[1:]}"))

        with ThreadPoolExecutor(max_workers=4) as pool:
            rooms = list(pool.map(create, users))

        assert len(rooms) == len(users)
        assert raw_count(store, "SELECT COUNT(*) FROM geofence_members WHERE role = 'owner'") == 8
        assert (
            raw_count(
                store,
                """
                SELECT COUNT(*) FROM geofences g
                WHERE (SELECT COUNT(*) FROM geofence_members m
                       WHERE m.id_geofence = g.id_geofence AND m.role = 'owner'
                       AND m.id_user = g.id_user) != 1
                """,
            )
            == 0
        )


class TestGeofenceAccess:
    """Visibility follows membership; writes follow ownership."""

    @pytest.mark.asyncio
    async def test_join_by_invite_code(self, store):
        """u2 joins "Room 204" with "ABC123" and both see each other."""
        await seed_users(store, "u1", "u2")
        room = await make_room(store)

        membership = await store.join_geofence("u2", "ABC123")

        assert membership.role is Role.MEMBER
        assert membership.status is PresenceStatus.AWAY
        assert (await store.get_geofence("u2", room.id_geofence)).name == "Room 204"
        for viewer in ("u1", "u2"):
            members = await store.list_memberships(viewer, room.id_geofence)
            assert {m.id_user for m in members} == {"u1", "u2"}

    @pytest.mark.asyncio
    async def test_outsider_sees_nothing(self, store):
        await seed_users(store, "u1", "u3")
        room = await make_room(store)

        assert await store.get_geofence("u3", room.id_geofence) is None
        assert await store.list_geofences("u3") == []
        assert await store.list_memberships("u3", room.id_geofence) == []
        assert await store.get_membership("u3", room.id_geofence, "u1") is None

    @pytest.mark.asyncio
    async def test_unknown_invite_code(self, store):
        await seed_users(store, "u1")
        with pytest.raises(PolicyDenied):
            await store.join_geofence("u1", "NOPE00")

    @pytest.mark.asyncio
    async def test_join_twice(self, store):
        await seed_users(store, "u1", "u2")
        await make_room(store)
        await store.join_geofence("u2", "ABC123")
        with pytest.raises(ConstraintViolation):
            await store.join_geofence("u2", "ABC123")

    @pytest.mark.asyncio
    async def test_add_membership_for_other_denied(self, store):
        await seed_users(store, "u1", "u2")
        room = await make_room(store)
        with pytest.raises(PolicyDenied):
            await store.add_membership("u1", room.id_geofence, id_user="u2")

    @pytest.mark.asyncio
    async def test_second_owner_row_rejected(self, store):
        """A member cannot insert themselves as a second owner."""
        await seed_users(store, "u1", "u2")
        room = await make_room(store)

        with pytest.raises(ConstraintViolation) as exc:
            await store.add_membership("u2", room.id_geofence, role=Role.OWNER)

        assert exc.value.constraint == "uq_geofence_members_owner"

    @pytest.mark.asyncio
    async def test_invalid_role(self, store):
        await seed_users(store, "u1", "u2")
        room = await make_room(store)
        with pytest.raises(ValidationError):
            await store.add_membership("u2", room.id_geofence, role="admin")

    @pytest.mark.asyncio
    async def test_owner_updates(self, store):
        await seed_users(store, "u1")
        room = await make_room(store)

        updated = await store.update_geofence(
            "u1", room.id_geofence, {"radius_meters": 65, "updated_at": "1999-01-01T00:00:00+00:00"}
        )

        assert updated.radius_meters == 65
        assert updated.updated_at != "1999-01-01T00:00:00+00:00"
        assert updated.updated_at >= room.updated_at
        assert updated.created_at == room.created_at

    @pytest.mark.asyncio
    async def test_member_cannot_update(self, store):
        await seed_users(store, "u1", "u2")
        room = await make_room(store)
        await store.join_geofence("u2", "ABC123")
        with pytest.raises(PolicyDenied):
            await store.update_geofence("u2", room.id_geofence, {"name": "Mine now"})

    @pytest.mark.asyncio
    async def test_owner_transfer_rejected(self, store):
        await seed_users(store, "u1", "u2")
        room = await make_room(store)
        with pytest.raises(ValidationError):
            await store.update_geofence("u1", room.id_geofence, {"id_user": "u2"})

    @pytest.mark.asyncio
    async def test_missing_and_forbidden_look_alike(self, store):
        """Missing and not-owned geofences raise the same error shape."""
        await seed_users(store, "u1", "u2")
        room = await make_room(store)

        with pytest.raises(PolicyDenied) as forbidden:
            await store.delete_geofence("u2", room.id_geofence)
        with pytest.raises(PolicyDenied) as missing:
            await store.delete_geofence("u2", "no-such-id")

        assert forbidden.value.code == missing.value.code
        assert str(forbidden.value).replace(room.id_geofence, "X") == str(missing.value).replace(
            "no-such-id", "X"
        )

    @pytest.mark.asyncio
    async def test_delete_cascades(self, store):
        await seed_users(store, "u1", "u2")
        room = await make_room(store)
        await store.join_geofence("u2", "ABC123")

        await store.delete_geofence("u1", room.id_geofence)

        assert await store.list_geofences("u1") == []
        assert await store.list_memberships("u2") == []
        assert raw_count(store, "SELECT COUNT(*) FROM geofence_members") == 0

    @pytest.mark.asyncio
    async def test_membership_lookup_never_evaluates_policies(self, data_dir):
        """Snapshots of a principal with many memberships run no predicates."""

        class SpyDirectory(MembershipDirectory):
            def __init__(self):
                self.active = False
                self.lookups = 0

            def list_memberships(self, conn, principal):
                self.active = True
                try:
                    self.lookups += 1
                    return super().list_memberships(conn, principal)
                finally:
                    self.active = False

        class SpyPolicy(PolicyEngine):
            def __init__(self, directory):
                self.directory = directory
                self.checks_during_lookup = 0
                self.checks = 0

            def check(self, entity, operation, principal, row, snapshot):
                self.checks += 1
                if self.directory.active:
                    self.checks_during_lookup += 1
                return super().check(entity, operation, principal, row, snapshot)

        directory = SpyDirectory()
        policy = SpyPolicy(directory)
        store = StateStore(
            os.path.join(data_dir, "tigerdorm.db"),
            wal_mode=False,
            directory=directory,
            policy=policy,
        )
        await seed_users(store, "u1")

        now = "2026-01-01T00:00:00+00:00"
        conn = sqlite3.connect(str(store.db_path))
        with conn:
            conn.executemany(
                """
                INSERT INTO geofences (id_geofence, id_user, name, invite_code, center_latitude,
                                       center_longitude, created_at, updated_at)
                VALUES (?, 'u1', 'Room', ?, 40.0, -74.0, ?, ?)
                """,
                [(f"g{i:04d}", f"C{i:05d}", now, now) for i in range(2000)],
            )
            conn.executemany(
                """
                INSERT INTO geofence_members (id_geofence, id_user, role, last_updated, joined_at)
                VALUES (?, 'u1', 'owner', ?, ?)
                """,
                [(f"g{i:04d}", now, now) for i in range(2000)],
            )
        conn.close()
        directory.lookups = 0
        policy.checks = 0

        geofences = await store.list_geofences("u1")

        assert len(geofences) == 2000
        assert directory.lookups == 1
        assert policy.checks == 2000
        assert policy.checks_during_lookup == 0


class TestPresence:
    """Members report presence on their own membership."""

    @pytest.mark.asyncio
    async def test_report_presence(self, store):
        await seed_users(store, "u1", "u2")
        room = await make_room(store)
        joined = await store.join_geofence("u2", "ABC123")

        reported_at = "2030-01-01T08:00:00+00:00"
        membership = await store.report_presence("u2", room.id_geofence, "IN_ROOM", reported_at)

        assert membership.status is PresenceStatus.IN_ROOM
        assert membership.last_gps_update == reported_at
        assert membership.last_updated == reported_at
        assert membership.joined_at == joined.joined_at

        seen_by_owner = await store.get_membership("u1", room.id_geofence, "u2")
        assert seen_by_owner.status is PresenceStatus.IN_ROOM

    @pytest.mark.asyncio
    async def test_same_status_keeps_last_updated(self, store):
        await seed_users(store, "u1")
        room = await make_room(store)

        await store.report_presence("u1", room.id_geofence, PresenceStatus.IN_ROOM, "2030-01-01T08:00:00+00:00")
        membership = await store.report_presence(
            "u1", room.id_geofence, PresenceStatus.IN_ROOM, "2030-01-01T09:00:00+00:00"
        )

        assert membership.last_updated == "2030-01-01T08:00:00+00:00"
        assert membership.last_gps_update == "2030-01-01T09:00:00+00:00"

    @pytest.mark.asyncio
    async def test_report_touches_device(self, store):
        await seed_users(store, "u1")
        room = await make_room(store)
        await store.bind_device("u1", "tracker-1")

        await store.report_presence("u1", room.id_geofence, "AWAY", "2030-01-01T08:00:00+00:00")

        device = await store.get_device_binding("u1")
        assert device.last_location_update == "2030-01-01T08:00:00+00:00"

    @pytest.mark.asyncio
    async def test_invalid_status(self, store):
        await seed_users(store, "u1")
        room = await make_room(store)
        with pytest.raises(ValidationError):
            await store.report_presence("u1", room.id_geofence, "ASLEEP")

    @pytest.mark.asyncio
    async def test_non_member_cannot_report(self, store):
        await seed_users(store, "u1", "u3")
        room = await make_room(store)
        with pytest.raises(PolicyDenied):
            await store.report_presence("u3", room.id_geofence, "IN_ROOM")

    @pytest.mark.asyncio
    async def test_cannot_update_other_members(self, store):
        await seed_users(store, "u1", "u2")
        room = await make_room(store)
        await store.join_geofence("u2", "ABC123")
        with pytest.raises(PolicyDenied):
            await store.update_membership("u1", room.id_geofence, {"status": "IN_ROOM"}, id_user="u2")

    @pytest.mark.asyncio
    async def test_role_not_updatable(self, store):
        await seed_users(store, "u1", "u2")
        room = await make_room(store)
        await store.join_geofence("u2", "ABC123")
        with pytest.raises(ValidationError):
            await store.update_membership("u2", room.id_geofence, {"role": "owner"})

    @pytest.mark.asyncio
    async def test_update_membership_status(self, store):
        await seed_users(store, "u1")
        room = await make_room(store)
        membership = await store.update_membership("u1", room.id_geofence, {"status": "IN_ROOM"})
        assert membership.status is PresenceStatus.IN_ROOM

    @pytest.mark.asyncio
    async def test_timestamp_only_membership_update(self, store):
        """Timestamp-only changes return the row unchanged and publish nothing."""
        await seed_users(store, "u1")
        room = await make_room(store)
        before = await store.get_membership("u1", room.id_geofence, "u1")
        sequence = store.feed.last_sequence

        for changes in ({"updated_at": "1999-01-01T00:00:00+00:00"}, {}):
            membership = await store.update_membership("u1", room.id_geofence, changes)
            assert membership == before

        assert await store.get_membership("u1", room.id_geofence, "u1") == before
        assert store.feed.last_sequence == sequence

    @pytest.mark.asyncio
    async def test_timestamp_only_update_still_checks_policy(self, store):
        await seed_users(store, "u1", "u2")
        room = await make_room(store)
        with pytest.raises(PolicyDenied):
            await store.update_membership("u2", room.id_geofence, {"updated_at": "1999"})


class TestLeavingAndRemoval:
    """Membership deletion rules."""

    @pytest.mark.asyncio
    async def test_member_leaves(self, store):
        """u2 leaves and loses sight of the geofence."""
        await seed_users(store, "u1", "u2")
        room = await make_room(store)
        await store.join_geofence("u2", "ABC123")

        await store.delete_membership("u2", room.id_geofence, "u2")

        assert await store.get_geofence("u2", room.id_geofence) is None
        assert [m.id_user for m in await store.list_memberships("u1", room.id_geofence)] == ["u1"]

    @pytest.mark.asyncio
    async def test_owner_cannot_leave(self, store):
        """The owner row stays; only deleting the geofence ends ownership."""
        await seed_users(store, "u1")
        room = await make_room(store)

        with pytest.raises(PolicyDenied):
            await store.delete_membership("u1", room.id_geofence, "u1")

        assert (await store.get_geofence("u1", room.id_geofence)) is not None

    @pytest.mark.asyncio
    async def test_owner_removes_member(self, store):
        await seed_users(store, "u1", "u2")
        room = await make_room(store)
        await store.join_geofence("u2", "ABC123")

        await store.delete_membership("u1", room.id_geofence, "u2")

        assert await store.list_geofences("u2") == []

    @pytest.mark.asyncio
    async def test_member_cannot_remove_others(self, store):
        await seed_users(store, "u1", "u2", "u3")
        room = await make_room(store)
        await store.join_geofence("u2", "ABC123")
        await store.join_geofence("u3", "ABC123")

        with pytest.raises(PolicyDenied):
            await store.delete_membership("u2", room.id_geofence, "u3")
        with pytest.raises(PolicyDenied):
            await store.delete_membership("u2", room.id_geofence, "u1")

        assert len(await store.list_memberships("u1", room.id_geofence)) == 3


class TestDeviceBindings:
    """Device bindings are private to their user."""

    @pytest.mark.asyncio
    async def test_bind_and_read(self, store):
        await seed_users(store, "u1", "u2")
        device = await store.bind_device("u1", "tracker-1")

        assert (await store.get_device_binding("u1")).device_id == "tracker-1"
        assert await store.get_device_binding("u2") is None
        assert device.enabled is True

    @pytest.mark.asyncio
    async def test_one_device_per_user(self, store):
        await seed_users(store, "u1")
        await store.bind_device("u1", "tracker-1")
        with pytest.raises(ConstraintViolation) as exc:
            await store.bind_device("u1", "tracker-2")
        assert exc.value.constraint == "device_mappings.id_user"

    @pytest.mark.asyncio
    async def test_device_bound_once(self, store):
        await seed_users(store, "u1", "u2")
        await store.bind_device("u1", "tracker-1")
        with pytest.raises(ConstraintViolation) as exc:
            await store.bind_device("u2", "tracker-1")
        assert exc.value.constraint == "device_mappings.device_id"

    @pytest.mark.asyncio
    async def test_bind_for_other_denied(self, store):
        await seed_users(store, "u1", "u2")
        with pytest.raises(PolicyDenied):
            await store.bind_device("u1", "tracker-1", id_user="u2")

    @pytest.mark.asyncio
    async def test_enable_and_locate(self, store):
        await seed_users(store, "u1", "u2")
        device = await store.bind_device("u1", "tracker-1")

        disabled = await store.set_device_enabled("u1", device.id, False)
        located = await store.record_device_location("u1", device.id, "2030-01-01T08:00:00+00:00")

        assert disabled.enabled is False
        assert located.last_location_update == "2030-01-01T08:00:00+00:00"
        with pytest.raises(PolicyDenied):
            await store.set_device_enabled("u2", device.id, True)
        with pytest.raises(PolicyDenied) as exc:
            await store.record_device_location("u2", device.id)
        assert exc.value.key == device.id
        with pytest.raises(PolicyDenied) as exc:
            await store.record_device_location("u1", "no-such-binding")
        assert exc.value.key == "no-such-binding"

    @pytest.mark.asyncio
    async def test_unbind(self, store):
        await seed_users(store, "u1", "u2")
        device = await store.bind_device("u1", "tracker-1")

        with pytest.raises(PolicyDenied):
            await store.unbind_device("u2", device.id)
        await store.unbind_device("u1", device.id)

        assert await store.get_device_binding("u1") is None
        with pytest.raises(PolicyDenied):
            await store.unbind_device("u1", device.id)


class TestServiceRole:
    """Purge and stats bypass policies."""

    @pytest.mark.asyncio
    async def test_purge_owner(self, store):
        """Purging an owner removes their geofences and everyone's memberships in them."""
        await seed_users(store, "u1", "u2")
        room = await make_room(store)
        await store.join_geofence("u2", "ABC123")
        await store.bind_device("u1", "tracker-1")

        assert await store.purge_user("u1") is True

        assert await store.get_stats() == {
            "users": 1,
            "geofences": 0,
            "geofence_members": 0,
            "device_mappings": 0,
        }
        assert await store.get_geofence("u2", room.id_geofence) is None

    @pytest.mark.asyncio
    async def test_purge_member(self, store):
        await seed_users(store, "u1", "u2")
        room = await make_room(store)
        await store.join_geofence("u2", "ABC123")

        await store.purge_user("u2")

        members = await store.list_memberships("u1", room.id_geofence)
        assert [m.id_user for m in members] == ["u1"]

    @pytest.mark.asyncio
    async def test_purge_unknown(self, store):
        await seed_users(store)
        assert await store.purge_user("ghost") is False


class TestInviteCodes:
    """Tests for generate_invite_code."""

    def test_shape(self):
        code = generate_invite_code()
        assert len(code) == 6
        assert all(c.isupper() or c.isdigit() for c in code)
