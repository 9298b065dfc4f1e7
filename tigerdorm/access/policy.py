"""
Row-level access policies for TigerDorm.

This module decides, per operation and per caller, whether a row may be
seen or changed:
- One predicate per (entity, operation)
- Predicates see the principal, the candidate row and a membership snapshot
- Missing principal or missing rule means deny

Policy table:
    user            select/update/insert   row.id_user == principal
    geofence        select                 row.id_geofence in member geofences
    geofence        insert/update/delete   row.id_user == principal
    membership      select                 row.id_geofence in member geofences
    membership      insert/update          row.id_user == principal
    membership      delete                 self-leave (role member) OR
                                           owner removing someone else
    device_binding  all                    row.id_user == principal

Invariants:
    - Predicates are pure and never raise; errors count as deny
    - Predicates never query storage; membership data comes from the
      snapshot taken by MembershipDirectory
    - Owners have no self-leave path; ownership ends with the geofence

How to change safely:
    - Add rules as new predicate functions and register them in _RULES
    - Never widen a rule without a test showing who gains access
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum

from ..errors import NoIdentity, PolicyDenied
from ..store.models import DeviceBinding, Entity, Geofence, Membership, Role, Row, User
from .directory import MembershipSnapshot

logger = logging.getLogger(__name__)


class Operation(str, Enum):
    """Operation kinds a predicate can gate."""

    SELECT = "select"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


Predicate = Callable[[str, Row, MembershipSnapshot], bool]


def _user_is_self(principal: str, row: User, snapshot: MembershipSnapshot) -> bool:
    return row.id_user == principal


def _geofence_is_member(principal: str, row: Geofence, snapshot: MembershipSnapshot) -> bool:
    return row.id_geofence in snapshot.geofence_ids()


def _geofence_is_owner(principal: str, row: Geofence, snapshot: MembershipSnapshot) -> bool:
    return row.id_user == principal


def _membership_shares_geofence(
    principal: str, row: Membership, snapshot: MembershipSnapshot
) -> bool:
    return row.id_geofence in snapshot.geofence_ids()


def _membership_is_self(principal: str, row: Membership, snapshot: MembershipSnapshot) -> bool:
    return row.id_user == principal


def _membership_self_leave(principal: str, row: Membership, snapshot: MembershipSnapshot) -> bool:
    return row.id_user == principal and row.role is Role.MEMBER


def _membership_owner_removes_other(
    principal: str, row: Membership, snapshot: MembershipSnapshot
) -> bool:
    return row.id_user != principal and row.id_geofence in snapshot.owned_geofence_ids()


def _membership_delete(principal: str, row: Membership, snapshot: MembershipSnapshot) -> bool:
    return _membership_self_leave(principal, row, snapshot) or _membership_owner_removes_other(
        principal, row, snapshot
    )


def _device_is_self(principal: str, row: DeviceBinding, snapshot: MembershipSnapshot) -> bool:
    return row.id_user == principal


_RULES: dict[tuple[Entity, Operation], Predicate] = {
    (Entity.USER, Operation.SELECT): _user_is_self,
    (Entity.USER, Operation.UPDATE): _user_is_self,
    (Entity.USER, Operation.INSERT): _user_is_self,
    (Entity.GEOFENCE, Operation.SELECT): _geofence_is_member,
    (Entity.GEOFENCE, Operation.INSERT): _geofence_is_owner,
    (Entity.GEOFENCE, Operation.UPDATE): _geofence_is_owner,
    (Entity.GEOFENCE, Operation.DELETE): _geofence_is_owner,
    (Entity.MEMBERSHIP, Operation.SELECT): _membership_shares_geofence,
    (Entity.MEMBERSHIP, Operation.INSERT): _membership_is_self,
    (Entity.MEMBERSHIP, Operation.UPDATE): _membership_is_self,
    (Entity.MEMBERSHIP, Operation.DELETE): _membership_delete,
    (Entity.DEVICE_BINDING, Operation.SELECT): _device_is_self,
    (Entity.DEVICE_BINDING, Operation.INSERT): _device_is_self,
    (Entity.DEVICE_BINDING, Operation.UPDATE): _device_is_self,
    (Entity.DEVICE_BINDING, Operation.DELETE): _device_is_self,
}


def row_key(row: Row) -> str:
    """Printable key of a row for logs and errors."""
    if isinstance(row, User):
        return row.id_user
    if isinstance(row, Geofence):
        return row.id_geofence
    if isinstance(row, Membership):
        return f"{row.id_geofence}/{row.id_user}"
    return row.id


class PolicyEngine:
    """Evaluates row-level access predicates.

    Thread safety:
        This class is stateless and thread-safe.

    Example:
        >>> engine = PolicyEngine()
        >>> snapshot = MembershipSnapshot.build("u1", [])
        >>> engine.check(Entity.USER, Operation.SELECT, "u1", user_row, snapshot)
        True
    """

    def check(
        self,
        entity: Entity,
        operation: Operation,
        principal: str | None,
        row: Row,
        snapshot: MembershipSnapshot,
    ) -> bool:
        """Decide whether principal may perform operation on row.

        Args:
            entity: Entity the row belongs to
            operation: Operation being attempted
            principal: Acting principal (None = no identity)
            row: Candidate row (the new row for inserts)
            snapshot: The principal's memberships

        Returns:
            True if the operation is allowed
        """
        if not principal:
            return False

        rule = _RULES.get((entity, operation))
        if rule is None:
            return False

        try:
            return bool(rule(principal, row, snapshot))
        except Exception as e:
            logger.warning(
                f"Policy predicate failed, denying: {e}",
                extra={"entity": entity.value, "operation": operation.value},
            )
            return False

    def check_or_raise(
        self,
        entity: Entity,
        operation: Operation,
        principal: str | None,
        row: Row,
        snapshot: MembershipSnapshot,
    ) -> None:
        """Check a predicate and raise if it is false.

        Raises:
            NoIdentity: If principal is missing
            PolicyDenied: If the predicate is false
        """
        if not principal:
            raise NoIdentity(f"{operation.value} {entity.value}")
        if not self.check(entity, operation, principal, row, snapshot):
            logger.debug(
                "Policy denied",
                extra={
                    "entity": entity.value,
                    "operation": operation.value,
                    "principal": principal,
                    "key": row_key(row),
                },
            )
            raise PolicyDenied(entity.value, operation.value, row_key(row))

    def filter_rows(
        self,
        entity: Entity,
        principal: str | None,
        rows: list[Row],
        snapshot: MembershipSnapshot,
    ) -> list[Row]:
        """Keep only the rows the principal may select."""
        return [r for r in rows if self.check(entity, Operation.SELECT, principal, r, snapshot)]


_default_engine: PolicyEngine | None = None


def get_policy_engine() -> PolicyEngine:
    """Get the default policy engine instance."""
    global _default_engine
    if _default_engine is None:
        _default_engine = PolicyEngine()
    return _default_engine
