"""
Error types for TigerDorm.

This module defines the exceptions raised by store operations:
- TigerDormError: Base exception
- NoIdentity: No resolvable principal
- PolicyDenied: Principal resolved but the access predicate is false
- ConstraintViolation: Uniqueness, foreign-key or check constraint breach
- InvariantFailure: Owner membership could not be created with its geofence
- ValidationError: Illegal field or value in a request

Invariants:
    - All errors inherit from TigerDormError
    - PolicyDenied never reveals whether the target row exists
    - Policy predicates and identity resolution never raise these
"""

from __future__ import annotations

from typing import Any


class TigerDormError(Exception):
    """Base exception for all TigerDorm errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "TIGERDORM_ERROR"
        self.details = details or {}


class NoIdentity(TigerDormError):
    """The caller has no resolvable principal.

    Raised by every store operation and by change feed subscription when
    the principal is missing.
    """

    def __init__(self, operation: str) -> None:
        super().__init__(
            f"No identity for {operation}",
            code="NO_IDENTITY",
            details={"operation": operation},
        )
        self.operation = operation


class PolicyDenied(TigerDormError):
    """The access predicate refused the operation.

    The message is the same whether the row is missing or merely not
    permitted, so callers cannot probe for existence.
    """

    def __init__(self, entity: str, operation: str, key: str | None = None) -> None:
        target = f"{entity} {key}" if key else entity
        super().__init__(
            f"{target} not found or {operation} not permitted",
            code="POLICY_DENIED",
            details={"entity": entity, "operation": operation, "key": key},
        )
        self.entity = entity
        self.operation = operation
        self.key = key


class ConstraintViolation(TigerDormError):
    """A structural constraint rejected the write.

    Attributes:
        constraint: Name of the violated constraint (e.g. "users.email")
    """

    def __init__(self, message: str, constraint: str) -> None:
        super().__init__(
            message,
            code="CONSTRAINT_VIOLATION",
            details={"constraint": constraint},
        )
        self.constraint = constraint


class InvariantFailure(TigerDormError):
    """The owner membership could not be written for a new geofence.

    The geofence insert is rolled back with it.
    """

    def __init__(self, geofence_id: str, cause: Exception) -> None:
        super().__init__(
            f"Geofence creation failed: owner membership for {geofence_id} not written ({cause})",
            code="INVARIANT_FAILURE",
            details={"geofence_id": geofence_id},
        )
        self.geofence_id = geofence_id
        self.__cause__ = cause


class ValidationError(TigerDormError):
    """A request carried an illegal field or value."""

    def __init__(self, message: str, field_name: str | None = None) -> None:
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"field": field_name},
        )
        self.field_name = field_name
