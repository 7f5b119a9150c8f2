from __future__ import annotations

from typing import Optional


class WardenError(Exception):
    """Base class for auth-core exceptions.

    Each subclass carries a stable ``error_code`` so an outer HTTP or RPC
    layer can map it without string matching. Token, session and permission
    failures are expected outcomes: the public APIs catch them and answer
    ``False``/``None`` instead of letting them escape.
    """

    error_code: str = "auth_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class InvalidToken(WardenError):
    """Bad signature, wrong algorithm, expired or malformed token."""
    error_code = "invalid_token"


class SessionAbsent(WardenError):
    """No session record, or the record has lazily expired."""
    error_code = "session_absent"


class RoleRejected(WardenError):
    """A role registry mutation was refused."""
    error_code = "role_rejected"


class UnknownRole(RoleRejected):
    error_code = "unknown_role"


class DuplicateRole(RoleRejected):
    error_code = "duplicate_role"


class CircularInheritance(RoleRejected):
    error_code = "circular_inheritance"


class MalformedPermission(RoleRejected):
    error_code = "malformed_permission"


class RoleInUse(RoleRejected):
    """The role is still inherited by another role."""
    error_code = "role_in_use"


__all__ = [
    "WardenError",
    "InvalidToken",
    "SessionAbsent",
    "RoleRejected",
    "UnknownRole",
    "DuplicateRole",
    "CircularInheritance",
    "MalformedPermission",
    "RoleInUse",
]
