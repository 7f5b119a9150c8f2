"""Role registry and permission resolution.

Permissions are ``resource:action:scope`` strings with ``scope`` one of
``any``/``own``, or the single wildcard ``*``. Roles may inherit other
roles; the inheritance graph must stay acyclic, which is enforced when a
role is created or updated. Resolution itself never fails on a cycle: each
call keeps its own visited set and simply stops where it has been before.

The registry is copy-on-write. Mutations build a new mapping under a lock
and publish it with a single reference swap, so readers always traverse a
complete, consistent snapshot without taking the lock.
"""

from __future__ import annotations

import re
import threading
from typing import Dict, FrozenSet, Iterable, Iterator, Mapping, Optional, Sequence

from warden.config import RBACSettings
from warden.logging import get_logger
from warden.service.errors import (
    CircularInheritance,
    DuplicateRole,
    MalformedPermission,
    RoleInUse,
    RoleRejected,
    UnknownRole,
)
from warden.storage.models import Role

logger = get_logger(__name__)

WILDCARD = "*"
_PERMISSION_RE = re.compile(r"^(?P<resource>[^:\s]+):(?P<action>[^:\s]+):(?P<scope>any|own)$")


def is_valid_permission(permission: str) -> bool:
    return permission == WILDCARD or bool(_PERMISSION_RE.match(permission))


class RBACResolver:
    def __init__(self, roles: Optional[Mapping[str, Role]] = None) -> None:
        # Trusted input: no validation here, see ``from_settings`` for that
        self._roles: Dict[str, Role] = dict(roles or {})
        self._write_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: RBACSettings) -> "RBACResolver":
        """Build a registry from configuration, validating every role.

        Invalid roles are skipped and logged rather than aborting startup.
        """
        resolver = cls()
        for name, definition in settings.roles.items():
            resolver.create_role(
                name,
                definition.permissions,
                definition.inherits,
                definition.description,
            )
        logger.info("rbac_roles_loaded", count=len(resolver._roles))
        return resolver

    # queries

    def role_exists(self, name: str) -> bool:
        return name in self._roles

    def get_role(self, name: str) -> Optional[Role]:
        return self._roles.get(name)

    def list_roles(self) -> Dict[str, Role]:
        return dict(self._roles)

    def get_permissions(self, name: str) -> FrozenSet[str]:
        """Permissions granted directly by ``name``, without inheritance."""
        role = self._roles.get(name)
        return role.permissions if role else frozenset()

    def resolve_permissions(self, role_names: Iterable[str]) -> FrozenSet[str]:
        """Transitive permission closure of ``role_names``.

        Unknown roles contribute nothing. Terminates on cyclic registries.
        """
        roles = self._roles
        permissions: set[str] = set()
        visited: set[str] = set()
        stack = list(role_names)
        while stack:
            name = stack.pop()
            if name in visited:
                continue
            visited.add(name)
            role = roles.get(name)
            if role is None:
                continue
            permissions.update(role.permissions)
            # Reverse so parents are visited in their declared order
            stack.extend(reversed(role.inherits))
        return frozenset(permissions)

    def has_permission(
        self,
        role_names: Iterable[str],
        permission: str,
        owner_id: Optional[object] = None,
        acting_id: Optional[object] = None,
    ) -> bool:
        granted = self.resolve_permissions(role_names)
        if WILDCARD in granted:
            return True
        parts = permission.split(":")
        if len(parts) != 3 or not all(parts):
            logger.debug("permission_check_malformed", permission=permission)
            return False
        resource, action, _ = parts
        if f"{resource}:{action}:any" in granted:
            return True
        if f"{resource}:{action}:own" in granted:
            # Ids are compared in string form; a missing id never matches
            return (
                owner_id is not None
                and acting_id is not None
                and str(owner_id) == str(acting_id)
            )
        return False

    # mutations

    def check_role(
        self,
        name: str,
        permissions: Iterable[str],
        inherits: Optional[Sequence[str]] = None,
        *,
        replacing: bool = False,
    ) -> None:
        """Raise a :class:`RoleRejected` subclass if the role cannot be stored."""
        roles = self._roles
        if replacing and name not in roles:
            raise UnknownRole(f"role {name!r} does not exist", detail={"role": name})
        if not replacing and name in roles:
            raise DuplicateRole(f"role {name!r} already exists", detail={"role": name})
        bad = [p for p in permissions if not is_valid_permission(p)]
        if bad:
            raise MalformedPermission(
                "permissions must be 'resource:action:any|own' or '*'",
                detail={"role": name, "permissions": bad},
            )
        candidate = dict(roles)
        candidate[name] = Role(name=name, inherits=tuple(inherits or ()))
        if _has_cycle(candidate, name):
            raise CircularInheritance(
                f"role {name!r} would inherit from itself",
                detail={"role": name, "inherits": list(inherits or ())},
            )

    def create_role(
        self,
        name: str,
        permissions: Iterable[str],
        inherits: Optional[Sequence[str]] = None,
        description: Optional[str] = None,
    ) -> bool:
        return self._store_role(name, permissions, inherits, description, replacing=False)

    def update_role(
        self,
        name: str,
        permissions: Iterable[str],
        inherits: Optional[Sequence[str]] = None,
        description: Optional[str] = None,
    ) -> bool:
        return self._store_role(name, permissions, inherits, description, replacing=True)

    def delete_role(self, name: str) -> bool:
        with self._write_lock:
            try:
                if name not in self._roles:
                    raise UnknownRole(f"role {name!r} does not exist", detail={"role": name})
                heirs = sorted(
                    other.name for other in self._roles.values()
                    if other.name != name and name in other.inherits
                )
                if heirs:
                    raise RoleInUse(
                        f"role {name!r} is inherited by other roles",
                        detail={"role": name, "inherited_by": heirs},
                    )
            except RoleRejected as exc:
                _log_rejection("delete", exc)
                return False
            updated = dict(self._roles)
            del updated[name]
            self._roles = updated
        logger.info("role_deleted", role=name)
        return True

    def _store_role(
        self,
        name: str,
        permissions: Iterable[str],
        inherits: Optional[Sequence[str]],
        description: Optional[str],
        *,
        replacing: bool,
    ) -> bool:
        permissions = list(permissions)
        with self._write_lock:
            try:
                self.check_role(name, permissions, inherits, replacing=replacing)
            except RoleRejected as exc:
                _log_rejection("update" if replacing else "create", exc)
                return False
            updated = dict(self._roles)
            updated[name] = Role(
                name=name,
                permissions=frozenset(permissions),
                inherits=tuple(inherits or ()),
                description=description,
            )
            self._roles = updated
        logger.info("role_updated" if replacing else "role_created", role=name)
        return True


def _has_cycle(roles: Mapping[str, Role], start: str) -> bool:
    """True iff a DFS from ``start`` re-enters a role on the current path.

    Iterative, so arbitrarily deep inheritance chains are fine.
    """
    role = roles.get(start)
    if role is None:
        return False
    on_path: set[str] = {start}
    done: set[str] = set()
    stack: list[tuple[str, Iterator[str]]] = [(start, iter(role.inherits))]
    while stack:
        name, parents = stack[-1]
        for parent in parents:
            if parent in on_path:
                return True
            if parent in done or parent not in roles:
                continue
            on_path.add(parent)
            stack.append((parent, iter(roles[parent].inherits)))
            break
        else:
            stack.pop()
            on_path.discard(name)
            done.add(name)
    return False


def _log_rejection(operation: str, exc: RoleRejected) -> None:
    logger.warning(
        "role_rejected",
        operation=operation,
        reason=exc.error_code,
        message=exc.message,
        **exc.detail,
    )
