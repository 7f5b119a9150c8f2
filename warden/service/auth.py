from __future__ import annotations

import hashlib
import secrets
from datetime import datetime
from typing import Callable, FrozenSet, Iterable, List, Optional, Protocol

from warden.logging import get_logger
from warden.service.errors import InvalidToken, SessionAbsent, UnknownRole
from warden.service.rbac import RBACResolver
from warden.service.tokens import TokenManager
from warden.storage.errors import StorageFailure
from warden.storage.models import Session, UserId, utcnow

logger = get_logger(__name__)

_MAX_ID_ATTEMPTS = 5


class SessionStore(Protocol):
    def set(self, session_id: str, data: Session) -> None: ...

    def get(self, session_id: str) -> Optional[Session]: ...

    def delete(self, session_id: str) -> None: ...

    def is_valid(self, session_id: str) -> bool: ...

    def purge_expired(self) -> int: ...


class RoleAssignmentStore(Protocol):
    def get_user_roles(self, user_id: UserId) -> List[str]: ...

    def assign_role(self, user_id: UserId, role: str) -> None: ...

    def remove_role(self, user_id: UserId, role: str) -> None: ...


class AuthService:
    """Session lifecycle, token binding and permission checks.

    Invalid tokens, missing sessions and denied permissions are ordinary
    outcomes reported as ``None``/``False``. ``StorageFailure`` from a
    durable store is not caught here and reaches the caller.
    """

    def __init__(
        self,
        store: SessionStore,
        tokens: TokenManager,
        rbac: RBACResolver,
        *,
        session_id_bytes: int = 32,
        rbac_enabled: bool = True,
        role_store: Optional[RoleAssignmentStore] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.rbac = rbac
        self.session_id_bytes = session_id_bytes
        self.rbac_enabled = rbac_enabled
        self.role_store = role_store
        self.logger = logger
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    def _new_session_id(self) -> str:
        for _ in range(_MAX_ID_ATTEMPTS):
            candidate = hashlib.sha256(
                secrets.token_bytes(self.session_id_bytes)
            ).hexdigest()
            if not self.store.is_valid(candidate):
                return candidate
            logger.warning("session_id_collision")
        raise RuntimeError("could not allocate an unused session id")

    def create_session(
        self, user_id: UserId, roles: Optional[Iterable[str]] = None
    ) -> str:
        """Create and persist a session, returning the token bound to it.

        When ``roles`` is omitted and a role assignment store is configured,
        the user's stored roles are used.

        ``user_id`` is stored in its string form, so a session created for
        ``42`` reports ``user_id == "42"``. The durable ``user_id`` column is
        text and numeric ids must survive a round trip unchanged.
        ``StorageFailure`` is raised if the session could not be stored; no
        token is issued in that case.
        """
        if roles is None:
            roles = self.role_store.get_user_roles(user_id) if self.role_store else ()
        role_set = frozenset(roles)
        unknown = sorted(r for r in role_set if not self.rbac.role_exists(r))
        if unknown and self.rbac_enabled:
            logger.warning("session_roles_unknown", roles=unknown)

        now = self._now()
        expires_at = self.tokens.expires_at(now)
        session_id = self._new_session_id()
        token = self.tokens.issue(session_id, expires_at=expires_at)
        session = Session(
            id=session_id,
            user_id=user_id,
            created_at=now,
            expires_at=expires_at,
            token=token,
            roles=role_set,
        )
        self.store.set(session_id, session)
        logger.info(
            "session_created",
            session_id=session_id,
            user_id=session.user_id,
            expires_at=expires_at.isoformat(),
        )
        return token

    def _require_session(self, token: str) -> Session:
        session_id = self.tokens.verify(token)
        if session_id is None:
            raise InvalidToken("token failed verification")
        session = self.store.get(session_id)
        if session is None:
            raise SessionAbsent("no live session", detail={"session_id": session_id})
        # Guards against stores handing back a record that expired in flight
        if session.is_expired(self._now()):
            self.store.delete(session_id)
            raise SessionAbsent("session expired", detail={"session_id": session_id})
        return session

    def validate_session(self, token: str) -> Optional[Session]:
        try:
            return self._require_session(token)
        except (InvalidToken, SessionAbsent) as exc:
            logger.debug("session_validation_failed", reason=exc.error_code)
            return None

    def invalidate_session(self, token: str) -> None:
        session_id = self.tokens.verify(token)
        if session_id is None:
            return
        self.store.delete(session_id)
        logger.info("session_invalidated", session_id=session_id)

    def has_permission(
        self,
        token: str,
        permission: str,
        resource_owner_id: Optional[UserId] = None,
    ) -> bool:
        session = self.validate_session(token)
        if session is None:
            return False
        if not self.rbac_enabled:
            # Access control switched off: any live session is allowed
            return True
        allowed = self.rbac.has_permission(
            session.roles,
            permission,
            owner_id=resource_owner_id,
            acting_id=session.user_id,
        )
        if not allowed:
            logger.info(
                "permission_denied",
                session_id=session.id,
                user_id=session.user_id,
                permission=permission,
            )
        return allowed

    def has_role(self, token: str, role_name: str) -> bool:
        session = self.validate_session(token)
        return session is not None and role_name in session.roles

    def assign_role(self, token: str, role_name: str) -> bool:
        try:
            session = self._require_session(token)
            if not self.rbac.role_exists(role_name):
                raise UnknownRole(f"role {role_name!r} does not exist")
        except (InvalidToken, SessionAbsent, UnknownRole) as exc:
            logger.info("assign_role_rejected", role=role_name, reason=exc.error_code)
            return False
        if role_name in session.roles:
            return True
        self._persist_roles(session, session.roles | {role_name}, role_name, assign=True)
        logger.info("role_assigned", session_id=session.id, role=role_name)
        return True

    def remove_role(self, token: str, role_name: str) -> bool:
        try:
            session = self._require_session(token)
        except (InvalidToken, SessionAbsent) as exc:
            logger.info("remove_role_rejected", role=role_name, reason=exc.error_code)
            return False
        if role_name not in session.roles:
            return False
        self._persist_roles(session, session.roles - {role_name}, role_name, assign=False)
        logger.info("role_removed", session_id=session.id, role=role_name)
        return True

    def _persist_roles(
        self, session: Session, roles: FrozenSet[str], role_name: str, *, assign: bool
    ) -> None:
        """Save the new role set, then mirror the change into the role store.

        If the role store write fails the previous session record is put back
        before ``StorageFailure`` propagates, so neither side keeps the change.
        """
        self.store.set(session.id, session.with_roles(roles))
        if self.role_store is None:
            return
        try:
            if assign:
                self.role_store.assign_role(session.user_id, role_name)
            else:
                self.role_store.remove_role(session.user_id, role_name)
        except StorageFailure:
            logger.warning(
                "role_assignment_rolled_back", session_id=session.id, role=role_name
            )
            self.store.set(session.id, session)
            raise

    def purge_expired(self) -> int:
        """Physically remove lazily-expired sessions from the store."""
        return self.store.purge_expired()
