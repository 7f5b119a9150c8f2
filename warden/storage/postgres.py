from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from warden.durations import CACHE_TTL_DEFAULT, parse_duration
from warden.logging import get_logger
from warden.storage.cache import BoundedCache
from warden.storage.errors import StorageFailure
from warden.storage.executor import QueryExecutor, QueryResult
from warden.storage.models import Session, UserId, utcnow

CREATE_SESSIONS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS sessions (
    session_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL,
    token TEXT NOT NULL,
    roles JSONB NOT NULL DEFAULT '[]'::jsonb
)
"""

UPSERT_SESSION_SQL = """
INSERT INTO sessions (session_id, user_id, created_at, expires_at, token, roles)
VALUES (%s, %s, %s, %s, %s, %s::jsonb)
ON CONFLICT (session_id) DO UPDATE SET
    user_id = EXCLUDED.user_id,
    created_at = LEAST(sessions.created_at, EXCLUDED.created_at),
    expires_at = EXCLUDED.expires_at,
    token = EXCLUDED.token,
    roles = EXCLUDED.roles
RETURNING created_at
"""

SELECT_SESSION_SQL = (
    "SELECT session_id, user_id, created_at, expires_at, token, roles "
    "FROM sessions WHERE session_id = %s"
)

DELETE_SESSION_SQL = "DELETE FROM sessions WHERE session_id = %s"

PURGE_EXPIRED_SESSIONS_SQL = "DELETE FROM sessions WHERE expires_at < %s"

CREATE_USER_ROLES_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS user_roles (
    user_id TEXT NOT NULL,
    role TEXT NOT NULL,
    PRIMARY KEY (user_id, role)
)
"""

SELECT_USER_ROLES_SQL = "SELECT role FROM user_roles WHERE user_id = %s ORDER BY role"

INSERT_USER_ROLE_SQL = (
    "INSERT INTO user_roles (user_id, role) VALUES (%s, %s) "
    "ON CONFLICT (user_id, role) DO NOTHING"
)

DELETE_USER_ROLE_SQL = "DELETE FROM user_roles WHERE user_id = %s AND role = %s"


def _require_success(result: QueryResult, operation: str, **detail: Any) -> QueryResult:
    if not result.success:
        raise StorageFailure(
            f"{operation} failed: {result.error or 'unknown error'}",
            {"operation": operation, **detail},
        )
    return result


def _decode_roles(raw: Any) -> List[str]:
    if raw is None:
        return []
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    if isinstance(raw, str):
        raw = json.loads(raw) if raw.strip() else []
    return [str(role) for role in raw]


class PostgresSessionStore:
    """Durable session store with an optional write-through bounded cache.

    The cache lock is only held for in-memory bookkeeping; queries run
    without any in-process lock. A durable write that fails leaves the cache
    untouched.
    """

    def __init__(
        self,
        executor: QueryExecutor,
        *,
        use_cache: bool = True,
        cache_duration: str = "1h",
        cache_size_bytes: int = 1024 * 1024,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.executor = executor
        self.logger = get_logger(__name__)
        self._clock = clock
        # Bumped by every delete; a read only repopulates the cache if no
        # delete ran while its query was in flight
        self._delete_generation = 0
        self._generation_lock = threading.Lock()
        self.cache: Optional[BoundedCache[str, Session]] = None
        if use_cache:
            self.cache = BoundedCache(
                cache_size_bytes,
                ttl=parse_duration(cache_duration, CACHE_TTL_DEFAULT),
                clock=clock,
            )

    def ensure_schema(self) -> None:
        _require_success(
            self.executor.execute(CREATE_SESSIONS_TABLE_SQL), "create_sessions_table"
        )

    def set(self, session_id: str, data: Session) -> None:
        result = self.executor.execute(
            UPSERT_SESSION_SQL,
            (
                session_id,
                data.user_id,
                data.created_at,
                data.expires_at,
                data.token,
                json.dumps(sorted(data.roles)),
            ),
        )
        _require_success(result, "save_session", session_id=session_id)
        stored_created = result.rows[0].get("created_at") if result.rows else None
        if isinstance(stored_created, datetime):
            data = replace(data, created_at=stored_created)
        if self.cache is not None and not self.cache.put(session_id, data):
            self.cache.delete(session_id)

    def get(self, session_id: str) -> Optional[Session]:
        if self.cache is not None:
            cached = self.cache.get(session_id)
            if cached is not None:
                return cached

        with self._generation_lock:
            seen_generation = self._delete_generation
        result = _require_success(
            self.executor.execute(SELECT_SESSION_SQL, (session_id,)),
            "load_session",
            session_id=session_id,
        )
        if not result.rows:
            return None
        session = self._row_to_session(result.rows[0])
        if session.is_expired(self._clock()):
            self.logger.debug("session_lazily_expired", session_id=session_id)
            self.delete(session_id)
            return None
        if self.cache is not None:
            with self._generation_lock:
                if self._delete_generation == seen_generation:
                    self.cache.put(session_id, session)
        return session

    def delete(self, session_id: str) -> None:
        with self._generation_lock:
            self._delete_generation += 1
            if self.cache is not None:
                self.cache.delete(session_id)
        _require_success(
            self.executor.execute(DELETE_SESSION_SQL, (session_id,)),
            "delete_session",
            session_id=session_id,
        )

    def is_valid(self, session_id: str) -> bool:
        return self.get(session_id) is not None

    def purge_expired(self) -> int:
        result = _require_success(
            self.executor.execute(PURGE_EXPIRED_SESSIONS_SQL, (self._clock(),)),
            "purge_expired_sessions",
        )
        if self.cache is not None:
            self.cache.purge_expired()
        removed = result.affected_rows or 0
        if removed:
            self.logger.info("persistent_sessions_purged", count=removed)
        return removed

    @staticmethod
    def _row_to_session(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["session_id"]),
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            token=row.get("token") or "",
            roles=frozenset(_decode_roles(row.get("roles"))),
        )


class PostgresRoleAssignmentStore:
    """Durable user -> role assignments kept in ``user_roles``."""

    def __init__(self, executor: QueryExecutor) -> None:
        self.executor = executor
        self.logger = get_logger(__name__)

    def ensure_schema(self) -> None:
        _require_success(
            self.executor.execute(CREATE_USER_ROLES_TABLE_SQL), "create_user_roles_table"
        )

    def get_user_roles(self, user_id: UserId) -> List[str]:
        result = _require_success(
            self.executor.execute(SELECT_USER_ROLES_SQL, (str(user_id),)),
            "load_user_roles",
            user_id=str(user_id),
        )
        return [str(row["role"]) for row in result.rows]

    def assign_role(self, user_id: UserId, role: str) -> None:
        _require_success(
            self.executor.execute(INSERT_USER_ROLE_SQL, (str(user_id), role)),
            "assign_user_role",
            user_id=str(user_id),
            role=role,
        )

    def remove_role(self, user_id: UserId, role: str) -> None:
        _require_success(
            self.executor.execute(DELETE_USER_ROLE_SQL, (str(user_id), role)),
            "remove_user_role",
            user_id=str(user_id),
            role=role,
        )
