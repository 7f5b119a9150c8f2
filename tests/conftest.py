import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("TOKEN_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from warden.storage.executor import QueryResult  # noqa: E402
from warden.storage.postgres import (  # noqa: E402
    CREATE_SESSIONS_TABLE_SQL,
    CREATE_USER_ROLES_TABLE_SQL,
    DELETE_SESSION_SQL,
    DELETE_USER_ROLE_SQL,
    INSERT_USER_ROLE_SQL,
    PURGE_EXPIRED_SESSIONS_SQL,
    SELECT_SESSION_SQL,
    SELECT_USER_ROLES_SQL,
    UPSERT_SESSION_SQL,
)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeExecutor:
    """Dict-backed stand-in for the query executor.

    Understands exactly the statements issued by the Postgres stores and
    records every call. Statements listed in ``fail_on`` return a failed
    result without touching state.
    """

    def __init__(self):
        self.sessions: dict[str, dict] = {}
        self.user_roles: set[tuple[str, str]] = set()
        self.calls: list[tuple[str, tuple]] = []
        self.fail_on: set[str] = set()

    def count(self, query: str) -> int:
        return sum(1 for q, _ in self.calls if q == query)

    def execute(self, query, params=()):
        params = tuple(params)
        self.calls.append((query, params))
        if query in self.fail_on:
            return QueryResult(success=False, error="simulated failure")

        if query in (CREATE_SESSIONS_TABLE_SQL, CREATE_USER_ROLES_TABLE_SQL):
            return QueryResult(success=True)
        if query == UPSERT_SESSION_SQL:
            session_id, user_id, created_at, expires_at, token, roles = params
            existing = self.sessions.get(session_id)
            if existing is not None:
                created_at = min(existing["created_at"], created_at)
            self.sessions[session_id] = {
                "session_id": session_id,
                "user_id": user_id,
                "created_at": created_at,
                "expires_at": expires_at,
                "token": token,
                "roles": roles,
            }
            return QueryResult(
                success=True, rows=[{"created_at": created_at}], affected_rows=1
            )
        if query == SELECT_SESSION_SQL:
            row = self.sessions.get(params[0])
            return QueryResult(success=True, rows=[dict(row)] if row else [])
        if query == DELETE_SESSION_SQL:
            removed = self.sessions.pop(params[0], None)
            return QueryResult(success=True, affected_rows=1 if removed else 0)
        if query == PURGE_EXPIRED_SESSIONS_SQL:
            stale = [
                sid for sid, row in self.sessions.items() if row["expires_at"] < params[0]
            ]
            for sid in stale:
                del self.sessions[sid]
            return QueryResult(success=True, affected_rows=len(stale))
        if query == SELECT_USER_ROLES_SQL:
            roles = sorted(role for uid, role in self.user_roles if uid == params[0])
            return QueryResult(success=True, rows=[{"role": r} for r in roles])
        if query == INSERT_USER_ROLE_SQL:
            self.user_roles.add((params[0], params[1]))
            return QueryResult(success=True, affected_rows=1)
        if query == DELETE_USER_ROLE_SQL:
            self.user_roles.discard((params[0], params[1]))
            return QueryResult(success=True, affected_rows=1)
        raise AssertionError(f"unexpected query: {query}")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_executor():
    return FakeExecutor()
