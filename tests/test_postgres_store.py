"""Tests for the durable session store and role assignment store.

Database access goes through the ``fake_executor`` fixture, so no Postgres
server is needed.
"""

import json
from datetime import timedelta

import pytest

from warden.storage.errors import StorageFailure
from warden.storage.executor import PostgresQueryExecutor
from warden.storage.models import Session
from warden.storage.postgres import (
    DELETE_SESSION_SQL,
    PURGE_EXPIRED_SESSIONS_SQL,
    SELECT_SESSION_SQL,
    UPSERT_SESSION_SQL,
    PostgresRoleAssignmentStore,
    PostgresSessionStore,
)


def make_session(clock, sid="sess-1", ttl=timedelta(hours=1), roles=("member",)):
    return Session(
        id=sid,
        user_id="42",
        created_at=clock(),
        expires_at=clock() + ttl,
        token="signed-token",
        roles=set(roles),
    )


def make_store(executor, clock, **kwargs):
    return PostgresSessionStore(executor, clock=clock, **kwargs)


class TestWritePath:
    def test_set_writes_durable_row_then_cache(self, fake_executor, clock):
        store = make_store(fake_executor, clock)
        session = make_session(clock)

        store.set(session.id, session)

        row = fake_executor.sessions[session.id]
        assert row["user_id"] == "42"
        assert json.loads(row["roles"]) == ["member"]
        assert session.id in store.cache

    def test_failed_write_leaves_cache_untouched(self, fake_executor, clock):
        store = make_store(fake_executor, clock)
        fake_executor.fail_on.add(UPSERT_SESSION_SQL)
        session = make_session(clock)

        with pytest.raises(StorageFailure) as excinfo:
            store.set(session.id, session)

        assert excinfo.value.detail["session_id"] == session.id
        assert session.id not in store.cache
        assert store.cache.current_size == 0

    def test_failed_rewrite_keeps_previous_cached_copy(self, fake_executor, clock):
        store = make_store(fake_executor, clock)
        original = make_session(clock)
        store.set(original.id, original)
        fake_executor.fail_on.add(UPSERT_SESSION_SQL)

        with pytest.raises(StorageFailure):
            store.set(original.id, original.with_roles({"member", "admin"}))

        assert store.get(original.id).roles == frozenset({"member"})

    def test_oversize_rewrite_drops_stale_cached_copy(self, fake_executor, clock):
        session = make_session(clock)
        store = make_store(fake_executor, clock, cache_size_bytes=200)
        store.set(session.id, session)
        assert session.id in store.cache

        bigger = session.with_roles({"r" * 300})
        store.set(session.id, bigger)

        assert session.id not in store.cache
        assert store.get(session.id).roles == frozenset({"r" * 300})

    def test_upsert_never_moves_created_at_forward(self, fake_executor, clock):
        store = make_store(fake_executor, clock)
        original = make_session(clock)
        store.set(original.id, original)
        clock.advance(minutes=5)

        store.set(original.id, make_session(clock, roles=("member", "editor")))

        cached = store.get(original.id)
        assert cached.created_at == original.created_at
        assert fake_executor.sessions[original.id]["created_at"] == original.created_at


class TestReadPath:
    def test_cache_hit_skips_database(self, fake_executor, clock):
        store = make_store(fake_executor, clock)
        session = make_session(clock)
        store.set(session.id, session)

        assert store.get(session.id) == session
        assert fake_executor.count(SELECT_SESSION_SQL) == 0

    def test_cache_miss_loads_and_repopulates(self, fake_executor, clock):
        writer = make_store(fake_executor, clock)
        session = make_session(clock)
        writer.set(session.id, session)

        reader = make_store(fake_executor, clock)
        loaded = reader.get(session.id)
        again = reader.get(session.id)

        assert loaded == session
        assert again == session
        assert fake_executor.count(SELECT_SESSION_SQL) == 1

    def test_without_cache_every_read_hits_database(self, fake_executor, clock):
        store = make_store(fake_executor, clock, use_cache=False)
        session = make_session(clock)
        store.set(session.id, session)

        store.get(session.id)
        store.get(session.id)

        assert store.cache is None
        assert fake_executor.count(SELECT_SESSION_SQL) == 2

    def test_unknown_session_is_absent(self, fake_executor, clock):
        store = make_store(fake_executor, clock)

        assert store.get("nope") is None
        assert not store.is_valid("nope")

    def test_expired_session_deleted_on_read(self, fake_executor, clock):
        store = make_store(fake_executor, clock)
        session = make_session(clock, ttl=timedelta(minutes=1))
        store.set(session.id, session)
        clock.advance(minutes=2)

        assert store.get(session.id) is None
        assert session.id not in fake_executor.sessions
        assert session.id not in store.cache

    def test_read_failure_raises(self, fake_executor, clock):
        store = make_store(fake_executor, clock)
        fake_executor.fail_on.add(SELECT_SESSION_SQL)

        with pytest.raises(StorageFailure):
            store.get("sess-1")

    def test_cache_ttl_sweep_falls_back_to_database(self, fake_executor, clock):
        store = make_store(fake_executor, clock, cache_duration="10m")
        session = make_session(clock, ttl=timedelta(hours=2))
        store.set(session.id, session)
        clock.advance(minutes=11)

        assert store.get(session.id) == session
        assert fake_executor.count(SELECT_SESSION_SQL) == 1

    def test_delete_during_read_is_not_cached(self, fake_executor, clock):
        """A delete that lands while a read is querying wins over the read."""
        store = make_store(fake_executor, clock)
        session = make_session(clock)
        store.set(session.id, session)
        store.cache.clear()
        execute = fake_executor.execute

        def execute_then_delete(query, params=()):
            result = execute(query, params)
            if query == SELECT_SESSION_SQL:
                fake_executor.execute = execute
                store.delete(session.id)
            return result

        fake_executor.execute = execute_then_delete
        store.get(session.id)

        assert session.id not in fake_executor.sessions
        assert session.id not in store.cache
        assert store.get(session.id) is None

    def test_reads_after_a_delete_repopulate_again(self, fake_executor, clock):
        store = make_store(fake_executor, clock)
        first, second = make_session(clock, sid="one"), make_session(clock, sid="two")
        store.set(first.id, first)
        store.set(second.id, second)
        store.delete(first.id)
        store.cache.clear()

        assert store.get(second.id) == second
        assert second.id in store.cache


class TestDeleteAndPurge:
    def test_delete_evicts_cache_and_row(self, fake_executor, clock):
        store = make_store(fake_executor, clock)
        session = make_session(clock)
        store.set(session.id, session)

        store.delete(session.id)
        store.delete(session.id)

        assert session.id not in store.cache
        assert session.id not in fake_executor.sessions

    def test_delete_failure_still_evicts_cache(self, fake_executor, clock):
        store = make_store(fake_executor, clock)
        session = make_session(clock)
        store.set(session.id, session)
        fake_executor.fail_on.add(DELETE_SESSION_SQL)

        with pytest.raises(StorageFailure):
            store.delete(session.id)

        assert session.id not in store.cache

    def test_purge_expired(self, fake_executor, clock):
        store = make_store(fake_executor, clock)
        store.set("a", make_session(clock, sid="a", ttl=timedelta(minutes=1)))
        store.set("b", make_session(clock, sid="b", ttl=timedelta(hours=1)))
        clock.advance(minutes=5)

        assert store.purge_expired() == 1
        assert set(fake_executor.sessions) == {"b"}
        assert fake_executor.count(PURGE_EXPIRED_SESSIONS_SQL) == 1

    def test_ensure_schema(self, fake_executor, clock):
        make_store(fake_executor, clock).ensure_schema()
        PostgresRoleAssignmentStore(fake_executor).ensure_schema()

        assert len(fake_executor.calls) == 2


class TestRoleAssignmentStore:
    def test_assign_list_remove(self, fake_executor):
        store = PostgresRoleAssignmentStore(fake_executor)
        store.assign_role(42, "editor")
        store.assign_role(42, "admin")
        store.assign_role(42, "admin")
        store.assign_role(7, "viewer")

        assert store.get_user_roles(42) == ["admin", "editor"]

        store.remove_role(42, "admin")
        assert store.get_user_roles("42") == ["editor"]


class DummyCursor:
    def __init__(self, rows, rowcount=1, description=("col",)):
        self._rows = rows
        self.rowcount = rowcount
        self.description = description

    def fetchall(self):
        return self._rows


class DummyConnection:
    def __init__(self, outcome):
        self.outcome = outcome
        self.executed = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, query, params):
        self.executed.append((query, params))
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


class DummyPool:
    def __init__(self, outcome):
        self.conn = DummyConnection(outcome)

    def connection(self):
        return self.conn


class TestPostgresQueryExecutor:
    def test_rows_and_insert_id(self):
        pool = DummyPool(DummyCursor([{"id": 5, "role": "admin"}]))
        executor = PostgresQueryExecutor(pool=pool)

        result = executor.execute("SELECT 1", ["x"])

        assert result.success
        assert result.rows == [{"id": 5, "role": "admin"}]
        assert result.insert_id == 5
        assert result.affected_rows == 1
        assert pool.conn.executed == [("SELECT 1", ("x",))]

    def test_statement_without_result_set(self):
        pool = DummyPool(DummyCursor([], rowcount=3, description=None))

        result = PostgresQueryExecutor(pool=pool).execute("DELETE FROM sessions")

        assert result.success
        assert result.rows == []
        assert result.affected_rows == 3

    def test_driver_error_becomes_failed_result(self):
        from psycopg import OperationalError

        pool = DummyPool(OperationalError("connection to postgresql://u:pw@db failed"))

        result = PostgresQueryExecutor(pool=pool).execute("SELECT 1")

        assert not result.success
        assert "pw@db" not in result.error

    def test_requires_dsn_or_pool(self):
        with pytest.raises(ValueError):
            PostgresQueryExecutor()
