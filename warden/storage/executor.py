from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

from psycopg import Error as PsycopgError
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from warden.logging import get_logger, sanitize_error_message

logger = get_logger(__name__)


@dataclass
class QueryResult:
    success: bool
    rows: List[Dict[str, Any]] = field(default_factory=list)
    affected_rows: Optional[int] = None
    insert_id: Any = None
    error: Optional[str] = None


class QueryExecutor(Protocol):
    """Runs one parameterized statement; failures are returned, not raised."""

    def execute(self, query: str, params: Sequence[Any] = ()) -> QueryResult: ...


class PostgresQueryExecutor:
    """Query executor backed by a psycopg connection pool."""

    def __init__(
        self,
        dsn: Optional[str] = None,
        *,
        pool: Optional[ConnectionPool] = None,
        min_size: int = 1,
        max_size: int = 10,
    ) -> None:
        if pool is None:
            if not dsn:
                raise ValueError("either dsn or pool is required")
            pool = ConnectionPool(
                dsn,
                min_size=min_size,
                max_size=max_size,
                kwargs={"row_factory": dict_row, "autocommit": False},
            )
        self.pool = pool

    def _connect(self):
        return self.pool.connection()

    def execute(self, query: str, params: Sequence[Any] = ()) -> QueryResult:
        try:
            # The pool's context manager commits on success and rolls back on error
            with self._connect() as conn:
                cursor = conn.execute(query, tuple(params))
                rows = list(cursor.fetchall()) if cursor.description else []
                affected = cursor.rowcount if cursor.rowcount >= 0 else None
        except PsycopgError as exc:
            logger.error("query_failed", error=str(exc), error_type=type(exc).__name__)
            return QueryResult(success=False, error=sanitize_error_message(str(exc)))
        insert_id = rows[0].get("id") if rows and isinstance(rows[0], dict) else None
        return QueryResult(
            success=True, rows=rows, affected_rows=affected, insert_id=insert_id
        )

    def close(self) -> None:
        self.pool.close()
