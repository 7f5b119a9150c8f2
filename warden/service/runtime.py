from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from warden.config import SessionStrategy, Settings
from warden.logging import get_logger
from warden.service.auth import AuthService, SessionStore
from warden.service.rbac import RBACResolver
from warden.service.tokens import TokenManager
from warden.storage.executor import PostgresQueryExecutor, QueryExecutor
from warden.storage.memory import MemorySessionStore
from warden.storage.models import utcnow
from warden.storage.postgres import PostgresRoleAssignmentStore, PostgresSessionStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for safe logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def build_session_store(
    settings: Settings,
    executor: Optional[QueryExecutor] = None,
    *,
    clock: Callable[[], datetime] = utcnow,
) -> SessionStore:
    if settings.session_strategy is SessionStrategy.MEMORY:
        return MemorySessionStore(settings.memory.max_size_bytes, clock=clock)
    if executor is None:
        raise ValueError("the persistent session strategy needs a query executor")
    persistent = settings.persistent
    return PostgresSessionStore(
        executor,
        use_cache=persistent.use_cache,
        cache_duration=persistent.cache_duration,
        cache_size_bytes=persistent.cache_size_bytes,
        clock=clock,
    )


class Runtime:
    """Composition root: builds each component once from explicit settings.

    Construct one per process at startup and hand ``runtime.auth`` to the
    request layer; tests build a fresh instance per case.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        executor: Optional[QueryExecutor] = None,
        clock: Callable[[], datetime] = utcnow,
        ensure_schema: bool = False,
    ) -> None:
        self.settings = settings
        persistent = settings.session_strategy is SessionStrategy.PERSISTENT
        logger.info(
            "runtime_init_started",
            session_strategy=settings.session_strategy.value,
            token_algorithm=settings.token_algorithm.value,
            rbac_enabled=settings.rbac.enabled,
        )

        if persistent and executor is None:
            try:
                executor = PostgresQueryExecutor(settings.database_url)
            except Exception as exc:
                logger.error(
                    "runtime_executor_init_failed",
                    database_url=_mask_url_password(settings.database_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
        self.executor = executor

        self.store = build_session_store(settings, executor, clock=clock)
        self.role_store = (
            PostgresRoleAssignmentStore(executor) if persistent and executor else None
        )
        if ensure_schema and persistent:
            self.store.ensure_schema()
            self.role_store.ensure_schema()

        self.tokens = TokenManager(
            settings.token_secret,
            settings.token_algorithm,
            settings.token_expiration,
            clock=clock,
        )
        self.rbac = (
            RBACResolver.from_settings(settings.rbac)
            if settings.rbac.enabled
            else RBACResolver()
        )
        self.auth = AuthService(
            self.store,
            self.tokens,
            self.rbac,
            session_id_bytes=settings.token_id_length,
            rbac_enabled=settings.rbac.enabled,
            role_store=self.role_store,
            clock=clock,
        )
        logger.info("runtime_init_complete")
