from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Callable, Optional

from warden.logging import get_logger
from warden.storage.cache import BoundedCache
from warden.storage.errors import StorageFailure
from warden.storage.models import Session, utcnow


class MemorySessionStore:
    """Single-process session store held entirely in a bounded cache.

    No TTL sweep applies here; sessions only leave through explicit delete,
    their own expiry, or size pressure.
    """

    def __init__(
        self, max_size_bytes: int, *, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        self.cache: BoundedCache[str, Session] = BoundedCache(
            max_size_bytes, ttl=None, clock=clock
        )

    def set(self, session_id: str, data: Session) -> None:
        existing = self.cache.get(session_id)
        if existing is not None and existing.created_at < data.created_at:
            data = replace(data, created_at=existing.created_at)
        if not self.cache.put(session_id, data):
            self.logger.warning("memory_session_not_stored", session_id=session_id)
            raise StorageFailure(
                "session is larger than the memory store budget",
                {
                    "operation": "save_session",
                    "session_id": session_id,
                    "max_size_bytes": self.cache.max_size,
                },
            )

    def get(self, session_id: str) -> Optional[Session]:
        return self.cache.get(session_id)

    def delete(self, session_id: str) -> None:
        self.cache.delete(session_id)

    def is_valid(self, session_id: str) -> bool:
        return self.get(session_id) is not None

    def purge_expired(self) -> int:
        removed = self.cache.purge_expired()
        if removed:
            self.logger.info("memory_sessions_purged", count=removed)
        return removed
