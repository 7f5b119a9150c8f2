from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import FrozenSet, Iterable, Optional, Tuple, Union

UserId = Union[int, str]

_TIMESTAMP_BYTES = 8


def utcnow() -> datetime:
    """Timezone-aware UTC helper used as the default clock."""

    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive timestamps (e.g. from older rows) as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    token: str = ""
    roles: FrozenSet[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        # user ids are opaque; numeric ids are kept in their string form
        object.__setattr__(self, "user_id", str(self.user_id))
        object.__setattr__(self, "created_at", ensure_aware(self.created_at))
        object.__setattr__(self, "expires_at", ensure_aware(self.expires_at))
        object.__setattr__(self, "roles", frozenset(self.roles))
        if self.expires_at <= self.created_at:
            raise ValueError("session expires_at must be later than created_at")

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def with_roles(self, roles: Iterable[str]) -> "Session":
        return replace(self, roles=frozenset(roles))


def session_size(session: Session) -> int:
    """Canonical byte size of a session used for cache accounting.

    UTF-8 length of every string field (each role counted separately, no
    separators) plus a fixed 8 bytes per timestamp. It does not depend on any
    serializer's output so accounting is reproducible.
    """

    size = len(session.id.encode("utf-8"))
    size += len(session.user_id.encode("utf-8"))
    size += len(session.token.encode("utf-8"))
    size += sum(len(role.encode("utf-8")) for role in session.roles)
    size += 2 * _TIMESTAMP_BYTES
    return size


@dataclass(frozen=True)
class Role:
    name: str
    permissions: FrozenSet[str] = field(default_factory=frozenset)
    inherits: Tuple[str, ...] = ()
    description: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "permissions", frozenset(self.permissions))
        object.__setattr__(self, "inherits", tuple(self.inherits))
