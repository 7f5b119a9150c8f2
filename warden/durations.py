"""Compact duration strings such as ``"30m"`` or ``"24h"``.

Every consumer (cache TTL, token expiry) goes through :func:`parse_duration`
so the fallback rules are identical everywhere: an unknown or missing unit,
or a numeric prefix that is not a positive integer, yields the caller's
default instead of an error.
"""

from __future__ import annotations

import re
from datetime import timedelta
from typing import Optional

from warden.logging import get_logger

logger = get_logger(__name__)

CACHE_TTL_DEFAULT = timedelta(hours=1)
TOKEN_EXPIRY_DEFAULT = timedelta(hours=24)
# Longer spans overflow once added to the current time
MAX_DURATION = timedelta(days=365 * 100)

_UNITS = {
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
}

_DURATION_RE = re.compile(r"^(?P<value>\d+)(?P<unit>[a-zA-Z]?)$")


def parse_duration(value: Optional[str], default: timedelta) -> timedelta:
    """Convert ``value`` into a ``timedelta``, falling back to ``default``.

    Supported units are ``s``, ``m``, ``h`` and ``d``. A zero amount is
    treated like a malformed one since neither a cache TTL nor a token
    lifetime can be empty. Spans beyond ``MAX_DURATION`` also fall back.
    """
    raw = (value or "").strip()
    match = _DURATION_RE.match(raw)
    if not match:
        _log_defaulted(raw, default, reason="malformed_value")
        return default

    unit = match.group("unit").lower()
    step = _UNITS.get(unit)
    if step is None:
        _log_defaulted(raw, default, reason="unknown_unit" if unit else "missing_unit")
        return default

    amount = int(match.group("value"))
    if amount <= 0:
        _log_defaulted(raw, default, reason="non_positive_value")
        return default
    try:
        result = amount * step
    except OverflowError:
        result = None
    if result is None or result > MAX_DURATION:
        _log_defaulted(raw, default, reason="out_of_range")
        return default
    return result


def duration_ms(value: Optional[str], default: timedelta) -> int:
    """Same as :func:`parse_duration` but expressed in whole milliseconds."""
    return int(parse_duration(value, default) / timedelta(milliseconds=1))


def _log_defaulted(raw: str, default: timedelta, *, reason: str) -> None:
    logger.warning(
        "duration_parse_defaulted",
        value=raw,
        reason=reason,
        default_seconds=int(default.total_seconds()),
    )
