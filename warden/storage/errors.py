from __future__ import annotations

from typing import Any, Dict, Optional


class StorageFailure(Exception):
    """Raised when the durable store reports a failed query.

    The mutation the caller asked for did not happen; nothing was committed
    to any in-process cache either.
    """

    error_code = "storage_failure"

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


__all__ = ["StorageFailure"]
