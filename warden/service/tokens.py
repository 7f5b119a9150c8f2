from __future__ import annotations

import base64
import hashlib
import hmac
import json
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Optional

from warden.config import TokenAlgorithm
from warden.durations import TOKEN_EXPIRY_DEFAULT, parse_duration
from warden.logging import get_logger
from warden.service.errors import InvalidToken
from warden.storage.models import utcnow

logger = get_logger(__name__)

_DIGESTS = {
    TokenAlgorithm.HS256: hashlib.sha256,
    TokenAlgorithm.HS384: hashlib.sha384,
    TokenAlgorithm.HS512: hashlib.sha512,
}

# Claims the manager owns; caller-supplied claims never override them
_RESERVED_CLAIMS = frozenset({"sid", "iat", "exp"})


class TokenManager:
    """Issues and verifies HMAC-signed JWTs bound to a session id.

    Holds only immutable configuration, so ``verify`` is safe to call from
    any number of threads without locking.
    """

    def __init__(
        self,
        secret: str,
        algorithm: TokenAlgorithm | str = TokenAlgorithm.HS256,
        expiration: str = "24h",
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        self._secret = secret.encode("utf-8")
        self.algorithm = TokenAlgorithm(algorithm)
        self._digest = _DIGESTS[self.algorithm]
        self.lifetime: timedelta = parse_duration(expiration, TOKEN_EXPIRY_DEFAULT)
        self._clock = clock

    def expires_at(self, now: Optional[datetime] = None) -> datetime:
        """Expiry for a token issued at ``now``."""
        return (now or self._clock()) + self.lifetime

    def issue(
        self,
        session_id: str,
        claims: Optional[Mapping[str, Any]] = None,
        *,
        expires_at: Optional[datetime] = None,
    ) -> str:
        now = self._clock()
        exp = expires_at or self.expires_at(now)
        payload = {k: v for k, v in (claims or {}).items() if k not in _RESERVED_CLAIMS}
        payload.update(
            {
                "sid": session_id,
                "iat": int(now.timestamp()),
                "exp": int(exp.timestamp()),
            }
        )
        return self._encode_jwt(payload)

    def decode(self, token: str) -> dict[str, Any]:
        """Return the verified payload or raise :class:`InvalidToken`."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise InvalidToken("token must have three segments")

        # Reject algorithm confusion: the header must name our configured algorithm
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise InvalidToken("token header is not valid JSON")
        if not isinstance(header, dict) or header.get("alg") != self.algorithm.value:
            raise InvalidToken(
                "unexpected token algorithm",
                detail={"alg": header.get("alg") if isinstance(header, dict) else None},
            )

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8")):
            raise InvalidToken("token signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise InvalidToken("token payload is not valid JSON")
        if not isinstance(payload, dict):
            raise InvalidToken("token payload must be an object")

        sid = payload.get("sid")
        if not isinstance(sid, str) or not sid:
            raise InvalidToken("token carries no session id")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidToken("token carries no usable expiry")
        if self._clock().timestamp() >= exp_ts:
            raise InvalidToken("token expired", detail={"sid": sid})
        return payload

    def verify(self, token: str) -> Optional[str]:
        """Return the bound session id, or ``None`` for any invalid token."""
        try:
            return self.decode(token)["sid"]
        except InvalidToken as exc:
            logger.debug("token_rejected", reason=exc.message)
            return None

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        try:
            return base64.urlsafe_b64decode(segment + padding)
        except (ValueError, TypeError) as exc:
            raise InvalidToken("token segment is not valid base64") from exc

    def _sign(self, signing_input: str) -> str:
        signature = hmac.new(
            self._secret, signing_input.encode("utf-8"), self._digest
        ).digest()
        return self._encode_segment(signature)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": self.algorithm.value, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"
