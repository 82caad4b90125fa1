from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from shopgate.config import Settings
from shopgate.logging import get_logger
from shopgate.service.errors import InvalidTokenError, TokenExpiredError

logger = get_logger(__name__)

_HMAC_DIGESTS = {
    "HS256": hashlib.sha256,
    "HS384": hashlib.sha384,
    "HS512": hashlib.sha512,
}


@dataclass(frozen=True)
class TokenClaims:
    account_uuid: str
    iat: int
    exp: int
    iss: str

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)

    def seconds_remaining(self, now: Optional[float] = None) -> int:
        current = time.time() if now is None else now
        return max(0, int(self.exp - current))


@dataclass(frozen=True)
class IssuedToken:
    token: str
    claims: TokenClaims


class TokenService:
    """Issue and verify HMAC-signed session JWTs.

    Only the algorithm configured in ``JWT_ALGORITHM`` is accepted on
    verification; ``none`` and every other ``alg`` value are rejected.
    """

    def __init__(self, settings: Settings, *, clock: Callable[[], float] = time.time) -> None:
        self.settings = settings
        self.algorithm = settings.jwt_algorithm
        self._digest = _HMAC_DIGESTS[self.algorithm]
        self._secret = settings.jwt_secret.encode()
        self._lifetime_seconds = settings.token_lifetime_days * 24 * 60 * 60
        self._clock = clock

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        signature = hmac.new(self._secret, signing_input.encode(), self._digest).digest()
        return self._encode_segment(signature)

    def issue(self, account_id: str) -> IssuedToken:
        now = int(self._clock())
        claims = TokenClaims(
            account_uuid=str(account_id),
            iat=now,
            exp=now + self._lifetime_seconds,
            iss=self.settings.jwt_issuer,
        )
        header = {"alg": self.algorithm, "typ": "JWT"}
        payload = {
            "account_uuid": claims.account_uuid,
            "iat": claims.iat,
            "exp": claims.exp,
            "iss": claims.iss,
        }
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return IssuedToken(token=f"{signing_input}.{self._sign(signing_input)}", claims=claims)

    def verify(self, token: str) -> TokenClaims:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError() from None

        # Reject algorithm confusion before touching the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError() from None
        if not isinstance(header, dict) or header.get("alg") != self.algorithm:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError()

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(self._sign(signing_input).encode(), sig_b64.encode()):
            raise InvalidTokenError()

        try:
            payload: Any = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError() from None
        if not isinstance(payload, dict):
            raise InvalidTokenError()
        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenError()

        account_uuid = payload.get("account_uuid")
        try:
            iat = int(payload.get("iat"))
            exp = int(payload.get("exp"))
        except (TypeError, ValueError):
            raise InvalidTokenError() from None
        if not account_uuid or not isinstance(account_uuid, str):
            raise InvalidTokenError()
        if exp <= self._clock():
            raise TokenExpiredError()
        return TokenClaims(account_uuid=account_uuid, iat=iat, exp=exp, iss=payload["iss"])


__all__ = ["TokenClaims", "IssuedToken", "TokenService"]
