from __future__ import annotations

import hashlib
import json
import time
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis

from shopgate.storage.errors import ConstraintViolation
from shopgate.storage.models import PendingRegistration

REVOCATION_PREFIX = "jwt_stoplist:"
PENDING_REGISTRATION_PREFIX = "registration_temp_data:"


def revocation_key(token: str) -> str:
    """Stop-list key for a bearer token.

    Tokens are hashed so keys stay short and never store a usable credential.
    """
    digest = hashlib.sha256(token.encode()).hexdigest()
    return f"{REVOCATION_PREFIX}{digest}"


class RedisCache:
    """Thin Redis wrapper for rate limits, token revocation and pending signups."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic refill + consume so concurrent workers share one bucket
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.aclose()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Check rate limit using the Redis-backed token bucket."""
        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        allowed_bool = bool(int(allowed))
        remaining = max(0, int(tokens))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def revoke_token(self, token: str, ttl_seconds: int) -> bool:
        """Put a token on the stop-list until it would have expired anyway.

        Returns False when the token was already on the stop-list.
        """
        stored = await self.client.set(
            revocation_key(token), "1", nx=True, ex=max(1, int(ttl_seconds))
        )
        return bool(stored)

    async def is_token_revoked(self, token: str) -> bool:
        return bool(await self.client.exists(revocation_key(token)))

    async def create_pending_registration(self, pending: PendingRegistration) -> None:
        stored = await self.client.set(
            f"{PENDING_REGISTRATION_PREFIX}{pending.token}",
            json.dumps(pending.to_payload()),
            nx=True,
            ex=max(1, int(pending.ttl_seconds)),
        )
        if not stored:
            raise ConstraintViolation(
                "registration token already exists", {"field": "token"}
            )

    async def get_pending_registration(self, token: str) -> Optional[PendingRegistration]:
        cached = await self.client.get(f"{PENDING_REGISTRATION_PREFIX}{token}")
        return self._decode_pending(cached)

    async def delete_pending_registration(self, token: str) -> None:
        await self.client.delete(f"{PENDING_REGISTRATION_PREFIX}{token}")

    async def take_pending_registration(self, token: str) -> Optional[PendingRegistration]:
        """Atomically get and delete a pending registration.

        Uses GETDEL so two concurrent confirmations cannot both read the
        same entry.
        """
        cached = await self.client.getdel(f"{PENDING_REGISTRATION_PREFIX}{token}")
        return self._decode_pending(cached)

    @staticmethod
    def _decode_pending(cached: Optional[str]) -> Optional[PendingRegistration]:
        if cached is None:
            return None
        try:
            return PendingRegistration.from_payload(json.loads(cached))
        except (json.JSONDecodeError, TypeError, KeyError):
            # Corrupted entry; treat as absent
            return None
