"""Tests for the in-memory revocation, pending-registration and rate-limit store."""

from datetime import datetime, timezone

import pytest

from shopgate.storage.errors import ConstraintViolation
from shopgate.storage.memory import PURGE_INTERVAL_SECONDS, MemoryCache
from shopgate.storage.models import PendingRegistration
from shopgate.storage.redis_cache import REVOCATION_PREFIX, revocation_key


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


def _pending(token: str = "t" * 256, ttl_seconds: int = 600) -> PendingRegistration:
    return PendingRegistration(
        token=token,
        nickname="shop_buyer",
        email="buyer@example.com",
        password="Secret-Pass-1",
        created_at=datetime.now(timezone.utc),
        ttl_seconds=ttl_seconds,
    )


class TestRevocation:
    async def test_first_revoke_succeeds_second_reports_duplicate(self, cache):
        assert await cache.revoke_token("token-a", 60) is True
        assert await cache.revoke_token("token-a", 60) is False
        assert await cache.is_token_revoked("token-a") is True

    async def test_unrevoked_token(self, cache):
        assert await cache.is_token_revoked("token-b") is False

    async def test_revocation_expires_with_ttl(self, cache, clock):
        await cache.revoke_token("token-a", 60)
        clock.advance(59)
        assert await cache.is_token_revoked("token-a") is True
        clock.advance(1)
        assert await cache.is_token_revoked("token-a") is False
        # Expired entries no longer count as already revoked
        assert await cache.revoke_token("token-a", 60) is True

    async def test_zero_ttl_still_revokes(self, cache):
        assert await cache.revoke_token("token-a", 0) is True
        assert await cache.is_token_revoked("token-a") is True

    def test_revocation_key_hides_token(self):
        key = revocation_key("header.payload.signature")
        assert key.startswith(REVOCATION_PREFIX)
        assert "payload" not in key
        assert key == revocation_key("header.payload.signature")


class TestPendingRegistrations:
    async def test_take_returns_entry_once(self, cache):
        pending = _pending()
        await cache.create_pending_registration(pending)

        taken = await cache.take_pending_registration(pending.token)
        assert taken is not None
        assert taken.nickname == "shop_buyer"
        assert taken.password == "Secret-Pass-1"
        assert await cache.take_pending_registration(pending.token) is None

    async def test_entry_expires_after_ttl(self, cache, clock):
        pending = _pending(ttl_seconds=600)
        await cache.create_pending_registration(pending)
        clock.advance(600)
        assert await cache.get_pending_registration(pending.token) is None
        assert await cache.take_pending_registration(pending.token) is None

    async def test_duplicate_token_rejected(self, cache):
        await cache.create_pending_registration(_pending())
        with pytest.raises(ConstraintViolation) as excinfo:
            await cache.create_pending_registration(_pending())
        assert excinfo.value.field == "token"

    async def test_get_does_not_consume(self, cache):
        pending = _pending()
        await cache.create_pending_registration(pending)
        assert await cache.get_pending_registration(pending.token) is not None
        assert await cache.get_pending_registration(pending.token) is not None

    async def test_delete(self, cache):
        pending = _pending()
        await cache.create_pending_registration(pending)
        await cache.delete_pending_registration(pending.token)
        assert await cache.take_pending_registration(pending.token) is None

    async def test_unknown_token(self, cache):
        assert await cache.take_pending_registration("missing") is None


class TestRateLimit:
    async def test_bucket_drains_and_refills(self, cache, clock):
        assert await cache.check_rate_limit("ip:1", 2, 60) is True
        assert await cache.check_rate_limit("ip:1", 2, 60) is True
        assert await cache.check_rate_limit("ip:1", 2, 60) is False

        clock.advance(30)
        assert await cache.check_rate_limit("ip:1", 2, 60) is True

    async def test_keys_are_independent(self, cache):
        assert await cache.check_rate_limit("ip:1", 1, 60) is True
        assert await cache.check_rate_limit("ip:1", 1, 60) is False
        assert await cache.check_rate_limit("ip:2", 1, 60) is True

    async def test_return_remaining(self, cache):
        allowed, remaining, reset = await cache.check_rate_limit(
            "ip:1", 3, 60, return_remaining=True
        )
        assert allowed is True
        assert remaining == 2
        assert reset == 0

        await cache.check_rate_limit("ip:1", 3, 60, cost=2)
        allowed, remaining, reset = await cache.check_rate_limit(
            "ip:1", 3, 60, return_remaining=True
        )
        assert allowed is False
        assert remaining == 0
        assert reset > 0


class TestPurge:
    async def test_expired_entries_are_swept_on_write(self, cache, clock):
        await cache.revoke_token("token-a", 10)
        await cache.create_pending_registration(_pending(ttl_seconds=10))
        clock.advance(PURGE_INTERVAL_SECONDS)

        await cache.revoke_token("token-b", 600)

        assert list(cache._entries) == [revocation_key("token-b")]

    async def test_live_entries_survive_sweep(self, cache, clock):
        await cache.revoke_token("token-a", 3600)
        clock.advance(PURGE_INTERVAL_SECONDS)

        await cache.revoke_token("token-b", 600)

        assert await cache.is_token_revoked("token-a") is True
        assert len(cache._entries) == 2

    async def test_refilled_buckets_are_dropped(self, cache, clock):
        for ip in ("ip:1", "ip:2", "ip:3"):
            await cache.check_rate_limit(ip, 10, 60)
        clock.advance(PURGE_INTERVAL_SECONDS)

        await cache.check_rate_limit("ip:4", 10, 60)

        assert list(cache._buckets) == ["ip:4"]

    async def test_draining_bucket_is_kept(self, cache, clock):
        for _ in range(10):
            await cache.check_rate_limit("ip:1", 10, 600)
        clock.advance(PURGE_INTERVAL_SECONDS + 30)

        await cache.check_rate_limit("ip:2", 10, 600)

        assert "ip:1" in cache._buckets
        # One token refills every 60 s; 90 s of idle time buys exactly one request
        assert await cache.check_rate_limit("ip:1", 10, 600) is True
        assert await cache.check_rate_limit("ip:1", 10, 600) is False

    async def test_sweep_waits_for_interval(self, cache, clock):
        await cache.revoke_token("token-a", 1)
        clock.advance(PURGE_INTERVAL_SECONDS - 1)

        await cache.revoke_token("token-b", 600)

        assert revocation_key("token-a") in cache._entries
