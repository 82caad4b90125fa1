from __future__ import annotations

import json
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple, Union

from shopgate.logging import get_logger
from shopgate.storage.errors import ConstraintViolation
from shopgate.storage.models import (
    ACCOUNT_ROLE_USER,
    ACCOUNT_STATE_ACTIVE,
    ACCOUNT_STATES,
    REGISTRATION_METHOD_WEB,
    Account,
    PendingRegistration,
)
from shopgate.storage.redis_cache import PENDING_REGISTRATION_PREFIX, revocation_key

PURGE_INTERVAL_SECONDS = 60.0


class MemoryStore:
    """In-memory account directory used for tests and local development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        # Lower-cased nickname/email -> account id, mirrors the unique indexes
        self._nickname_index: Dict[str, str] = {}
        self._email_index: Dict[str, str] = {}
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def check_exists(self, nickname: str, email: str) -> Tuple[bool, bool]:
        with self._data_lock:
            nickname_exists = bool(nickname) and nickname.lower() in self._nickname_index
            email_exists = bool(email) and email.lower() in self._email_index
            return nickname_exists, email_exists

    def create_account(
        self,
        nickname: str,
        email: str,
        password_hash: str,
        password_salt: str,
        *,
        role: str = ACCOUNT_ROLE_USER,
        registration_method: str = REGISTRATION_METHOD_WEB,
    ) -> Account:
        nickname_key = nickname.lower()
        email_key = email.lower()
        with self._data_lock:
            # Check-and-insert under one lock acquisition, like a unique index
            if nickname_key in self._nickname_index:
                raise ConstraintViolation(
                    "nickname already exists", {"field": "nickname"}
                )
            if email_key in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(
                id=str(uuid.uuid4()),
                nickname=nickname,
                email=email_key,
                password_hash=password_hash,
                password_salt=password_salt,
                role=role,
                state=ACCOUNT_STATE_ACTIVE,
                registration_method=registration_method,
            )
            self.accounts[account.id] = account
            self._nickname_index[nickname_key] = account.id
            self._email_index[email_key] = account.id
            return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self.accounts.get(account_id)

    def get_account_by_login(
        self, nickname: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[Account]:
        with self._data_lock:
            account_id = None
            if nickname:
                account_id = self._nickname_index.get(nickname.lower())
            elif email:
                account_id = self._email_index.get(email.lower())
            return self.accounts.get(account_id) if account_id else None

    def get_account_state(self, account_id: str) -> Optional[Tuple[str, str]]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            return account.state, account.role

    def touch_last_activity(self, account_id: str) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account:
                account.last_activity = datetime.now(timezone.utc)

    def update_password(
        self, account_id: str, password_hash: str, password_salt: str
    ) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account:
                account.password_hash = password_hash
                account.password_salt = password_salt

    def set_account_state(self, account_id: str, state: str) -> Optional[Account]:
        if state not in ACCOUNT_STATES:
            raise ValueError(f"unknown account state: {state}")
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account:
                account.state = state
            return account


class MemoryCache:
    """Process-local stand-in for :class:`RedisCache`.

    Used under TEST_MODE or ALLOW_REDIS_FALLBACK_DEV. Entries carry an
    absolute expiry and are dropped when touched after it. Writes also sweep
    expired entries and idle rate-limit buckets at most once per
    ``PURGE_INTERVAL_SECONDS``.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        # key -> (tokens, last refill, time the bucket is full again)
        self._buckets: Dict[str, Tuple[float, float, float]] = {}
        self._data_lock = threading.RLock()
        self._next_purge = clock() + PURGE_INTERVAL_SECONDS

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        return None

    def _get_live(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return value

    def _purge_expired(self, now: float) -> None:
        """Sweep expired entries and full buckets. Caller holds the lock."""
        if now < self._next_purge:
            return
        self._next_purge = now + PURGE_INTERVAL_SECONDS
        for key in [k for k, (_, expires_at) in self._entries.items() if expires_at <= now]:
            del self._entries[key]
        # A full bucket behaves exactly like a missing one
        for key in [k for k, (_, _, full_at) in self._buckets.items() if full_at <= now]:
            del self._buckets[key]

    def _set_nx(self, key: str, value: str, ttl_seconds: float) -> bool:
        with self._data_lock:
            now = self._clock()
            self._purge_expired(now)
            if self._get_live(key) is not None:
                return False
            self._entries[key] = (value, now + ttl_seconds)
            return True

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Token bucket equivalent of the Redis Lua script."""
        now = self._clock()
        refill_rate = float(limit) / float(window_seconds)
        with self._data_lock:
            self._purge_expired(now)
            tokens, last_ts, _ = self._buckets.get(key, (float(limit), now, now))
            elapsed = max(0.0, now - last_ts)
            tokens = min(float(limit), tokens + elapsed * refill_rate)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            full_at = now + (float(limit) - tokens) / refill_rate if refill_rate > 0 else now
            self._buckets[key] = (tokens, now, full_at)
            reset_seconds = (
                int((cost - tokens) / refill_rate) if not allowed and refill_rate > 0 else 0
            )
            remaining = max(0, int(tokens))
        if return_remaining:
            return (allowed, remaining, reset_seconds)
        return allowed

    # Revocation store
    async def revoke_token(self, token: str, ttl_seconds: int) -> bool:
        return self._set_nx(revocation_key(token), "1", max(1, ttl_seconds))

    async def is_token_revoked(self, token: str) -> bool:
        with self._data_lock:
            return self._get_live(revocation_key(token)) is not None

    # Pending-registration store
    async def create_pending_registration(self, pending: PendingRegistration) -> None:
        key = f"{PENDING_REGISTRATION_PREFIX}{pending.token}"
        stored = self._set_nx(key, json.dumps(pending.to_payload()), pending.ttl_seconds)
        if not stored:
            raise ConstraintViolation(
                "registration token already exists", {"field": "token"}
            )

    async def get_pending_registration(self, token: str) -> Optional[PendingRegistration]:
        with self._data_lock:
            raw = self._get_live(f"{PENDING_REGISTRATION_PREFIX}{token}")
        return PendingRegistration.from_payload(json.loads(raw)) if raw else None

    async def delete_pending_registration(self, token: str) -> None:
        with self._data_lock:
            self._entries.pop(f"{PENDING_REGISTRATION_PREFIX}{token}", None)

    async def take_pending_registration(self, token: str) -> Optional[PendingRegistration]:
        key = f"{PENDING_REGISTRATION_PREFIX}{token}"
        with self._data_lock:
            raw = self._get_live(key)
            self._entries.pop(key, None)
        return PendingRegistration.from_payload(json.loads(raw)) if raw else None
