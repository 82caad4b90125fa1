from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

ACCOUNT_ROLE_USER = "user"
ACCOUNT_ROLE_ADMIN = "admin"
ACCOUNT_ROLES = (ACCOUNT_ROLE_USER, ACCOUNT_ROLE_ADMIN)

ACCOUNT_STATE_ACTIVE = "active"
ACCOUNT_STATE_BLOCKED = "blocked"
ACCOUNT_STATE_DELETED = "deleted"
ACCOUNT_STATES = (ACCOUNT_STATE_ACTIVE, ACCOUNT_STATE_BLOCKED, ACCOUNT_STATE_DELETED)

REGISTRATION_METHOD_WEB = "web application"

PROFILE_IMAGE_PATH = "/resources/profile_image/"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: str
    nickname: str
    email: str
    password_hash: str
    password_salt: str
    role: str = ACCOUNT_ROLE_USER
    state: str = ACCOUNT_STATE_ACTIVE
    registration_method: str = REGISTRATION_METHOD_WEB
    created_at: datetime = field(default_factory=_utcnow)
    last_activity: Optional[datetime] = None


@dataclass
class PendingRegistration:
    token: str
    nickname: str
    email: str
    password: str
    created_at: datetime
    ttl_seconds: int

    @property
    def expires_at(self) -> datetime:
        return self.created_at + timedelta(seconds=self.ttl_seconds)

    def to_payload(self) -> dict:
        payload = asdict(self)
        payload["created_at"] = self.created_at.isoformat()
        return payload

    @classmethod
    def from_payload(cls, payload: dict) -> "PendingRegistration":
        created_raw = payload.get("created_at")
        try:
            created_at = datetime.fromisoformat(created_raw) if created_raw else _utcnow()
        except (TypeError, ValueError):
            created_at = _utcnow()
        return cls(
            token=payload["token"],
            nickname=payload["nickname"],
            email=payload["email"],
            password=payload["password"],
            created_at=created_at,
            ttl_seconds=int(payload.get("ttl_seconds") or 0),
        )
