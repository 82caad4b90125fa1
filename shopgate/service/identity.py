from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Protocol, Tuple
from urllib.parse import urlencode

from shopgate.config import Settings
from shopgate.logging import get_logger
from shopgate.service.credentials import (
    MalformedSaltError,
    compare_hash_passwords,
    hash_password,
    needs_rehash,
)
from shopgate.service.domains import EmailDomainChecker
from shopgate.service.email import EmailService
from shopgate.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    GatewayTimeoutError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from shopgate.service.metrics import IDENTITY_EVENTS
from shopgate.service.tokens import IssuedToken, TokenClaims, TokenService
from shopgate.service.validators import (
    CONFIRMATION_TOKEN_LENGTH,
    validate_confirmation_token,
    validate_email,
    validate_nickname,
    validate_password,
)
from shopgate.storage.errors import ConstraintViolation
from shopgate.storage.models import (
    ACCOUNT_ROLE_USER,
    ACCOUNT_STATE_BLOCKED,
    ACCOUNT_STATE_DELETED,
    PROFILE_IMAGE_PATH,
    Account,
    PendingRegistration,
)

logger = get_logger(__name__)

NICKNAME_IN_USE = "Nickname: this nickname is already in use"
EMAIL_IN_USE = "Email: this email is already in use"
EMAIL_DOMAIN_MISSING = "Email: the email domain is not exist"
IDENTIFIERS_EMPTY = "Nickname and Email: the values is empty"
REGISTRATION_NOT_FOUND = "Registration not found or expired"
NO_USER_WITH_NICKNAME = "There is no user with this nickname"
NO_USER_WITH_EMAIL = "There is no user with this email address"
ACCOUNT_BLOCKED = "This account has been blocked"
ACCOUNT_DELETED = "This account has been deleted"
INVALID_PASSWORD = "Invalid password"
TOKEN_ALREADY_DEACTIVATED = "Token has already been deactivated"

BEARER_PREFIX = "Bearer "


class AccountDirectory(Protocol):
    def check_exists(self, nickname: str, email: str) -> Tuple[bool, bool]: ...

    def create_account(
        self, nickname: str, email: str, password_hash: str, password_salt: str, **kwargs
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_login(
        self, nickname: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[Account]: ...

    def get_account_state(self, account_id: str) -> Optional[Tuple[str, str]]: ...

    def touch_last_activity(self, account_id: str) -> None: ...

    def update_password(self, account_id: str, password_hash: str, password_salt: str) -> None: ...


class TokenCache(Protocol):
    async def revoke_token(self, token: str, ttl_seconds: int) -> bool: ...

    async def is_token_revoked(self, token: str) -> bool: ...

    async def create_pending_registration(self, pending: PendingRegistration) -> None: ...

    async def take_pending_registration(self, token: str) -> Optional[PendingRegistration]: ...


@dataclass
class Deadline:
    """Cancellation signal shared between the timeout gatekeeper and a handler.

    The gatekeeper calls :meth:`expire` when the request runs out of time;
    long operations call :meth:`check` before each store round-trip, hash
    or email dispatch and stop there.
    """

    timeout_seconds: Optional[float] = None
    _expired: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def expire(self) -> None:
        self._expired.set()

    @property
    def expired(self) -> bool:
        return self._expired.is_set()

    def check(self, stage: str) -> None:
        if self.expired:
            logger.warning("deadline_expired", stage=stage)
            raise GatewayTimeoutError(
                "The server did not receive a response in time. Please try again later"
            )


@dataclass
class AuthContext:
    account_id: str
    role: str
    token: str
    claims: TokenClaims


@dataclass
class AuthResult:
    token: str
    role: str
    uuid: str
    nickname: str
    email: str
    registration_method: str
    avatar_url: str

    def to_response(self) -> dict:
        return {
            "token": self.token,
            "role": self.role,
            "uuid": self.uuid,
            "nickname": self.nickname,
            "email": self.email,
            "registration_method": self.registration_method,
            "avatar_url": self.avatar_url,
        }


def generate_url_token(length: int = CONFIRMATION_TOKEN_LENGTH) -> str:
    """Return a URL-safe token of exactly ``length`` characters.

    An HMAC-SHA256 of random bytes under a random key, base64url encoded and
    re-encoded until long enough, then truncated.
    """
    nonce = secrets.token_bytes(length)
    key = secrets.token_bytes(64)
    digest = hmac.new(key, nonce, hashlib.sha256).digest()
    token = base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
    while len(token) < length:
        token = base64.urlsafe_b64encode(token.encode("ascii")).decode("ascii").rstrip("=")
    return token[:length]


def _check(deadline: Optional[Deadline], stage: str) -> None:
    if deadline is not None:
        deadline.check(stage)


class IdentityService:
    """Account lifecycle: signup, confirmation, login, logout and bearer auth."""

    def __init__(
        self,
        store: AccountDirectory,
        cache: TokenCache,
        tokens: TokenService,
        email: EmailService,
        domains: EmailDomainChecker,
        settings: Settings,
    ) -> None:
        self.store = store
        self.cache = cache
        self.tokens = tokens
        self.email = email
        self.domains = domains
        self.settings = settings
        self.logger = logger

    def avatar_url(self, account_id: str) -> str:
        return f"{self.settings.api_base_url}{PROFILE_IMAGE_PATH}{account_id}"

    def confirmation_url(self, token: str) -> str:
        base = self.settings.app_base_url.rstrip("/")
        return f"{base}/confirm-signup?{urlencode({'token': token})}"

    def _auth_result(self, account: Account, issued: IssuedToken) -> AuthResult:
        return AuthResult(
            token=issued.token,
            role=account.role,
            uuid=account.id,
            nickname=account.nickname,
            email=account.email,
            registration_method=account.registration_method,
            avatar_url=self.avatar_url(account.id),
        )

    async def _check_email_domain(self, email: str) -> None:
        result = await self.domains.check(email)
        if result.error:
            # Lookup failures must not block signup or login
            self.logger.warning("email_domain_check_failed", error=result.error)
            return
        if not result.exists:
            raise ConflictError(EMAIL_DOMAIN_MISSING)

    async def _conflict_message(self, violation: ConstraintViolation, nickname: str, email: str) -> str:
        field_name = violation.field
        if field_name is None:
            nickname_exists, email_exists = await asyncio.to_thread(
                self.store.check_exists, nickname, email
            )
            field_name = "email" if email_exists and not nickname_exists else "nickname"
        return EMAIL_IN_USE if field_name == "email" else NICKNAME_IN_USE

    async def signup(
        self,
        nickname: str,
        email: str,
        password: str,
        *,
        deadline: Optional[Deadline] = None,
    ) -> PendingRegistration:
        nickname = (nickname or "").strip()
        email = (email or "").strip().lower()
        password = (password or "").strip()

        validate_nickname(nickname)
        validate_email(email)
        validate_password(password)

        _check(deadline, "signup_domain_check")
        await self._check_email_domain(email)

        _check(deadline, "signup_uniqueness_check")
        nickname_exists, email_exists = await asyncio.to_thread(
            self.store.check_exists, nickname, email
        )
        if nickname_exists:
            IDENTITY_EVENTS.inc(event="signup", outcome="conflict")
            raise ConflictError(NICKNAME_IN_USE)
        if email_exists:
            IDENTITY_EVENTS.inc(event="signup", outcome="conflict")
            raise ConflictError(EMAIL_IN_USE)

        pending = PendingRegistration(
            token=generate_url_token(),
            nickname=nickname,
            email=email,
            password=password,
            created_at=datetime.now(timezone.utc),
            ttl_seconds=self.settings.pending_registration_ttl_seconds,
        )
        _check(deadline, "signup_pending_store")
        try:
            await self.cache.create_pending_registration(pending)
        except ConstraintViolation as exc:
            self.logger.error("pending_registration_token_collision", error=str(exc))
            raise ServerError() from exc

        _check(deadline, "signup_email_dispatch")
        sent = await asyncio.to_thread(
            self.email.send_signup_confirmation,
            email,
            nickname,
            self.confirmation_url(pending.token),
            ttl_minutes=max(1, self.settings.pending_registration_ttl_seconds // 60),
        )
        if not sent:
            # The pending entry is left to expire through its TTL
            self.logger.warning("signup_confirmation_email_failed", nickname=nickname)
            IDENTITY_EVENTS.inc(event="signup", outcome="error")
            raise ServerError()

        self.logger.info("signup_pending", nickname=nickname)
        IDENTITY_EVENTS.inc(event="signup", outcome="pending")
        return pending

    async def confirm_signup(
        self, token: str, *, deadline: Optional[Deadline] = None
    ) -> AuthResult:
        token = (token or "").strip()
        validate_confirmation_token(token)

        _check(deadline, "confirm_take_pending")
        pending = await self.cache.take_pending_registration(token)
        if pending is None:
            IDENTITY_EVENTS.inc(event="confirm", outcome="not_found")
            raise NotFoundError(REGISTRATION_NOT_FOUND)

        _check(deadline, "confirm_hash_password")
        password_hash, password_salt = await asyncio.to_thread(
            hash_password, pending.password, version=self.settings.kdf_version
        )

        _check(deadline, "confirm_create_account")
        try:
            account = await asyncio.to_thread(
                self.store.create_account,
                pending.nickname,
                pending.email,
                password_hash,
                password_salt,
            )
        except ConstraintViolation as exc:
            IDENTITY_EVENTS.inc(event="confirm", outcome="conflict")
            self.logger.info("confirm_signup_conflict", field=exc.field)
            raise ConflictError(
                await self._conflict_message(exc, pending.nickname, pending.email)
            ) from exc

        issued = self.tokens.issue(account.id)
        self.logger.info("account_created", account_id=account.id)
        IDENTITY_EVENTS.inc(event="confirm", outcome="created")
        return self._auth_result(account, issued)

    async def login(
        self,
        *,
        nickname: Optional[str] = None,
        email: Optional[str] = None,
        password: str = "",
        required_role: str = ACCOUNT_ROLE_USER,
        deadline: Optional[Deadline] = None,
    ) -> AuthResult:
        nickname = (nickname or "").strip().lower()
        email = (email or "").strip().lower()
        password = (password or "").strip()

        validate_password(password)
        if not nickname and not email:
            raise ValidationError(IDENTIFIERS_EMPTY)
        if nickname:
            validate_nickname(nickname)
            email = ""
        else:
            validate_email(email)
            _check(deadline, "login_domain_check")
            await self._check_email_domain(email)

        _check(deadline, "login_resolve_account")
        account = await asyncio.to_thread(
            self.store.get_account_by_login, nickname or None, email or None
        )
        if account is None:
            IDENTITY_EVENTS.inc(event="login", outcome="not_found")
            raise NotFoundError(NO_USER_WITH_NICKNAME if nickname else NO_USER_WITH_EMAIL)

        if account.state == ACCOUNT_STATE_BLOCKED:
            raise ForbiddenError(ACCOUNT_BLOCKED)
        if account.state == ACCOUNT_STATE_DELETED:
            raise ForbiddenError(ACCOUNT_DELETED)
        if account.role != required_role:
            raise ForbiddenError(f"The account was not found in the list of {required_role}s")

        _check(deadline, "login_compare_password")
        try:
            matches = await asyncio.to_thread(
                compare_hash_passwords, password, account.password_hash, account.password_salt
            )
        except MalformedSaltError as exc:
            self.logger.error("password_record_malformed", account_id=account.id, error=str(exc))
            raise ServerError() from exc
        if not matches:
            IDENTITY_EVENTS.inc(event="login", outcome="invalid_password")
            raise AuthenticationError(INVALID_PASSWORD)

        if needs_rehash(account.password_hash, self.settings.kdf_version):
            await self._upgrade_password_hash(account, password)

        issued = self.tokens.issue(account.id)
        self.logger.info("login_succeeded", account_id=account.id, role=account.role)
        IDENTITY_EVENTS.inc(event="login", outcome="success")
        return self._auth_result(account, issued)

    async def _upgrade_password_hash(self, account: Account, password: str) -> None:
        try:
            password_hash, password_salt = await asyncio.to_thread(
                hash_password, password, version=self.settings.kdf_version
            )
            await asyncio.to_thread(
                self.store.update_password, account.id, password_hash, password_salt
            )
        except Exception as exc:
            # The login itself succeeded; the next login retries the upgrade
            self.logger.warning(
                "password_rehash_failed", account_id=account.id, error=str(exc)
            )
            return
        account.password_hash, account.password_salt = password_hash, password_salt
        self.logger.info(
            "password_rehashed", account_id=account.id, kdf_version=self.settings.kdf_version
        )

    async def logout(
        self, context: AuthContext, *, deadline: Optional[Deadline] = None
    ) -> None:
        _check(deadline, "logout_revoke")
        ttl_seconds = context.claims.seconds_remaining()
        revoked = await self.cache.revoke_token(context.token, ttl_seconds)
        if not revoked:
            IDENTITY_EVENTS.inc(event="logout", outcome="already_revoked")
            raise AuthenticationError(TOKEN_ALREADY_DEACTIVATED)
        self.logger.info("logout", account_id=context.account_id)
        IDENTITY_EVENTS.inc(event="logout", outcome="revoked")

    async def authenticate(
        self,
        authorization: Optional[str],
        *,
        required_role: Optional[str] = None,
        deadline: Optional[Deadline] = None,
    ) -> AuthContext:
        """Resolve a bearer header into an :class:`AuthContext`.

        ``required_role`` must match the account role exactly; ``None``
        accepts any role.
        """
        if not authorization:
            raise AuthenticationError("No authorization header provided")
        if not authorization.startswith(BEARER_PREFIX):
            raise AuthenticationError("No bearer in header provided")
        token = authorization[len(BEARER_PREFIX):].strip()
        if not token:
            raise AuthenticationError("No token provided")

        claims = self.tokens.verify(token)

        _check(deadline, "auth_revocation_check")
        if await self.cache.is_token_revoked(token):
            raise AuthenticationError("This token in stop-list")

        _check(deadline, "auth_account_state")
        state = await asyncio.to_thread(self.store.get_account_state, claims.account_uuid)
        role_label = required_role or ACCOUNT_ROLE_USER
        if state is None or (required_role is not None and state[1] != required_role):
            raise AuthenticationError(f"The account was not found in the list of {role_label}s")
        account_state, role = state
        if account_state == ACCOUNT_STATE_BLOCKED:
            raise ForbiddenError(ACCOUNT_BLOCKED)
        if account_state == ACCOUNT_STATE_DELETED:
            raise ForbiddenError(ACCOUNT_DELETED)

        await asyncio.to_thread(self.store.touch_last_activity, claims.account_uuid)
        return AuthContext(account_id=claims.account_uuid, role=role, token=token, claims=claims)
