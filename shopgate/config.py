from __future__ import annotations

import os
import secrets
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from shopgate.logging import get_logger

logger = get_logger(__name__)

_SUPPORTED_JWT_ALGORITHMS = {"HS256", "HS384", "HS512"}

DEFAULT_ALLOWED_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity and admission layer."""

    database_url: str = env_field(
        "postgresql://localhost:5432/shopgate", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors: in-memory fallbacks and ephemeral secrets.",
    )
    build_sha: str = env_field("dev", "BUILD_SHA")

    # Session tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("shopgate", "JWT_ISSUER")
    jwt_algorithm: str = env_field("HS384", "JWT_ALGORITHM")
    token_lifetime_days: int = env_field(21, "TOKEN_LIFETIME_DAYS", gt=0)

    # Signup confirmation
    pending_registration_ttl_seconds: int = env_field(
        10 * 60, "PENDING_REGISTRATION_TTL_SECONDS", gt=0
    )
    check_email_domain: bool = env_field(
        True,
        "CHECK_EMAIL_DOMAIN",
        description="Look up SPF records for signup/login email domains",
    )
    dns_timeout_seconds: float = env_field(3.0, "DNS_TIMEOUT_SECONDS", gt=0)

    # Password hashing: selects one of the versioned argon2id parameter sets
    kdf_version: int = env_field(1, "KDF_VERSION", ge=1)

    # Admission pipeline
    service_unavailable: bool = env_field(False, "SERVICE_UNAVAILABLE")
    rate_limit_requests: int = env_field(1000, "RATE_LIMIT_REQUESTS")
    rate_limit_window_seconds: int = env_field(60, "RATE_LIMIT_WINDOW_SECONDS")
    uri_max_length: int = env_field(1024, "URI_MAX_LENGTH", gt=0)
    request_max_bytes: int = env_field(4 * 1024 * 1024, "REQUEST_MAX_BYTES", gt=0)
    request_timeout_seconds: float = env_field(50.0, "REQUEST_TIMEOUT_SECONDS", gt=0)
    allowed_content_types: List[str] = env_field(
        ["application/json"], "ALLOWED_CONTENT_TYPES"
    )
    allowed_methods: List[str] = env_field(
        list(DEFAULT_ALLOWED_METHODS), "ALLOWED_METHODS"
    )
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")

    # Email service
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Shop", "EMAIL_FROM_NAME")

    # Public URLs: the storefront client hosts /confirm-signup, the API serves avatars
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")
    api_base_url: str = env_field("http://localhost:8000", "API_BASE_URL")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "allowed_content_types", "allowed_methods", "cors_allow_origins", mode="before"
    )
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("allowed_methods")
    @classmethod
    def _upper_methods(cls, value: List[str]) -> List[str]:
        return [method.upper() for method in value]

    @field_validator("allowed_content_types")
    @classmethod
    def _lower_content_types(cls, value: List[str]) -> List[str]:
        return [content_type.lower() for content_type in value]

    @field_validator("jwt_algorithm")
    @classmethod
    def _validate_jwt_algorithm(cls, value: str) -> str:
        normalized = value.upper()
        if normalized not in _SUPPORTED_JWT_ALGORITHMS:
            raise ValueError(
                f"JWT_ALGORITHM must be one of {', '.join(sorted(_SUPPORTED_JWT_ALGORITHMS))}"
            )
        return normalized

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        if info.data.get("test_mode"):
            logger.warning(
                "jwt_secret_generated",
                message="JWT_SECRET not set; using an ephemeral secret under TEST_MODE",
            )
            return secrets.token_urlsafe(64)
        raise ValueError("JWT_SECRET must be set outside TEST_MODE")


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
