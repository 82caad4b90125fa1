from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Client supplied X-Request-ID values are echoed back, so only accept plain ids
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

_SECRET_KEYS = ("password", "secret", "token", "authorization", "salt", "hash")
_EMAIL_KEYS = ("email",)
_MASK = "***"


def current_request_id() -> Optional[str]:
    return request_id_var.get()


def set_correlation_id(request_id: Optional[str] = None) -> str:
    """Bind the request id for this context and return it.

    A missing or malformed client value is replaced by a fresh uuid4.
    """
    if not request_id or not _REQUEST_ID_RE.match(request_id):
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def _add_request_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    request_id = current_request_id()
    if request_id:
        event_dict.setdefault("request_id", request_id)
    return event_dict


def mask_email(value: str) -> str:
    """``buyer@example.com`` -> ``bu***@example.com``; the domain stays readable."""
    local, sep, domain = value.partition("@")
    if not sep:
        return _MASK
    return f"{local[:2]}{_MASK}@{domain}"


def _mask_sensitive(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        lowered = key.lower()
        if any(marker in lowered for marker in _EMAIL_KEYS):
            event_dict[key] = mask_email(value)
        elif any(marker in lowered for marker in _SECRET_KEYS):
            event_dict[key] = _MASK
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(level: str = "INFO", *, json_output: bool = True) -> None:
    """JSON lines for deployments, colored console output for local runs."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_request_id,
        _mask_sensitive,
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", True) and not _env_flag("LOG_DEV_MODE", False),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
