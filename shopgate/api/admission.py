"""Admission pipeline wrapped around every HTTP route.

Gatekeepers run in a fixed order and the first one that fails terminates
the request with the shared error body:

1. service unavailable switch (503)
2. per-client-IP token bucket (429)
3. URI length (414)
4. header bytes plus declared Content-Length, and buffered body size (413)
5. UTF-8 header names, values and body (422); the body is replayed unchanged
6. Content-Type allowlist for requests that carry a body (415)
7. global method allowlist (501)
8. route match: unknown method (405 with ``Allow``) or unknown path (404)
9. gateway timeout (504), which also expires the request :class:`Deadline`

CORS sits outside this middleware and bearer authentication is a route
dependency (:func:`require_identity`), so both stay out of this chain.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Optional, Set

from fastapi import Header, Request
from starlette.routing import Match, Router
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from shopgate.api.error_handling import NOT_FOUND_DESCRIPTION, service_error_response
from shopgate.config import Settings, get_settings
from shopgate.logging import get_logger
from shopgate.service.errors import (
    AdmissionError,
    GatewayTimeoutError,
    MethodNotAllowedError,
    MethodNotImplementedError,
    NotFoundError,
    PayloadTooLargeError,
    RateLimitedError,
    ServiceError,
    ServiceUnavailableError,
    UnsupportedMediaTypeError,
    URITooLongError,
    ValidationError,
)
from shopgate.service.identity import AuthContext, Deadline
from shopgate.service.metrics import ADMISSION_REJECTIONS

logger = get_logger(__name__)

RateLimiter = Callable[[str, int, int], Awaitable[bool]]

# Gate labels for the shared service errors that admission also raises
_SHARED_ERROR_GATES = {
    RateLimitedError: "rate_limit",
    ValidationError: "utf8",
    NotFoundError: "route_not_found",
}


async def _runtime_rate_limiter(key: str, limit: int, window_seconds: int) -> bool:
    from shopgate.service.runtime import check_rate_limit, get_runtime

    return bool(await check_rate_limit(get_runtime(), key, limit, window_seconds))


def _client_ip(scope: Scope) -> str:
    client = scope.get("client")
    if client and client[0]:
        return client[0]
    return "unknown"


def _header(scope: Scope, name: bytes) -> Optional[bytes]:
    for key, value in scope.get("headers", []):
        if key.lower() == name:
            return value
    return None


def _replay_receive(body: bytes, receive: Receive) -> Receive:
    """Hand the buffered body to the app once, then defer to the real channel."""
    replayed = False

    async def replay() -> Message:
        nonlocal replayed
        if not replayed:
            replayed = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay


class AdmissionMiddleware:
    """Pure ASGI middleware running the ordered admission gatekeepers."""

    def __init__(
        self,
        app: ASGIApp,
        *,
        router: Router,
        settings: Optional[Settings] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        self.app = app
        self.router = router
        self._settings = settings
        self.rate_limiter = rate_limiter or _runtime_rate_limiter

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        settings = self.settings
        try:
            await self._check_service_available(settings)
            await self._check_rate_limit(scope, settings)
            self._check_uri_length(scope, settings)
            header_bytes = self._check_request_size(scope, settings)
            self._check_header_encoding(scope)
            body = await self._read_body(receive, header_bytes, settings)
            self._check_content_type(scope, body, settings)
            self._check_global_method(scope, settings)
            self._check_route(scope)
        except ServiceError as exc:
            await self._reject(exc, scope, receive, send)
            return

        await self._run_with_deadline(scope, _replay_receive(body, receive), send, settings)

    async def _reject(self, exc: ServiceError, scope: Scope, receive: Receive, send: Send) -> None:
        gate = exc.gate if isinstance(exc, AdmissionError) else _SHARED_ERROR_GATES.get(
            type(exc), "admission"
        )
        ADMISSION_REJECTIONS.inc(gate=gate)
        logger.warning(
            "admission_rejected",
            gate=gate,
            status_code=exc.status_code,
            path=scope.get("path"),
            method=scope.get("method"),
        )
        response = service_error_response(exc)
        await response(scope, receive, send)

    async def _check_service_available(self, settings: Settings) -> None:
        if settings.service_unavailable:
            raise ServiceUnavailableError(
                "The service is currently unavailable. Please try again later"
            )

    async def _check_rate_limit(self, scope: Scope, settings: Settings) -> None:
        limit = settings.rate_limit_requests
        window = settings.rate_limit_window_seconds
        allowed = await self.rate_limiter(f"ip:{_client_ip(scope)}", limit, window)
        if not allowed:
            raise RateLimitedError(
                "You have exceeded the allowed number of requests. A maximum of "
                f"{limit} requests per {window} seconds can be sent"
            )

    def _check_uri_length(self, scope: Scope, settings: Settings) -> None:
        raw_path = scope.get("raw_path") or scope["path"].encode("utf-8")
        uri = raw_path.decode("utf-8", errors="replace")
        query = scope.get("query_string") or b""
        if query:
            uri = f"{uri}?{query.decode('utf-8', errors='replace')}"
        if len(uri) > settings.uri_max_length:
            raise URITooLongError(
                "The requested URI is too long. A maximum of "
                f"{settings.uri_max_length} characters can be sent"
            )

    @staticmethod
    def _too_large(settings: Settings, total: int) -> PayloadTooLargeError:
        megabytes = settings.request_max_bytes // 1024 // 1024
        return PayloadTooLargeError(
            f"The request payload is too large. A maximum of {megabytes} megabytes "
            f"can be sent. You have sent {total} bytes"
        )

    def _check_request_size(self, scope: Scope, settings: Settings) -> int:
        """Reject on header bytes plus Content-Length; returns the header bytes."""
        header_bytes = 0
        for key, value in scope.get("headers", []):
            # name + ": " and value + CRLF
            header_bytes += len(key) + 2 + len(value) + 2
        declared = 0
        raw_length = _header(scope, b"content-length")
        if raw_length is not None:
            try:
                declared = max(0, int(raw_length))
            except ValueError:
                declared = 0
        total = header_bytes + declared
        if total > settings.request_max_bytes:
            raise self._too_large(settings, total)
        return header_bytes

    def _check_header_encoding(self, scope: Scope) -> None:
        for key, value in scope.get("headers", []):
            try:
                key.decode("utf-8")
            except UnicodeDecodeError:
                raise ValidationError(
                    "Header keys must be valid UTF-8. Please use UTF-8 encoding"
                ) from None
            try:
                value.decode("utf-8")
            except UnicodeDecodeError:
                raise ValidationError(
                    "Header values must be valid UTF-8. Please use UTF-8 encoding"
                ) from None

    async def _read_body(self, receive: Receive, header_bytes: int, settings: Settings) -> bytes:
        chunks: List[bytes] = []
        received = 0
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                break
            chunk = message.get("body", b"")
            if chunk:
                received += len(chunk)
                if header_bytes + received > settings.request_max_bytes:
                    raise self._too_large(settings, header_bytes + received)
                chunks.append(chunk)
            if not message.get("more_body", False):
                break
        body = b"".join(chunks)
        try:
            body.decode("utf-8")
        except UnicodeDecodeError:
            raise ValidationError(
                "Request body must be valid UTF-8. Please use UTF-8 encoding"
            ) from None
        return body

    def _check_content_type(self, scope: Scope, body: bytes, settings: Settings) -> None:
        if not body:
            return
        raw = _header(scope, b"content-type") or b""
        media_type = raw.decode("latin-1").split(";", 1)[0].strip().lower()
        if media_type not in settings.allowed_content_types:
            raise UnsupportedMediaTypeError(
                "The request contains an unsupported media type. Please use one of "
                f"{', '.join(settings.allowed_content_types)} allowed media types"
            )

    def _check_global_method(self, scope: Scope, settings: Settings) -> None:
        method = scope["method"].upper()
        if method not in settings.allowed_methods:
            raise MethodNotImplementedError(
                f"The requested method ({method}) is not implemented by the server"
            )

    def _check_route(self, scope: Scope) -> None:
        allowed: Set[str] = set()
        for route in self.router.routes:
            match, _ = route.matches(scope)
            if match == Match.FULL:
                return
            if match == Match.PARTIAL:
                allowed.update(getattr(route, "methods", None) or ())
        if allowed:
            method = scope["method"].upper()
            raise MethodNotAllowedError(
                f"The requested method ({method}) is not allowed for the specified resource",
                detail={"allow": sorted(allowed)},
            )
        raise NotFoundError(NOT_FOUND_DESCRIPTION)

    async def _run_with_deadline(
        self, scope: Scope, receive: Receive, send: Send, settings: Settings
    ) -> None:
        timeout = settings.request_timeout_seconds
        deadline = Deadline(timeout_seconds=timeout)
        scope.setdefault("state", {})["deadline"] = deadline
        response_started = False

        async def guarded_send(message: Message) -> None:
            nonlocal response_started
            if deadline.expired:
                return
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        task = asyncio.create_task(self.app(scope, receive, guarded_send))
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise
        if task in done:
            task.result()
            return

        deadline.expire()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        ADMISSION_REJECTIONS.inc(gate=GatewayTimeoutError.gate)
        logger.warning(
            "admission_timeout",
            path=scope.get("path"),
            method=scope.get("method"),
            timeout_seconds=timeout,
            response_started=response_started,
        )
        if not response_started:
            response = service_error_response(
                GatewayTimeoutError(
                    f"The server did not receive a response within {timeout:.0f} seconds. "
                    "Please try again later"
                )
            )
            await response(scope, receive, send)


class IdentityAlreadyBoundError(RuntimeError):
    """Raised when a request already carries an authenticated identity."""


def bind_identity(request: Request, context: AuthContext) -> AuthContext:
    if getattr(request.state, "identity", None) is not None:
        raise IdentityAlreadyBoundError("an identity is already bound to this request")
    request.state.identity = context
    return context


def get_deadline(request: Request) -> Optional[Deadline]:
    return getattr(request.state, "deadline", None)


def require_identity(role: Optional[str]) -> Callable[..., Awaitable[AuthContext]]:
    """Build the bearer-auth dependency; ``role=None`` accepts any role."""

    async def dependency(
        request: Request, authorization: Optional[str] = Header(None)
    ) -> AuthContext:
        from shopgate.service.runtime import get_runtime

        runtime = get_runtime()
        context = await runtime.identity.authenticate(
            authorization, required_role=role, deadline=get_deadline(request)
        )
        return bind_identity(request, context)

    return dependency


__all__ = [
    "AdmissionMiddleware",
    "IdentityAlreadyBoundError",
    "bind_identity",
    "get_deadline",
    "require_identity",
]
