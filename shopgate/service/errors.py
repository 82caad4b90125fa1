from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every error is rendered with the same body shape:
    ``{"status_code": int, "message": str, "description": str}``.
    ``message`` is a short, stable title for the status code and
    ``description`` carries the human readable reason, e.g.
    ``"Password: the value contains a space (space in 3 position)"``.
    """

    status_code: int = 400
    message: str = "Bad request"

    def __init__(
        self,
        description: str,
        *,
        status_code: Optional[int] = None,
        message: Optional[str] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(description)
        self.description = description
        if status_code is not None:
            self.status_code = status_code
        if message is not None:
            self.message = message
        self.detail = detail or {}


class BadRequestError(ServiceError):
    """Request body could not be decoded (400)."""
    status_code = 400
    message = "Bad request"


class ValidationError(ServiceError):
    """Request fields failed validation (422)."""
    status_code = 422
    message = "Unprocessable entity"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    message = "Unauthorized"


class InvalidTokenError(AuthenticationError):
    """Token is malformed, tampered with or signed with another algorithm (401)."""

    def __init__(self, description: str = "Invalid token", **kwargs) -> None:
        super().__init__(description, **kwargs)


class TokenExpiredError(AuthenticationError):
    """Token is past its expiry (401)."""

    def __init__(self, description: str = "Token expired", **kwargs) -> None:
        super().__init__(description, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied for this account (403)."""
    status_code = 403
    message = "Forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    message = "Not found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate nickname (409)."""
    status_code = 409
    message = "Conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    message = "Too many requests"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    message = "Internal server error"

    def __init__(
        self,
        description: str = (
            "An internal server error has occurred. Please try again, "
            "and if it doesn't help, contact technical support"
        ),
        **kwargs,
    ) -> None:
        super().__init__(description, **kwargs)


class AdmissionError(ServiceError):
    """Raised by an admission gatekeeper to terminate a request."""

    gate: str = "admission"


class MethodNotAllowedError(AdmissionError):
    status_code = 405
    message = "Method not allowed"
    gate = "route_method"


class PayloadTooLargeError(AdmissionError):
    status_code = 413
    message = "Request entity too large"
    gate = "request_size"


class URITooLongError(AdmissionError):
    status_code = 414
    message = "Request URI too long"
    gate = "uri_length"


class UnsupportedMediaTypeError(AdmissionError):
    status_code = 415
    message = "Unsupported media type"
    gate = "content_type"


class MethodNotImplementedError(AdmissionError):
    status_code = 501
    message = "Method not implemented"
    gate = "global_method"


class ServiceUnavailableError(AdmissionError):
    status_code = 503
    message = "Service unavailable"
    gate = "service_unavailable"


class GatewayTimeoutError(AdmissionError):
    status_code = 504
    message = "Gateway timeout"
    gate = "timeout"


__all__ = [
    "ServiceError",
    "BadRequestError",
    "ValidationError",
    "AuthenticationError",
    "InvalidTokenError",
    "TokenExpiredError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "AdmissionError",
    "MethodNotAllowedError",
    "PayloadTooLargeError",
    "URITooLongError",
    "UnsupportedMediaTypeError",
    "MethodNotImplementedError",
    "ServiceUnavailableError",
    "GatewayTimeoutError",
]
