from __future__ import annotations

from typing import Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from shopgate.logging import get_logger
from shopgate.service.errors import (
    BadRequestError,
    MethodNotAllowedError,
    ServerError,
    ServiceError,
)
from shopgate.storage.errors import ConstraintViolation

logger = get_logger(__name__)

BAD_REQUEST_DESCRIPTION = (
    "Invalid request payload. Please double-check the data you are sending, "
    "and if this doesn't help, contact technical support"
)
NOT_FOUND_DESCRIPTION = "The requested resource could not be found"

# Titles used when a plain HTTPException reaches the handler
_STATUS_TITLES = {
    400: "Bad request",
    401: "Unauthorized",
    403: "Forbidden",
    404: "Not found",
    405: "Method not allowed",
    409: "Conflict",
    422: "Unprocessable entity",
    429: "Too many requests",
    500: "Internal server error",
}


def error_body(status_code: int, message: str, description: str) -> Dict[str, object]:
    """The single error shape returned for every 4xx and 5xx response."""
    return {"status_code": status_code, "message": message, "description": description}


def _error_response(
    status_code: int,
    message: str,
    description: str,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_body(status_code, message, description),
        headers=headers,
    )


def service_error_response(exc: ServiceError) -> JSONResponse:
    headers = None
    if isinstance(exc, MethodNotAllowedError) and exc.detail.get("allow"):
        headers = {"Allow": ", ".join(exc.detail["allow"])}
    return _error_response(exc.status_code, exc.message, exc.description, headers)


def register_exception_handlers(app: FastAPI) -> None:
    """Install exception handlers that render the shared error body."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            message=exc.message,
            description=exc.description,
        )
        return service_error_response(exc)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        # Should be mapped by the service layer; surfacing it means a missed path
        logger.error(
            "constraint_violation_unmapped",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return service_error_response(ServerError())

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        logger.warning(
            "request_decode_failed",
            path=request.url.path,
            method=request.method,
            errors=len(exc.errors()),
        )
        return service_error_response(BadRequestError(BAD_REQUEST_DESCRIPTION))

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        status_code = exc.status_code
        if status_code == 404:
            description = NOT_FOUND_DESCRIPTION
        elif status_code == 405:
            description = (
                f"The requested method ({request.method.upper()}) is not allowed "
                "for the specified resource"
            )
        else:
            description = str(exc.detail)
        log_fn = logger.error if status_code >= 500 else logger.warning
        log_fn(
            "http_error",
            path=request.url.path,
            method=request.method,
            status_code=status_code,
        )
        return _error_response(
            status_code,
            _STATUS_TITLES.get(status_code, "Error"),
            description,
            getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return service_error_response(ServerError())
