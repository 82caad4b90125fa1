"""Tests for the admission middleware.

Each gatekeeper is exercised on a small app so the pipeline order, the
shared error body and the timeout cancellation can be checked without the
identity routes.
"""

import asyncio
from typing import Optional

import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient

from shopgate.api.admission import (
    AdmissionMiddleware,
    IdentityAlreadyBoundError,
    bind_identity,
    get_deadline,
)
from shopgate.api.error_handling import register_exception_handlers
from shopgate.config import Settings
from shopgate.service.identity import AuthContext, Deadline
from shopgate.service.metrics import ADMISSION_REJECTIONS
from shopgate.service.tokens import TokenClaims


class RecordingLimiter:
    def __init__(self, allowed: bool = True):
        self.allowed = allowed
        self.calls = []

    async def __call__(self, key, limit, window_seconds):
        self.calls.append((key, limit, window_seconds))
        return self.allowed


def _settings(**overrides) -> Settings:
    return Settings(jwt_secret="admission-test-secret", **overrides)


def build_app(settings: Settings, limiter: Optional[RecordingLimiter] = None, events=None):
    app = FastAPI()
    events = events if events is not None else []

    @app.get("/items")
    async def list_items():
        return {"items": []}

    @app.post("/echo")
    async def echo(request: Request):
        return {"received": await request.json()}

    @app.get("/deadline")
    async def deadline_info(deadline: Optional[Deadline] = Depends(get_deadline)):
        return {"timeout": deadline.timeout_seconds if deadline else None}

    @app.get("/slow")
    async def slow():
        try:
            await asyncio.sleep(5)
        except asyncio.CancelledError:
            events.append("cancelled")
            raise
        return {"done": True}

    @app.get("/boom")
    async def boom():
        raise RuntimeError("unexpected")

    app.add_middleware(
        AdmissionMiddleware,
        router=app.router,
        settings=settings,
        rate_limiter=limiter or RecordingLimiter(),
    )
    register_exception_handlers(app)
    return app


def _client(settings=None, limiter=None, events=None) -> TestClient:
    return TestClient(
        build_app(settings or _settings(), limiter, events), raise_server_exceptions=False
    )


def _assert_error(response, status_code: int, message: str):
    assert response.status_code == status_code
    body = response.json()
    assert set(body) == {"status_code", "message", "description"}
    assert body["status_code"] == status_code
    assert body["message"] == message
    return body["description"]


class TestPassThrough:
    def test_get(self):
        response = _client().get("/items")
        assert response.status_code == 200
        assert response.json() == {"items": []}

    def test_body_is_replayed_to_the_route(self):
        response = _client().post("/echo", json={"nickname": "shop_buyer"})
        assert response.status_code == 200
        assert response.json() == {"received": {"nickname": "shop_buyer"}}

    def test_deadline_is_exposed_to_handlers(self):
        response = _client(_settings(request_timeout_seconds=7)).get("/deadline")
        assert response.json() == {"timeout": 7}

    def test_rate_limit_key_is_client_ip(self):
        limiter = RecordingLimiter()
        _client(_settings(rate_limit_requests=5, rate_limit_window_seconds=30), limiter).get(
            "/items"
        )
        assert limiter.calls == [("ip:testclient", 5, 30)]


class TestGates:
    def test_service_unavailable(self):
        response = _client(_settings(service_unavailable=True)).get("/items")
        description = _assert_error(response, 503, "Service unavailable")
        assert description == "The service is currently unavailable. Please try again later"

    def test_rate_limited(self):
        response = _client(limiter=RecordingLimiter(allowed=False)).get("/items")
        description = _assert_error(response, 429, "Too many requests")
        assert description == (
            "You have exceeded the allowed number of requests. A maximum of "
            "1000 requests per 60 seconds can be sent"
        )

    def test_uri_too_long(self):
        client = _client(_settings(uri_max_length=32))
        assert client.get("/items?q=short").status_code == 200

        response = client.get("/items?q=" + "a" * 40)
        description = _assert_error(response, 414, "Request URI too long")
        assert description == (
            "The requested URI is too long. A maximum of 32 characters can be sent"
        )

    def test_payload_too_large_by_content_length(self):
        client = _client(_settings(request_max_bytes=2 * 1024 * 1024))
        response = client.post(
            "/echo", content=b'{"a": "' + b"x" * (2 * 1024 * 1024) + b'"}',
            headers={"Content-Type": "application/json"},
        )
        description = _assert_error(response, 413, "Request entity too large")
        assert description.startswith(
            "The request payload is too large. A maximum of 2 megabytes can be sent. You have sent "
        )
        assert description.endswith(" bytes")

    def test_payload_too_large_while_buffering(self):
        def chunks():
            yield b'{"a": "'
            for _ in range(4):
                yield b"x" * 400
            yield b'"}'

        client = _client(_settings(request_max_bytes=1000))
        response = client.post(
            "/echo", content=chunks(), headers={"Content-Type": "application/json"}
        )

        assert "content-length" not in response.request.headers
        description = _assert_error(response, 413, "Request entity too large")
        assert description.startswith(
            "The request payload is too large. A maximum of 0 megabytes can be sent"
        )

    def test_invalid_utf8_body(self):
        response = _client().post(
            "/echo", content=b'{"a": "\xff\xfe"}', headers={"Content-Type": "application/json"}
        )
        description = _assert_error(response, 422, "Unprocessable entity")
        assert description == "Request body must be valid UTF-8. Please use UTF-8 encoding"

    def test_invalid_utf8_header_value(self):
        response = _client().get("/items", headers={"X-Note": b"\xff\xfe"})
        description = _assert_error(response, 422, "Unprocessable entity")
        assert description == "Header values must be valid UTF-8. Please use UTF-8 encoding"

    def test_unsupported_media_type(self):
        response = _client().post(
            "/echo", content=b"nickname=shop_buyer", headers={"Content-Type": "text/plain"}
        )
        description = _assert_error(response, 415, "Unsupported media type")
        assert description == (
            "The request contains an unsupported media type. Please use one of "
            "application/json allowed media types"
        )

    def test_content_type_parameters_are_ignored(self):
        response = _client().post(
            "/echo",
            content=b'{"a": 1}',
            headers={"Content-Type": "application/json; charset=utf-8"},
        )
        assert response.status_code == 200

    def test_empty_body_needs_no_content_type(self):
        response = _client().get("/items", headers={"Content-Type": "text/plain"})
        assert response.status_code == 200

    def test_method_not_implemented(self):
        response = _client().request("TRACE", "/items")
        description = _assert_error(response, 501, "Method not implemented")
        assert description == "The requested method (TRACE) is not implemented by the server"

    def test_method_not_allowed_lists_allowed_methods(self):
        response = _client().delete("/items")
        description = _assert_error(response, 405, "Method not allowed")
        assert description == (
            "The requested method (DELETE) is not allowed for the specified resource"
        )
        assert "GET" in response.headers["allow"]

    def test_not_found(self):
        response = _client().get("/missing")
        description = _assert_error(response, 404, "Not found")
        assert description == "The requested resource could not be found"


class TestOrder:
    def test_unavailable_before_everything(self):
        limiter = RecordingLimiter(allowed=False)
        client = _client(_settings(service_unavailable=True, uri_max_length=8), limiter)
        response = client.request("TRACE", "/missing/" + "a" * 20)
        assert response.status_code == 503
        assert limiter.calls == []

    def test_rate_limit_before_uri_length(self):
        client = _client(_settings(uri_max_length=8), RecordingLimiter(allowed=False))
        assert client.get("/items?q=" + "a" * 20).status_code == 429

    def test_uri_length_before_media_type(self):
        client = _client(_settings(uri_max_length=8))
        response = client.post("/echo?q=" + "a" * 20, content=b"x", headers={"Content-Type": "text/plain"})
        assert response.status_code == 414

    def test_size_before_media_type(self):
        response = _client(_settings(request_max_bytes=500)).post(
            "/echo", content=b"x" * 2000, headers={"Content-Type": "text/plain"}
        )
        assert response.status_code == 413

    def test_media_type_before_method(self):
        response = _client().request(
            "TRACE", "/items", content=b"x", headers={"Content-Type": "text/plain"}
        )
        assert response.status_code == 415

    def test_global_method_before_route(self):
        assert _client().request("TRACE", "/missing").status_code == 501

    def test_rejections_are_counted_per_gate(self):
        before = ADMISSION_REJECTIONS.value(gate="uri_length")
        _client(_settings(uri_max_length=8)).get("/items?q=" + "a" * 20)
        assert ADMISSION_REJECTIONS.value(gate="uri_length") == before + 1


class TestTimeout:
    def test_slow_handler_gets_504_and_is_cancelled(self):
        events = []
        client = _client(_settings(request_timeout_seconds=0.2), events=events)

        response = client.get("/slow")

        description = _assert_error(response, 504, "Gateway timeout")
        assert description.startswith("The server did not receive a response within")
        assert events == ["cancelled"]

    def test_fast_handler_unaffected(self):
        response = _client(_settings(request_timeout_seconds=0.5)).get("/items")
        assert response.status_code == 200

    def test_handler_errors_still_use_error_body(self):
        response = _client().get("/boom")
        _assert_error(response, 500, "Internal server error")


def _context(account_id: str = "acc-1") -> AuthContext:
    claims = TokenClaims(account_uuid=account_id, iat=0, exp=1, iss="shopgate")
    return AuthContext(account_id=account_id, role="user", token="t", claims=claims)


class TestBindIdentity:
    def _request(self) -> Request:
        return Request({"type": "http", "method": "GET", "path": "/", "headers": []})

    def test_bind_once(self):
        request = self._request()
        context = _context()
        assert bind_identity(request, context) is context
        assert request.state.identity is context

    def test_second_bind_raises(self):
        request = self._request()
        bind_identity(request, _context())
        with pytest.raises(IdentityAlreadyBoundError):
            bind_identity(request, _context("acc-2"))
