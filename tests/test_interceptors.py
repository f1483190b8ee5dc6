"""Tests for the HTTP interceptor chain."""

from __future__ import annotations

import json

import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from mcp_engine.audit import AuditLogger
from mcp_engine.errors import SERVER_ERROR
from mcp_engine.ratelimiter import RateLimiter
from mcp_engine.transport.http import HttpTransport
from mcp_engine.transport.interceptors import (
    CorsPolicy,
    audit_interceptor,
    compose,
    rate_limit_interceptor,
)
from tests.doubles import RecordingHandler


class TestCorsPolicy:
    """Tests for CorsPolicy."""

    def test_from_config_fills_defaults(self):
        """Missing keys keep their defaults."""
        policy = CorsPolicy.from_config({"allowed_origins": ["https://a.test"], "max_age": "60"})
        assert policy.allowed_origins == ["https://a.test"]
        assert policy.max_age == 60
        assert policy.allowed_methods == ["GET", "POST", "OPTIONS"]

    def test_wildcard_answers_with_star(self):
        """A wildcard policy does not reflect the request origin."""
        headers = CorsPolicy().headers_for("https://a.test")
        assert headers["Access-Control-Allow-Origin"] == "*"
        assert "Vary" not in headers

    def test_listed_origin_is_echoed(self):
        """Origins named in the list are echoed back."""
        headers = CorsPolicy(allowed_origins=["https://a.test"]).headers_for("https://a.test")
        assert headers["Access-Control-Allow-Origin"] == "https://a.test"
        assert headers["Vary"] == "Origin"

    def test_wildcard_without_origin(self):
        """Requests without an origin get the wildcard."""
        headers = CorsPolicy().headers_for(None)
        assert headers["Access-Control-Allow-Origin"] == "*"
        assert "Vary" not in headers

    def test_disallowed_origin_gets_nothing(self):
        """Origins outside the list get no CORS headers."""
        policy = CorsPolicy(allowed_origins=["https://a.test"])
        assert policy.headers_for("https://b.test") == {}
        assert policy.headers_for(None) == {}

    def test_credentials(self):
        """allow_credentials adds its header for listed origins."""
        policy = CorsPolicy(allowed_origins=["https://a.test"], allow_credentials=True)
        headers = policy.headers_for("https://a.test")
        assert headers["Access-Control-Allow-Credentials"] == "true"

    def test_no_credentials_for_wildcard(self):
        """A wildcard match never grants credentialed access."""
        policy = CorsPolicy.from_config({"allowed_origins": ["*"], "allow_credentials": True})
        headers = policy.headers_for("https://evil.test")
        assert headers["Access-Control-Allow-Origin"] == "*"
        assert "Access-Control-Allow-Credentials" not in headers

    def test_listed_origin_wins_over_wildcard(self):
        """An origin listed next to a wildcard is still echoed."""
        policy = CorsPolicy(allowed_origins=["*", "https://a.test"], allow_credentials=True)
        assert policy.headers_for("https://a.test")["Access-Control-Allow-Origin"] == "https://a.test"
        assert policy.headers_for("https://b.test")["Access-Control-Allow-Origin"] == "*"


class TestCompose:
    """Tests for interceptor composition."""

    def test_first_interceptor_runs_outermost(self):
        """Interceptors run in list order around the endpoint."""
        order = []

        def tagging(name):
            async def intercept(request, call_next):
                order.append(f"{name}:before")
                response = await call_next(request)
                order.append(f"{name}:after")
                return response

            return intercept

        async def endpoint(request: Request):
            order.append("endpoint")
            return JSONResponse({})

        app = FastAPI()
        app.add_api_route("/", compose([tagging("a"), tagging("b")], endpoint), methods=["GET"])
        TestClient(app).get("/")
        assert order == ["a:before", "b:before", "endpoint", "b:after", "a:after"]


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestRateLimitInterceptor:
    """Tests for rate limiting over HTTP."""

    def test_rejects_after_limit(self):
        """Requests past the limit get 429 with Retry-After."""
        limiter = RateLimiter(window_seconds=60.0, clock=FakeClock())
        transport = HttpTransport(
            config={},
            handler=RecordingHandler(),
            interceptors=[rate_limit_interceptor(limiter, limit=2)],
        )
        message = {"jsonrpc": "2.0", "method": "ping", "id": 1}
        with TestClient(transport.create_app()) as client:
            statuses = [client.post("/mcp", json=message).status_code for _ in range(3)]
            rejected = client.post("/mcp", json=message)

        assert statuses == [200, 200, 429]
        assert rejected.headers["retry-after"] == "60"
        assert rejected.json()["error"]["code"] == SERVER_ERROR

    def test_custom_key(self):
        """Clients are bucketed by the key function."""
        limiter = RateLimiter(clock=FakeClock())
        transport = HttpTransport(
            config={},
            handler=RecordingHandler(),
            interceptors=[
                rate_limit_interceptor(limiter, limit=1, key=lambda r: r.headers.get("x-client", ""))
            ],
        )
        message = {"jsonrpc": "2.0", "method": "ping", "id": 1}
        with TestClient(transport.create_app()) as client:
            first = client.post("/mcp", json=message, headers={"X-Client": "a"})
            second = client.post("/mcp", json=message, headers={"X-Client": "b"})
        assert (first.status_code, second.status_code) == (200, 200)


class TestAuditInterceptor:
    """Tests for audit logging over HTTP."""

    @pytest.fixture
    def audit_path(self, tmp_path):
        return tmp_path / "logs" / "audit.jsonl"

    def test_logs_request_and_response(self, audit_path):
        """Each request gets a request and a response entry with the same id."""
        with AuditLogger(audit_path) as audit_logger:
            transport = HttpTransport(
                config={},
                handler=RecordingHandler(),
                interceptors=[audit_interceptor(audit_logger)],
            )
            with TestClient(transport.create_app()) as client:
                client.post(
                    "/mcp",
                    json={
                        "jsonrpc": "2.0",
                        "method": "tools/call",
                        "params": {"name": "echo", "api_key": "hunter2"},
                        "id": 1,
                    },
                    headers={"X-Request-Id": "req-1"},
                )

        entries = [json.loads(line) for line in audit_path.read_text().splitlines()]
        assert [e["type"] for e in entries] == ["request", "response"]
        assert entries[0]["request_id"] == entries[1]["request_id"] == "req-1"
        assert entries[0]["methods"] == ["tools/call"]
        assert entries[0]["params"] == [{"name": "echo", "api_key": "[REDACTED]"}]
        assert entries[1]["status_code"] == 200

    def test_unparseable_body_still_logged(self, audit_path):
        """Bad bodies are logged without methods."""
        with AuditLogger(audit_path) as audit_logger:
            transport = HttpTransport(
                config={},
                handler=RecordingHandler(),
                interceptors=[audit_interceptor(audit_logger)],
            )
            with TestClient(transport.create_app()) as client:
                client.post("/mcp", content=b"{", headers={"Content-Type": "application/json"})

        entries = [json.loads(line) for line in audit_path.read_text().splitlines()]
        assert entries[0]["methods"] == []
        assert entries[1]["status_code"] == 400
