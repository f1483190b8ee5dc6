"""HTTP interceptor chain.

An interceptor is an async callable ``(request, call_next) -> response``.
``compose`` wraps an endpoint in a list of interceptors; the first one in
the list runs outermost.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from fastapi import Request, Response
from fastapi.responses import JSONResponse

from mcp_engine.audit import AuditLogger
from mcp_engine.errors import SERVER_ERROR, JsonRpcError
from mcp_engine.protocol.jsonrpc import decode, make_error
from mcp_engine.ratelimiter import RateLimiter, RateLimitExceeded

logger = logging.getLogger(__name__)

CallNext = Callable[[Request], Awaitable[Response]]
Interceptor = Callable[[Request, CallNext], Awaitable[Response]]


def compose(interceptors: Sequence[Interceptor], endpoint: CallNext) -> CallNext:
    """Wrap ``endpoint`` so each request passes through ``interceptors`` in order."""
    handler = endpoint
    for interceptor in reversed(interceptors):
        handler = _bind(interceptor, handler)
    return handler


def _bind(interceptor: Interceptor, call_next: CallNext) -> CallNext:
    async def wrapped(request: Request) -> Response:
        return await interceptor(request, call_next)

    return wrapped


@dataclass
class CorsPolicy:
    """Cross-origin policy for the HTTP transport."""

    enabled: bool = True
    allowed_origins: list[str] = field(default_factory=lambda: ["*"])
    allowed_methods: list[str] = field(default_factory=lambda: ["GET", "POST", "OPTIONS"])
    allowed_headers: list[str] = field(
        default_factory=lambda: ["Content-Type", "Authorization", "X-Requested-With"]
    )
    max_age: int = 86400
    allow_credentials: bool = False

    @classmethod
    def from_config(cls, config: dict[str, Any] | None) -> CorsPolicy:
        config = config or {}
        defaults = cls()
        policy = cls(
            enabled=bool(config.get("enabled", defaults.enabled)),
            allowed_origins=list(config.get("allowed_origins", defaults.allowed_origins)),
            allowed_methods=list(config.get("allowed_methods", defaults.allowed_methods)),
            allowed_headers=list(config.get("allowed_headers", defaults.allowed_headers)),
            max_age=int(config.get("max_age", defaults.max_age)),
            allow_credentials=bool(config.get("allow_credentials", defaults.allow_credentials)),
        )
        if policy.allow_credentials and "*" in policy.allowed_origins:
            logger.warning("CORS credentials are not sent for wildcard origins")
        return policy

    def is_allowed(self, origin: str | None) -> bool:
        if "*" in self.allowed_origins:
            return True
        return origin is not None and origin in self.allowed_origins

    def headers_for(self, origin: str | None) -> dict[str, str]:
        """CORS headers for a response to ``origin``.

        Origins named in the allow-list are echoed. Anything else allowed
        by a wildcard gets ``*`` and never the credentials header.
        Disallowed origins get no headers at all.
        """
        if not self.enabled or not self.is_allowed(origin):
            return {}

        listed = origin is not None and origin in self.allowed_origins
        headers = {
            "Access-Control-Allow-Origin": origin if listed else "*",
            "Access-Control-Allow-Methods": ", ".join(self.allowed_methods),
            "Access-Control-Allow-Headers": ", ".join(self.allowed_headers),
            "Access-Control-Max-Age": str(self.max_age),
        }
        if listed:
            headers["Vary"] = "Origin"
            if self.allow_credentials:
                headers["Access-Control-Allow-Credentials"] = "true"
        return headers


def cors_interceptor(policy: CorsPolicy) -> Interceptor:
    """Answer preflight requests and add CORS headers to every response."""

    async def intercept(request: Request, call_next: CallNext) -> Response:
        origin = request.headers.get("origin")
        if request.method == "OPTIONS":
            response: Response = Response(status_code=204)
        else:
            response = await call_next(request)
        response.headers.update(policy.headers_for(origin))
        return response

    return intercept


def _client_host(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def rate_limit_interceptor(
    limiter: RateLimiter,
    limit: int,
    key: Callable[[Request], str] = _client_host,
) -> Interceptor:
    """Reject clients that exceed ``limit`` requests per window with HTTP 429."""

    async def intercept(request: Request, call_next: CallNext) -> Response:
        try:
            limiter.check(key(request), limit)
        except RateLimitExceeded as e:
            logger.warning("%s", e)
            return JSONResponse(
                make_error(None, SERVER_ERROR, "Rate limit exceeded", str(e)),
                status_code=429,
                headers={"Retry-After": str(int(limiter.window_seconds))},
            )
        return await call_next(request)

    return intercept


async def _rpc_summary(request: Request) -> tuple[list[str], list[Any]]:
    if request.method != "POST":
        return [], []
    try:
        payload = decode(await request.body())
    except JsonRpcError:
        return [], []
    items = payload if isinstance(payload, list) else [payload]
    methods = [item.get("method", "") for item in items if isinstance(item, dict)]
    params = [item.get("params") for item in items if isinstance(item, dict)]
    return methods, params


def audit_interceptor(audit_logger: AuditLogger) -> Interceptor:
    """Write request and response entries to the audit log."""

    async def intercept(request: Request, call_next: CallNext) -> Response:
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        methods, params = await _rpc_summary(request)
        audit_logger.log_request(request_id, methods, params, _client_host(request))

        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        audit_logger.log_response(request_id, response.status_code, duration_ms)
        return response

    return intercept
