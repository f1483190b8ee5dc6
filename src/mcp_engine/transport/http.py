"""MCP HTTP transport.

Handles JSON-RPC over HTTP POST and exposes the HTTP surface as a FastAPI
router: the message endpoint, a server-sent event stream, health and info.
"""

from __future__ import annotations

import logging
import socket
import uuid
from collections import deque
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, FastAPI, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from mcp_engine.errors import (
    INTERNAL_ERROR,
    INVALID_REQUEST,
    PARSE_ERROR,
    JsonRpcError,
    TransportException,
)
from mcp_engine.protocol.jsonrpc import decode, extract_id, make_error
from mcp_engine.transport.base import MessageHandler, Transport
from mcp_engine.transport.interceptors import (
    CallNext,
    CorsPolicy,
    Interceptor,
    compose,
    cors_interceptor,
)

if TYPE_CHECKING:
    from mcp_engine.protocol.notifications import NotificationHandler

logger = logging.getLogger(__name__)

JSON_CONTENT_TYPE = "application/json"


class HttpTransport(Transport):
    """Request/response transport for JSON-RPC over HTTP.

    Each POST is handled independently. Messages passed to ``send()`` are
    kept in an outbox for the host to collect, since HTTP has no channel
    for unsolicited server messages outside the event stream.
    """

    transport_type = "http"
    DRIVER_DEFAULTS: dict[str, Any] = {
        "host": "127.0.0.1",
        "port": 8000,
        "path": "/mcp",
        "max_message_size": 1_048_576,
        "max_outbox": 1000,
        "cors": {
            "enabled": True,
            "allowed_origins": ["*"],
            "allowed_methods": ["GET", "POST", "OPTIONS"],
            "allowed_headers": ["Content-Type", "Authorization", "X-Requested-With"],
            "max_age": 86400,
            "allow_credentials": False,
        },
        "ssl": {"enabled": False, "cert_path": None, "key_path": None},
    }

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        handler: MessageHandler | None = None,
        notifications: NotificationHandler | None = None,
        interceptors: Sequence[Interceptor] = (),
    ) -> None:
        """Initialize the transport.

        Args:
            config: Transport configuration overrides.
            handler: Message handler to bind.
            notifications: Notification handler backing the event stream.
            interceptors: Interceptors applied inside the CORS interceptor.
        """
        self._notifications = notifications
        self._interceptors = list(interceptors)
        self._cors = CorsPolicy()
        self._outbox: deque[Any] = deque()
        self._requests = {"total": 0, "batches": 0, "rejected": 0, "failed": 0}
        super().__init__(config, handler)

    def _on_initialize(self) -> None:
        self._cors = CorsPolicy.from_config(self._config["cors"])
        self._outbox = deque(maxlen=self._config["max_outbox"])
        self._requests = {"total": 0, "batches": 0, "rejected": 0, "failed": 0}

    @property
    def cors(self) -> CorsPolicy:
        return self._cors

    @property
    def notifications(self) -> NotificationHandler | None:
        return self._notifications

    def add_interceptor(self, interceptor: Interceptor) -> None:
        """Append an interceptor to the chain used by ``router()``."""
        self._interceptors.append(interceptor)

    # -- driver hooks ----------------------------------------------------------

    def _do_start(self) -> None:
        logger.info("HTTP transport ready at %s", self.base_url())

    def _do_stop(self) -> None:
        self._outbox.clear()

    def _do_send(self, message: Any) -> int:
        self._outbox.append(message)
        return 0

    def _do_receive(self) -> Any | None:
        # Requests are pushed in through handle_http_request
        return None

    def take_outbox(self) -> list[Any]:
        """Return and clear messages sent while no request was open."""
        messages = list(self._outbox)
        self._outbox.clear()
        return messages

    def _driver_health_checks(self) -> dict[str, bool]:
        checks: dict[str, bool] = {}
        ssl = self._config.get("ssl") or {}
        if ssl.get("enabled"):
            checks["ssl_cert"] = bool(ssl.get("cert_path")) and Path(ssl["cert_path"]).is_file()
            checks["ssl_key"] = bool(ssl.get("key_path")) and Path(ssl["key_path"]).is_file()
        if not self._connected:
            checks["port_available"] = self._port_available()
        return checks

    def _port_available(self) -> bool:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind((self._config["host"], int(self._config["port"])))
            except OSError:
                return False
        return True

    # -- request handling ---------------------------------------------------------

    def _json(self, content: Any, status_code: int = 200) -> JSONResponse:
        return JSONResponse(content, status_code=status_code)

    def _reject(self, status_code: int, code: int, message: str, data: Any = None) -> JSONResponse:
        with self._lock:
            self._requests["rejected"] += 1
        return self._json(make_error(None, code, message, data), status_code)

    async def handle_http_request(self, request: Request) -> Response:
        """Handle an HTTP request containing a JSON-RPC message or batch.

        Args:
            request: FastAPI request object.

        Returns:
            200 with the response(s), 204 when only notifications were sent,
            400/413/415 for unusable bodies and 500 for unexpected failures.
        """
        with self._lock:
            self._requests["total"] += 1

        content_type = request.headers.get("content-type", "")
        if JSON_CONTENT_TYPE not in content_type.lower():
            return self._reject(
                415, INVALID_REQUEST, "Invalid Request", "Content-Type must be application/json"
            )

        body = await request.body()
        if len(body) > self._config["max_message_size"]:
            return self._reject(413, INTERNAL_ERROR, "Internal error", "Message too large")
        if not body.strip():
            return self._reject(400, PARSE_ERROR, "Parse error", "Empty request body")

        try:
            payload = decode(body)
        except JsonRpcError as e:
            return self._reject(400, PARSE_ERROR, "Parse error", e.message)

        if not isinstance(payload, dict | list) or payload == []:
            return self._reject(
                400, INVALID_REQUEST, "Invalid Request", "Body must be an object or non-empty array"
            )

        with self._lock:
            self._stats["bytes_received"] += len(body)
            self._stats["messages_received"] += len(payload) if isinstance(payload, list) else 1

        try:
            if isinstance(payload, list):
                with self._lock:
                    self._requests["batches"] += 1
                responses = await run_in_threadpool(self._process_batch, payload)
                result: Any = responses or None
            else:
                result = await run_in_threadpool(self._process, payload)
        except Exception as e:
            with self._lock:
                self._requests["failed"] += 1
            self._report_error(e)
            msg_id = extract_id(payload)
            return self._json(make_error(msg_id, INTERNAL_ERROR, "Internal error"), 500)

        if result is None:
            return Response(status_code=204)

        with self._lock:
            self._stats["messages_sent"] += len(result) if isinstance(result, list) else 1
        return self._json(result)

    def _process_batch(self, items: list[Any]) -> list[dict[str, Any]]:
        responses = []
        for item in items:
            response = self._process(item)
            if response is not None:
                responses.append(response)
        return responses

    def _process(self, message: Any) -> dict[str, Any] | None:
        if not isinstance(message, dict):
            return make_error(None, INVALID_REQUEST, "Invalid Request", "Message must be an object")
        if self._handler is None:
            raise TransportException("No message handler bound", transport_type=self.transport_type)

        try:
            return self._handler.handle(message, self)
        except JsonRpcError as e:
            return make_error(extract_id(message), e.code, e.message, e.data)
        except Exception as e:
            logger.exception("Handler failed while processing HTTP message")
            data = {"message": str(e)} if self._config["debug"] else None
            return make_error(extract_id(message), INTERNAL_ERROR, "Internal error", data)

    # -- HTTP surface ----------------------------------------------------------------

    def base_url(self) -> str:
        """URL of the message endpoint."""
        ssl_enabled = bool((self._config.get("ssl") or {}).get("enabled"))
        scheme = "https" if ssl_enabled else "http"
        host = self._config.get("host", "127.0.0.1")
        port = int(self._config.get("port", 80))
        url = f"{scheme}://{host}"
        if (scheme == "http" and port != 80) or (scheme == "https" and port != 443):
            url += f":{port}"
        return url + self._prefix()

    def _prefix(self) -> str:
        path = "/" + str(self._config.get("path", "/mcp")).strip("/")
        return "" if path == "/" else path

    def server_info(self) -> dict[str, Any]:
        """Describe the server and its endpoints."""
        prefix = self._prefix()
        info: dict[str, Any] = {
            "transport": self.transport_type,
            "base_url": self.base_url(),
            "endpoints": {
                "messages": f"{prefix}/",
                "events": f"{prefix}/events",
                "health": f"{prefix}/health",
                "info": f"{prefix}/info",
            },
            "cors_enabled": self._cors.enabled,
            "requests": dict(self._requests),
        }
        server = getattr(self._handler, "server_info", None)
        if isinstance(server, dict):
            info["server"] = server
        methods = self._handler.supported_methods() if self._handler else []
        if methods:
            info["methods"] = methods
        return info

    def stats(self) -> dict[str, Any]:
        snapshot = super().stats()
        with self._lock:
            snapshot["requests"] = dict(self._requests)
        snapshot["outbox"] = len(self._outbox)
        return snapshot

    async def _events(self, request: Request) -> Response:
        if self._notifications is None:
            return self._json(
                make_error(None, INVALID_REQUEST, "Event stream not available"), status_code=404
            )
        client_id = request.query_params.get("client_id") or f"sse_{uuid.uuid4().hex}"
        types = [t for t in request.query_params.get("types", "").split(",") if t]
        return self._notifications.create_sse_response(client_id, types, request.is_disconnected)

    async def _health(self, request: Request) -> Response:
        report = self.health_check()
        return self._json(report, status_code=200 if report["healthy"] else 503)

    async def _info(self, request: Request) -> Response:
        return self._json(self.server_info())

    async def _preflight(self, request: Request) -> Response:
        return Response(status_code=204)

    def _wrap(self, endpoint: CallNext) -> CallNext:
        chain = [cors_interceptor(self._cors), *self._interceptors]
        return compose(chain, endpoint)

    def router(self) -> APIRouter:
        """Build the FastAPI router for this transport's HTTP surface."""
        prefix = self._prefix()
        router = APIRouter(prefix=prefix)
        message = self._wrap(self.handle_http_request)
        preflight = self._wrap(self._preflight)

        for path in ("", "/") if prefix else ("/",):
            router.add_api_route(path, message, methods=["POST"], include_in_schema=path == "/")
        router.add_api_route("/events", self._wrap(self._events), methods=["GET"])
        router.add_api_route("/health", self._wrap(self._health), methods=["GET"])
        router.add_api_route("/info", self._wrap(self._info), methods=["GET"])
        router.add_api_route("/{path:path}", preflight, methods=["OPTIONS"])
        return router

    def create_app(self, title: str = "MCP Engine") -> FastAPI:
        """Create a FastAPI app serving this transport.

        The transport starts with the app and stops when it shuts down.
        """

        @asynccontextmanager
        async def lifespan(app: FastAPI) -> AsyncIterator[None]:
            self.start()
            try:
                yield
            finally:
                self.stop()

        app = FastAPI(title=title, lifespan=lifespan)
        app.include_router(self.router())
        return app
