"""JSON-RPC dispatcher - routes messages to registered handlers."""

from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Callable
from typing import Any

from mcp_engine.errors import (
    INTERNAL_ERROR,
    METHOD_NOT_FOUND,
    JsonRpcError,
    TransportException,
)
from mcp_engine.protocol.jsonrpc import make_error, make_request, make_response

logger = logging.getLogger(__name__)

RequestHandler = Callable[[dict[str, Any], dict[str, Any]], Any]
NotificationCallback = Callable[[dict[str, Any], dict[str, Any]], None]
ResponseCallback = Callable[[dict[str, Any]], None]


class JsonRpcDispatcher:
    """Routes requests, notifications and responses by method or id.

    Request handlers are called as ``handler(params, message)`` and their
    return value becomes the ``result``. Exceptions are turned into error
    responses:

    * ``JsonRpcError`` keeps its own code, so ``InvalidParams`` is -32602
    * anything else, ``ValueError`` included, becomes Internal error
    """

    def __init__(self, debug: bool = False) -> None:
        """Initialize the dispatcher.

        Args:
            debug: Include exception messages in Internal error data.
        """
        self.debug = debug
        self._request_handlers: dict[str, RequestHandler] = {}
        self._notification_handlers: dict[str, NotificationCallback] = {}
        self._response_handlers: dict[int | str, ResponseCallback] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def on_request(self, method: str, handler: RequestHandler) -> None:
        """Register the handler for a request method."""
        self._request_handlers[method] = handler

    def on_notification(self, method: str, handler: NotificationCallback) -> None:
        """Register the handler for a notification method."""
        self._notification_handlers[method] = handler

    def on_response(self, msg_id: int | str, callback: ResponseCallback) -> None:
        """Register a one-shot callback for the response with ``msg_id``."""
        with self._lock:
            self._response_handlers[msg_id] = callback

    def has_request_handler(self, method: str) -> bool:
        return method in self._request_handlers

    def request_methods(self) -> list[str]:
        """List registered request methods."""
        return sorted(self._request_handlers)

    @property
    def pending_responses(self) -> int:
        """Number of outbound requests still awaiting a response."""
        with self._lock:
            return len(self._response_handlers)

    def create_request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        callback: ResponseCallback | None = None,
    ) -> dict[str, Any]:
        """Build an outbound request with a fresh id.

        Args:
            method: Method to call on the peer.
            params: Optional parameters.
            callback: Called with the peer's response.

        Returns:
            Request message ready to send.
        """
        with self._lock:
            msg_id = f"srv-{next(self._ids)}"
        if callback is not None:
            self.on_response(msg_id, callback)
        return make_request(method, params, msg_id)

    def handle_request(self, message: dict[str, Any]) -> dict[str, Any]:
        """Run the handler for a request and build its response.

        Args:
            message: Validated request message.

        Returns:
            Success or error response carrying the request id.
        """
        method = message["method"]
        msg_id = message.get("id")
        params = message.get("params")
        if params is None:
            params = {}

        handler = self._request_handlers.get(method)
        if handler is None:
            logger.warning("Method not found: %s", method)
            return make_error(msg_id, METHOD_NOT_FOUND, f"Method '{method}' not found")

        if self.debug:
            logger.debug("Dispatching request %s (id=%s)", method, msg_id)

        try:
            result = handler(params, message)
        except JsonRpcError as e:
            logger.warning("Protocol error in %s: %s", method, e.message)
            return make_error(msg_id, e.code, e.message, e.data)
        except TransportException as e:
            logger.error("Transport error in %s: %s", method, e)
            return make_error(msg_id, INTERNAL_ERROR, "Internal error", self._debug_data(e))
        except Exception as e:
            logger.exception("Request handler for %s failed", method)
            return make_error(msg_id, INTERNAL_ERROR, "Internal error", self._debug_data(e))

        return make_response(msg_id, result)

    def _debug_data(self, error: BaseException) -> dict[str, str] | None:
        if not self.debug:
            return None
        return {"message": str(error), "type": type(error).__name__}

    def handle_notification(self, message: dict[str, Any]) -> None:
        """Run the handler for a notification, if one is registered.

        Handler failures are logged and never produce a response.
        """
        method = message["method"]
        handler = self._notification_handlers.get(method)
        if handler is None:
            logger.info("No handler for notification: %s", method)
            return

        params = message.get("params")
        try:
            handler(params if params is not None else {}, message)
        except Exception:
            logger.exception("Notification handler for %s failed", method)

    def handle_response(self, message: dict[str, Any]) -> None:
        """Deliver a response to the callback waiting on its id."""
        msg_id = message.get("id")
        with self._lock:
            callback = self._response_handlers.pop(msg_id, None)
        if callback is None:
            logger.debug("Ignoring response with unknown id %r", msg_id)
            return
        try:
            callback(message)
        except Exception:
            logger.exception("Response callback for id %r failed", msg_id)
