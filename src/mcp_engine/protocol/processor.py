"""MCP message processor.

Validates incoming messages, enforces the initialization handshake and
routes MCP methods to the tool, resource and prompt registries.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from mcp_engine.errors import (
    INTERNAL_ERROR,
    INVALID_REQUEST,
    InvalidParams,
    JsonRpcError,
)
from mcp_engine.protocol.capabilities import CapabilityNegotiator
from mcp_engine.protocol.dispatcher import JsonRpcDispatcher, ResponseCallback
from mcp_engine.protocol.jsonrpc import (
    extract_id,
    is_notification,
    is_request,
    is_response,
    make_error,
    validate_envelope,
)
from mcp_engine.protocol.lifecycle import ProtocolSession, SessionState
from mcp_engine.registry import ComponentNotFound, Registry
from mcp_engine.transport.base import MessageHandler

if TYPE_CHECKING:
    from mcp_engine.transport.base import Transport

logger = logging.getLogger(__name__)

INITIALIZED_NOTIFICATIONS = ("notifications/initialized", "initialized")

DEFAULT_SERVER_INFO = {"name": "mcp-engine", "version": "1.0.0"}


def _as_object(params: Any) -> dict[str, Any]:
    if not isinstance(params, dict):
        raise InvalidParams("params must be an object")
    return params


def _text_content(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


class MessageProcessor(MessageHandler):
    """Transport message handler implementing the MCP server methods.

    Capability methods (``tools/*``, ``resources/*``, ``prompts/*``) answer
    ``-32002`` until the client sends the ``initialized`` notification.
    ``ping`` works in any state.
    """

    def __init__(
        self,
        tools: Registry | None = None,
        resources: Registry | None = None,
        prompts: Registry | None = None,
        negotiator: CapabilityNegotiator | None = None,
        dispatcher: JsonRpcDispatcher | None = None,
        server_info: dict[str, Any] | None = None,
        server_capabilities: dict[str, Any] | None = None,
        debug: bool = False,
    ) -> None:
        """Initialize the processor.

        Args:
            tools: Tool registry.
            resources: Resource registry.
            prompts: Prompt registry.
            negotiator: Capability negotiator, a default one if omitted.
            dispatcher: JSON-RPC dispatcher, a fresh one if omitted.
            server_info: Name and version advertised during initialize.
            server_capabilities: Capabilities the server offers.
            debug: Include exception details in Internal error responses.
        """
        self._tools = tools
        self._resources = resources
        self._prompts = prompts
        self._negotiator = negotiator or CapabilityNegotiator()
        self._dispatcher = dispatcher or JsonRpcDispatcher(debug=debug)
        self._server_info = dict(server_info or DEFAULT_SERVER_INFO)
        self._server_capabilities = server_capabilities or self._default_capabilities()
        self._session = ProtocolSession()
        self.debug = debug
        self._register_handlers()

    def _default_capabilities(self) -> dict[str, Any]:
        capabilities: dict[str, Any] = {}
        if self._tools is not None:
            capabilities["tools"] = {"listChanged": False}
        if self._resources is not None:
            capabilities["resources"] = {"subscribe": False, "listChanged": False}
        if self._prompts is not None:
            capabilities["prompts"] = {"listChanged": False}
        return capabilities

    def _register_handlers(self) -> None:
        dispatcher = self._dispatcher
        dispatcher.on_request("initialize", self._handle_initialize)
        dispatcher.on_request("ping", lambda params, message: {})
        for method in INITIALIZED_NOTIFICATIONS:
            dispatcher.on_notification(method, self._handle_initialized)

        routes: dict[str, Callable[[dict[str, Any]], Any]] = {
            "tools/list": self._tools_list,
            "tools/call": self._tools_call,
            "resources/list": self._resources_list,
            "resources/read": self._resources_read,
            "resources/templates/list": self._resource_templates_list,
            "prompts/list": self._prompts_list,
            "prompts/get": self._prompts_get,
        }
        for method, route in routes.items():
            dispatcher.on_request(method, self._gated(method, route))

    def _gated(
        self, method: str, route: Callable[[dict[str, Any]], Any]
    ) -> Callable[[Any, dict[str, Any]], Any]:
        def handler(params: Any, message: dict[str, Any]) -> Any:
            self._session.require_initialized(method)
            return route(_as_object(params))

        return handler

    # -- MessageHandler ------------------------------------------------------

    def handle(self, message: Any, transport: Transport | None = None) -> Any:
        """Process a message or batch.

        Args:
            message: Decoded message dict, or a list for a batch.
            transport: Transport the message arrived on.

        Returns:
            Response dict, list of responses for a batch, or None when
            nothing needs to be sent back.
        """
        if isinstance(message, list):
            if not message:
                return make_error(None, INVALID_REQUEST, "Invalid Request", "Empty batch")
            responses = [
                response
                for response in (self._handle_single(item) for item in message)
                if response is not None
            ]
            return responses or None
        return self._handle_single(message)

    def _handle_single(self, message: Any) -> dict[str, Any] | None:
        try:
            validate_envelope(message)
        except JsonRpcError as e:
            return make_error(extract_id(message), e.code, "Invalid Request", e.message)

        try:
            if is_request(message):
                return self._dispatcher.handle_request(message)
            if is_notification(message):
                self._dispatcher.handle_notification(message)
                return None
            if is_response(message):
                self._dispatcher.handle_response(message)
                return None
        except Exception as e:
            logger.exception("Unexpected error processing message")
            data = {"message": str(e)} if self.debug else None
            return make_error(extract_id(message), INTERNAL_ERROR, "Internal error", data)

        return make_error(extract_id(message), INVALID_REQUEST, "Invalid Request")

    def handle_error(self, error: BaseException, transport: Transport) -> None:
        logger.error("Transport error on %s: %s", transport.transport_type, error)

    def on_connect(self, transport: Transport) -> None:
        logger.info("Client connected via %s", transport.transport_type)

    def on_disconnect(self, transport: Transport) -> None:
        logger.info("Client disconnected from %s, resetting session", transport.transport_type)
        self._session.reset()

    def can_handle(self, message: Any) -> bool:
        return isinstance(message, dict | list)

    def supported_methods(self) -> list[str]:
        return self._dispatcher.request_methods()

    # -- lifecycle -----------------------------------------------------------

    def _handle_initialize(self, params: Any, message: dict[str, Any]) -> dict[str, Any]:
        params = _as_object(params)
        client_capabilities = params.get("capabilities") or {}
        if not isinstance(client_capabilities, dict):
            raise InvalidParams("capabilities must be an object")

        negotiated = self._negotiator.negotiate(client_capabilities, self._server_capabilities)
        version = self._session.begin(params, negotiated)
        client = self._session.client_info or {}
        logger.info(
            "Initialize from %s %s (protocol %s)",
            client.get("name", "unknown"),
            client.get("version", ""),
            version,
        )
        return {
            "protocolVersion": version,
            "capabilities": negotiated,
            "serverInfo": self._server_info,
        }

    def _handle_initialized(self, params: Any, message: dict[str, Any]) -> None:
        if self._session.state != SessionState.INITIALIZING:
            logger.warning("initialized received in state %s", self._session.state.value)
        self._session.complete()

    # -- registry routes -------------------------------------------------------

    @staticmethod
    def _require_name(params: dict[str, Any], key: str = "name") -> str:
        value = params.get(key)
        if not isinstance(value, str) or not value:
            raise InvalidParams(f"Missing required parameter: {key}")
        return value

    @staticmethod
    def _arguments(params: dict[str, Any]) -> dict[str, Any]:
        arguments = params.get("arguments")
        if arguments is None:
            return {}
        if not isinstance(arguments, dict):
            raise InvalidParams("arguments must be an object")
        return arguments

    @staticmethod
    def _invoke(registry: Registry | None, kind: str, name: str, arguments: dict[str, Any]) -> Any:
        if registry is None:
            raise InvalidParams(f"Unknown {kind}: {name}")
        try:
            return registry.invoke(name, arguments)
        except ComponentNotFound as e:
            raise InvalidParams(f"Unknown {kind}: {name}") from e

    def _tools_list(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"tools": self._tools.list() if self._tools else []}

    def _tools_call(self, params: dict[str, Any]) -> dict[str, Any]:
        name = self._require_name(params)
        result = self._invoke(self._tools, "tool", name, self._arguments(params))
        if isinstance(result, dict):
            return result
        return {"content": [{"type": "text", "text": _text_content(result)}], "isError": False}

    def _resources_list(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"resources": self._resources.list() if self._resources else []}

    def _resources_read(self, params: dict[str, Any]) -> dict[str, Any]:
        uri = self._require_name(params, "uri")
        result = self._invoke(self._resources, "resource", uri, self._arguments(params))
        if isinstance(result, dict):
            return result
        return {"contents": [{"uri": uri, "mimeType": "text/plain", "text": _text_content(result)}]}

    def _resource_templates_list(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"resourceTemplates": self._resources.templates() if self._resources else []}

    def _prompts_list(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"prompts": self._prompts.list() if self._prompts else []}

    def _prompts_get(self, params: dict[str, Any]) -> dict[str, Any]:
        name = self._require_name(params)
        result = self._invoke(self._prompts, "prompt", name, self._arguments(params))
        if isinstance(result, dict):
            return result
        return {
            "messages": [
                {"role": "user", "content": {"type": "text", "text": _text_content(result)}}
            ]
        }

    # -- accessors -------------------------------------------------------------

    @property
    def session(self) -> ProtocolSession:
        return self._session

    @property
    def dispatcher(self) -> JsonRpcDispatcher:
        return self._dispatcher

    @property
    def initialized(self) -> bool:
        return self._session.initialized

    @property
    def server_info(self) -> dict[str, Any]:
        return dict(self._server_info)

    @property
    def server_capabilities(self) -> dict[str, Any]:
        return dict(self._server_capabilities)

    def create_request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        callback: ResponseCallback | None = None,
    ) -> dict[str, Any]:
        """Build a server-to-client request whose response reaches ``callback``."""
        return self._dispatcher.create_request(method, params, callback)
