"""Exception hierarchy for the MCP engine.

Every exception carries a JSON-RPC error code so it can be turned into an
error object at the protocol boundary with ``to_error()``.
"""

from __future__ import annotations

import time
from typing import Any

# Standard JSON-RPC 2.0 error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

# MCP / implementation-defined codes
SERVER_ERROR = -32000
SERVER_NOT_INITIALIZED = -32002


class McpError(Exception):
    """Base class for all engine errors."""

    code: int = INTERNAL_ERROR

    def __init__(self, message: str, code: int | None = None, data: Any | None = None) -> None:
        """Initialize the error.

        Args:
            message: Human-readable error message.
            code: Optional JSON-RPC code overriding the class default.
            data: Optional additional error data.
        """
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.data = data

    def to_error(self) -> dict[str, Any]:
        """Convert to a JSON-RPC error object.

        Returns:
            Dictionary with code, message and optional data.
        """
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error


class JsonRpcError(McpError):
    """JSON-RPC error raised while processing a message."""

    pass


class ParseError(JsonRpcError):
    """Raised when a payload is not valid JSON."""

    code = PARSE_ERROR


class InvalidRequest(JsonRpcError):
    """Raised when a payload is not a valid JSON-RPC envelope."""

    code = INVALID_REQUEST


class MethodNotFound(JsonRpcError):
    """Raised when no handler exists for a method."""

    code = METHOD_NOT_FOUND


class InvalidParams(JsonRpcError):
    """Raised when method parameters are missing or malformed."""

    code = INVALID_PARAMS


class InternalError(JsonRpcError):
    """Raised for unexpected server-side failures."""

    code = INTERNAL_ERROR


class ServerNotInitialized(JsonRpcError):
    """Raised when a capability method is called before the handshake completes."""

    code = SERVER_NOT_INITIALIZED


class TransportException(McpError):
    """Raised when a transport operation fails.

    Carries the transport type and the time of the failure so callers can
    report which driver failed and when.
    """

    def __init__(
        self,
        message: str,
        transport_type: str | None = None,
        cause: BaseException | None = None,
        data: Any | None = None,
    ) -> None:
        """Initialize the transport error.

        Args:
            message: Human-readable error message.
            transport_type: Driver name, e.g. "stdio" or "http".
            cause: Underlying exception, if any.
            data: Optional additional error data.
        """
        super().__init__(message, data=data)
        self.transport_type = transport_type
        self.cause = cause
        self.timestamp = time.time()

    def context(self) -> dict[str, Any]:
        """Return the diagnostic context of this failure."""
        return {
            "transport_type": self.transport_type,
            "timestamp": self.timestamp,
            "error": self.message,
            "cause": repr(self.cause) if self.cause is not None else None,
        }


class ConfigurationError(TransportException):
    """Raised when transport or pool configuration is invalid."""

    pass


class TransportClosed(TransportException):
    """Raised when sending on a transport that is not connected."""

    pass


class BufferOverflow(TransportException):
    """Raised when a read buffer grows past its configured bound."""

    pass


class MessageTooLarge(TransportException):
    """Raised when a message exceeds the configured maximum size."""

    pass


class WriteFailure(TransportException):
    """Raised when a write still fails after all retry attempts."""

    pass
