"""MCP session lifecycle.

Tracks the initialize/initialized handshake for one client connection.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from mcp_engine.errors import InvalidRequest, ServerNotInitialized

# Supported MCP protocol versions (oldest first)
SUPPORTED_PROTOCOL_VERSIONS = ["2024-11-05", "2025-03-26", "2025-06-18"]
# Version offered when the client asks for one we do not support
LATEST_PROTOCOL_VERSION = SUPPORTED_PROTOCOL_VERSIONS[-1]


class SessionState(Enum):
    """MCP session states."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    INITIALIZED = "initialized"


def negotiate_version(requested: Any) -> str:
    """Pick the protocol version to answer with.

    Args:
        requested: Version sent by the client.

    Returns:
        The requested version if supported, otherwise the latest one.
    """
    if requested in SUPPORTED_PROTOCOL_VERSIONS:
        return requested
    return LATEST_PROTOCOL_VERSION


@dataclass
class ProtocolSession:
    """Handshake state for one connection."""

    state: SessionState = SessionState.UNINITIALIZED
    protocol_version: str | None = None
    client_info: dict[str, Any] | None = None
    client_capabilities: dict[str, Any] = field(default_factory=dict)
    negotiated_capabilities: dict[str, Any] = field(default_factory=dict)

    @property
    def initialized(self) -> bool:
        """Whether the client completed the handshake."""
        return self.state == SessionState.INITIALIZED

    def begin(self, params: dict[str, Any], capabilities: dict[str, Any]) -> str:
        """Record an initialize request.

        A repeated initialize restarts the handshake.

        Args:
            params: Initialize request parameters.
            capabilities: Capabilities negotiated for this client.

        Returns:
            Protocol version to answer with.

        Raises:
            InvalidRequest: If clientInfo or capabilities are malformed.
        """
        client_info = params.get("clientInfo")
        if client_info is not None and not isinstance(client_info, dict):
            raise InvalidRequest("clientInfo must be an object")
        client_caps = params.get("capabilities", {})
        if not isinstance(client_caps, dict):
            raise InvalidRequest("capabilities must be an object")

        self.protocol_version = negotiate_version(params.get("protocolVersion"))
        self.client_info = client_info
        self.client_capabilities = client_caps
        self.negotiated_capabilities = capabilities
        self.state = SessionState.INITIALIZING
        return self.protocol_version

    def complete(self) -> None:
        """Mark the handshake finished."""
        self.state = SessionState.INITIALIZED

    def require_initialized(self, method: str) -> None:
        """Assert the handshake finished before serving ``method``.

        Raises:
            ServerNotInitialized: If the session is not initialized.
        """
        if not self.initialized:
            raise ServerNotInitialized(
                "Server not initialized", data={"method": method, "state": self.state.value}
            )

    def reset(self) -> None:
        """Forget the client and return to the uninitialized state."""
        self.state = SessionState.UNINITIALIZED
        self.protocol_version = None
        self.client_info = None
        self.client_capabilities = {}
        self.negotiated_capabilities = {}

    def to_dict(self) -> dict[str, Any]:
        """Describe the session."""
        return {
            "state": self.state.value,
            "initialized": self.initialized,
            "protocol_version": self.protocol_version,
            "client_info": self.client_info,
            "capabilities": self.negotiated_capabilities,
        }
