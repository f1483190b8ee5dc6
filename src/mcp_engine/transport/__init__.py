"""MCP transports: stream handling, framing, drivers, pooling and management."""

from mcp_engine.transport.base import MessageHandler, Transport
from mcp_engine.transport.framing import MessageFramer
from mcp_engine.transport.http import HttpTransport
from mcp_engine.transport.manager import PooledTransportManager, TransportManager
from mcp_engine.transport.pool import ConnectionPool
from mcp_engine.transport.stdio import StdioTransport
from mcp_engine.transport.stream import StreamHandler

__all__ = [
    "ConnectionPool",
    "HttpTransport",
    "MessageFramer",
    "MessageHandler",
    "PooledTransportManager",
    "StdioTransport",
    "StreamHandler",
    "Transport",
    "TransportManager",
]
