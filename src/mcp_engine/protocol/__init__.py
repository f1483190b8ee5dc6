"""MCP protocol layer: JSON-RPC, lifecycle, dispatch and notifications."""

from mcp_engine.protocol.capabilities import CapabilityNegotiator
from mcp_engine.protocol.dispatcher import JsonRpcDispatcher
from mcp_engine.protocol.jsonrpc import (
    JSONRPC_VERSION,
    decode,
    encode,
    make_error,
    make_notification,
    make_request,
    make_response,
)
from mcp_engine.protocol.lifecycle import (
    LATEST_PROTOCOL_VERSION,
    SUPPORTED_PROTOCOL_VERSIONS,
    ProtocolSession,
    SessionState,
)
from mcp_engine.protocol.notifications import DeliveryStatus, NotificationHandler, Subscription
from mcp_engine.protocol.processor import MessageProcessor
from mcp_engine.protocol.scheduler import Scheduler, SyncScheduler, ThreadPoolScheduler

__all__ = [
    "CapabilityNegotiator",
    "DeliveryStatus",
    "JSONRPC_VERSION",
    "JsonRpcDispatcher",
    "LATEST_PROTOCOL_VERSION",
    "MessageProcessor",
    "NotificationHandler",
    "ProtocolSession",
    "SUPPORTED_PROTOCOL_VERSIONS",
    "Scheduler",
    "SessionState",
    "Subscription",
    "SyncScheduler",
    "ThreadPoolScheduler",
    "decode",
    "encode",
    "make_error",
    "make_notification",
    "make_request",
    "make_response",
]
