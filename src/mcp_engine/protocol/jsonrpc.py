"""JSON-RPC 2.0 message helpers.

Messages travel through the engine as plain dictionaries. This module
classifies them, validates their envelope and builds new ones.
"""

from __future__ import annotations

import json
from typing import Any

from jsonschema import Draft202012Validator

from mcp_engine.errors import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    SERVER_NOT_INITIALIZED,
    InvalidRequest,
    ParseError,
)

__all__ = [
    "INTERNAL_ERROR",
    "INVALID_PARAMS",
    "INVALID_REQUEST",
    "METHOD_NOT_FOUND",
    "PARSE_ERROR",
    "SERVER_NOT_INITIALIZED",
    "ENVELOPE_SCHEMA",
    "decode",
    "encode",
    "extract_id",
    "is_notification",
    "is_request",
    "is_response",
    "make_error",
    "make_notification",
    "make_request",
    "make_response",
    "validate_envelope",
]

JSONRPC_VERSION = "2.0"

ENVELOPE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["jsonrpc"],
    "properties": {
        "jsonrpc": {"const": JSONRPC_VERSION},
        "method": {"type": "string", "minLength": 1},
        "params": {"type": ["object", "array"]},
        "id": {"type": ["string", "integer", "null"]},
        "error": {
            "type": "object",
            "required": ["code", "message"],
            "properties": {
                "code": {"type": "integer"},
                "message": {"type": "string"},
            },
        },
    },
}

_validator = Draft202012Validator(ENVELOPE_SCHEMA)


def is_request(message: Any) -> bool:
    """Check whether a message is a request (method and id)."""
    return isinstance(message, dict) and "method" in message and "id" in message


def is_notification(message: Any) -> bool:
    """Check whether a message is a notification (method, no id)."""
    return isinstance(message, dict) and "method" in message and "id" not in message


def is_response(message: Any) -> bool:
    """Check whether a message is a response (result or error)."""
    return (
        isinstance(message, dict)
        and "method" not in message
        and ("result" in message or "error" in message)
    )


def extract_id(message: Any) -> int | str | None:
    """Recover the id of a possibly malformed message.

    Returns:
        The id if it is a string or integer, otherwise None.
    """
    if not isinstance(message, dict):
        return None
    msg_id = message.get("id")
    if isinstance(msg_id, bool) or not isinstance(msg_id, int | str):
        return None
    return msg_id


def validate_envelope(message: Any) -> dict[str, Any]:
    """Validate the structure of a JSON-RPC 2.0 message.

    Args:
        message: Decoded JSON value.

    Returns:
        The same message, if valid.

    Raises:
        InvalidRequest: If the envelope is malformed.
    """
    if not isinstance(message, dict):
        raise InvalidRequest("Invalid Request: message must be an object")

    errors = sorted(_validator.iter_errors(message), key=lambda e: list(e.path))
    if errors:
        error = errors[0]
        path = ".".join(str(p) for p in error.path) if error.path else "root"
        raise InvalidRequest(f"Invalid Request: '{path}' {error.message}")

    kinds = [key for key in ("method", "result", "error") if key in message]
    if len(kinds) != 1:
        raise InvalidRequest("Invalid Request: exactly one of method, result or error is required")
    if kinds[0] != "method" and "id" not in message:
        raise InvalidRequest("Invalid Request: response must include an id")

    return message


def decode(raw: str | bytes) -> Any:
    """Decode a JSON payload.

    Raises:
        ParseError: If the payload is not valid UTF-8 JSON.
    """
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ParseError(f"Parse error: {e}") from e


def encode(message: Any) -> bytes:
    """Serialize a message to compact UTF-8 JSON bytes."""
    return json.dumps(message, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def make_request(method: str, params: Any | None = None, msg_id: int | str = 1) -> dict[str, Any]:
    """Build a request message."""
    message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
    if params is not None:
        message["params"] = params
    message["id"] = msg_id
    return message


def make_notification(method: str, params: Any | None = None) -> dict[str, Any]:
    """Build a notification message."""
    message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
    if params is not None:
        message["params"] = params
    return message


def make_response(msg_id: int | str | None, result: Any) -> dict[str, Any]:
    """Build a successful response."""
    return {"jsonrpc": JSONRPC_VERSION, "result": result, "id": msg_id}


def make_error(
    msg_id: int | str | None,
    code: int,
    message: str,
    data: Any | None = None,
) -> dict[str, Any]:
    """Build an error response.

    Args:
        msg_id: Request ID (or None when it could not be recovered).
        code: Error code.
        message: Error message.
        data: Optional error data.

    Returns:
        Error response dictionary.
    """
    error: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": JSONRPC_VERSION, "error": error, "id": msg_id}
