"""Audit logging for HTTP message traffic.

Append-only JSON Lines log of every JSON-RPC call received over HTTP,
with secrets redacted from parameters.
"""

from __future__ import annotations

import json
import re
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

# Patterns for sensitive parameter keys
SENSITIVE_PATTERNS = [
    re.compile(r"password", re.IGNORECASE),
    re.compile(r"secret", re.IGNORECASE),
    re.compile(r"api[_-]?key", re.IGNORECASE),
    re.compile(r"token", re.IGNORECASE),
    re.compile(r"auth", re.IGNORECASE),
    re.compile(r"credential", re.IGNORECASE),
    re.compile(r"private[_-]?key", re.IGNORECASE),
]

REDACTED = "[REDACTED]"


def is_sensitive_key(key: str) -> bool:
    """Check if a key name indicates sensitive data."""
    return any(pattern.search(key) for pattern in SENSITIVE_PATTERNS)


def redact(value: Any) -> Any:
    """Return a copy of ``value`` with sensitive keys redacted at any depth."""
    if isinstance(value, dict):
        return {
            key: REDACTED if is_sensitive_key(str(key)) else redact(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [redact(item) for item in value]
    return value


def utc_timestamp() -> str:
    """Get current UTC timestamp in ISO 8601 format."""
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


class AuditLogger:
    """Append-only audit logger with JSON Lines format.

    The log file is flushed after each write.
    """

    def __init__(self, log_path: Path) -> None:
        """Initialize the audit logger.

        Args:
            log_path: Path to the audit log file.
        """
        self._log_path = log_path
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(log_path, "a", encoding="utf-8")  # noqa: SIM115
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._log_path

    def _write_line(self, data: dict[str, Any]) -> None:
        line = json.dumps(data, default=str)
        with self._lock:
            self._file.write(line + "\n")
            self._file.flush()

    def log_request(
        self,
        request_id: str,
        methods: list[str],
        params: list[Any],
        client: str | None = None,
    ) -> None:
        """Log an incoming HTTP message.

        Args:
            request_id: Identifier correlating request and response entries.
            methods: JSON-RPC methods in the body, one per batch item.
            params: Parameters of each item (sanitized before writing).
            client: Client address.
        """
        self._write_line(
            {
                "type": "request",
                "timestamp": utc_timestamp(),
                "request_id": request_id,
                "client": client,
                "methods": methods,
                "params": redact(params),
            }
        )

    def log_response(self, request_id: str, status_code: int, duration_ms: float) -> None:
        """Log the HTTP response for a request.

        Args:
            request_id: Request identifier to correlate with.
            status_code: HTTP status returned.
            duration_ms: Handling time in milliseconds.
        """
        self._write_line(
            {
                "type": "response",
                "timestamp": utc_timestamp(),
                "request_id": request_id,
                "status_code": status_code,
                "duration_ms": duration_ms,
            }
        )

    def log_event(self, event_type: str, details: dict[str, Any]) -> None:
        """Log a transport event such as a rate-limit rejection."""
        self._write_line(
            {
                "type": "event",
                "timestamp": utc_timestamp(),
                "event_type": event_type,
                "details": redact(details),
            }
        )

    def close(self) -> None:
        """Close the log file."""
        if self._file and not self._file.closed:
            self._file.close()

    def __enter__(self) -> AuditLogger:
        """Context manager entry."""
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Context manager exit."""
        self.close()
