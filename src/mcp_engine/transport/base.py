"""Transport base class and message handler interface.

A Transport moves JSON-RPC messages over one medium. Subclasses implement
the ``_do_*`` hooks; the base class owns configuration, the connection
state machine, statistics and error reporting.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any

from mcp_engine.config import deep_merge
from mcp_engine.errors import ConfigurationError, TransportClosed, TransportException

logger = logging.getLogger(__name__)

BASE_DEFAULTS: dict[str, Any] = {
    "timeout": 30,
    "debug": False,
    "retry_attempts": 3,
    "retry_delay": 1.0,
}


class MessageHandler(ABC):
    """Receives messages and lifecycle events from a transport."""

    @abstractmethod
    def handle(self, message: Any, transport: Transport) -> Any:
        """Process one message.

        Args:
            message: Decoded message (dict) or batch (list).
            transport: Transport the message arrived on.

        Returns:
            Response to send back, or None.
        """
        pass

    def handle_error(self, error: BaseException, transport: Transport) -> None:
        """Called when the transport fails."""
        logger.error("%s transport error: %s", transport.transport_type, error)

    def on_connect(self, transport: Transport) -> None:
        """Called after the transport starts."""
        pass

    def on_disconnect(self, transport: Transport) -> None:
        """Called while the transport stops."""
        pass

    def can_handle(self, message: Any) -> bool:
        """Check whether this handler accepts the message."""
        return True

    def supported_methods(self) -> list[str]:
        """List the methods this handler answers."""
        return []


class Transport(ABC):
    """Base class for all transports.

    Lifecycle: created, ``initialize()``d with configuration, then
    ``start()``ed and ``stop()``ped any number of times. Both start and stop
    are idempotent.
    """

    transport_type = "base"
    DRIVER_DEFAULTS: dict[str, Any] = {}

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        handler: MessageHandler | None = None,
    ) -> None:
        """Initialize the transport.

        Args:
            config: Optional configuration; when given, initialize() runs now.
            handler: Message handler to bind.
        """
        self._lock = threading.Lock()
        self._handler = handler
        self._config: Mapping[str, Any] = MappingProxyType({})
        self._initialized = False
        self._connected = False
        self._running = False
        self._connected_at: float | None = None
        self._stats = self._empty_stats()
        if config is not None:
            self.initialize(config)

    @staticmethod
    def _empty_stats() -> dict[str, Any]:
        return {
            "messages_sent": 0,
            "messages_received": 0,
            "bytes_sent": 0,
            "bytes_received": 0,
            "errors_count": 0,
            "last_activity": None,
        }

    # -- configuration -----------------------------------------------------

    def initialize(self, config: dict[str, Any] | None = None) -> None:
        """Merge and validate configuration, then reset state.

        Precedence: base defaults, then driver defaults, then ``config``.

        Raises:
            ConfigurationError: If a setting is out of range.
        """
        merged = deep_merge(deep_merge(BASE_DEFAULTS, self.DRIVER_DEFAULTS), config)
        self._validate_config(merged)
        self._config = MappingProxyType(merged)
        with self._lock:
            self._stats = self._empty_stats()
        self._connected = False
        self._running = False
        self._connected_at = None
        self._initialized = True
        self._on_initialize()

    def _validate_config(self, config: dict[str, Any]) -> None:
        timeout = config.get("timeout")
        if not isinstance(timeout, int | float) or isinstance(timeout, bool) or timeout <= 0:
            raise ConfigurationError(
                f"timeout must be a positive number, got {timeout!r}",
                transport_type=self.transport_type,
            )
        attempts = config.get("retry_attempts")
        if not isinstance(attempts, int) or isinstance(attempts, bool) or attempts < 0:
            raise ConfigurationError(
                f"retry_attempts must be a non-negative integer, got {attempts!r}",
                transport_type=self.transport_type,
            )
        delay = config.get("retry_delay")
        if not isinstance(delay, int | float) or isinstance(delay, bool) or delay < 0:
            raise ConfigurationError(
                f"retry_delay must be a non-negative number, got {delay!r}",
                transport_type=self.transport_type,
            )

    def _on_initialize(self) -> None:
        """Hook for drivers to build resources from the final config."""
        pass

    @property
    def config(self) -> Mapping[str, Any]:
        """Read-only view of the effective configuration."""
        return self._config

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # -- handler -----------------------------------------------------------

    @property
    def handler(self) -> MessageHandler | None:
        return self._handler

    def set_handler(self, handler: MessageHandler | None) -> None:
        """Bind the handler that receives messages and lifecycle events."""
        self._handler = handler

    # -- lifecycle ---------------------------------------------------------

    def is_connected(self) -> bool:
        return self._connected

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def connected_at(self) -> float | None:
        return self._connected_at

    def start(self) -> None:
        """Start the transport. Does nothing if already connected.

        Raises:
            TransportException: If the driver fails to start.
        """
        if self._connected:
            return
        if not self._initialized:
            self.initialize()

        try:
            self._do_start()
            self._connected = True
            self._running = True
            self._connected_at = time.time()
            if self._handler is not None:
                self._handler.on_connect(self)
        except Exception as e:
            self._connected = False
            self._running = False
            self._connected_at = None
            self._report_error(e)
            if isinstance(e, TransportException):
                raise
            raise TransportException(
                f"Failed to start {self.transport_type} transport: {e}",
                transport_type=self.transport_type,
                cause=e,
            ) from e

        logger.info("%s transport started", self.transport_type)

    def stop(self) -> None:
        """Stop the transport. Does nothing if already stopped.

        Connection state is always cleared, even when the driver or the
        handler raises during shutdown.
        """
        if not self._connected and not self._running:
            return

        try:
            self._do_stop()
        except Exception as e:
            self._increment("errors_count")
            logger.error("Error stopping %s transport: %s", self.transport_type, e)
        finally:
            self._connected = False
            self._running = False
            self._connected_at = None

        if self._handler is not None:
            try:
                self._handler.on_disconnect(self)
            except Exception as e:
                self._increment("errors_count")
                logger.error("Disconnect handler failed for %s transport: %s", self.transport_type, e)

        logger.info("%s transport stopped", self.transport_type)

    def reconnect(self) -> None:
        """Stop and start the transport again."""
        self.stop()
        self.start()

    # -- messaging ---------------------------------------------------------

    def send(self, message: Any) -> None:
        """Send one message.

        Raises:
            TransportClosed: If the transport is not connected.
            TransportException: If the driver fails to send.
        """
        if not self._connected:
            raise TransportClosed(
                f"Cannot send on a closed {self.transport_type} transport",
                transport_type=self.transport_type,
            )

        try:
            nbytes = self._do_send(message)
        except TransportException as e:
            self._report_error(e)
            raise
        except Exception as e:
            self._report_error(e)
            raise TransportException(
                f"Failed to send message: {e}",
                transport_type=self.transport_type,
                cause=e,
            ) from e

        with self._lock:
            self._stats["messages_sent"] += 1
            self._stats["bytes_sent"] += nbytes or 0
            self._stats["last_activity"] = time.time()

    def receive(self) -> Any | None:
        """Receive one message if available.

        Returns:
            Decoded message, or None when nothing is available or the
            transport is not connected.
        """
        if not self._connected:
            return None

        try:
            message = self._do_receive()
        except TransportException as e:
            self._report_error(e)
            raise
        except Exception as e:
            self._report_error(e)
            raise TransportException(
                f"Failed to receive message: {e}",
                transport_type=self.transport_type,
                cause=e,
            ) from e

        if message is not None:
            with self._lock:
                self._stats["messages_received"] += 1
                self._stats["last_activity"] = time.time()
        return message

    def send_with_retry(self, message: Any) -> None:
        """Send, retrying with linear backoff.

        Sleeps ``retry_delay * attempt`` seconds between attempts and makes
        at most ``retry_attempts`` attempts (at least one).

        Raises:
            TransportException: The last failure once attempts run out.
        """
        attempts = max(1, int(self._config.get("retry_attempts", 1)))
        delay = self._config.get("retry_delay", 0)

        for attempt in range(1, attempts + 1):
            try:
                self.send(message)
                return
            except TransportException as e:
                if attempt == attempts:
                    raise
                logger.warning(
                    "Send attempt %d/%d on %s failed: %s",
                    attempt,
                    attempts,
                    self.transport_type,
                    e,
                )
                time.sleep(delay * attempt)

    # -- statistics and health ---------------------------------------------

    def _increment(self, key: str, amount: int = 1) -> None:
        with self._lock:
            self._stats[key] += amount

    def _report_error(self, error: BaseException) -> None:
        self._increment("errors_count")
        logger.error("%s transport error: %s", self.transport_type, error)
        if self._handler is not None:
            try:
                self._handler.handle_error(error, self)
            except Exception as handler_error:
                logger.error("Error handler failed: %s", handler_error)

    def uptime(self) -> float:
        """Seconds since the transport connected, or 0 if stopped."""
        if self._connected_at is None:
            return 0.0
        return time.time() - self._connected_at

    def stats(self) -> dict[str, Any]:
        """Snapshot of message and error counters."""
        with self._lock:
            snapshot = dict(self._stats)
        snapshot["uptime"] = self.uptime()
        snapshot["connected"] = self._connected
        return snapshot

    def connection_info(self) -> dict[str, Any]:
        """Describe the current connection."""
        return {
            "transport_type": self.transport_type,
            "connected": self._connected,
            "running": self._running,
            "connected_at": self._connected_at,
            "uptime": self.uptime(),
            "stats": self.stats(),
        }

    def health_check(self) -> dict[str, Any]:
        """Check connectivity, configuration and driver-specific health.

        Returns:
            Dictionary with ``healthy``, ``checks`` and ``errors``.
        """
        checks: dict[str, Any] = {
            "connected": self._connected,
            "configuration": self._initialized,
        }
        errors: list[str] = []
        if not self._connected:
            errors.append("Transport is not connected")
        if not self._initialized:
            errors.append("Transport is not initialized")

        try:
            driver_checks = self._driver_health_checks()
        except Exception as e:
            driver_checks = {"driver": False}
            errors.append(f"Driver health check failed: {e}")
        checks.update(driver_checks)
        for name, passed in driver_checks.items():
            if passed is False and f"{name} check failed" not in errors:
                errors.append(f"{name} check failed")

        return {
            "healthy": not errors,
            "transport_type": self.transport_type,
            "checks": checks,
            "errors": errors,
            "timestamp": time.time(),
        }

    def _driver_health_checks(self) -> dict[str, bool]:
        """Extra checks contributed by the driver."""
        return {}

    # -- driver hooks ------------------------------------------------------

    @abstractmethod
    def _do_start(self) -> None:
        pass

    @abstractmethod
    def _do_stop(self) -> None:
        pass

    @abstractmethod
    def _do_send(self, message: Any) -> int:
        """Send a message and return the number of bytes written."""
        pass

    @abstractmethod
    def _do_receive(self) -> Any | None:
        pass
