"""Transport driver registry and lifecycle management.

``TransportManager`` builds transports from named driver factories and
keeps memoized driver instances. ``PooledTransportManager`` additionally
reuses started transports through per-type connection pools.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from mcp_engine.config import EngineConfig, deep_merge
from mcp_engine.errors import TransportException
from mcp_engine.transport.base import MessageHandler, Transport
from mcp_engine.transport.http import HttpTransport
from mcp_engine.transport.pool import ConnectionPool
from mcp_engine.transport.stdio import StdioTransport

logger = logging.getLogger(__name__)

TransportFactory = Callable[[dict[str, Any]], Transport]

# Config keys that distinguish one pooled connection from another
CONNECTION_KEY_FIELDS = ("auth", "host", "port", "timeout")


class TransportManager:
    """Creates, memoizes and supervises transports by driver name."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        handler: MessageHandler | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            config: Engine configuration supplying per-driver settings.
            handler: Handler bound to every transport the manager creates.
        """
        self._config = config or EngineConfig()
        self._handler = handler
        self._factories: dict[str, TransportFactory] = {}
        self._drivers: dict[str, Transport] = {}
        self._registered: dict[str, Transport] = {}
        self._default_driver = self._config.default_transport
        self._lock = threading.RLock()
        self._register_default_drivers()

    def _register_default_drivers(self) -> None:
        self.extend("stdio", lambda config: StdioTransport(config=config))
        self.extend("http", lambda config: HttpTransport(config=config))

    # -- drivers -----------------------------------------------------------------

    def extend(self, name: str, factory: TransportFactory) -> None:
        """Register (or replace) a driver factory."""
        with self._lock:
            self._factories[name] = factory

    def has_driver(self, name: str) -> bool:
        return name in self._factories

    def drivers(self) -> list[str]:
        return sorted(self._factories)

    @property
    def default_driver(self) -> str:
        return self._default_driver

    @default_driver.setter
    def default_driver(self, name: str) -> None:
        if not self.has_driver(name):
            raise ValueError(f"Unsupported transport driver: {name}")
        self._default_driver = name

    def driver_config(self, name: str) -> dict[str, Any]:
        """Configured settings for a driver."""
        return self._config.transport_config(name)

    def create_transport(self, transport_type: str, config: dict[str, Any] | None = None) -> Transport:
        """Build a new transport instance.

        Args:
            transport_type: Driver name.
            config: Overrides merged over the driver's configured settings.

        Raises:
            TransportException: If the driver is unknown or its factory fails.
        """
        factory = self._factories.get(transport_type)
        if factory is None:
            raise TransportException(
                f"Unsupported transport driver: {transport_type}", transport_type=transport_type
            )

        merged = deep_merge(self.driver_config(transport_type), config)
        try:
            transport = factory(merged)
        except TransportException:
            raise
        except Exception as e:
            raise TransportException(
                f"Failed to create {transport_type} transport: {e}",
                transport_type=transport_type,
                cause=e,
            ) from e

        if not isinstance(transport, Transport):
            raise TransportException(
                f"Driver '{transport_type}' returned {type(transport).__name__}, not a Transport",
                transport_type=transport_type,
            )
        if self._handler is not None and transport.handler is None:
            transport.set_handler(self._handler)
        logger.debug("Created %s transport", transport_type)
        return transport

    def driver(self, name: str | None = None) -> Transport:
        """Return the memoized transport for a driver, creating it on first use."""
        name = name or self._default_driver
        with self._lock:
            if name not in self._drivers:
                self._drivers[name] = self.create_transport(name)
            return self._drivers[name]

    def default_transport(self) -> Transport:
        return self.driver()

    def purge(self, name: str | None = None) -> None:
        """Stop and forget the memoized instance of a driver."""
        name = name or self._default_driver
        with self._lock:
            transport = self._drivers.pop(name, None)
        if transport is not None:
            transport.stop()

    def purge_all(self) -> None:
        """Stop and forget every memoized driver instance."""
        with self._lock:
            names = list(self._drivers)
        for name in names:
            self.purge(name)

    def refresh(self, name: str | None = None) -> Transport:
        """Replace a driver instance with a fresh one."""
        self.purge(name)
        return self.driver(name)

    # -- named transports ----------------------------------------------------------

    def register_transport(self, name: str, transport: Transport) -> None:
        """Track an externally created transport under ``name``."""
        with self._lock:
            self._registered[name] = transport

    def remove_transport(self, name: str) -> None:
        """Stop and forget a registered transport."""
        with self._lock:
            transport = self._registered.pop(name, None)
        if transport is not None:
            transport.stop()

    def transport(self, name: str) -> Transport:
        """Look up a registered transport or driver instance by name.

        Raises:
            TransportException: If no such transport exists.
        """
        transports = self.active_transports()
        if name not in transports:
            raise TransportException(f"Transport not found: {name}", transport_type=name)
        return transports[name]

    def active_transports(self) -> dict[str, Transport]:
        with self._lock:
            return {**self._drivers, **self._registered}

    def active_transport_count(self) -> int:
        return len(self.active_transports())

    def start_all(self) -> None:
        """Start every known transport, logging failures."""
        for name, transport in self.active_transports().items():
            try:
                transport.start()
            except TransportException as e:
                logger.error("Failed to start transport %s: %s", name, e)

    def stop_all(self) -> None:
        """Stop every known transport, logging failures."""
        for name, transport in self.active_transports().items():
            try:
                transport.stop()
            except Exception as e:
                logger.error("Failed to stop transport %s: %s", name, e)

    def transport_health(self) -> dict[str, dict[str, Any]]:
        """Health report for every known transport."""
        health = {}
        for name, transport in self.active_transports().items():
            try:
                health[name] = transport.health_check()
            except Exception as e:
                health[name] = {"healthy": False, "errors": [str(e)]}
        return health

    def cleanup(self) -> None:
        """Stop and forget everything."""
        self.stop_all()
        with self._lock:
            self._drivers.clear()
            self._registered.clear()


class PooledTransportManager(TransportManager):
    """TransportManager that reuses started transports from connection pools."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        handler: MessageHandler | None = None,
        pool_config: dict[str, Any] | None = None,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the manager.

        Args:
            config: Engine configuration.
            handler: Handler bound to every created transport.
            pool_config: Overrides for the pooling settings in ``config``.
            enabled: Whether pooling starts enabled.
            clock: Time source passed to the pools.
        """
        super().__init__(config, handler)
        self._pool_config = deep_merge(self._config.pooling, pool_config)
        self._pool_config.pop("enabled", None)
        self._pooling_enabled = enabled
        self._clock = clock
        self._pools: dict[str, ConnectionPool] = {}

    @property
    def pooling_enabled(self) -> bool:
        return self._pooling_enabled

    def enable_pooling(self, **overrides: Any) -> None:
        """Turn pooling on, optionally changing settings for new pools."""
        self._pool_config = deep_merge(self._pool_config, overrides)
        self._pooling_enabled = True

    def disable_pooling(self) -> None:
        """Turn pooling off and drop every pooled connection."""
        self._pooling_enabled = False
        self.clear_pools()

    def connection_key(self, transport_type: str, config: dict[str, Any] | None = None) -> str:
        """Derive the pool key from the connection-relevant settings."""
        merged = deep_merge(self.driver_config(transport_type), config)
        relevant = {key: merged[key] for key in CONNECTION_KEY_FIELDS if key in merged}
        serialized = json.dumps(relevant, sort_keys=True, default=str).encode("utf-8")
        digest = hashlib.md5(serialized, usedforsecurity=False).hexdigest()[:16]
        return f"{transport_type}_{digest}"

    def pool(self, transport_type: str) -> ConnectionPool:
        """The pool for a driver type, created on first use."""
        with self._lock:
            if transport_type not in self._pools:
                self._pools[transport_type] = ConnectionPool(self._pool_config, clock=self._clock)
            return self._pools[transport_type]

    def create_transport(self, transport_type: str, config: dict[str, Any] | None = None) -> Transport:
        if not self._pooling_enabled:
            return super().create_transport(transport_type, config)

        key = self.connection_key(transport_type, config)
        pool = self.pool(transport_type)
        pooled = pool.get_connection(key)
        if pooled is not None:
            return pooled

        transport = super().create_transport(transport_type, config)
        pool.add_connection(key, transport)
        return transport

    def release_transport(
        self, transport_type: str, transport: Transport, config: dict[str, Any] | None = None
    ) -> None:
        """Hand a transport back to its pool after use."""
        if not self._pooling_enabled:
            return
        self.pool(transport_type).release_connection(
            self.connection_key(transport_type, config), transport
        )

    def pool_stats(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            pools = dict(self._pools)
        return {name: pool.stats() for name, pool in pools.items()}

    def pool_info(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            pools = dict(self._pools)
        return {name: pool.pool_info() for name, pool in pools.items()}

    def perform_health_checks(self) -> dict[str, dict[str, Any]]:
        """Run a health check on every pool."""
        with self._lock:
            pools = dict(self._pools)
        return {name: pool.perform_health_check() for name, pool in pools.items()}

    def clear_pool(self, transport_type: str) -> None:
        with self._lock:
            pool = self._pools.get(transport_type)
        if pool is not None:
            pool.clear()

    def clear_pools(self) -> None:
        with self._lock:
            pools = list(self._pools.values())
        for pool in pools:
            pool.clear()

    def purge(self, name: str | None = None) -> None:
        super().purge(name)
        self.clear_pool(name or self._default_driver)

    def purge_all(self) -> None:
        super().purge_all()
        self.clear_pools()

    def cleanup(self) -> None:
        super().cleanup()
        self.clear_pools()
