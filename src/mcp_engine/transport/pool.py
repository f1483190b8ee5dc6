"""Bounded pool of reusable transports.

Entries expire after ``timeout`` seconds, are dropped when idle for longer
than ``idle_timeout`` and are health-checked lazily every
``health_check_interval`` seconds. When the pool is full, adding a new key
evicts one entry chosen by the eviction policy.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from mcp_engine.config import DEFAULT_POOLING, deep_merge
from mcp_engine.errors import ConfigurationError
from mcp_engine.transport.base import Transport

logger = logging.getLogger(__name__)

EVICTION_POLICIES = ("lru", "fifo", "lifo")


@dataclass
class PooledConnection:
    """A pooled transport and its bookkeeping."""

    transport: Transport
    created: float
    last_accessed: float
    expires: float
    sequence: int
    access_count: int = 0
    health_status: str = "unknown"
    last_health_check: float | None = None
    checks: dict[str, Any] = field(default_factory=dict)

    def to_dict(self, now: float) -> dict[str, Any]:
        return {
            "transport_type": self.transport.transport_type,
            "connected": self.transport.is_connected(),
            "created": self.created,
            "last_accessed": self.last_accessed,
            "expires": self.expires,
            "age": now - self.created,
            "idle_time": now - self.last_accessed,
            "access_count": self.access_count,
            "health_status": self.health_status,
            "last_health_check": self.last_health_check,
        }


class ConnectionPool:
    """Thread-safe keyed pool of transports."""

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the pool.

        Args:
            config: Overrides for max_connections, timeout, idle_timeout,
                health_check_interval and eviction_policy.
            clock: Time source in seconds.

        Raises:
            ConfigurationError: If a setting is invalid.
        """
        self._config = deep_merge(DEFAULT_POOLING, config)
        self._validate()
        self._clock = clock
        self._lock = threading.RLock()
        self._connections: dict[str, PooledConnection] = {}
        self._sequence = itertools.count()
        self._last_health_check: float | None = None
        self._stats = {
            "connections_created": 0,
            "connections_acquired": 0,
            "connections_released": 0,
            "connections_evicted": 0,
            "connections_removed": 0,
            "health_checks_performed": 0,
            "unhealthy_connections_removed": 0,
        }

    def _validate(self) -> None:
        policy = self._config["eviction_policy"]
        if policy not in EVICTION_POLICIES:
            raise ConfigurationError(
                f"Unknown eviction policy '{policy}', expected one of {', '.join(EVICTION_POLICIES)}"
            )
        max_connections = self._config["max_connections"]
        if not isinstance(max_connections, int) or max_connections < 1:
            raise ConfigurationError(f"max_connections must be at least 1, got {max_connections!r}")
        for key in ("timeout", "idle_timeout", "health_check_interval"):
            if self._config[key] <= 0:
                raise ConfigurationError(f"{key} must be positive, got {self._config[key]!r}")

    @property
    def max_connections(self) -> int:
        return self._config["max_connections"]

    @property
    def eviction_policy(self) -> str:
        return self._config["eviction_policy"]

    # -- acquire / add / release ---------------------------------------------------

    def get_connection(self, key: str) -> Transport | None:
        """Return the pooled transport for ``key`` if it is still usable.

        Runs the periodic health check first when it is due. An expired,
        idle or disconnected entry is removed and None is returned.
        """
        with self._lock:
            if self._health_check_due():
                self.perform_health_check()

            connection = self._connections.get(key)
            if connection is None:
                return None

            now = self._clock()
            if not self._is_valid(connection, now):
                self.remove_connection(key, reason="invalid")
                return None

            connection.last_accessed = now
            connection.access_count += 1
            self._stats["connections_acquired"] += 1
            logger.debug("Reusing pooled connection %s (%d uses)", key, connection.access_count)
            return connection.transport

    def add_connection(self, key: str, transport: Transport) -> None:
        """Pool ``transport`` under ``key``, evicting one entry if full.

        Re-adding an existing key replaces its entry without eviction.
        """
        with self._lock:
            if key not in self._connections and len(self._connections) >= self.max_connections:
                self._evict_one()

            now = self._clock()
            self._connections[key] = PooledConnection(
                transport=transport,
                created=now,
                last_accessed=now,
                expires=now + self._config["timeout"],
                sequence=next(self._sequence),
            )
            self._stats["connections_created"] += 1
            logger.debug(
                "Added connection %s to pool (%d/%d)",
                key,
                len(self._connections),
                self.max_connections,
            )

    def release_connection(self, key: str, transport: Transport) -> None:
        """Return a transport to the pool after use."""
        with self._lock:
            connection = self._connections.get(key)
            if connection is None or connection.transport is not transport:
                return
            connection.last_accessed = self._clock()
            self._stats["connections_released"] += 1

    def remove_connection(self, key: str, reason: str = "manual") -> bool:
        """Remove an entry, stopping its transport if connected.

        Returns:
            True if the key was pooled.
        """
        with self._lock:
            connection = self._connections.pop(key, None)
            if connection is None:
                return False

            if connection.transport.is_connected():
                try:
                    connection.transport.stop()
                except Exception as e:
                    logger.warning("Error stopping pooled connection %s: %s", key, e)

            self._stats["connections_removed"] += 1
            if reason == "evicted":
                self._stats["connections_evicted"] += 1
            elif reason == "unhealthy":
                self._stats["unhealthy_connections_removed"] += 1
            logger.debug("Removed connection %s from pool (%s)", key, reason)
            return True

    def _evict_one(self) -> None:
        key = self._select_for_eviction()
        if key is not None:
            logger.info("Evicting connection %s (policy %s)", key, self.eviction_policy)
            self.remove_connection(key, reason="evicted")

    def _select_for_eviction(self) -> str | None:
        if not self._connections:
            return None
        items = self._connections.items()
        policy = self.eviction_policy
        if policy == "lru":
            return min(items, key=lambda kv: (kv[1].last_accessed, kv[1].sequence))[0]
        if policy == "fifo":
            return min(items, key=lambda kv: (kv[1].created, kv[1].sequence))[0]
        return max(items, key=lambda kv: (kv[1].created, kv[1].sequence))[0]

    # -- validity and health ----------------------------------------------------------

    def _is_valid(self, connection: PooledConnection, now: float) -> bool:
        if now > connection.expires:
            return False
        if now - connection.last_accessed > self._config["idle_timeout"]:
            return False
        return connection.transport.is_connected()

    def _health_check_due(self) -> bool:
        if self._last_health_check is None:
            return True
        return self._clock() - self._last_health_check >= self._config["health_check_interval"]

    def _check_connection(self, connection: PooledConnection, now: float) -> dict[str, Any]:
        checks: dict[str, Any] = {
            "connected": connection.transport.is_connected(),
            "age_valid": now - connection.created < self._config["timeout"],
            "idle_valid": now - connection.last_accessed < self._config["idle_timeout"],
        }
        try:
            checks["transport_health"] = bool(connection.transport.health_check().get("healthy"))
        except Exception as e:
            checks["transport_health"] = False
            checks["error"] = str(e)
        return checks

    def perform_health_check(self) -> dict[str, Any]:
        """Check every entry and remove the unhealthy ones.

        Returns:
            Report with counts and per-connection check results.
        """
        with self._lock:
            now = self._clock()
            self._last_health_check = now
            self._stats["health_checks_performed"] += 1

            results: dict[str, Any] = {}
            unhealthy: list[str] = []
            for key, connection in list(self._connections.items()):
                checks = self._check_connection(connection, now)
                healthy = all(v for k, v in checks.items() if k != "error")
                connection.health_status = "healthy" if healthy else "unhealthy"
                connection.last_health_check = now
                connection.checks = checks
                results[key] = {"healthy": healthy, "checks": checks}
                if not healthy:
                    unhealthy.append(key)

            for key in unhealthy:
                self.remove_connection(key, reason="unhealthy")

            return {
                "timestamp": time.time(),
                "total_connections": len(results),
                "healthy_connections": len(results) - len(unhealthy),
                "unhealthy_connections": len(unhealthy),
                "connections": results,
            }

    # -- introspection ------------------------------------------------------------------

    def clear(self) -> None:
        """Remove every entry."""
        with self._lock:
            for key in list(self._connections):
                self.remove_connection(key, reason="cleared")

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                **self._stats,
                "pool_size": len(self._connections),
                "max_connections": self.max_connections,
                "utilization": len(self._connections) / self.max_connections,
                "eviction_policy": self.eviction_policy,
            }

    def pool_info(self) -> dict[str, Any]:
        """Describe every pooled connection."""
        with self._lock:
            now = self._clock()
            return {
                "config": dict(self._config),
                "stats": self.stats(),
                "connections": {
                    key: connection.to_dict(now) for key, connection in self._connections.items()
                },
            }

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._connections)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._connections

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)

    @property
    def is_full(self) -> bool:
        return len(self) >= self.max_connections

    @property
    def is_empty(self) -> bool:
        return len(self) == 0
