"""Tests for TransportManager and PooledTransportManager."""

from __future__ import annotations

import pytest

from mcp_engine.config import EngineConfig
from mcp_engine.errors import TransportException
from mcp_engine.transport.http import HttpTransport
from mcp_engine.transport.manager import PooledTransportManager, TransportManager
from mcp_engine.transport.stdio import StdioTransport
from tests.doubles import FakeTransport, RecordingHandler


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def engine_config(**transports) -> EngineConfig:
    return EngineConfig(default_transport="fake", transports=transports)


@pytest.fixture
def manager() -> TransportManager:
    manager = TransportManager(engine_config(fake={"port": 7000}), handler=RecordingHandler())
    manager.extend("fake", lambda config: FakeTransport(config=config))
    return manager


class TestDrivers:
    """Tests for driver registration."""

    def test_builtin_drivers(self):
        """stdio and http are available out of the box."""
        manager = TransportManager()
        assert manager.drivers() == ["http", "stdio"]
        assert manager.default_driver == "stdio"

    def test_builtin_drivers_create_transports(self):
        """The built-in factories produce the matching transport classes."""
        manager = TransportManager()
        assert isinstance(manager.create_transport("stdio"), StdioTransport)
        assert isinstance(manager.create_transport("http", {"port": 9001}), HttpTransport)

    def test_extend(self, manager):
        """Custom drivers are registered by name."""
        assert manager.has_driver("fake")
        assert "fake" in manager.drivers()

    def test_default_driver_must_exist(self, manager):
        """Setting an unknown default raises ValueError."""
        manager.default_driver = "http"
        assert manager.default_driver == "http"
        with pytest.raises(ValueError):
            manager.default_driver = "carrier-pigeon"


class TestCreateTransport:
    """Tests for create_transport."""

    def test_merges_configured_settings_and_overrides(self, manager):
        """Overrides win over configured driver settings."""
        transport = manager.create_transport("fake", {"host": "example.test"})
        assert transport.config["port"] == 7000
        assert transport.config["host"] == "example.test"

    def test_binds_manager_handler(self, manager):
        """Created transports get the manager's handler."""
        assert isinstance(manager.create_transport("fake").handler, RecordingHandler)

    def test_keeps_factory_handler(self, manager):
        """A handler set by the factory is not replaced."""
        own = RecordingHandler()
        manager.extend("owned", lambda config: FakeTransport(config=config, handler=own))
        assert manager.create_transport("owned").handler is own

    def test_unknown_driver(self, manager):
        """Unknown drivers raise TransportException."""
        with pytest.raises(TransportException, match="Unsupported transport driver"):
            manager.create_transport("carrier-pigeon")

    def test_factory_failure_is_wrapped(self, manager):
        """Factory errors are wrapped in TransportException."""

        def broken(config):
            raise RuntimeError("no sockets left")

        manager.extend("broken", broken)
        with pytest.raises(TransportException, match="no sockets left") as exc_info:
            manager.create_transport("broken")
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    def test_factory_must_return_transport(self, manager):
        """Factories returning something else are rejected."""
        manager.extend("bogus", lambda config: object())
        with pytest.raises(TransportException, match="not a Transport"):
            manager.create_transport("bogus")


class TestDriverInstances:
    """Tests for memoized driver instances."""

    def test_driver_is_memoized(self, manager):
        """driver() returns the same instance until purged."""
        first = manager.driver()
        assert manager.driver("fake") is first
        assert manager.default_transport() is first

    def test_purge_stops_instance(self, manager):
        """purge() stops and forgets the instance."""
        first = manager.driver()
        first.start()
        manager.purge()
        assert not first.is_connected()
        assert manager.driver() is not first

    def test_refresh(self, manager):
        """refresh() replaces the instance."""
        first = manager.driver()
        assert manager.refresh() is not first

    def test_purge_all(self, manager):
        """purge_all() forgets every instance."""
        manager.driver()
        manager.driver("http")
        manager.purge_all()
        assert manager.active_transports() == {}


class TestNamedTransports:
    """Tests for registered transports and supervision."""

    def test_register_and_lookup(self, manager):
        """Registered transports are found by name."""
        transport = FakeTransport(config={})
        manager.register_transport("primary", transport)
        assert manager.transport("primary") is transport
        assert manager.active_transport_count() == 1

    def test_lookup_missing(self, manager):
        """Missing names raise TransportException."""
        with pytest.raises(TransportException, match="Transport not found"):
            manager.transport("ghost")

    def test_remove_stops_transport(self, manager):
        """remove_transport() stops and forgets it."""
        transport = FakeTransport(config={})
        transport.start()
        manager.register_transport("primary", transport)
        manager.remove_transport("primary")
        assert not transport.is_connected()
        assert manager.active_transports() == {}

    def test_start_all_logs_failures(self, manager):
        """A transport that fails to start does not stop the others."""
        good = FakeTransport(config={})
        bad = FakeTransport(config={})
        bad.fail_start = True
        manager.register_transport("bad", bad)
        manager.register_transport("good", good)

        manager.start_all()
        assert good.is_connected()
        assert not bad.is_connected()

    def test_stop_all_and_health(self, manager):
        """stop_all() stops everything and health reflects it."""
        transport = FakeTransport(config={})
        manager.register_transport("primary", transport)
        manager.start_all()
        assert manager.transport_health()["primary"]["healthy"] is True

        manager.stop_all()
        assert manager.transport_health()["primary"]["healthy"] is False

    def test_cleanup(self, manager):
        """cleanup() stops and forgets everything."""
        transport = FakeTransport(config={})
        transport.start()
        manager.register_transport("primary", transport)
        manager.driver()
        manager.cleanup()
        assert not transport.is_connected()
        assert manager.active_transport_count() == 0


@pytest.fixture
def pooled() -> PooledTransportManager:
    manager = PooledTransportManager(
        engine_config(fake={"port": 7000}),
        pool_config={"max_connections": 2},
        clock=FakeClock(),
    )
    manager.extend("fake", lambda config: FakeTransport(config=config))
    return manager


class TestPooledTransportManager:
    """Tests for pooled transport reuse."""

    def test_connection_key_uses_connection_fields(self, pooled):
        """Keys depend on host, port, auth and timeout only."""
        base = pooled.connection_key("fake")
        assert base.startswith("fake_")
        assert len(base) == len("fake_") + 16
        assert pooled.connection_key("fake", {"debug": True}) == base
        assert pooled.connection_key("fake", {"port": 7001}) != base
        assert pooled.connection_key("fake", {"port": 7000}) == base

    def test_reuses_started_transport(self, pooled):
        """A started pooled transport is handed out again."""
        first = pooled.create_transport("fake")
        first.start()
        assert pooled.create_transport("fake") is first
        assert pooled.pool_stats()["fake"]["connections_acquired"] == 1

    def test_unstarted_transport_is_replaced(self, pooled):
        """Disconnected entries are dropped and a new transport created."""
        first = pooled.create_transport("fake")
        second = pooled.create_transport("fake")
        assert second is not first

    def test_different_settings_get_different_transports(self, pooled):
        """Transports with different connection settings are pooled apart."""
        a = pooled.create_transport("fake")
        a.start()
        b = pooled.create_transport("fake", {"port": 7001})
        assert a is not b
        assert len(pooled.pool("fake")) == 2

    def test_pool_settings_from_config(self, pooled):
        """Pool overrides are merged over the configured pooling settings."""
        assert pooled.pool("fake").max_connections == 2
        assert pooled.pool("fake").eviction_policy == "lru"

    def test_disabled_pooling_creates_fresh_transports(self, pooled):
        """Without pooling every call builds a new transport."""
        first = pooled.create_transport("fake")
        first.start()
        pooled.disable_pooling()
        assert not pooled.pooling_enabled
        assert pooled.create_transport("fake") is not first
        assert pooled.pool("fake").is_empty

    def test_enable_pooling_with_overrides(self):
        """enable_pooling() applies new settings to new pools."""
        manager = PooledTransportManager(enabled=False, clock=FakeClock())
        manager.enable_pooling(eviction_policy="fifo")
        assert manager.pooling_enabled
        assert manager.pool("http").eviction_policy == "fifo"

    def test_release_transport(self, pooled):
        """Released transports are counted by their pool."""
        transport = pooled.create_transport("fake")
        pooled.release_transport("fake", transport)
        assert pooled.pool_stats()["fake"]["connections_released"] == 1

    def test_health_checks_and_info(self, pooled):
        """Health checks and info cover every pool."""
        transport = pooled.create_transport("fake")
        transport.start()
        report = pooled.perform_health_checks()
        assert report["fake"]["healthy_connections"] == 1
        assert "fake" in pooled.pool_info()

    def test_cleanup_clears_pools(self, pooled):
        """cleanup() empties every pool and stops pooled transports."""
        transport = pooled.create_transport("fake")
        transport.start()
        pooled.cleanup()
        assert pooled.pool("fake").is_empty
        assert not transport.is_connected()
