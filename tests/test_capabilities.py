"""Tests for capability negotiation."""

from mcp_engine.protocol.capabilities import DEFAULT_SERVER_CAPABILITIES, CapabilityNegotiator


class TestNegotiate:
    """Tests for CapabilityNegotiator.negotiate."""

    def test_client_silence_keeps_server_value(self):
        """Features the client does not mention keep the server's value."""
        negotiated = CapabilityNegotiator().negotiate({}, {"tools": {"listChanged": True}})
        assert negotiated["tools"] == {"listChanged": True}

    def test_both_booleans_must_agree(self):
        """A boolean feature is on only if both sides enable it."""
        negotiator = CapabilityNegotiator()
        server = {"resources": {"subscribe": True, "listChanged": True}}
        negotiated = negotiator.negotiate({"resources": {"subscribe": False}}, server)
        assert negotiated["resources"] == {"subscribe": False, "listChanged": True}

    def test_server_lacking_feature_disables_it(self):
        """A feature the server turns off stays off."""
        negotiated = CapabilityNegotiator().negotiate(
            {"tools": {"listChanged": True}}, {"tools": {"listChanged": False}}
        )
        assert negotiated["tools"]["listChanged"] is False

    def test_objects_are_merged(self):
        """Object-valued features merge with client keys winning."""
        negotiator = CapabilityNegotiator({"experimental": {"streaming": {"chunk": 1, "mode": "a"}}})
        negotiated = negotiator.negotiate({"experimental": {"streaming": {"mode": "b"}}}, {})
        assert negotiated["experimental"]["streaming"] == {"chunk": 1, "mode": "b"}

    def test_defaults_fill_unconfigured_capabilities(self):
        """Default capabilities appear even when the server passes none."""
        negotiated = CapabilityNegotiator().negotiate({}, None)
        assert set(negotiated) == set(DEFAULT_SERVER_CAPABILITIES)

    def test_unknown_client_capabilities_are_ignored(self):
        """Client-only capabilities the engine cannot serve are dropped."""
        negotiated = CapabilityNegotiator().negotiate({"sampling": {}}, {})
        assert "sampling" not in negotiated

    def test_non_dict_server_capability_is_empty(self):
        """A malformed server capability negotiates to nothing."""
        negotiated = CapabilityNegotiator().negotiate({}, {"tools": True})
        assert negotiated["tools"] == {}


class TestIntrospection:
    """Tests for summary and has_feature."""

    def test_summary_splits_enabled_and_disabled(self):
        """summary lists features by state."""
        negotiator = CapabilityNegotiator()
        summary = negotiator.summary({"tools": {"listChanged": True}, "resources": {"subscribe": False}})
        assert summary["enabled_features"] == ["tools.listChanged"]
        assert summary["disabled_features"] == ["resources.subscribe"]
        assert summary["feature_count"] == 2

    def test_has_feature(self):
        """has_feature checks one negotiated flag."""
        capabilities = {"tools": {"listChanged": True}, "logging": {}}
        assert CapabilityNegotiator.has_feature(capabilities, "tools", "listChanged")
        assert not CapabilityNegotiator.has_feature(capabilities, "logging", "level")
        assert not CapabilityNegotiator.has_feature(capabilities, "prompts", "listChanged")

    def test_defaults_are_copied(self):
        """Callers cannot mutate the negotiator's defaults."""
        negotiator = CapabilityNegotiator()
        negotiator.default_server_capabilities["tools"]["listChanged"] = True
        assert negotiator.default_server_capabilities["tools"]["listChanged"] is False
