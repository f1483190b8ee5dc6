"""Capability negotiation between client and server."""

from __future__ import annotations

import copy
import logging
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_SERVER_CAPABILITIES: dict[str, Any] = {
    "tools": {"listChanged": False},
    "resources": {"subscribe": False, "listChanged": False},
    "prompts": {"listChanged": False},
    "logging": {},
}

# Features the engine knows how to serve, per capability
SUPPORTED_FEATURES: dict[str, tuple[str, ...]] = {
    "tools": ("listChanged",),
    "resources": ("subscribe", "listChanged"),
    "prompts": ("listChanged",),
    "logging": (),
}


class CapabilityNegotiator:
    """Reconciles client capabilities with what the server offers.

    Rules for each feature:

    * the server lacks it (missing or false): disabled
    * the client does not mention it: the server's value
    * both are booleans: enabled only if both enable it
    * both are objects: merged, client keys winning
    """

    def __init__(self, defaults: dict[str, Any] | None = None) -> None:
        self._defaults = copy.deepcopy(DEFAULT_SERVER_CAPABILITIES)
        if defaults:
            self._defaults.update(copy.deepcopy(defaults))

    @property
    def default_server_capabilities(self) -> dict[str, Any]:
        return copy.deepcopy(self._defaults)

    def negotiate(
        self,
        client_capabilities: dict[str, Any] | None,
        server_capabilities: dict[str, Any] | None,
    ) -> dict[str, Any]:
        """Compute the capabilities in effect for a session.

        Args:
            client_capabilities: Capabilities sent in the initialize request.
            server_capabilities: Capabilities the server was configured with.

        Returns:
            Negotiated capabilities.
        """
        client_capabilities = client_capabilities or {}
        base = {**self._defaults, **(server_capabilities or {})}

        negotiated: dict[str, Any] = {}
        for capability, server_features in base.items():
            negotiated[capability] = self._negotiate_capability(
                capability, server_features, client_capabilities.get(capability)
            )

        for capability, client_features in client_capabilities.items():
            if capability not in negotiated and capability in SUPPORTED_FEATURES:
                negotiated[capability] = self._negotiate_capability(
                    capability, self._defaults.get(capability, {}), client_features
                )

        logger.debug(
            "Capability negotiation completed: client=%s negotiated=%s",
            client_capabilities,
            negotiated,
        )
        return negotiated

    def _negotiate_capability(
        self, capability: str, server_features: Any, client_features: Any
    ) -> Any:
        if not isinstance(server_features, dict):
            return {}
        if client_features is None:
            client_features = {}
        if not isinstance(client_features, dict):
            return copy.deepcopy(server_features) if client_features else {}

        result = {
            feature: self._negotiate_feature(server_value, client_features.get(feature))
            for feature, server_value in server_features.items()
        }
        for feature, client_value in client_features.items():
            if feature not in result and feature in SUPPORTED_FEATURES.get(capability, ()):
                result[feature] = self._negotiate_feature(None, client_value)
        return result

    @staticmethod
    def _negotiate_feature(server_value: Any, client_value: Any) -> Any:
        if server_value is None or server_value is False:
            return False
        if client_value is None:
            return copy.deepcopy(server_value)
        if isinstance(server_value, bool) and isinstance(client_value, bool):
            return server_value and client_value
        if isinstance(server_value, dict) and isinstance(client_value, dict):
            return {**server_value, **client_value}
        if isinstance(server_value, dict):
            return copy.deepcopy(server_value)
        if isinstance(client_value, dict):
            return copy.deepcopy(client_value)
        return True

    def summary(self, capabilities: dict[str, Any]) -> dict[str, Any]:
        """Summarize which features are enabled."""
        enabled: list[str] = []
        disabled: list[str] = []
        for capability, features in capabilities.items():
            if not isinstance(features, dict):
                continue
            for feature, value in features.items():
                (enabled if value else disabled).append(f"{capability}.{feature}")
        return {
            "supported_capabilities": list(capabilities),
            "feature_count": len(enabled) + len(disabled),
            "enabled_features": enabled,
            "disabled_features": disabled,
        }

    @staticmethod
    def has_feature(capabilities: dict[str, Any], capability: str, feature: str) -> bool:
        """Check whether a negotiated feature is enabled."""
        features = capabilities.get(capability)
        return isinstance(features, dict) and bool(features.get(feature))
