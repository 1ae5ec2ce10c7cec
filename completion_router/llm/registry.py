"""
Provider Registry — configuration plus live state for every provider.

The registry is the single source of truth the selector and prober read.
Entries are created once from the SettingsStore and afterwards only
updated in place: refresh re-reads credentials, endpoints and model
overrides, but never recreates a Provider, so live state (availability,
latency, tokens/sec averages) survives.
"""

from __future__ import annotations

import logging
from typing import Optional

from completion_router.config.loader import SettingsStore
from completion_router.config.schema import ProviderConfig, TimeoutSettings
from completion_router.exceptions import ConfigurationError
from completion_router.llm.models import Provider
from completion_router.llm.providers import (
    ClientFactory,
    ProviderAdapter,
    build_adapter,
)

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Holds Provider entries and their adapters, keyed by stable key."""

    def __init__(
        self,
        settings: SettingsStore,
        *,
        timeouts: Optional[TimeoutSettings] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        self._settings = settings
        self._timeouts = timeouts or settings.config.timeouts
        self._client_factory = client_factory
        # Insertion order is the fallback ordering for unprioritized keys
        self._providers: dict[str, Provider] = {}
        self._adapters: dict[str, ProviderAdapter] = {}

    # --- Lifecycle ---

    def initialize(self) -> None:
        """
        Build a Provider for every enabled config entry.

        Providers missing a required credential are still registered (so
        they show up in stats) but start, and stay, unavailable.
        """
        for config in self._settings.get_provider_configs():
            if not self._settings.is_enabled(config.key):
                logger.info("provider_disabled", extra={"provider": config.key})
                continue
            if config.key in self._providers:
                continue
            self._register(config)

        logger.info(
            "registry_initialized",
            extra={"providers": list(self._providers), "count": len(self._providers)},
        )

    def refresh(self) -> None:
        """
        Re-read credentials, endpoints and model overrides in place.

        Idempotent. Newly enabled entries are registered; entries that were
        disabled in settings are toggled off and made unavailable.
        """
        self._settings.reload()
        for config in self._settings.get_provider_configs():
            enabled = self._settings.is_enabled(config.key)
            provider = self._providers.get(config.key)
            if provider is None:
                if enabled:
                    self._register(config)
                continue
            self._apply(provider, config)
            provider.enabled = enabled
            if not enabled:
                provider.available = False

        logger.info("registry_refreshed", extra={"count": len(self._providers)})

    def refresh_credential(self, key: str) -> Provider:
        """Just-in-time credential reload for one provider."""
        provider = self.get(key)
        if provider is None:
            raise ConfigurationError(f"Unknown provider: {key}", provider_key=key)
        config = self._settings.get_provider_config(key)
        if config is not None:
            provider.credential = self._settings.resolve_credential(config)
        return provider

    # --- Reads ---

    def get(self, key: str) -> Optional[Provider]:
        return self._providers.get(key)

    def list_all(self) -> list[Provider]:
        return list(self._providers.values())

    def adapter_for(self, key: str) -> ProviderAdapter:
        try:
            return self._adapters[key]
        except KeyError:
            raise ConfigurationError(f"Unknown provider: {key}", provider_key=key) from None

    # --- Internals ---

    def _register(self, config: ProviderConfig) -> Provider:
        provider = Provider(
            key=config.key,
            display_name=config.display_name,
            family=config.family.value,
            endpoint=self._settings.resolve_endpoint(config),
            model_id=config.model,
            pricing=config.pricing,
            credential=self._settings.resolve_credential(config),
            models_endpoint=config.models_endpoint,
            requires_credential=config.requires_credential,
        )
        self._providers[config.key] = provider
        self._adapters[config.key] = build_adapter(
            config.family, self._timeouts, self._client_factory
        )

        if not provider.is_configured:
            logger.warning(
                "provider_missing_credential",
                extra={"provider": config.key, "credential_env": config.credential_env},
            )
        return provider

    def _apply(self, provider: Provider, config: ProviderConfig) -> None:
        provider.display_name = config.display_name
        provider.endpoint = self._settings.resolve_endpoint(config)
        provider.models_endpoint = config.models_endpoint
        provider.model_id = config.model
        provider.pricing = config.pricing
        provider.credential = self._settings.resolve_credential(config)
