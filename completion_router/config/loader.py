"""
Configuration loader and settings store for the completion router.

Loads the router's YAML file, validates it against the Pydantic schema,
and serves it to the registry through SettingsStore, the single place
that resolves credentials and persists administrator changes.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from completion_router.config.schema import (
    DEFAULT_PRIORITIES,
    DEFAULT_PROVIDERS,
    ProviderConfig,
    RouterConfig,
    RouterSettings,
    default_config,
)
from completion_router.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "COMPLETION_ROUTER_CONFIG"


def load_router_config(config_path: Optional[str | Path] = None) -> RouterConfig:
    """
    Load and validate the router configuration.

    Args:
        config_path: Path to a YAML file. If not provided, the
                     COMPLETION_ROUTER_CONFIG environment variable is used;
                     if that is unset too, the built-in defaults apply.

    Returns:
        Validated RouterConfig instance.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        ValueError: If the config file is empty.
        ConfigurationError: If the config fails validation.
    """
    if config_path is None:
        config_path = os.environ.get(CONFIG_ENV_VAR)
    if not config_path:
        return default_config()

    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Router config not found: {config_path}")

    with open(config_path, "r") as f:
        raw = yaml.safe_load(f)

    if raw is None:
        raise ValueError(f"Config file is empty: {config_path}")
    if not isinstance(raw, dict):
        raise ValueError(f"Config file must contain a mapping: {config_path}")

    # No provider list means "use the built-in catalog"
    if "providers" not in raw:
        raw["providers"] = [p.model_dump(mode="json") for p in DEFAULT_PROVIDERS]
        router = raw.setdefault("router", {}) or {}
        router.setdefault(
            "providers",
            {k: v.model_dump() for k, v in DEFAULT_PRIORITIES.items()},
        )
        raw["router"] = router

    try:
        return RouterConfig(**raw)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid router config {config_path}:\n{e}"
        ) from e


class SettingsStore:
    """
    Settings collaborator backing the provider registry.

    Holds the validated RouterConfig, resolves credentials and endpoints
    (explicit value first, then the named environment variable) and
    persists model/credential changes back to the YAML file when the
    store is file-backed.
    """

    def __init__(
        self,
        config: Optional[RouterConfig] = None,
        *,
        path: Optional[str | Path] = None,
    ):
        self._path = Path(path) if path else None
        self._config = config or default_config()

    @classmethod
    def from_file(cls, path: Optional[str | Path] = None) -> "SettingsStore":
        resolved = path or os.environ.get(CONFIG_ENV_VAR)
        return cls(load_router_config(resolved), path=resolved)

    @property
    def config(self) -> RouterConfig:
        return self._config

    @property
    def path(self) -> Optional[Path]:
        return self._path

    def reload(self) -> None:
        """Re-read the YAML file. In-memory stores keep their state."""
        if self._path is not None:
            self._config = load_router_config(self._path)

    # --- Reads ---

    def get_router_settings(self) -> RouterSettings:
        return self._config.router

    def get_provider_configs(self) -> list[ProviderConfig]:
        return list(self._config.providers)

    def get_provider_config(self, key: str) -> Optional[ProviderConfig]:
        return self._config.get_provider(key)

    def resolve_credential(self, provider: ProviderConfig) -> Optional[str]:
        if provider.credential:
            return provider.credential
        if provider.credential_env:
            return os.environ.get(provider.credential_env) or None
        return None

    def resolve_endpoint(self, provider: ProviderConfig) -> str:
        if provider.endpoint_env:
            override = os.environ.get(provider.endpoint_env)
            if override:
                return override.rstrip("/")
        return provider.endpoint.rstrip("/")

    def is_enabled(self, key: str) -> bool:
        """A provider is enabled when both its config and priority entry say so."""
        provider = self._config.get_provider(key)
        if provider is None or not provider.enabled:
            return False
        priority = self._config.router.providers.get(key)
        return priority is None or priority.enabled

    # --- Writes ---

    def set_provider_model(self, key: str, model: str) -> None:
        provider = self._require(key)
        provider.model = model
        if self._config.router.selected_provider == key:
            self._config.router.selected_model = model
        self._persist()
        logger.info("provider_model_persisted", extra={"provider": key, "model": model})

    def set_provider_credential(self, key: str, credential: Optional[str]) -> None:
        provider = self._require(key)
        provider.credential = credential or None
        self._persist()
        logger.info("provider_credential_updated", extra={"provider": key})

    def set_provider_endpoint(self, key: str, endpoint: str) -> None:
        """Persist an explicit endpoint; it replaces any endpoint_env default."""
        provider = self._require(key)
        if provider.endpoint_env and os.environ.get(provider.endpoint_env):
            logger.warning(
                "provider_endpoint_env_superseded",
                extra={"provider": key, "endpoint_env": provider.endpoint_env},
            )
        provider.endpoint = endpoint.rstrip("/")
        provider.endpoint_env = None
        self._persist()
        logger.info(
            "provider_endpoint_updated",
            extra={"provider": key, "endpoint": provider.endpoint},
        )

    def _require(self, key: str) -> ProviderConfig:
        provider = self._config.get_provider(key)
        if provider is None:
            raise ConfigurationError(f"Unknown provider: {key}", provider_key=key)
        return provider

    def _persist(self) -> None:
        if self._path is None:
            return
        data: dict[str, Any] = self._config.model_dump(mode="json", exclude_none=True)
        with open(self._path, "w") as f:
            yaml.safe_dump(data, f, sort_keys=False)
