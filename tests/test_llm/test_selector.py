"""
Tests for PrioritySelector ordering.
"""

from __future__ import annotations

from completion_router.config.loader import SettingsStore
from completion_router.config.schema import ProviderPriority, RouterSettings
from completion_router.llm.registry import ProviderRegistry
from completion_router.llm.selector import PrioritySelector

from .conftest import build_config, hosted_config, local_config, messages_config


def _selector(
    priorities: dict[str, int],
) -> tuple[PrioritySelector, ProviderRegistry, SettingsStore]:
    cfg = build_config(
        providers=[local_config(), hosted_config(), messages_config()],
        priorities=priorities,
    )
    store = SettingsStore(cfg)
    registry = ProviderRegistry(store)
    registry.initialize()
    for provider in registry.list_all():
        provider.available = True
    return PrioritySelector(registry), registry, store


def _keys(providers) -> list[str]:
    return [p.key for p in providers]


class TestOrder:

    def test_ascending_priority(self):
        selector, registry, store = _selector({"local": 3, "hosted": 1, "claude": 2})
        settings = store.get_router_settings()
        assert _keys(selector.select(settings)) == ["hosted", "claude", "local"]

    def test_ties_keep_map_order(self):
        selector, registry, store = _selector({"claude": 1, "local": 1, "hosted": 1})
        settings = store.get_router_settings()
        assert _keys(selector.select(settings)) == ["claude", "local", "hosted"]

    def test_unprioritized_follow_in_registry_order(self):
        selector, registry, store = _selector({"claude": 1})
        settings = store.get_router_settings()
        assert _keys(selector.select(settings)) == ["claude", "local", "hosted"]

    def test_disabled_entries_excluded(self):
        selector, registry, store = _selector({"local": 1, "hosted": 2, "claude": 3})
        settings = RouterSettings(providers={
            "local": ProviderPriority(priority=1),
            "hosted": ProviderPriority(priority=2, enabled=False),
            "claude": ProviderPriority(priority=3),
        })
        assert _keys(selector.order(settings)) == ["local", "claude"]

    def test_map_keys_without_provider_ignored(self):
        selector, registry, store = _selector({"local": 1})
        settings = RouterSettings(providers={
            "ghost": ProviderPriority(priority=1),
            "local": ProviderPriority(priority=2),
        })
        assert _keys(selector.order(settings))[0] == "local"


class TestSelect:

    def test_unavailable_skipped(self):
        selector, registry, store = _selector({"local": 1, "hosted": 2, "claude": 3})
        registry.get("local").available = False
        settings = store.get_router_settings()

        assert _keys(selector.select(settings)) == ["hosted", "claude"]
        assert _keys(selector.order(settings)) == ["local", "hosted", "claude"]

    def test_toggled_off_provider_skipped(self):
        selector, registry, store = _selector({"local": 1, "hosted": 2, "claude": 3})
        registry.get("claude").enabled = False
        settings = store.get_router_settings()
        assert _keys(selector.select(settings)) == ["local", "hosted"]

    def test_nothing_available(self):
        selector, registry, store = _selector({"local": 1})
        for provider in registry.list_all():
            provider.available = False
        assert selector.select(store.get_router_settings()) == []

    def test_weights_do_not_change_order(self):
        selector, registry, store = _selector({"local": 2, "hosted": 1})
        settings = store.get_router_settings()
        before = _keys(selector.select(settings))
        settings.latency_weight, settings.cost_weight = 0.0, 1.0
        assert _keys(selector.select(settings)) == before
