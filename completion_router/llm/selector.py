"""
Priority Selector — ordered list of providers to try for one request.

Ordering rules:
1. Keys in the explicit priority map, ascending `priority` (1 first).
   Ties keep the map's own order.
2. Registered providers missing from the map, in registry order.
3. Anything unavailable or disabled is dropped.

The latency/cost weight knobs in RouterSettings are intentionally not
consulted here.
"""

from __future__ import annotations

import logging

from completion_router.config.schema import RouterSettings
from completion_router.llm.models import Provider
from completion_router.llm.registry import ProviderRegistry

logger = logging.getLogger(__name__)


class PrioritySelector:

    def __init__(self, registry: ProviderRegistry):
        self._registry = registry

    def order(self, settings: RouterSettings) -> list[Provider]:
        """Every registered provider in attempt order, ignoring availability."""
        ranked = sorted(
            (
                (entry.priority, index, key)
                for index, (key, entry) in enumerate(settings.providers.items())
                if entry.enabled
            ),
        )
        ordered: list[Provider] = []
        seen: set[str] = set()
        for _, _, key in ranked:
            provider = self._registry.get(key)
            if provider is not None:
                ordered.append(provider)
                seen.add(key)

        for provider in self._registry.list_all():
            if provider.key in seen:
                continue
            entry = settings.providers.get(provider.key)
            if entry is not None and not entry.enabled:
                continue
            ordered.append(provider)
        return ordered

    def select(self, settings: RouterSettings) -> list[Provider]:
        """Available, enabled providers in attempt order."""
        candidates = [
            p for p in self.order(settings) if p.available and p.enabled
        ]
        logger.debug(
            "providers_selected", extra={"candidates": [p.key for p in candidates]}
        )
        return candidates
