"""
Health Prober — availability and baseline latency for every provider.

Probes run concurrently, one per provider, each bounded by the family's
probe timeout (5s self-hosted, 10s hosted by default). A failing probe
only affects its own provider; the loop itself never raises.

The prober can run inline (`await prober.probe_all()`) or as a
background task (`prober.start()`); either way `ready` is a one-shot
event set when the first full pass completes.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

from completion_router.config.schema import ProviderFamily
from completion_router.llm.models import Provider
from completion_router.llm.providers import model_is_loaded
from completion_router.llm.registry import ProviderRegistry

logger = logging.getLogger(__name__)


class HealthProber:
    """Mutates Provider.available / avg_latency_ms from probe results."""

    def __init__(self, registry: ProviderRegistry):
        self._registry = registry
        self._ready = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def ready(self) -> asyncio.Event:
        return self._ready

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        """Probe in the background; returns the task (reused if running)."""
        if not self.is_running:
            self._task = asyncio.create_task(self.probe_all(), name="provider-probe")
        return self._task  # type: ignore[return-value]

    async def wait_first_pass(self) -> None:
        """Wait for the first full pass, probing inline if none is running."""
        if self._ready.is_set():
            return
        if self.is_running:
            # Shielded so a cancelled waiter does not cancel the shared pass
            await asyncio.shield(self._task)  # type: ignore[arg-type]
        else:
            await self.probe_all()

    async def stop(self) -> None:
        if self.is_running:
            self._task.cancel()  # type: ignore[union-attr]
            try:
                await self._task  # type: ignore[misc]
            except asyncio.CancelledError:
                pass
        self._task = None

    async def probe_all(self) -> dict[str, bool]:
        """Probe every registered provider. Returns key -> available."""
        providers = self._registry.list_all()
        logger.info("probe_started", extra={"count": len(providers)})

        results = await asyncio.gather(
            *(self.probe(p) for p in providers), return_exceptions=True
        )
        for provider, result in zip(providers, results):
            if isinstance(result, BaseException):
                logger.error(
                    "probe_crashed",
                    extra={"provider": provider.key, "error": str(result)[:200]},
                )
                provider.available = False

        self._ready.set()
        summary = {p.key: p.available for p in providers}
        logger.info("probe_finished", extra={"results": summary})
        return summary

    async def probe(self, provider: Provider) -> bool:
        """Probe one provider and record the outcome on it."""
        if not provider.enabled:
            provider.available = False
            return False

        if not provider.is_configured:
            provider.available = False
            logger.info(
                "probe_skipped_missing_credential", extra={"provider": provider.key}
            )
            return False

        adapter = self._registry.adapter_for(provider.key)
        start = time.monotonic()
        try:
            if provider.family == ProviderFamily.SELF_HOSTED.value:
                ok = await asyncio.wait_for(
                    self._probe_self_hosted(provider), timeout=adapter.probe_timeout
                )
            else:
                ok = await asyncio.wait_for(
                    adapter.health_check(provider), timeout=adapter.probe_timeout
                )
        except asyncio.TimeoutError:
            ok = False
            logger.warning("probe_timeout", extra={"provider": provider.key})
        except Exception as e:
            ok = False
            logger.warning(
                "probe_failed",
                extra={"provider": provider.key, "error": str(e)[:200]},
            )
        elapsed = (time.monotonic() - start) * 1000

        provider.available = ok
        if ok:
            provider.avg_latency_ms = elapsed

        logger.info(
            "probe_result",
            extra={
                "provider": provider.key,
                "status": "available" if ok else "unavailable",
                "duration_ms": round(elapsed, 1),
            },
        )
        return ok

    async def _probe_self_hosted(self, provider: Provider) -> bool:
        adapter = self._registry.adapter_for(provider.key)
        loaded = await adapter.list_models(provider)
        if not loaded:
            logger.warning("self_hosted_no_models", extra={"provider": provider.key})
            return False

        if not model_is_loaded(provider.model_id, loaded):
            logger.warning(
                "self_hosted_model_substituted",
                extra={
                    "provider": provider.key,
                    "model": loaded[0],
                    "configured_model": provider.model_id,
                },
            )
            provider.model_id = loaded[0]
        return True
