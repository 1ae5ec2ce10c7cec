"""
Completion Router — priority-ordered dispatch with cache and failover.

Routes a completion request across every available provider in the
configured priority order, one at a time:

    cache hit?  → return it (no network call, no usage recorded)
    call        → success: cache + record usage + return
                → failure: log, try the next provider

A failed call never marks its provider unavailable; only the prober
decides availability. When every candidate fails the caller gets an
AggregateFailureError carrying the last underlying error.

Usage:
    from completion_router.llm.router import CompletionRouter

    router = CompletionRouter.from_config("router.yaml")
    await router.initialize()          # register + probe, once

    response = await router.generate_response(
        CompletionRequest(prompt="Plan a 20 minute workout", user_id="u-42",
                          tool_tag="workout", args={"minutes": 20}),
    )
    print(response.provider_key, response.content)
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import replace
from typing import Any, Optional

from completion_router.config.loader import SettingsStore
from completion_router.config.schema import ProviderFamily
from completion_router.exceptions import (
    AggregateFailureError,
    ConfigurationError,
    ProviderCallError,
    RouterError,
    UnavailableError,
)
from completion_router.llm.cache import ResponseCache
from completion_router.llm.models import (
    TEST_REQUEST_TYPE,
    CompletionRequest,
    CompletionResponse,
    GenerationTiming,
    Provider,
)
from completion_router.llm.prober import HealthProber
from completion_router.llm.providers import (
    ClientFactory,
    SelfHostedAdapter,
    model_is_loaded,
)
from completion_router.llm.registry import ProviderRegistry
from completion_router.llm.selector import PrioritySelector
from completion_router.llm.usage import (
    InMemoryUsageStore,
    SqliteUsageStore,
    UsageRecorder,
    effective_usage,
)
from completion_router.observability.logging_config import (
    clear_request_id,
    set_request_id,
)

logger = logging.getLogger(__name__)


class CompletionRouter:
    """
    Orchestrates registry, prober, selector, cache and usage recorder.

    Constructed explicitly by the application's composition root; call
    `initialize()` (or use `async with`) before serving traffic. A first
    request on an uninitialized router initializes it, guarded so that
    concurrent first calls initialize exactly once.
    """

    def __init__(
        self,
        settings: Optional[SettingsStore] = None,
        *,
        cache: Optional[ResponseCache] = None,
        recorder: Optional[UsageRecorder] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        self._settings = settings or SettingsStore()
        config = self._settings.config

        self._registry = ProviderRegistry(self._settings, client_factory=client_factory)
        self._prober = HealthProber(self._registry)
        self._selector = PrioritySelector(self._registry)
        self._cache = cache or ResponseCache(
            ttl_seconds=config.cache.ttl_seconds,
            max_entries=config.cache.max_entries,
        )
        if recorder is None:
            store = (
                SqliteUsageStore(config.usage_db_path)
                if config.usage_db_path else InMemoryUsageStore()
            )
            recorder = UsageRecorder(store)
        self._recorder = recorder

        self._init_lock = asyncio.Lock()
        self._initialized = False
        self._warmed: set[tuple[str, str]] = set()

    @classmethod
    def from_config(cls, config_path: Optional[str] = None, **kwargs: Any) -> "CompletionRouter":
        """Build a router from a YAML file (or COMPLETION_ROUTER_CONFIG / defaults)."""
        return cls(SettingsStore.from_file(config_path), **kwargs)

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    @property
    def cache(self) -> ResponseCache:
        return self._cache

    @property
    def recorder(self) -> UsageRecorder:
        return self._recorder

    @property
    def settings(self) -> SettingsStore:
        return self._settings

    # --- Lifecycle ---

    async def initialize(self) -> None:
        """Register providers and run the first probe pass. Idempotent."""
        async with self._init_lock:
            if self._initialized:
                return
            self._registry.initialize()
            await self._prober.probe_all()
            self._initialized = True

    async def start(self) -> None:
        """
        Register providers and probe in the background.

        Returns immediately. Requests arriving before the first probe pass
        completes wait for it; `wait_until_ready()` does the same explicitly.
        """
        async with self._init_lock:
            if self._initialized:
                return
            self._registry.initialize()
            self._prober.start()
            self._initialized = True

    async def wait_until_ready(self, timeout: Optional[float] = None) -> None:
        await asyncio.wait_for(self._prober.ready.wait(), timeout=timeout)

    async def aclose(self) -> None:
        await self._prober.stop()

    async def __aenter__(self) -> "CompletionRouter":
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def _ensure_initialized(self) -> None:
        # Concurrent first callers block on the init lock until probing is done
        if not self._initialized:
            await self.initialize()
        elif not self._prober.ready.is_set():
            # start() returned before its background pass finished
            await self._prober.wait_first_pass()

    # --- Main Routing API ---

    async def generate_response(self, request: CompletionRequest) -> CompletionResponse:
        """
        Serve a request from cache or from the first provider that succeeds.

        Raises:
            UnavailableError: no provider is currently available.
            AggregateFailureError: every candidate failed.
        """
        set_request_id(uuid.uuid4().hex[:12])
        try:
            return await self._dispatch(request)
        finally:
            clear_request_id()

    async def _dispatch(self, request: CompletionRequest) -> CompletionResponse:
        await self._ensure_initialized()

        candidates = self._selector.select(self._settings.get_router_settings())
        if not candidates:
            logger.error("no_providers_available", extra={"tool": request.tool_tag})
            raise UnavailableError("No available completion providers")

        attempted: list[str] = []
        last_error: Optional[BaseException] = None

        for provider in candidates:
            fingerprint = ResponseCache.make_fingerprint(
                request, provider.key, provider.model_id
            )
            cached = self._cache.get(fingerprint)
            if cached is not None:
                logger.info(
                    "cache_hit_served",
                    extra={"provider": provider.key, "model": provider.model_id},
                )
                return cached.with_cached()

            attempted.append(provider.key)
            try:
                response = await self._call(provider, request)
            except Exception as e:
                last_error = e
                logger.warning(
                    "provider_call_failed",
                    extra={
                        "provider": provider.key,
                        "model": provider.model_id,
                        "error": str(e)[:200],
                        "remaining": len(candidates) - len(attempted),
                    },
                )
                continue

            self._cache.put(
                fingerprint, response, provider=provider.key, model=provider.model_id
            )
            await self._recorder.record(provider, request, response)

            logger.info(
                "completion_routed",
                extra={
                    "provider": provider.key,
                    "model": response.model_id,
                    "tokens": response.usage.total_tokens if response.usage else 0,
                    "duration_ms": round(response.timing.duration_ms, 1) if response.timing else None,
                    "is_fallback": len(attempted) > 1,
                },
            )
            return response

        logger.error(
            "all_providers_failed",
            extra={"attempted": attempted, "error": str(last_error)[:200]},
        )
        raise AggregateFailureError(
            "All completion providers failed",
            last_error=last_error,
            attempted=attempted,
        )

    async def _call(self, provider: Provider, request: CompletionRequest) -> CompletionResponse:
        """One adapter call, with usage filled in and wall-clock timing."""
        adapter = self._registry.adapter_for(provider.key)

        if (
            provider.family == ProviderFamily.SELF_HOSTED.value
            and self._settings.config.warmup
            and isinstance(adapter, SelfHostedAdapter)
            and (provider.key, provider.model_id) not in self._warmed
        ):
            if await adapter.warm(provider):
                self._warmed.add((provider.key, provider.model_id))

        start = time.monotonic()
        response = await adapter.call(provider, request)
        elapsed = time.monotonic() - start

        usage = effective_usage(request, response)
        tokens_per_second = (
            usage.completion_tokens / elapsed
            if elapsed > 0 and usage.completion_tokens else None
        )
        return replace(
            response,
            provider_key=provider.key,
            model_id=response.model_id or provider.model_id,
            usage=usage,
            timing=GenerationTiming(
                duration_ms=elapsed * 1000, tokens_per_second=tokens_per_second
            ),
        )

    # --- Administrative API ---

    async def test_provider(
        self, provider_key: str, request: CompletionRequest
    ) -> CompletionResponse:
        """
        Validate exactly one provider, bypassing the cache.

        Reloads the provider's credential first, requires it to be
        available, and folds the measured tokens/sec into its moving
        average. Usage is recorded as a "test" request with no requestor.

        Raises:
            ConfigurationError: unknown provider key.
            UnavailableError: provider is not currently available.
            ProviderCallError: the call itself failed.
        """
        await self._ensure_initialized()
        provider = self._registry.refresh_credential(provider_key)
        if not provider.available:
            raise UnavailableError(f"Provider {provider_key} is not available")

        if request.request_type != TEST_REQUEST_TYPE:
            request = replace(request, request_type=TEST_REQUEST_TYPE)

        try:
            response = await self._call(provider, request)
        except RouterError:
            raise
        except Exception as e:
            raise ProviderCallError(str(e), provider_key=provider_key) from e

        sample = response.timing.tokens_per_second if response.timing else None
        if sample:
            if provider.avg_tokens_per_second is None:
                provider.avg_tokens_per_second = sample
            else:
                provider.avg_tokens_per_second = (provider.avg_tokens_per_second + sample) / 2

        await self._recorder.record(provider, request, response)

        logger.info(
            "provider_tested",
            extra={
                "provider": provider_key,
                "model": response.model_id,
                "tokens_per_second": round(sample, 2) if sample else None,
            },
        )
        return response

    async def refresh_providers(self) -> None:
        """Reload configuration into the registry and re-probe."""
        if not self._initialized:
            await self.initialize()
            return
        self._registry.refresh()
        self._warmed.clear()
        await self._prober.probe_all()

    async def update_provider_model(self, provider_key: str, model_id: str) -> bool:
        """
        Switch a provider to another model and persist the choice.

        Self-hosted providers only accept models the server actually has.
        The cache is cleared when the model really changed.
        """
        await self._ensure_initialized()
        provider = self._registry.get(provider_key)
        if provider is None:
            logger.warning("model_update_unknown_provider", extra={"provider": provider_key})
            return False

        if provider.family == ProviderFamily.SELF_HOSTED.value:
            try:
                models = await self.list_provider_models(provider_key)
            except Exception as e:
                logger.warning(
                    "model_update_listing_failed",
                    extra={"provider": provider_key, "error": str(e)[:200]},
                )
                return False
            if not model_is_loaded(model_id, models):
                logger.warning(
                    "model_update_rejected",
                    extra={"provider": provider_key, "model": model_id},
                )
                return False

        previous = provider.model_id
        try:
            self._settings.set_provider_model(provider_key, model_id)
        except (ConfigurationError, OSError) as e:
            logger.error(
                "model_update_persist_failed",
                extra={"provider": provider_key, "error": str(e)[:200]},
            )
            return False

        provider.model_id = model_id
        if previous != model_id:
            self._cache.clear()

        logger.info(
            "provider_model_updated",
            extra={"provider": provider_key, "model": model_id, "previous_model": previous},
        )
        return True

    async def update_provider_credential(
        self, provider_key: str, credential: Optional[str]
    ) -> bool:
        """Store (or, with an empty value, clear) a credential, then refresh."""
        await self._ensure_initialized()
        try:
            self._settings.set_provider_credential(provider_key, credential)
        except (ConfigurationError, OSError) as e:
            logger.warning(
                "credential_update_failed",
                extra={"provider": provider_key, "error": str(e)[:200]},
            )
            return False

        await self.refresh_providers()
        return True

    async def update_provider_endpoint(self, provider_key: str, endpoint: str) -> bool:
        """
        Point a provider at another server, then refresh.

        The provider's cached responses are dropped, since they came from
        the previous server.
        """
        await self._ensure_initialized()
        if not endpoint.startswith(("http://", "https://")):
            logger.warning(
                "endpoint_update_rejected",
                extra={"provider": provider_key, "endpoint": endpoint},
            )
            return False
        try:
            self._settings.set_provider_endpoint(provider_key, endpoint)
        except (ConfigurationError, OSError) as e:
            logger.warning(
                "endpoint_update_failed",
                extra={"provider": provider_key, "error": str(e)[:200]},
            )
            return False

        self._cache.invalidate_by_provider(provider_key)
        await self.refresh_providers()
        return True

    async def list_provider_models(self, provider_key: str) -> list[str]:
        """Ask a provider which models it currently offers."""
        await self._ensure_initialized()
        provider = self._registry.get(provider_key)
        if provider is None:
            raise ConfigurationError(f"Unknown provider: {provider_key}", provider_key=provider_key)
        return await self._registry.adapter_for(provider_key).list_models(provider)

    # --- Introspection ---

    def get_provider_stats(self) -> dict[str, dict[str, Any]]:
        """Provider state keyed by provider key, credentials redacted."""
        return {p.key: p.to_public_dict() for p in self._registry.list_all()}

    def get_cache_stats(self) -> dict[str, Any]:
        return self._cache.get_stats()

    def clear_cache(self) -> int:
        return self._cache.clear()

    def get_router_settings(self) -> dict[str, Any]:
        return self._settings.get_router_settings().model_dump(mode="json")

    async def get_usage_stats(self) -> dict[str, Any]:
        return await self._recorder.get_total_stats()

    async def reset_usage(self, provider_key: str) -> None:
        await self._recorder.reset_summary(provider_key)
