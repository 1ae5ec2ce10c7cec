"""
Completion routing layer — provider registry, probing and dispatch.

Provides a unified interface for serving completions from a self-hosted
model server and hosted APIs, with priority-ordered failover.

Modules:
- models: request / response / provider types
- providers: wire adapters per provider family
- registry: ProviderRegistry — configuration + live provider state
- prober: HealthProber — availability and latency probing
- selector: PrioritySelector — per-request provider ordering
- cache: ResponseCache — LRU + TTL response caching
- usage: UsageRecorder — token and cost accounting
- router: CompletionRouter — dispatch with cache and failover
"""
