"""
Response Cache — In-memory completion caching with LRU + TTL bounds.

Avoids redundant provider calls for identical, recent requests.

Fingerprints are computed from (user_id, tool_tag, args, prompt,
provider_key, model_id) so two requests that differ only in provider or
model never share an entry.

Two independent bounds:
- max_entries: least-recently-used entry is evicted first
- ttl_seconds: absolute lifetime from insertion, regardless of recency

Usage:
    from completion_router.llm.cache import ResponseCache

    cache = ResponseCache(ttl_seconds=6 * 3600, max_entries=1000)

    key = ResponseCache.make_fingerprint(request, provider.key, provider.model_id)
    cached = cache.get(key)
    if cached is None:
        response = await adapter.call(provider, request)
        cache.put(key, response, provider=provider.key, model=provider.model_id)
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from completion_router.llm.models import CompletionRequest, CompletionResponse

logger = logging.getLogger(__name__)


def _canonical(value: Any) -> Any:
    """
    Rewrite an args payload so json.dumps(sort_keys=True) always succeeds.

    Non-string keys are tagged with their type, so {1: ...} and {"1": ...}
    still fingerprint differently.
    """
    if isinstance(value, Mapping):
        return {
            (k if isinstance(k, str) else f"{type(k).__name__}:{k!r}"): _canonical(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_canonical(v) for v in value]
    return value


# ---------------------------------------------------------------------------
# Cache Entry
# ---------------------------------------------------------------------------

@dataclass
class CacheEntry:
    """A cached response with expiration metadata."""

    key: str
    response: CompletionResponse
    created_at: float             # clock() at insertion
    expires_at: float             # created_at + ttl
    hit_count: int = 0
    provider: str = ""
    model: str = ""

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


# ---------------------------------------------------------------------------
# Response Cache
# ---------------------------------------------------------------------------

class ResponseCache:
    """
    LRU cache for completion responses with TTL expiration.

    Safe for concurrent use: every operation holds a short internal lock
    around the OrderedDict and nothing else. No I/O happens under it.
    """

    def __init__(
        self,
        ttl_seconds: float = 6 * 60 * 60,
        max_entries: int = 1000,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()

        # LRU ordered dict: most recently used at end
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()

        # Stats
        self._hits: int = 0
        self._misses: int = 0
        self._evictions: int = 0
        self._stores: int = 0

    @property
    def size(self) -> int:
        return len(self._entries)

    @property
    def max_entries(self) -> int:
        return self._max_entries

    @property
    def hit_rate(self) -> float:
        total = self._hits + self._misses
        return self._hits / total if total > 0 else 0.0

    # --- Key Generation ---

    @staticmethod
    def make_fingerprint(
        request: CompletionRequest,
        provider_key: str,
        model_id: str,
    ) -> str:
        """
        Deterministic fingerprint for a request against one provider/model.

        Uses SHA-256 over canonical JSON to keep keys short and fixed-length.
        """
        raw = json.dumps({
            "user_id": request.user_id,
            "tool": request.tool_tag,
            "args": _canonical(request.args),
            "prompt": request.prompt,
            "provider": provider_key,
            "model": model_id,
        }, sort_keys=True, default=str)
        return hashlib.sha256(raw.encode()).hexdigest()

    # --- Core Operations ---

    def get(self, key: str) -> Optional[CompletionResponse]:
        """
        Look up a cached response.

        Returns None on a miss or when the entry has outlived its TTL
        (expired entries are dropped on sight).
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None

            if entry.is_expired(self._clock()):
                del self._entries[key]
                self._misses += 1
                self._evictions += 1
                return None

            self._entries.move_to_end(key)
            entry.hit_count += 1
            self._hits += 1

        logger.debug(
            "cache_hit",
            extra={
                "key": key[:16],
                "provider": entry.provider,
                "model": entry.model,
                "hit_count": entry.hit_count,
            },
        )
        return entry.response

    def put(
        self,
        key: str,
        response: CompletionResponse,
        *,
        provider: str = "",
        model: str = "",
    ) -> None:
        """Store a response, evicting least-recently-used entries at capacity."""
        now = self._clock()
        with self._lock:
            # Re-inserting refreshes the TTL
            self._entries.pop(key, None)

            while len(self._entries) >= self._max_entries:
                evicted_key, _ = self._entries.popitem(last=False)
                self._evictions += 1
                logger.debug("cache_eviction", extra={"key": evicted_key[:16]})

            self._entries[key] = CacheEntry(
                key=key,
                response=response,
                created_at=now,
                expires_at=now + self._ttl,
                provider=provider or response.provider_key,
                model=model or response.model_id,
            )
            self._stores += 1

    def invalidate(self, key: str) -> bool:
        """Remove a specific entry. Returns True if found."""
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate_by_provider(self, provider: str) -> int:
        """Remove every entry produced by one provider."""
        with self._lock:
            keys = [k for k, v in self._entries.items() if v.provider == provider]
            for key in keys:
                del self._entries[key]
        return len(keys)

    def clear(self) -> int:
        """Clear all cached entries. Returns number of entries cleared."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.info("cache_cleared", extra={"entries": count})
        return count

    def cleanup_expired(self) -> int:
        """Remove all expired entries. Returns number removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, v in self._entries.items() if v.is_expired(now)]
            for key in expired:
                del self._entries[key]
            self._evictions += len(expired)
        return len(expired)

    # --- Stats ---

    def get_stats(self) -> dict[str, Any]:
        return {
            "size": self.size,
            "max_entries": self._max_entries,
            "ttl_seconds": self._ttl,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self.hit_rate, 3),
            "evictions": self._evictions,
            "stores": self._stores,
        }

    def reset_stats(self) -> None:
        """Reset performance counters without clearing cached data."""
        with self._lock:
            self._hits = 0
            self._misses = 0
            self._evictions = 0
            self._stores = 0

    def list_entries(self) -> list[dict[str, Any]]:
        """Metadata for all cached entries (for debugging)."""
        now = self._clock()
        with self._lock:
            return [
                {
                    "key": entry.key[:16] + "...",
                    "provider": entry.provider,
                    "model": entry.model,
                    "age_seconds": round(now - entry.created_at, 1),
                    "hit_count": entry.hit_count,
                    "is_expired": entry.is_expired(now),
                }
                for entry in self._entries.values()
            ]
