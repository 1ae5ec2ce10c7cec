"""
Tests for the ResponseCache: fingerprints, TTL expiry and LRU bounds.

Time is driven by an injected clock so nothing sleeps.
"""

from __future__ import annotations

import pytest

from completion_router.llm.cache import ResponseCache
from completion_router.llm.models import CompletionRequest, CompletionResponse

from .conftest import FakeClock


def _resp(text: str = "hi", provider: str = "local") -> CompletionResponse:
    return CompletionResponse(content=text, provider_key=provider, model_id="m1")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return ResponseCache(ttl_seconds=60, max_entries=3, clock=clock)


class TestFingerprint:

    def test_deterministic(self):
        req = CompletionRequest(prompt="p", user_id="u", tool_tag="t", args={"a": 1, "b": 2})
        same = CompletionRequest(prompt="p", user_id="u", tool_tag="t", args={"b": 2, "a": 1})
        assert ResponseCache.make_fingerprint(req, "local", "m1") == \
            ResponseCache.make_fingerprint(same, "local", "m1")

    @pytest.mark.parametrize("change", [
        {"prompt": "other"},
        {"user_id": "someone-else"},
        {"tool_tag": "workout"},
        {"args": {"minutes": 30}},
    ])
    def test_request_fields_change_fingerprint(self, change):
        base = dict(prompt="p", user_id="u", tool_tag="chat", args={"minutes": 20})
        a = CompletionRequest(**base)
        b = CompletionRequest(**{**base, **change})
        assert ResponseCache.make_fingerprint(a, "local", "m1") != \
            ResponseCache.make_fingerprint(b, "local", "m1")

    def test_provider_and_model_isolate_entries(self):
        req = CompletionRequest(prompt="p", user_id="u")
        keys = {
            ResponseCache.make_fingerprint(req, "local", "m1"),
            ResponseCache.make_fingerprint(req, "hosted", "m1"),
            ResponseCache.make_fingerprint(req, "local", "m2"),
        }
        assert len(keys) == 3

    def test_mixed_key_types_in_args(self):
        req = CompletionRequest(prompt="p", user_id="u", args={1: "a", "b": 2, "n": {2: [3]}})
        same = CompletionRequest(prompt="p", user_id="u", args={"n": {2: [3]}, "b": 2, 1: "a"})
        assert ResponseCache.make_fingerprint(req, "x", "m") == \
            ResponseCache.make_fingerprint(same, "x", "m")

    def test_int_and_str_keys_stay_distinct(self):
        a = CompletionRequest(prompt="p", user_id="u", args={1: "a"})
        b = CompletionRequest(prompt="p", user_id="u", args={"1": "a"})
        assert ResponseCache.make_fingerprint(a, "x", "m") != \
            ResponseCache.make_fingerprint(b, "x", "m")

    def test_generation_params_do_not_affect_fingerprint(self):
        a = CompletionRequest(prompt="p", user_id="u", max_tokens=10, temperature=0.1)
        b = CompletionRequest(prompt="p", user_id="u", max_tokens=500, temperature=0.9)
        assert ResponseCache.make_fingerprint(a, "x", "m") == \
            ResponseCache.make_fingerprint(b, "x", "m")


class TestGetPut:

    def test_miss_then_hit(self, cache):
        assert cache.get("k") is None
        cache.put("k", _resp("cached"))
        assert cache.get("k").content == "cached"

        stats = cache.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["stores"] == 1
        assert stats["hit_rate"] == 0.5

    def test_entry_metadata_defaults_to_response(self, cache):
        cache.put("k", _resp(provider="hosted"))
        [entry] = cache.list_entries()
        assert entry["provider"] == "hosted"
        assert entry["model"] == "m1"


class TestTTL:

    def test_expired_entry_is_a_miss(self, cache, clock):
        cache.put("k", _resp())
        clock.advance(59)
        assert cache.get("k") is not None
        clock.advance(2)
        assert cache.get("k") is None
        assert cache.size == 0

    def test_ttl_is_absolute_not_sliding(self, cache, clock):
        """Reads do not extend an entry's lifetime."""
        cache.put("k", _resp())
        for _ in range(3):
            clock.advance(25)
            cache.get("k")
        assert cache.get("k") is None

    def test_reinsert_refreshes_ttl(self, cache, clock):
        cache.put("k", _resp("old"))
        clock.advance(50)
        cache.put("k", _resp("new"))
        clock.advance(50)
        assert cache.get("k").content == "new"

    def test_cleanup_expired(self, cache, clock):
        cache.put("a", _resp())
        clock.advance(30)
        cache.put("b", _resp())
        clock.advance(40)
        assert cache.cleanup_expired() == 1
        assert cache.size == 1


class TestLRU:

    def test_capacity_never_exceeded(self, cache):
        for i in range(10):
            cache.put(f"k{i}", _resp(str(i)))
            assert cache.size <= 3
        assert cache.get_stats()["evictions"] == 7

    def test_least_recently_used_evicted_first(self, cache):
        cache.put("a", _resp("a"))
        cache.put("b", _resp("b"))
        cache.put("c", _resp("c"))
        cache.get("a")              # a is now most recent
        cache.put("d", _resp("d"))  # evicts b

        assert cache.get("b") is None
        assert cache.get("a") is not None
        assert cache.get("c") is not None
        assert cache.get("d") is not None

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            ResponseCache(max_entries=0)


class TestInvalidation:

    def test_invalidate(self, cache):
        cache.put("k", _resp())
        assert cache.invalidate("k") is True
        assert cache.invalidate("k") is False

    def test_invalidate_by_provider(self, cache):
        cache.put("a", _resp(provider="local"))
        cache.put("b", _resp(provider="hosted"))
        cache.put("c", _resp(provider="local"))
        assert cache.invalidate_by_provider("local") == 2
        assert cache.size == 1

    def test_clear_returns_count(self, cache):
        cache.put("a", _resp())
        cache.put("b", _resp())
        assert cache.clear() == 2
        assert cache.get("a") is None

    def test_reset_stats_keeps_entries(self, cache):
        cache.put("a", _resp())
        cache.get("a")
        cache.reset_stats()
        assert cache.get_stats()["hits"] == 0
        assert cache.size == 1
