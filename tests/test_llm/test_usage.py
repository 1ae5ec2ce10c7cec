"""
Tests for usage accounting: cost math, token estimation, stores, recorder.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from completion_router.config.schema import ModelPricing, PricingDescriptor, PricingType
from completion_router.llm.models import (
    CompletionRequest,
    CompletionResponse,
    Provider,
    TokenUsage,
)
from completion_router.llm.usage import (
    InMemoryUsageStore,
    SqliteUsageStore,
    UsageRecord,
    UsageRecorder,
    calculate_cost,
    effective_usage,
    estimate_usage,
)


def _provider(key: str = "hosted", pricing: PricingDescriptor | None = None) -> Provider:
    return Provider(
        key=key,
        display_name=key.capitalize(),
        family="chat_completions",
        endpoint="https://x.test",
        model_id="gpt-test",
        pricing=pricing or PricingDescriptor(
            type=PricingType.INPUT_OUTPUT, input_cost_per_1k=1, output_cost_per_1k=2
        ),
        credential="sk",
    )


def _record(provider_key: str = "hosted", cost: float = 1.0, tokens: int = 100, user: str | None = "u") -> UsageRecord:
    return UsageRecord(
        provider_key=provider_key,
        model_id="m",
        prompt_tokens=tokens // 2,
        completion_tokens=tokens - tokens // 2,
        total_tokens=tokens,
        input_cost=cost / 2,
        output_cost=cost / 2,
        total_cost=cost,
        requestor=user,
    )


# ===========================================================================
# Cost math
# ===========================================================================

class TestCalculateCost:

    def test_free(self):
        cost = calculate_cost(TokenUsage.of(5000, 5000), PricingDescriptor(type=PricingType.FREE))
        assert cost.total_cost == 0

    def test_flat(self):
        pricing = PricingDescriptor(type=PricingType.FLAT, cost_per_1k=0.0001)
        cost = calculate_cost(TokenUsage.of(1000, 1000), pricing)
        assert cost.total_cost == pytest.approx(0.0002)

    def test_input_output(self):
        pricing = PricingDescriptor(
            type=PricingType.INPUT_OUTPUT, input_cost_per_1k=1, output_cost_per_1k=2
        )
        cost = calculate_cost(TokenUsage.of(1000, 500), pricing)
        assert cost.input_cost == pytest.approx(1.0)
        assert cost.output_cost == pytest.approx(1.0)
        assert cost.total_cost == pytest.approx(2.0)

    def test_model_override_wins(self):
        pricing = PricingDescriptor(
            type=PricingType.INPUT_OUTPUT,
            input_cost_per_1k=1,
            output_cost_per_1k=2,
            model_pricing={"big": ModelPricing(input_cost_per_1k=10, output_cost_per_1k=20)},
        )
        assert calculate_cost(TokenUsage.of(1000, 1000), pricing, "big").total_cost == pytest.approx(30)
        assert calculate_cost(TokenUsage.of(1000, 1000), pricing, "small").total_cost == pytest.approx(3)

    def test_partial_override_inherits(self):
        pricing = PricingDescriptor(
            type=PricingType.INPUT_OUTPUT,
            input_cost_per_1k=1,
            output_cost_per_1k=2,
            model_pricing={"half": ModelPricing(input_cost_per_1k=5)},
        )
        cost = calculate_cost(TokenUsage.of(1000, 1000), pricing, "half")
        assert cost.input_cost == pytest.approx(5)
        assert cost.output_cost == pytest.approx(2)

    def test_flat_override(self):
        pricing = PricingDescriptor(
            type=PricingType.FLAT,
            cost_per_1k=1,
            model_pricing={"fast": ModelPricing(cost_per_1k=3)},
        )
        assert calculate_cost(TokenUsage.of(500, 500), pricing, "fast").total_cost == pytest.approx(3)


class TestEstimation:

    def test_estimate_rounds_up(self):
        usage = estimate_usage("12345", "1234")
        assert usage.prompt_tokens == 2
        assert usage.completion_tokens == 1
        assert usage.total_tokens == 3
        assert usage.estimated is True

    def test_effective_usage_prefers_reported(self):
        req = CompletionRequest(prompt="p" * 40, user_id="u")
        resp = CompletionResponse(content="c", provider_key="x", usage=TokenUsage.of(7, 3))
        assert effective_usage(req, resp) == TokenUsage.of(7, 3)

    def test_effective_usage_estimates_when_missing_or_zero(self):
        req = CompletionRequest(prompt="p" * 40, user_id="u")
        for usage in (None, TokenUsage()):
            resp = CompletionResponse(content="c" * 8, provider_key="x", usage=usage)
            est = effective_usage(req, resp)
            assert est.estimated
            assert (est.prompt_tokens, est.completion_tokens) == (10, 2)


# ===========================================================================
# Stores
# ===========================================================================

@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryUsageStore()
    return SqliteUsageStore(tmp_path / "nested" / "usage.db")


class TestUsageStores:
    """Both stores honour the same contract."""

    def test_append_updates_summary(self, store):
        store.append(_record(cost=1.0, tokens=100))
        store.append(_record(cost=0.5, tokens=40))

        summary = store.get_summary("hosted")
        assert summary.request_count == 2
        assert summary.total_tokens == 140
        assert summary.total_cost == pytest.approx(1.5)
        assert summary.total_input_cost == pytest.approx(0.75)

    def test_unknown_summary(self, store):
        assert store.get_summary("nobody") is None

    def test_summaries_ordered_by_cost(self, store):
        store.append(_record("cheap", cost=0.1))
        store.append(_record("pricey", cost=9.0))
        assert [s.provider_key for s in store.get_all_summaries()] == ["pricey", "cheap"]

    def test_history_newest_first_and_filtered(self, store):
        store.append(_record("a", user="alice"))
        store.append(_record("b", user="bob"))
        store.append(_record("a", user="bob"))

        history = store.get_history()
        assert [r.provider_key for r in history] == ["a", "b", "a"]
        assert history[0].requestor == "bob"
        assert len(store.get_history(provider_key="a")) == 2
        assert len(store.get_history(user_id="bob")) == 2
        assert len(store.get_history(limit=1)) == 1

    def test_reset_zeroes_summary_keeps_ledger(self, store):
        store.append(_record(cost=2.0))
        store.reset_summary("hosted")

        summary = store.get_summary("hosted")
        assert summary.request_count == 0
        assert summary.total_cost == 0
        assert summary.last_reset_at is not None
        assert len(store.get_history(provider_key="hosted")) == 1

    def test_null_requestor_roundtrips(self, store):
        store.append(_record(user=None))
        assert store.get_history()[0].requestor is None


# ===========================================================================
# Recorder
# ===========================================================================

class TestUsageRecorder:

    @pytest.mark.asyncio
    async def test_record_prices_and_persists(self):
        recorder = UsageRecorder()
        req = CompletionRequest(prompt="p", user_id="u-1")
        resp = CompletionResponse(
            content="c", provider_key="hosted", model_id="gpt-test",
            usage=TokenUsage.of(1000, 500),
        )

        record = await recorder.record(_provider(), req, resp)

        assert record.total_cost == pytest.approx(2.0)
        assert record.requestor == "u-1"
        summary = await recorder.get_summary("hosted")
        assert summary.request_count == 1

    @pytest.mark.asyncio
    async def test_test_requests_have_no_requestor(self):
        recorder = UsageRecorder()
        req = CompletionRequest(prompt="p", user_id="admin", request_type="test")
        resp = CompletionResponse(content="c", provider_key="hosted", usage=TokenUsage.of(1, 1))

        record = await recorder.record(_provider(), req, resp)

        assert record.requestor is None
        assert record.request_type == "test"

    @pytest.mark.asyncio
    async def test_estimated_usage_is_flagged(self):
        recorder = UsageRecorder()
        req = CompletionRequest(prompt="abcd" * 10, user_id="u")
        resp = CompletionResponse(content="abcd", provider_key="hosted")

        record = await recorder.record(_provider(), req, resp)

        assert record.estimated is True
        assert record.prompt_tokens == 10
        assert record.completion_tokens == 1

    @pytest.mark.asyncio
    async def test_store_failure_is_swallowed(self, caplog):
        store = MagicMock()
        store.append.side_effect = RuntimeError("disk full")
        recorder = UsageRecorder(store)
        req = CompletionRequest(prompt="p", user_id="u")
        resp = CompletionResponse(content="c", provider_key="hosted")

        assert await recorder.record(_provider(), req, resp) is None
        assert "usage_record_failed" in caplog.text

    @pytest.mark.asyncio
    async def test_total_stats(self):
        recorder = UsageRecorder()
        recorder.store.append(_record("a", cost=1.0, tokens=10))
        recorder.store.append(_record("b", cost=2.0, tokens=20))
        recorder.store.append(_record("b", cost=2.0, tokens=20))

        stats = await recorder.get_total_stats()

        assert stats["total_providers"] == 2
        assert stats["total_requests"] == 3
        assert stats["total_tokens"] == 50
        assert stats["total_cost"] == pytest.approx(5.0)
        assert stats["providers"][0]["provider_key"] == "b"

    @pytest.mark.asyncio
    async def test_reset_summary(self):
        recorder = UsageRecorder()
        recorder.store.append(_record("a"))
        await recorder.reset_summary("a")
        assert (await recorder.get_summary("a")).request_count == 0
