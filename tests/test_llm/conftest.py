"""
Shared fixtures for the routing layer tests.

All HTTP goes through httpx.MockTransport; no real provider is contacted.
`FakeBackends` plays a self-hosted server ("local") and a hosted
chat-completions API ("hosted"), counts calls, and can be told to fail.
"""

from __future__ import annotations

import json
from typing import Any, Callable, Optional

import httpx
import pytest

from completion_router.config.loader import SettingsStore
from completion_router.config.schema import (
    PricingDescriptor,
    PricingType,
    ProviderConfig,
    ProviderFamily,
    ProviderPriority,
    RouterConfig,
    RouterSettings,
    TimeoutSettings,
)
from completion_router.llm.router import CompletionRouter

LOCAL_URL = "http://local.test"
HOSTED_URL = "https://hosted.test/v1/chat/completions"
HOSTED_MODELS_URL = "https://hosted.test/v1/models"
MESSAGES_URL = "https://messages.test/v1/messages"
MESSAGES_MODELS_URL = "https://messages.test/v1/models"


class FakeBackends:
    """Programmable fake for every provider family used in the tests."""

    def __init__(self) -> None:
        self.local_models: list[str] = ["llama3.2:3b", "mistral:7b"]
        self.local_reply = "local says hi"
        self.hosted_reply = "hosted says hi"
        self.messages_reply = "messages says hi"
        self.fail: dict[str, int] = {}      # name -> HTTP status to return
        self.timeout: set[str] = set()      # names that raise ReadTimeout
        self.calls: list[tuple[str, str, dict[str, Any]]] = []

    def count(self, name: str) -> int:
        return sum(1 for n, _, _ in self.calls if n == name)

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        body = json.loads(request.content) if request.content else {}
        name = self._name_for(request.method, url)
        self.calls.append((name, request.method, body))

        if name in self.timeout:
            raise httpx.ReadTimeout("timed out", request=request)
        if name in self.fail:
            return httpx.Response(self.fail[name], json={"error": "boom"})

        if name == "local_tags":
            return httpx.Response(200, json={"models": [{"name": m} for m in self.local_models]})
        if name == "local_generate":
            return httpx.Response(200, json={"response": self.local_reply})
        if name == "hosted_models":
            return httpx.Response(200, json={"data": [{"id": "gpt-test"}]})
        if name == "hosted_chat":
            return httpx.Response(200, json={
                "choices": [{"message": {"role": "assistant", "content": self.hosted_reply}}],
                "usage": {"prompt_tokens": 1000, "completion_tokens": 500, "total_tokens": 1500},
            })
        if name == "messages_models":
            return httpx.Response(200, json={"data": [{"id": "claude-test"}]})
        if name == "messages_call":
            return httpx.Response(200, json={
                "content": [{"type": "text", "text": self.messages_reply}],
                "usage": {"input_tokens": 10, "output_tokens": 20},
            })
        return httpx.Response(404, json={"error": f"no route for {url}"})

    @staticmethod
    def _name_for(method: str, url: str) -> str:
        if url == f"{LOCAL_URL}/api/tags":
            return "local_tags"
        if url == f"{LOCAL_URL}/api/generate":
            return "local_generate"
        if url == HOSTED_MODELS_URL:
            return "hosted_models"
        if url == HOSTED_URL:
            return "hosted_chat"
        if url == MESSAGES_MODELS_URL:
            return "messages_models"
        if url == MESSAGES_URL:
            return "messages_call"
        return "unknown"

    def client_factory(self) -> Callable[..., httpx.AsyncClient]:
        transport = httpx.MockTransport(self.handler)

        def factory(**kwargs: Any) -> httpx.AsyncClient:
            return httpx.AsyncClient(transport=transport, **kwargs)

        return factory


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def local_config(**overrides: Any) -> ProviderConfig:
    return ProviderConfig(**{
        "key": "local",
        "display_name": "Local",
        "family": ProviderFamily.SELF_HOSTED,
        "endpoint": LOCAL_URL,
        "model": "llama3.2:3b",
        **overrides,
    })


def hosted_config(**overrides: Any) -> ProviderConfig:
    return ProviderConfig(**{
        "key": "hosted",
        "display_name": "Hosted",
        "family": ProviderFamily.CHAT_COMPLETIONS,
        "endpoint": HOSTED_URL,
        "model": "gpt-test",
        "credential": "sk-test",
        "pricing": PricingDescriptor(
            type=PricingType.INPUT_OUTPUT, input_cost_per_1k=1, output_cost_per_1k=2
        ),
        **overrides,
    })


def messages_config(**overrides: Any) -> ProviderConfig:
    return ProviderConfig(**{
        "key": "claude",
        "display_name": "Claude",
        "family": ProviderFamily.MESSAGES,
        "endpoint": MESSAGES_URL,
        "model": "claude-test",
        "credential": "ak-test",
        **overrides,
    })


def build_config(
    providers: Optional[list[ProviderConfig]] = None,
    priorities: Optional[dict[str, int]] = None,
    **overrides: Any,
) -> RouterConfig:
    providers = providers if providers is not None else [local_config(), hosted_config()]
    priorities = priorities if priorities is not None else {"local": 1, "hosted": 2}
    return RouterConfig(**{
        "providers": providers,
        "router": RouterSettings(
            providers={k: ProviderPriority(priority=v) for k, v in priorities.items()}
        ),
        "timeouts": TimeoutSettings(retry_backoff_seconds=0, self_hosted_retries=2),
        "warmup": False,
        **overrides,
    })


@pytest.fixture
def backends():
    return FakeBackends()


@pytest.fixture
def settings():
    return SettingsStore(build_config())


@pytest.fixture
def router(settings, backends):
    """Uninitialized router over local (priority 1) and hosted (priority 2)."""
    return CompletionRouter(settings, client_factory=backends.client_factory())
