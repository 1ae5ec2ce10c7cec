"""
Provider Adapters — one implementation per wire protocol family.

Each family implements the same small capability interface:

    call(provider, request)    -> CompletionResponse
    health_check(provider)     -> bool
    list_models(provider)      -> list[str]

Adapters are stateless with respect to providers: the Provider entry
(endpoint, credential, model) is passed on every call, so a refresh or
model update takes effect on the next request without rebuilding them.

Families:
- self_hosted:       POST {endpoint}/api/generate   (Ollama-style)
- chat_completions:  POST {endpoint} with bearer credential
- messages:          POST {endpoint} with x-api-key + version header
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, ClassVar, Optional

import httpx

from completion_router.config.schema import ProviderFamily, TimeoutSettings
from completion_router.exceptions import (
    ConfigurationError,
    ParseError,
    ProviderCallError,
)
from completion_router.llm.models import (
    CompletionRequest,
    CompletionResponse,
    GenerationTiming,
    Provider,
    TokenUsage,
)

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"

ClientFactory = Callable[..., httpx.AsyncClient]


def derive_models_endpoint(endpoint: str) -> str:
    """Turn a completion endpoint into the sibling "list models" URL."""
    endpoint = endpoint.rstrip("/")
    for suffix in ("/chat/completions", "/messages"):
        if endpoint.endswith(suffix):
            return endpoint[: -len(suffix)] + "/models"
    return endpoint + "/models"


# ---------------------------------------------------------------------------
# Base Adapter
# ---------------------------------------------------------------------------

class ProviderAdapter(ABC):
    """Base class for provider wire adapters."""

    family: ClassVar[ProviderFamily]

    def __init__(
        self,
        timeouts: Optional[TimeoutSettings] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        self._timeouts = timeouts or TimeoutSettings()
        self._client_factory = client_factory or httpx.AsyncClient

    @property
    def probe_timeout(self) -> float:
        return self._timeouts.hosted_probe_seconds

    @abstractmethod
    async def call(
        self, provider: Provider, request: CompletionRequest
    ) -> CompletionResponse:
        """Serve one completion request."""

    @abstractmethod
    async def list_models(self, provider: Provider) -> list[str]:
        """Models the provider currently offers (probe call)."""

    async def health_check(self, provider: Provider) -> bool:
        """Lightweight availability probe. Errors propagate to the prober."""
        await self.list_models(provider)
        return True

    # --- HTTP helpers ---

    async def _post_json(
        self,
        provider: Provider,
        url: str,
        body: dict[str, Any],
        headers: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        try:
            async with self._client_factory(timeout=self._timeouts.request_seconds) as client:
                resp = await client.post(url, json=body, headers=headers)
        except httpx.TimeoutException as e:
            raise ProviderCallError(
                f"{provider.display_name} request timed out", provider_key=provider.key
            ) from e
        except httpx.HTTPError as e:
            raise ProviderCallError(
                f"{provider.display_name} request failed: {e}", provider_key=provider.key
            ) from e
        return self._decode(provider, resp)

    async def _get_json(
        self,
        provider: Provider,
        url: str,
        headers: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        try:
            async with self._client_factory(timeout=self.probe_timeout) as client:
                resp = await client.get(url, headers=headers)
        except httpx.TimeoutException as e:
            raise ProviderCallError(
                f"{provider.display_name} probe timed out", provider_key=provider.key
            ) from e
        except httpx.HTTPError as e:
            raise ProviderCallError(
                f"{provider.display_name} probe failed: {e}", provider_key=provider.key
            ) from e
        return self._decode(provider, resp)

    @staticmethod
    def _decode(provider: Provider, resp: httpx.Response) -> dict[str, Any]:
        if not resp.is_success:
            raise ProviderCallError(
                f"{provider.display_name} request failed: "
                f"{resp.status_code} {resp.reason_phrase}",
                provider_key=provider.key,
                status_code=resp.status_code,
                details={"body": resp.text[:500]},
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise ParseError(
                f"{provider.display_name} returned non-JSON payload",
                provider_key=provider.key,
                status_code=resp.status_code,
            ) from e
        if not isinstance(data, dict):
            raise ParseError(
                f"{provider.display_name} returned unexpected payload type",
                provider_key=provider.key,
            )
        return data

    @staticmethod
    def _require_credential(provider: Provider) -> str:
        if not provider.credential:
            raise ConfigurationError(
                f"{provider.display_name} has no credential configured",
                provider_key=provider.key,
            )
        return provider.credential


# ---------------------------------------------------------------------------
# Self-hosted (Ollama-style) Adapter
# ---------------------------------------------------------------------------

class SelfHostedAdapter(ProviderAdapter):
    """
    Self-hosted model server speaking /api/generate and /api/tags.

    The call path retries up to `self_hosted_retries` times with linear
    backoff (retry_backoff_seconds * attempt) to absorb cold starts while
    the server loads a model. Malformed payloads are not retried.
    """

    family = ProviderFamily.SELF_HOSTED

    @property
    def probe_timeout(self) -> float:
        return self._timeouts.self_hosted_probe_seconds

    async def call(
        self, provider: Provider, request: CompletionRequest
    ) -> CompletionResponse:
        retries = self._timeouts.self_hosted_retries
        attempt = 0
        while True:
            try:
                return await self._generate(provider, request)
            except ParseError:
                raise
            except ProviderCallError as e:
                if attempt >= retries:
                    raise
                attempt += 1
                delay = self._timeouts.retry_backoff_seconds * attempt
                logger.warning(
                    "self_hosted_retry",
                    extra={
                        "provider": provider.key,
                        "model": provider.model_id,
                        "attempt": attempt,
                        "delay_s": delay,
                        "error": str(e)[:200],
                    },
                )
                await asyncio.sleep(delay)

    async def _generate(
        self, provider: Provider, request: CompletionRequest
    ) -> CompletionResponse:
        start = time.monotonic()
        data = await self._post_json(
            provider,
            f"{provider.endpoint}/api/generate",
            {
                "model": provider.model_id,
                "prompt": request.prompt,
                "stream": False,
            },
        )
        elapsed = (time.monotonic() - start) * 1000

        content = data.get("response")
        if not isinstance(content, str):
            raise ParseError(
                f"{provider.display_name} response missing 'response' text",
                provider_key=provider.key,
            )

        return CompletionResponse(
            content=content,
            provider_key=provider.key,
            model_id=provider.model_id,
            timing=GenerationTiming(duration_ms=elapsed),
        )

    async def list_models(self, provider: Provider) -> list[str]:
        data = await self._get_json(provider, f"{provider.endpoint}/api/tags")
        models = data.get("models")
        if not isinstance(models, list):
            raise ParseError(
                f"{provider.display_name} model list missing", provider_key=provider.key
            )
        return [m["name"] for m in models if isinstance(m, dict) and m.get("name")]

    async def warm(self, provider: Provider) -> bool:
        """
        Best-effort: ask the server to load the model before the real call.

        An empty prompt makes the server load the model and return at once.
        Never raises.
        """
        try:
            async with self._client_factory(timeout=self._timeouts.request_seconds) as client:
                resp = await client.post(
                    f"{provider.endpoint}/api/generate",
                    json={"model": provider.model_id, "prompt": "", "stream": False},
                )
            if not resp.is_success:
                logger.info(
                    "self_hosted_warmup_failed",
                    extra={"provider": provider.key, "status": resp.status_code},
                )
                return False
            return True
        except httpx.HTTPError as e:
            logger.info(
                "self_hosted_warmup_failed",
                extra={"provider": provider.key, "error": str(e)[:200]},
            )
            return False


def model_is_loaded(model_id: str, loaded: list[str]) -> bool:
    """Match a configured model against server tags ("llama3" == "llama3:latest")."""
    if model_id in loaded:
        return True
    if ":" not in model_id:
        return f"{model_id}:latest" in loaded
    return False


# ---------------------------------------------------------------------------
# Chat-completions Adapter
# ---------------------------------------------------------------------------

class ChatCompletionsAdapter(ProviderAdapter):
    """OpenAI-compatible chat completions (OpenAI, Groq, ...)."""

    family = ProviderFamily.CHAT_COMPLETIONS

    def _headers(self, provider: Provider) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._require_credential(provider)}",
            "Content-Type": "application/json",
        }

    async def call(
        self, provider: Provider, request: CompletionRequest
    ) -> CompletionResponse:
        headers = self._headers(provider)
        start = time.monotonic()
        data = await self._post_json(
            provider,
            provider.endpoint,
            {
                "model": provider.model_id,
                "messages": [{"role": "user", "content": request.prompt}],
                "max_tokens": request.max_tokens,
                "temperature": request.temperature,
            },
            headers=headers,
        )
        elapsed = (time.monotonic() - start) * 1000

        try:
            message = data["choices"][0]["message"]
        except (KeyError, IndexError, TypeError) as e:
            raise ParseError(
                f"{provider.display_name} response missing choices",
                provider_key=provider.key,
            ) from e
        if not isinstance(message, dict):
            raise ParseError(
                f"{provider.display_name} response has malformed message",
                provider_key=provider.key,
            )

        usage = None
        raw_usage = data.get("usage")
        if isinstance(raw_usage, dict):
            prompt_tokens = int(raw_usage.get("prompt_tokens") or 0)
            completion_tokens = int(raw_usage.get("completion_tokens") or 0)
            usage = TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=int(
                    raw_usage.get("total_tokens") or prompt_tokens + completion_tokens
                ),
            )

        return CompletionResponse(
            content=message.get("content") or "",
            provider_key=provider.key,
            model_id=provider.model_id,
            usage=usage,
            timing=GenerationTiming(duration_ms=elapsed),
            tool_calls=message.get("tool_calls"),
        )

    async def list_models(self, provider: Provider) -> list[str]:
        url = provider.models_endpoint or derive_models_endpoint(provider.endpoint)
        data = await self._get_json(provider, url, headers=self._headers(provider))
        return [m["id"] for m in data.get("data") or [] if isinstance(m, dict) and "id" in m]


# ---------------------------------------------------------------------------
# Messages Adapter
# ---------------------------------------------------------------------------

class MessagesAdapter(ProviderAdapter):
    """Anthropic-style messages API."""

    family = ProviderFamily.MESSAGES

    def _headers(self, provider: Provider) -> dict[str, str]:
        return {
            "x-api-key": self._require_credential(provider),
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }

    async def call(
        self, provider: Provider, request: CompletionRequest
    ) -> CompletionResponse:
        headers = self._headers(provider)
        start = time.monotonic()
        data = await self._post_json(
            provider,
            provider.endpoint,
            {
                "model": provider.model_id,
                "max_tokens": request.max_tokens,
                "messages": [{"role": "user", "content": request.prompt}],
                "temperature": request.temperature,
            },
            headers=headers,
        )
        elapsed = (time.monotonic() - start) * 1000

        # Tool-use and other non-text blocks may precede the text block
        try:
            text = next(
                block["text"] for block in data["content"]
                if isinstance(block, dict) and block.get("type") == "text"
            )
        except (KeyError, StopIteration, TypeError) as e:
            raise ParseError(
                f"{provider.display_name} response missing content text",
                provider_key=provider.key,
            ) from e

        usage = None
        raw_usage = data.get("usage")
        if isinstance(raw_usage, dict):
            usage = TokenUsage.of(
                int(raw_usage.get("input_tokens") or 0),
                int(raw_usage.get("output_tokens") or 0),
            )

        return CompletionResponse(
            content=text or "",
            provider_key=provider.key,
            model_id=provider.model_id,
            usage=usage,
            timing=GenerationTiming(duration_ms=elapsed),
        )

    async def list_models(self, provider: Provider) -> list[str]:
        url = provider.models_endpoint or derive_models_endpoint(provider.endpoint)
        data = await self._get_json(provider, url, headers=self._headers(provider))
        return [m["id"] for m in data.get("data") or [] if isinstance(m, dict) and "id" in m]


# ---------------------------------------------------------------------------
# Family lookup
# ---------------------------------------------------------------------------

ADAPTERS: dict[ProviderFamily, type[ProviderAdapter]] = {
    ProviderFamily.SELF_HOSTED: SelfHostedAdapter,
    ProviderFamily.CHAT_COMPLETIONS: ChatCompletionsAdapter,
    ProviderFamily.MESSAGES: MessagesAdapter,
}


def build_adapter(
    family: ProviderFamily | str,
    timeouts: Optional[TimeoutSettings] = None,
    client_factory: Optional[ClientFactory] = None,
) -> ProviderAdapter:
    """Instantiate the adapter for a provider family."""
    try:
        adapter_cls = ADAPTERS[ProviderFamily(family)]
    except (KeyError, ValueError) as e:
        raise ConfigurationError(f"Unsupported provider family: {family}") from e
    return adapter_cls(timeouts=timeouts, client_factory=client_factory)
