"""
Request / response types shared by every part of the router.

All of these are immutable once built: callers construct requests,
adapters construct responses, and nothing downstream mutates either.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Optional

DEFAULT_TOOL_TAG = "chat"
TEST_REQUEST_TYPE = "test"


@dataclass(frozen=True)
class CompletionRequest:
    """A content-generation request from an upstream feature."""

    prompt: str
    user_id: str
    tool_tag: str = DEFAULT_TOOL_TAG      # Logical feature name
    args: Mapping[str, Any] = field(default_factory=dict)  # Fingerprint only
    max_tokens: int = 1000
    temperature: float = 0.7
    request_type: str = "generate"        # "test" for admin validation

    @property
    def is_test(self) -> bool:
        return self.request_type == TEST_REQUEST_TYPE


@dataclass(frozen=True)
class TokenUsage:
    """Token counts for one completion."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated: bool = False  # True when approximated from text length

    @classmethod
    def of(cls, prompt_tokens: int, completion_tokens: int, *, estimated: bool = False) -> "TokenUsage":
        return cls(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            estimated=estimated,
        )

    @property
    def is_empty(self) -> bool:
        return self.total_tokens == 0 and self.prompt_tokens == 0 and self.completion_tokens == 0


@dataclass(frozen=True)
class GenerationTiming:
    duration_ms: float
    tokens_per_second: Optional[float] = None


@dataclass(frozen=True)
class CompletionResponse:
    """Unified response from any provider family."""

    content: str
    provider_key: str
    model_id: str = ""
    usage: Optional[TokenUsage] = None
    timing: Optional[GenerationTiming] = None
    tool_calls: Optional[list[dict[str, Any]]] = None
    cached: bool = False

    def with_cached(self) -> "CompletionResponse":
        return replace(self, cached=True)


@dataclass
class Provider:
    """
    Configuration plus live state for one completion backend.

    Created by the registry; availability and latency are mutated by the
    prober, credential/endpoint/model by refresh and model updates.
    Never deleted, only toggled disabled.
    """

    key: str
    display_name: str
    family: str                        # ProviderFamily value
    endpoint: str
    model_id: str
    pricing: Any                       # PricingDescriptor
    credential: Optional[str] = field(default=None, repr=False)
    models_endpoint: Optional[str] = None
    requires_credential: bool = True
    enabled: bool = True
    available: bool = False
    avg_latency_ms: float = 0.0
    avg_tokens_per_second: Optional[float] = None

    @property
    def has_credential(self) -> bool:
        return bool(self.credential)

    @property
    def is_configured(self) -> bool:
        return self.has_credential or not self.requires_credential

    def to_public_dict(self) -> dict[str, Any]:
        """Introspection view with the credential redacted."""
        pricing = self.pricing.model_dump(mode="json") if hasattr(self.pricing, "model_dump") else self.pricing
        return {
            "key": self.key,
            "name": self.display_name,
            "family": self.family,
            "endpoint": self.endpoint,
            "model": self.model_id,
            "enabled": self.enabled,
            "is_available": self.available,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "avg_tokens_per_second": (
                round(self.avg_tokens_per_second, 2)
                if self.avg_tokens_per_second is not None else None
            ),
            "has_credential": self.has_credential,
            "pricing": pricing,
        }
