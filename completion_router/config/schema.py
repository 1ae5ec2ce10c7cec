"""
Pydantic configuration schema for the completion router.

A router deployment is described by a YAML file that conforms to these
models: which providers exist, how to reach them, what they cost, and in
which order they should be tried. Anything not given in the file falls
back to DEFAULT_PROVIDERS and the defaults below.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class ProviderFamily(str, Enum):
    """Wire protocol spoken by a provider."""

    SELF_HOSTED = "self_hosted"            # POST {endpoint}/api/generate
    CHAT_COMPLETIONS = "chat_completions"  # OpenAI-style chat completions
    MESSAGES = "messages"                  # Anthropic-style messages


class PricingType(str, Enum):
    FREE = "free"
    FLAT = "flat"
    INPUT_OUTPUT = "input_output"


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------

class ModelPricing(BaseModel):
    """Per-model override of a provider's rates. Missing fields inherit."""
    cost_per_1k: Optional[float] = Field(None, ge=0)
    input_cost_per_1k: Optional[float] = Field(None, ge=0)
    output_cost_per_1k: Optional[float] = Field(None, ge=0)


class PricingDescriptor(BaseModel):
    """How a provider charges for tokens."""
    type: PricingType = PricingType.FREE
    cost_per_1k: float = Field(0.0, ge=0, description="Flat rate per 1K total tokens")
    input_cost_per_1k: float = Field(0.0, ge=0)
    output_cost_per_1k: float = Field(0.0, ge=0)
    model_pricing: dict[str, ModelPricing] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class ProviderConfig(BaseModel):
    """Static configuration for one completion provider."""
    key: str = Field(..., min_length=1, description="Stable provider id")
    display_name: str = ""
    family: ProviderFamily
    endpoint: str
    models_endpoint: Optional[str] = Field(
        None, description="Probe URL; derived from endpoint when omitted"
    )
    model: str
    credential: Optional[str] = Field(None, repr=False)
    credential_env: Optional[str] = Field(
        None, description="Environment variable holding the credential"
    )
    endpoint_env: Optional[str] = Field(
        None, description="Environment variable overriding the endpoint"
    )
    enabled: bool = True
    pricing: PricingDescriptor = Field(default_factory=PricingDescriptor)

    @field_validator("key")
    @classmethod
    def key_is_slug(cls, v: str) -> str:
        if v != v.strip() or " " in v:
            raise ValueError(f"provider key must not contain spaces: {v!r}")
        return v

    @model_validator(mode="after")
    def default_display_name(self) -> "ProviderConfig":
        if not self.display_name:
            self.display_name = self.key.capitalize()
        return self

    @property
    def requires_credential(self) -> bool:
        return self.family != ProviderFamily.SELF_HOSTED


class ProviderPriority(BaseModel):
    """Entry of the explicit priority ordering."""
    enabled: bool = True
    priority: int = Field(5, ge=1, le=10, description="1 = tried first")


class RouterSettings(BaseModel):
    """Administrator-editable routing settings."""
    selected_provider: Optional[str] = None
    selected_model: Optional[str] = None
    # Carried for the admin surface; ordering uses `providers` only.
    latency_weight: float = Field(0.7, ge=0, le=1)
    cost_weight: float = Field(0.3, ge=0, le=1)
    providers: dict[str, ProviderPriority] = Field(default_factory=dict)


class CacheSettings(BaseModel):
    max_entries: int = Field(1000, ge=1)
    ttl_seconds: float = Field(6 * 60 * 60, gt=0)


class TimeoutSettings(BaseModel):
    self_hosted_probe_seconds: float = Field(5.0, gt=0)
    hosted_probe_seconds: float = Field(10.0, gt=0)
    request_seconds: float = Field(60.0, gt=0)
    retry_backoff_seconds: float = Field(2.0, ge=0)
    self_hosted_retries: int = Field(2, ge=0)


class RouterConfig(BaseModel):
    """Root configuration object."""
    providers: list[ProviderConfig] = Field(default_factory=list)
    router: RouterSettings = Field(default_factory=RouterSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)
    usage_db_path: Optional[str] = Field(
        None, description="SQLite file for usage accounting; in-memory when unset"
    )
    warmup: bool = Field(True, description="Warm self-hosted models before calls")

    @field_validator("providers")
    @classmethod
    def unique_keys(cls, v: list[ProviderConfig]) -> list[ProviderConfig]:
        seen: set[str] = set()
        for provider in v:
            if provider.key in seen:
                raise ValueError(f"duplicate provider key: {provider.key}")
            seen.add(provider.key)
        return v

    @field_validator("usage_db_path")
    @classmethod
    def file_backed_db(cls, v: Optional[str]) -> Optional[str]:
        # Each sqlite connection to ":memory:" is a separate empty database
        if v is not None and (v.strip() == ":memory:" or v.startswith("file::memory:")):
            raise ValueError("usage_db_path must be a file; omit it for in-memory usage")
        return v

    def get_provider(self, key: str) -> Optional[ProviderConfig]:
        for provider in self.providers:
            if provider.key == key:
                return provider
        return None


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

OLLAMA = ProviderConfig(
    key="ollama",
    display_name="Ollama",
    family=ProviderFamily.SELF_HOSTED,
    endpoint="http://localhost:11434",
    endpoint_env="OLLAMA_BASE_URL",
    model="llama3.2:3b",
    pricing=PricingDescriptor(type=PricingType.FREE),
)

GROQ = ProviderConfig(
    key="groq",
    display_name="Groq",
    family=ProviderFamily.CHAT_COMPLETIONS,
    endpoint="https://api.groq.com/openai/v1/chat/completions",
    model="mixtral-8x7b-32768",
    credential_env="GROQ_API_KEY",
    pricing=PricingDescriptor(type=PricingType.FLAT, cost_per_1k=0.0001),
)

OPENAI = ProviderConfig(
    key="openai",
    display_name="OpenAI",
    family=ProviderFamily.CHAT_COMPLETIONS,
    endpoint="https://api.openai.com/v1/chat/completions",
    model="gpt-3.5-turbo",
    credential_env="OPENAI_API_KEY",
    pricing=PricingDescriptor(
        type=PricingType.INPUT_OUTPUT,
        input_cost_per_1k=0.0005,
        output_cost_per_1k=0.0015,
        model_pricing={
            "gpt-4o": ModelPricing(input_cost_per_1k=0.005, output_cost_per_1k=0.015),
            "gpt-4o-mini": ModelPricing(input_cost_per_1k=0.00015, output_cost_per_1k=0.0006),
        },
    ),
)

ANTHROPIC = ProviderConfig(
    key="anthropic",
    display_name="Anthropic",
    family=ProviderFamily.MESSAGES,
    endpoint="https://api.anthropic.com/v1/messages",
    model="claude-3-sonnet-20240229",
    credential_env="ANTHROPIC_API_KEY",
    pricing=PricingDescriptor(
        type=PricingType.INPUT_OUTPUT,
        input_cost_per_1k=0.003,
        output_cost_per_1k=0.015,
        model_pricing={
            "claude-3-5-haiku-20241022": ModelPricing(
                input_cost_per_1k=0.001, output_cost_per_1k=0.005
            ),
        },
    ),
)

DEFAULT_PROVIDERS: list[ProviderConfig] = [OLLAMA, GROQ, OPENAI, ANTHROPIC]

DEFAULT_PRIORITIES: dict[str, ProviderPriority] = {
    "ollama": ProviderPriority(enabled=True, priority=1),
    "groq": ProviderPriority(enabled=True, priority=2),
    "openai": ProviderPriority(enabled=True, priority=3),
    "anthropic": ProviderPriority(enabled=True, priority=4),
}


def default_config() -> RouterConfig:
    """A RouterConfig populated with the built-in provider catalog."""
    return RouterConfig(
        providers=[p.model_copy(deep=True) for p in DEFAULT_PROVIDERS],
        router=RouterSettings(
            selected_provider="ollama",
            selected_model=OLLAMA.model,
            providers={k: v.model_copy() for k, v in DEFAULT_PRIORITIES.items()},
        ),
    )
