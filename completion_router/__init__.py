"""
Completion Router — multi-backend completion request routing.

Accepts a completion request and satisfies it by selecting, calling and
failing over across a self-hosted model server and hosted API services.

Usage:
    from completion_router import CompletionRequest, CompletionRouter

    async with CompletionRouter.from_config("router.yaml") as router:
        response = await router.generate_response(
            CompletionRequest(prompt="ping", user_id="u-1")
        )
        print(response.provider_key, response.content)
"""

from completion_router.exceptions import (
    AggregateFailureError,
    ConfigurationError,
    ParseError,
    ProviderCallError,
    RouterError,
    UnavailableError,
)
from completion_router.llm.models import (
    CompletionRequest,
    CompletionResponse,
    GenerationTiming,
    TokenUsage,
)
from completion_router.llm.router import CompletionRouter

__version__ = "0.1.0"

__all__ = [
    "AggregateFailureError",
    "CompletionRequest",
    "CompletionResponse",
    "CompletionRouter",
    "ConfigurationError",
    "GenerationTiming",
    "ParseError",
    "ProviderCallError",
    "RouterError",
    "TokenUsage",
    "UnavailableError",
]
