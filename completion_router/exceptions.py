"""
Custom exception hierarchy for the completion router.

Structured error handling with clear categories:
- Configuration errors (missing credentials, unknown providers, bad settings)
- Provider call errors (transient, per attempt, absorbed by failover)
- Parse errors (malformed upstream payloads, treated like call errors)
- Unavailable / aggregate failures (the only errors callers ever see)

Usage:
    from completion_router.exceptions import ProviderCallError

    try:
        resp = await client.post(url, json=body)
    except httpx.TimeoutException as e:
        raise ProviderCallError("timed out", provider_key="openai") from e
"""

from __future__ import annotations

from typing import Optional


class RouterError(Exception):
    """
    Base exception for all completion router errors.

    Catch `RouterError` to handle any router-specific failure.
    """

    def __init__(self, message: str, *, details: Optional[dict] = None):
        super().__init__(message)
        self.details = details or {}


# ── Configuration Errors ──────────────────────────────────────────


class ConfigurationError(RouterError):
    """
    Raised when a provider cannot be used because of its configuration.

    Examples:
    - Required credential absent (provider stays registered, ineligible)
    - Unknown provider key
    - Settings file fails validation
    """

    def __init__(
        self,
        message: str,
        *,
        provider_key: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.provider_key = provider_key


# ── Per-attempt Errors ────────────────────────────────────────────


class ProviderCallError(RouterError):
    """
    A single provider call failed (timeout, non-2xx, transport error).

    Transient: the dispatcher logs it and moves on to the next candidate.
    The provider is not marked unavailable.
    """

    def __init__(
        self,
        message: str,
        *,
        provider_key: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.provider_key = provider_key
        self.status_code = status_code


class ParseError(ProviderCallError):
    """
    The provider answered, but the payload did not have the expected shape.

    Not retried within the provider.
    """


# ── Boundary Errors ───────────────────────────────────────────────


class UnavailableError(RouterError):
    """
    Raised when no provider is currently eligible to serve a request.
    """


class AggregateFailureError(RouterError):
    """
    Raised when every candidate provider failed for one request.

    Carries the last underlying error for diagnostics; its text is
    included in the message.
    """

    def __init__(
        self,
        message: str,
        *,
        last_error: Optional[BaseException] = None,
        attempted: Optional[list[str]] = None,
        details: Optional[dict] = None,
    ):
        if last_error is not None:
            message = f"{message}: {last_error}"
        super().__init__(message, details=details)
        self.last_error = last_error
        self.attempted = list(attempted or [])
