"""
Domain exceptions for the error-explanation service.

WHY THIS FILE EXISTS:
    The resilience core must be transport-agnostic (doesn't know about HTTP).
    The API layer owns HTTP semantics (status codes, headers, response format).

    Exceptions define two boundaries:
    - Provider/cache layer raises these internally (orchestrator, cache tiers)
    - Fallback decider and ExplanationService absorb them into degraded answers

    Only InvalidErrorCodeError and ShutdownInProgressError ever reach the API
    layer. Everything else is caught below the public contract.
"""


class ExplainerError(Exception):
    """Base exception for all service domain errors."""
    pass


class ConfigError(ExplainerError):
    """Environment configuration is missing or out of bounds. Raised at startup only."""
    pass


class InvalidErrorCodeError(ExplainerError):
    """
    Error code input could not be parsed or is outside the u32 range.

    Maps to: 400 Bad Request
    """
    pass


class ProviderError(ExplainerError):
    """
    Inference provider call failed (transport error, HTTP error, bad payload).

    Recorded against the provider's health and escalated to the next provider.
    Never surfaces past the fallback decider.
    """

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(message)
        self.provider = provider


class ProviderTimeoutError(ProviderError):
    """Provider call exceeded its configured timeout."""
    pass


class ProviderRateLimitedError(ProviderError):
    """Provider refused the call (HTTP 429 or local outbound limit reached)."""
    pass


class MalformedResponseError(ProviderError):
    """Provider answered, but the payload had no usable content."""
    pass


class AllProvidersUnavailableError(ExplainerError):
    """
    Every provider in the chain was skipped as unhealthy or failed.

    Carries the last provider error seen (None when every provider was skipped).
    """

    def __init__(self, message: str, last_error: BaseException | None = None):
        super().__init__(message)
        self.last_error = last_error


class CacheError(ExplainerError):
    """
    Persistent cache operation failed (store unreachable, malformed record).

    Degrades the persistent tier; never surfaced to the caller.
    """
    pass


class ShutdownInProgressError(ExplainerError):
    """
    Server is shutting down gracefully.

    Maps to: 503 Service Unavailable
    NOTE: Raised by the API layer middleware, not by the core.
    """
    pass
