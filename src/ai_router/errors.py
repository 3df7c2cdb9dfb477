"""Error taxonomy for the AI capability router.

Two families:

- ``AdapterError``: raised by a single provider adapter for a single attempt.
  These are caught by the router, recorded against the provider's circuit
  breaker, and only ever reach callers inside ``AllProvidersFailedError``.
- ``RouterError``: what ``AIRouter.route()`` raises to its caller. Each
  subclass carries a ``kind`` discriminator so callers and tests can branch
  on it without isinstance chains.
"""

from enum import Enum
from typing import List, Optional, Sequence


class ConfigError(ValueError):
    """Invalid router or provider configuration."""


# =============================================================================
# Adapter errors (per attempt)
# =============================================================================


class AdapterError(Exception):
    """Base error for a failed provider call."""

    retryable = True

    def __init__(self, message: str, provider_id: Optional[str] = None):
        super().__init__(message)
        self.provider_id = provider_id

    def __str__(self) -> str:
        message = super().__str__()
        if self.provider_id:
            return f"[{self.provider_id}] {message}"
        return message


class AuthenticationError(AdapterError):
    """Credentials were rejected (HTTP 401/403)."""

    retryable = False


class QuotaExceededError(AdapterError):
    """Account quota or credit exhausted (HTTP 402)."""

    retryable = False


class RateLimitError(AdapterError):
    """Provider is throttling requests (HTTP 429)."""

    def __init__(
        self,
        message: str,
        provider_id: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, provider_id=provider_id)
        self.retry_after = retry_after


class MalformedResponseError(AdapterError):
    """Provider answered but the payload could not be interpreted."""


class TransportError(AdapterError):
    """Network-level failure or non-success HTTP status."""

    def __init__(
        self,
        message: str,
        provider_id: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, provider_id=provider_id)
        self.status_code = status_code


class AdapterTimeoutError(AdapterError):
    """The attempt exceeded its deadline."""


class UnsupportedCapabilityError(AdapterError):
    """The adapter does not implement the requested capability."""

    retryable = False


# =============================================================================
# Router errors (surfaced to callers)
# =============================================================================


class RouterErrorKind(Enum):
    """Discriminator for RouterError subclasses."""

    NO_CAPABLE_PROVIDER = "no_capable_provider"
    CIRCUIT_OPEN_FOR_ALL = "circuit_open_for_all"
    ALL_PROVIDERS_FAILED = "all_providers_failed"
    TIMEOUT = "timeout"
    STREAM_INTERRUPTED = "stream_interrupted"


_RETRYABLE_KINDS = {
    RouterErrorKind.CIRCUIT_OPEN_FOR_ALL,
    RouterErrorKind.ALL_PROVIDERS_FAILED,
    RouterErrorKind.TIMEOUT,
    RouterErrorKind.STREAM_INTERRUPTED,
}


class RouterError(Exception):
    """Base error returned to router callers."""

    kind: RouterErrorKind

    def __init__(self, message: str, capability: Optional[str] = None):
        super().__init__(message)
        self.capability = capability

    @property
    def retryable(self) -> bool:
        """Whether retrying the same call later can reasonably succeed."""
        return self.kind in _RETRYABLE_KINDS


class NoCapableProviderError(RouterError):
    """No enabled provider declares the requested capability."""

    kind = RouterErrorKind.NO_CAPABLE_PROVIDER


class CircuitOpenForAllError(RouterError):
    """Every candidate provider was skipped because its breaker is open."""

    kind = RouterErrorKind.CIRCUIT_OPEN_FOR_ALL

    def __init__(
        self,
        message: str,
        capability: Optional[str] = None,
        provider_ids: Sequence[str] = (),
    ):
        super().__init__(message, capability=capability)
        self.provider_ids: List[str] = list(provider_ids)


class AllProvidersFailedError(RouterError):
    """Every attempted provider failed.

    ``causes`` holds one AdapterError per attempted provider, in attempt order.
    """

    kind = RouterErrorKind.ALL_PROVIDERS_FAILED

    def __init__(
        self,
        message: str,
        capability: Optional[str] = None,
        causes: Sequence[AdapterError] = (),
    ):
        super().__init__(message, capability=capability)
        self.causes: List[AdapterError] = list(causes)

    @property
    def provider_ids(self) -> List[Optional[str]]:
        return [cause.provider_id for cause in self.causes]


class RouterTimeoutError(AllProvidersFailedError):
    """Every attempted provider exceeded the per-attempt deadline."""

    kind = RouterErrorKind.TIMEOUT


class StreamInterruptedError(RouterError):
    """A stream failed after it had already yielded chunks."""

    kind = RouterErrorKind.STREAM_INTERRUPTED

    def __init__(
        self,
        message: str,
        capability: Optional[str] = None,
        cause: Optional[AdapterError] = None,
    ):
        super().__init__(message, capability=capability)
        self.cause = cause
