"""Provider adapter contract.

``ProviderAdapter.call()`` is the only thing the router needs from a vendor
integration. Batch submission, health probes and streaming are optional and
advertised through ``supports_*`` hooks; the router never calls a hook the
adapter has not advertised.
"""

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, FrozenSet, List, Sequence, Union

from ..errors import AdapterError, UnsupportedCapabilityError
from ..types import Capability, ProviderResponse

BatchResult = Union[ProviderResponse, AdapterError]


class ProviderAdapter(ABC):
    """Capability-uniform wrapper around a single vendor API.

    Implementations must translate every vendor failure into an AdapterError
    subclass. ``deadline`` arguments are absolute ``loop.time()`` values; the
    router additionally enforces them with cancellation.
    """

    def __init__(self, provider_id: str):
        self._provider_id = provider_id
        self.request_count = 0
        self.error_count = 0

    @property
    def provider_id(self) -> str:
        """Return the provider identifier."""
        return self._provider_id

    @property
    def capabilities(self) -> FrozenSet[Capability]:
        """Capabilities this adapter implements; all of them by default."""
        return frozenset(Capability)

    @abstractmethod
    async def call(
        self,
        capability: Capability,
        request: Any,
        deadline: float,
    ) -> ProviderResponse:
        """Execute one request.

        Raises:
            AdapterError: On any vendor, transport or decoding failure.
        """

    # -- optional: health probe -------------------------------------------------

    @property
    def supports_ping(self) -> bool:
        return False

    async def ping(self, deadline: float) -> None:
        """Lightweight liveness probe. Raises AdapterError when unhealthy."""
        raise UnsupportedCapabilityError("ping not supported", provider_id=self.provider_id)

    # -- optional: batch submission ---------------------------------------------

    def supports_batch(self, capability: Capability) -> bool:
        return False

    async def call_batch(
        self,
        capability: Capability,
        requests: Sequence[Any],
        deadline: float,
    ) -> List[BatchResult]:
        """Execute several requests in one vendor call.

        Returns one item per request in request order: the response, or the
        AdapterError for that item alone.
        """
        raise UnsupportedCapabilityError("batch not supported", provider_id=self.provider_id)

    # -- optional: streaming ----------------------------------------------------

    def supports_streaming(self, capability: Capability) -> bool:
        return False

    def stream(
        self,
        capability: Capability,
        request: Any,
        deadline: float,
    ) -> AsyncIterator[str]:
        """Return an async iterator of response text chunks."""
        raise UnsupportedCapabilityError("streaming not supported", provider_id=self.provider_id)

    # -- bookkeeping ------------------------------------------------------------

    def record_outcome(self, success: bool) -> None:
        """Count one routed attempt against this adapter."""
        self.request_count += 1
        if not success:
            self.error_count += 1

    def get_health(self) -> dict:
        """Return request/error counters for this adapter."""
        return {
            "provider_id": self.provider_id,
            "request_count": self.request_count,
            "error_count": self.error_count,
            "error_rate": self.error_count / self.request_count if self.request_count else 0.0,
        }

    def reset_health(self) -> None:
        self.request_count = 0
        self.error_count = 0

    async def aclose(self) -> None:
        """Release adapter resources (HTTP clients etc.)."""
        return None
