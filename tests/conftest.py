"""Shared test configuration and fixtures."""
import asyncio
from typing import Any, Dict, List, Optional, Sequence

import pytest

from ai_router.adapters.base import ProviderAdapter
from ai_router.config import (
    CacheConfig,
    CircuitBreakerConfig,
    HealthConfig,
    ProviderConfig,
    RouterConfig,
)
from ai_router.errors import TransportError
from ai_router.types import Capability, ProviderResponse

# =============================================================================
# Environment Reset
# =============================================================================


@pytest.fixture(autouse=True)
def reset_env(monkeypatch):
    """Clear router-related environment variables before each test."""
    for name in (
        "AI_ROUTER_CONFIG",
        "AI_ROUTER_DEFAULT_TIMEOUT_MS",
        "AI_ROUTER_FAILURE_THRESHOLD",
        "AI_ROUTER_RESET_TIMEOUT_MS",
        "AI_ROUTER_CACHE_TTL_MS",
        "AI_ROUTER_CACHE_MAX_ENTRIES",
        "AI_ROUTER_CACHE_ENABLED",
        "AI_ROUTER_BATCHING_ENABLED",
        "AI_ROUTER_BATCH_DELAY_MS",
        "AI_ROUTER_BATCH_SIZE",
        "AI_ROUTER_HEALTH_ENABLED",
        "AI_ROUTER_HEALTH_INTERVAL_MS",
        "OPENAI_API_KEY",
        "GEMINI_API_KEY",
    ):
        monkeypatch.delenv(name, raising=False)


# =============================================================================
# Test doubles
# =============================================================================


class FakeClock:
    """Manually advanced monotonic clock (seconds)."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, ms: float) -> None:
        self.now += ms / 1000.0


class FakeAdapter(ProviderAdapter):
    """Scriptable in-memory adapter.

    ``failures`` is consumed one entry per call: an exception instance is
    raised, None means succeed. Once exhausted, calls succeed (or keep
    failing with ``always_fail``). ``gate`` holds every call until set.
    """

    def __init__(
        self,
        provider_id: str,
        failures: Optional[Sequence[Optional[BaseException]]] = None,
        always_fail: Optional[BaseException] = None,
        delay: float = 0.0,
        content: Optional[str] = None,
        batch: bool = False,
        stream_chunks: Optional[List[str]] = None,
        stream_fail_after: Optional[int] = None,
        ping_error: Optional[BaseException] = None,
    ):
        super().__init__(provider_id)
        self.failures = list(failures or [])
        self.always_fail = always_fail
        self.delay = delay
        self.content = content if content is not None else f"answer from {provider_id}"
        self.gate: Optional[asyncio.Event] = None
        self.calls: List[Any] = []
        self.batch_calls: List[List[Any]] = []
        self.batch = batch
        self.stream_chunks = stream_chunks
        self.stream_fail_after = stream_fail_after
        self.ping_error = ping_error
        self.pings = 0
        self.closed = False

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def call(self, capability: Capability, request: Any, deadline: float) -> ProviderResponse:
        self.calls.append(request)
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            failure = self.failures.pop(0)
            if failure is not None:
                raise failure
        elif self.always_fail is not None:
            raise self.always_fail
        return ProviderResponse(
            provider_id=self.provider_id,
            capability=capability,
            content=self.content,
            latency_ms=int(self.delay * 1000),
        )

    def supports_batch(self, capability: Capability) -> bool:
        return self.batch

    async def call_batch(self, capability: Capability, requests: Sequence[Any], deadline: float) -> List[Any]:
        self.batch_calls.append(list(requests))
        return [
            ProviderResponse(provider_id=self.provider_id, capability=capability, content=f"batched:{i}")
            for i, _ in enumerate(requests)
        ]

    def supports_streaming(self, capability: Capability) -> bool:
        return self.stream_chunks is not None

    async def stream(self, capability: Capability, request: Any, deadline: float):
        self.calls.append(request)
        if self.always_fail is not None:
            raise self.always_fail
        for index, chunk in enumerate(self.stream_chunks or []):
            if self.stream_fail_after is not None and index >= self.stream_fail_after:
                raise TransportError("stream dropped", provider_id=self.provider_id)
            if self.delay:
                await asyncio.sleep(self.delay)
            yield chunk

    @property
    def supports_ping(self) -> bool:
        return True

    async def ping(self, deadline: float) -> None:
        self.pings += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.ping_error is not None:
            raise self.ping_error

    async def aclose(self) -> None:
        self.closed = True


def make_router_config(
    providers: Dict[str, Dict[str, Any]],
    failure_threshold: int = 5,
    reset_timeout_ms: int = 60000,
    cache: bool = True,
    health: bool = False,
    **kwargs: Any,
) -> RouterConfig:
    """Build a RouterConfig from ``{id: ProviderConfig kwargs}``."""
    return RouterConfig(
        providers=[ProviderConfig(id=pid, **cfg) for pid, cfg in providers.items()],
        circuit_breaker=CircuitBreakerConfig(
            failure_threshold=failure_threshold,
            reset_timeout_ms=reset_timeout_ms,
        ),
        cache=CacheConfig(enabled=cache),
        health=HealthConfig(enabled=health),
        **kwargs,
    )


@pytest.fixture
def clock():
    return FakeClock()
