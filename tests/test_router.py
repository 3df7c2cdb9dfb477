"""Tests for AIRouter routing, fallback and resilience behaviour."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import FakeAdapter, FakeClock, make_router_config


def _two_text_providers(**kwargs):
    return make_router_config(
        {
            "gemini": {"capabilities": ["text", "vision"], "priority": 1},
            "openai": {"capabilities": ["text", "vision"], "priority": 2},
        },
        **kwargs,
    )


class TestRouterConstruction:
    """Startup validation and accessors."""

    def test_missing_adapter_fails_fast(self):
        from ai_router.errors import ConfigError
        from ai_router.router import AIRouter

        with pytest.raises(ConfigError):
            AIRouter(_two_text_providers(), {"gemini": FakeAdapter("gemini")})

    def test_capability_without_adapter_support_fails_fast(self):
        from ai_router.adapters import OpenAICompatibleAdapter
        from ai_router.config import ProviderConfig, RouterConfig
        from ai_router.errors import ConfigError
        from ai_router.router import AIRouter
        from ai_router.types import Capability

        config = RouterConfig(providers=[ProviderConfig(id="openai", capabilities={Capability.SEARCH})])
        with pytest.raises(ConfigError, match="search"):
            AIRouter(config, {"openai": OpenAICompatibleAdapter("openai")})
        with pytest.raises(ConfigError):
            AIRouter.from_config(config)

    def test_update_rejects_unsupported_capability(self):
        from ai_router.adapters import OpenAICompatibleAdapter
        from ai_router.config import ProviderConfig
        from ai_router.errors import ConfigError
        from ai_router.router import AIRouter
        from ai_router.types import Capability

        router = AIRouter(
            _two_text_providers(),
            {"gemini": FakeAdapter("gemini"), "openai": FakeAdapter("openai")},
        )
        with pytest.raises(ConfigError):
            router.update_providers(
                [ProviderConfig(id="claude", capabilities={Capability.SEARCH})],
                adapters={"claude": OpenAICompatibleAdapter("claude", models={Capability.TEXT: "m"})},
            )
        assert router.registry.candidates(Capability.TEXT) == ["gemini", "openai"]
        with pytest.raises(KeyError):
            router.get_adapter("claude")

    def test_capability_queries(self):
        from ai_router.router import AIRouter
        from ai_router.types import Capability

        router = AIRouter(
            _two_text_providers(),
            {"gemini": FakeAdapter("gemini"), "openai": FakeAdapter("openai")},
        )
        assert router.has_capability(Capability.TEXT) is True
        assert router.has_capability(Capability.AUDIO) is False
        assert router.get_provider_for_capability(Capability.VISION) == "gemini"
        assert router.get_provider_for_capability(Capability.AUDIO) is None
        assert router.is_available() is True

    def test_from_config_builds_adapters(self):
        from ai_router.adapters import OpenAICompatibleAdapter
        from ai_router.router import AIRouter

        router = AIRouter.from_config(_two_text_providers())
        assert isinstance(router.get_adapter("gemini"), OpenAICompatibleAdapter)


class TestFallbackOrder:
    """Providers are tried in priority order and stop at the first success."""

    @pytest.mark.asyncio
    async def test_primary_success_never_touches_secondary(self):
        from ai_router.router import AIRouter
        from ai_router.types import Capability, TextRequest

        gemini, openai = FakeAdapter("gemini"), FakeAdapter("openai")
        router = AIRouter(_two_text_providers(), {"gemini": gemini, "openai": openai})

        response = await router.route(Capability.TEXT, TextRequest(prompt="hi"))

        assert response.provider_id == "gemini"
        assert gemini.call_count == 1
        assert openai.call_count == 0

    @pytest.mark.asyncio
    async def test_falls_back_on_failure(self):
        from ai_router.errors import TransportError
        from ai_router.router import AIRouter
        from ai_router.types import Capability, TextRequest

        gemini = FakeAdapter("gemini", always_fail=TransportError("502"))
        openai = FakeAdapter("openai")
        router = AIRouter(_two_text_providers(), {"gemini": gemini, "openai": openai})

        response = await router.route(Capability.TEXT, TextRequest(prompt="hi"))

        assert response.provider_id == "openai"
        assert router.get_circuit_breaker("gemini").consecutive_failures == 1
        assert gemini.error_count == 1
        assert openai.request_count == 1

    @pytest.mark.asyncio
    async def test_adapter_receives_absolute_deadline(self):
        """call() gets the capability, the request and a loop.time() deadline."""
        from ai_router.router import AIRouter
        from ai_router.types import Capability, ProviderResponse, RouteOptions, TextRequest

        gemini = FakeAdapter("gemini")
        router = AIRouter(_two_text_providers(), {"gemini": gemini, "openai": FakeAdapter("openai")})
        mock_response = ProviderResponse(provider_id="gemini", capability=Capability.TEXT, content="mocked")
        request = TextRequest(prompt="hi")

        with patch.object(gemini, "call", new_callable=AsyncMock) as mock_call:
            mock_call.return_value = mock_response
            before = asyncio.get_running_loop().time()
            response = await router.route(Capability.TEXT, request, RouteOptions(timeout_ms=5000))

        assert response is mock_response
        capability, sent, deadline = mock_call.call_args.args
        assert capability is Capability.TEXT
        assert sent is request
        assert before < deadline <= asyncio.get_running_loop().time() + 5.0

    @pytest.mark.asyncio
    async def test_failure_events_emitted(self):
        from ai_router.errors import TransportError
        from ai_router.events import RouterEventType
        from ai_router.router import AIRouter
        from ai_router.types import Capability, TextRequest

        listener = MagicMock()
        gemini = FakeAdapter("gemini", always_fail=TransportError("down"))
        router = AIRouter(_two_text_providers(), {"gemini": gemini, "openai": FakeAdapter("openai")})
        router.events.subscribe(listener)

        await router.route(Capability.TEXT, TextRequest(prompt="hi"))

        types = [c.args[0].event_type for c in listener.call_args_list]
        assert types == [
            RouterEventType.ROUTE_REQUEST,
            RouterEventType.PROVIDER_FAILURE,
            RouterEventType.PROVIDER_FALLBACK,
            RouterEventType.ROUTE_SUCCESS,
        ]

    @pytest.mark.asyncio
    async def test_unexpected_adapter_exception_is_a_provider_failure(self):
        from ai_router.router import AIRouter
        from ai_router.types import Capability, TextRequest

        gemini = FakeAdapter("gemini", always_fail=KeyError("bug"))
        openai = FakeAdapter("openai")
        router = AIRouter(_two_text_providers(), {"gemini": gemini, "openai": openai})

        response = await router.route(Capability.TEXT, TextRequest(prompt="hi"))
        assert response.provider_id == "openai"

    @pytest.mark.asyncio
    async def test_order_is_deterministic(self):
        from ai_router.errors import AllProvidersFailedError, TransportError
        from ai_router.router import AIRouter
        from ai_router.types import Capability, TextRequest

        config = make_router_config(
            {
                "b": {"capabilities": ["text"], "priority": 1},
                "a": {"capabilities": ["text"], "priority": 1},
                "c": {"capabilities": ["text"], "priority": 0},
            },
            failure_threshold=1000,
            cache=False,
        )
        adapters = {pid: FakeAdapter(pid, always_fail=TransportError("down")) for pid in ("a", "b", "c")}
        router = AIRouter(config, adapters)

        for i in range(5):
            with pytest.raises(AllProvidersFailedError) as exc_info:
                await router.route(Capability.TEXT, TextRequest(prompt=f"q{i}"))
            assert exc_info.value.provider_ids == ["c", "b", "a"]


class TestRouterErrors:
    """Typed failures surfaced to callers."""

    @pytest.mark.asyncio
    async def test_no_capable_provider(self):
        from ai_router.errors import NoCapableProviderError, RouterErrorKind
        from ai_router.router import AIRouter
        from ai_router.types import AudioRequest, Capability

        router = AIRouter(
            _two_text_providers(),
            {"gemini": FakeAdapter("gemini"), "openai": FakeAdapter("openai")},
        )
        with pytest.raises(NoCapableProviderError) as exc_info:
            await router.route(Capability.AUDIO, AudioRequest(audio_bytes=b"RIFF", mime_type="audio/wav"))
        assert exc_info.value.kind == RouterErrorKind.NO_CAPABLE_PROVIDER
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_mismatched_request_rejected(self):
        from ai_router.router import AIRouter
        from ai_router.types import Capability, TextRequest

        router = AIRouter(
            _two_text_providers(),
            {"gemini": FakeAdapter("gemini"), "openai": FakeAdapter("openai")},
        )
        with pytest.raises(ValueError):
            await router.route(Capability.VISION, TextRequest(prompt="hi"))

    @pytest.mark.asyncio
    async def test_all_providers_failed_lists_causes_in_order(self):
        from ai_router.errors import (
            AllProvidersFailedError,
            AuthenticationError,
            RouterErrorKind,
            TransportError,
        )
        from ai_router.router import AIRouter
        from ai_router.types import Capability, TextRequest

        gemini = FakeAdapter("gemini", always_fail=AuthenticationError("bad key"))
        openai = FakeAdapter("openai", always_fail=TransportError("503"))
        router = AIRouter(_two_text_providers(), {"gemini": gemini, "openai": openai})

        with pytest.raises(AllProvidersFailedError) as exc_info:
            await router.route(Capability.TEXT, TextRequest(prompt="hi"))

        error = exc_info.value
        assert error.kind == RouterErrorKind.ALL_PROVIDERS_FAILED
        assert error.retryable is True
        assert [type(c) for c in error.causes] == [AuthenticationError, TransportError]
        assert error.provider_ids == ["gemini", "openai"]

    @pytest.mark.asyncio
    async def test_circuit_open_for_all(self):
        from ai_router.errors import AllProvidersFailedError, CircuitOpenForAllError, TransportError
        from ai_router.router import AIRouter
        from ai_router.types import Capability, TextRequest

        config = _two_text_providers(failure_threshold=1, cache=False)
        adapters = {
            "gemini": FakeAdapter("gemini", always_fail=TransportError("down")),
            "openai": FakeAdapter("openai", always_fail=TransportError("down")),
        }
        router = AIRouter(config, adapters, clock=FakeClock())

        with pytest.raises(AllProvidersFailedError):
            await router.route(Capability.TEXT, TextRequest(prompt="hi"))
        with pytest.raises(CircuitOpenForAllError) as exc_info:
            await router.route(Capability.TEXT, TextRequest(prompt="hi"))

        assert exc_info.value.provider_ids == ["gemini", "openai"]
        assert adapters["gemini"].call_count == 1

    @pytest.mark.asyncio
    async def test_timeout_when_every_attempt_times_out(self):
        from ai_router.errors import AllProvidersFailedError, RouterErrorKind, RouterTimeoutError
        from ai_router.router import AIRouter
        from ai_router.types import Capability, RouteOptions, TextRequest

        adapters = {"gemini": FakeAdapter("gemini", delay=1.0), "openai": FakeAdapter("openai", delay=1.0)}
        router = AIRouter(_two_text_providers(), adapters)

        with pytest.raises(RouterTimeoutError) as exc_info:
            await router.route(Capability.TEXT, TextRequest(prompt="hi"), RouteOptions(timeout_ms=20))

        assert isinstance(exc_info.value, AllProvidersFailedError)
        assert exc_info.value.kind == RouterErrorKind.TIMEOUT
        assert router.get_circuit_breaker("gemini").consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_slow_primary_times_out_then_falls_back(self):
        from ai_router.router import AIRouter
        from ai_router.types import Capability, RouteOptions, TextRequest

        adapters = {"gemini": FakeAdapter("gemini", delay=1.0), "openai": FakeAdapter("openai")}
        router = AIRouter(_two_text_providers(), adapters)

        response = await router.route(Capability.TEXT, TextRequest(prompt="hi"), RouteOptions(timeout_ms=20))
        assert response.provider_id == "openai"


class TestCircuitBreakerIntegration:
    """Breakers gate attempts and recover via a single trial."""

    @pytest.mark.asyncio
    async def test_open_breaker_skips_provider(self):
        from ai_router.circuit_breaker import CircuitState
        from ai_router.errors import TransportError
        from ai_router.events import RouterEventType
        from ai_router.router import AIRouter
        from ai_router.types import Capability, TextRequest

        gemini = FakeAdapter("gemini", always_fail=TransportError("down"))
        openai = FakeAdapter("openai")
        router = AIRouter(
            _two_text_providers(failure_threshold=2, cache=False),
            {"gemini": gemini, "openai": openai},
            clock=FakeClock(),
        )

        for i in range(3):
            await router.route(Capability.TEXT, TextRequest(prompt=f"q{i}"))

        assert router.get_circuit_breaker("gemini").state == CircuitState.OPEN
        assert gemini.call_count == 2
        assert openai.call_count == 3
        assert len(router.events.get_events(RouterEventType.PROVIDER_SKIPPED)) == 1
        assert len(router.events.get_events(RouterEventType.CIRCUIT_OPEN)) == 1

    @pytest.mark.asyncio
    async def test_half_open_allows_one_concurrent_trial(self):
        from ai_router.circuit_breaker import CircuitState
        from ai_router.errors import TransportError
        from ai_router.router import AIRouter
        from ai_router.types import Capability, TextRequest

        clock = FakeClock()
        gemini = FakeAdapter("gemini", failures=[TransportError("down")])
        openai = FakeAdapter("openai")
        router = AIRouter(
            _two_text_providers(failure_threshold=1, reset_timeout_ms=1000, cache=False),
            {"gemini": gemini, "openai": openai},
            clock=clock,
        )
        await router.route(Capability.TEXT, TextRequest(prompt="trip"))
        assert router.get_circuit_breaker("gemini").state == CircuitState.OPEN

        clock.advance_ms(1000)
        gemini.gate = asyncio.Event()
        tasks = [
            asyncio.ensure_future(router.route(Capability.TEXT, TextRequest(prompt=f"q{i}")))
            for i in range(3)
        ]
        await asyncio.sleep(0.01)
        gemini.gate.set()
        results = await asyncio.gather(*tasks)

        # One trial went to gemini (calls: trip + trial); the rest fell back.
        assert gemini.call_count == 2
        assert sorted(r.provider_id for r in results) == ["gemini", "openai", "openai"]
        assert router.get_circuit_breaker("gemini").state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_reset_provider_health(self):
        from ai_router.circuit_breaker import CircuitState
        from ai_router.errors import TransportError
        from ai_router.router import AIRouter
        from ai_router.types import Capability, TextRequest

        gemini = FakeAdapter("gemini", always_fail=TransportError("down"))
        router = AIRouter(
            _two_text_providers(failure_threshold=1),
            {"gemini": gemini, "openai": FakeAdapter("openai")},
        )
        await router.route(Capability.TEXT, TextRequest(prompt="hi"))
        assert router.get_circuit_breaker("gemini").state == CircuitState.OPEN

        router.reset_provider_health("gemini")

        assert router.get_circuit_breaker("gemini").state == CircuitState.CLOSED
        assert gemini.request_count == 0


class TestCaching:
    """Provider-agnostic caching of successful responses."""

    @pytest.mark.asyncio
    async def test_second_identical_call_is_cache_hit(self):
        from ai_router.events import RouterEventType
        from ai_router.router import AIRouter
        from ai_router.types import Capability, TextRequest

        gemini = FakeAdapter("gemini")
        router = AIRouter(_two_text_providers(), {"gemini": gemini, "openai": FakeAdapter("openai")})

        first = await router.route(Capability.TEXT, TextRequest(prompt="hi"))
        second = await router.route(Capability.TEXT, TextRequest(prompt="hi"))

        assert second is first
        assert gemini.call_count == 1
        assert len(router.events.get_events(RouterEventType.CACHE_HIT)) == 1

    @pytest.mark.asyncio
    async def test_fallback_response_is_cached_for_any_provider(self):
        from ai_router.errors import TransportError
        from ai_router.router import AIRouter
        from ai_router.types import Capability, TextRequest

        gemini = FakeAdapter("gemini", failures=[TransportError("down")])
        openai = FakeAdapter("openai")
        router = AIRouter(_two_text_providers(), {"gemini": gemini, "openai": openai})

        first = await router.route(Capability.TEXT, TextRequest(prompt="hi"))
        second = await router.route(Capability.TEXT, TextRequest(prompt="hi"))

        assert first.provider_id == "openai"
        assert second is first
        assert gemini.call_count == 1

    @pytest.mark.asyncio
    async def test_cached_entry_served_when_providers_disabled(self):
        from ai_router.router import AIRouter
        from ai_router.types import Capability, TextRequest

        router = AIRouter(
            _two_text_providers(),
            {"gemini": FakeAdapter("gemini"), "openai": FakeAdapter("openai")},
        )
        first = await router.route(Capability.TEXT, TextRequest(prompt="hi"))
        router.registry.set_enabled("gemini", False)
        router.registry.set_enabled("openai", False)

        assert await router.route(Capability.TEXT, TextRequest(prompt="hi")) is first

    @pytest.mark.asyncio
    async def test_allow_cache_false_bypasses_cache(self):
        from ai_router.router import AIRouter
        from ai_router.types import Capability, RouteOptions, TextRequest

        gemini = FakeAdapter("gemini")
        router = AIRouter(_two_text_providers(), {"gemini": gemini, "openai": FakeAdapter("openai")})
        options = RouteOptions(allow_cache=False)

        await router.route(Capability.TEXT, TextRequest(prompt="hi"), options)
        await router.route(Capability.TEXT, TextRequest(prompt="hi"), options)

        assert gemini.call_count == 2
        assert len(router.cache) == 0

    @pytest.mark.asyncio
    async def test_cached_entry_expires(self):
        from ai_router.router import AIRouter
        from ai_router.types import Capability, RouteOptions, TextRequest

        clock = FakeClock()
        gemini = FakeAdapter("gemini")
        router = AIRouter(
            _two_text_providers(),
            {"gemini": gemini, "openai": FakeAdapter("openai")},
            clock=clock,
        )
        options = RouteOptions(cache_ttl_ms=1000)

        await router.route(Capability.TEXT, TextRequest(prompt="hi"), options)
        clock.advance_ms(1001)
        await router.route(Capability.TEXT, TextRequest(prompt="hi"), options)

        assert gemini.call_count == 2


class TestCoalescing:
    """Concurrent identical requests share one provider call."""

    @pytest.mark.asyncio
    async def test_concurrent_identical_routes_share_result(self):
        from ai_router.events import RouterEventType
        from ai_router.router import AIRouter
        from ai_router.types import Capability, TextRequest

        gemini = FakeAdapter("gemini")
        gemini.gate = asyncio.Event()
        router = AIRouter(_two_text_providers(), {"gemini": gemini, "openai": FakeAdapter("openai")})

        first = asyncio.ensure_future(router.route(Capability.TEXT, TextRequest(prompt="hi")))
        second = asyncio.ensure_future(router.route(Capability.TEXT, TextRequest(prompt="hi")))
        await asyncio.sleep(0.01)
        gemini.gate.set()
        a, b = await asyncio.gather(first, second)

        assert a is b
        assert gemini.call_count == 1
        assert len(router.events.get_events(RouterEventType.COALESCED)) == 1

    @pytest.mark.asyncio
    async def test_coalesced_failure_reaches_every_caller(self):
        from ai_router.errors import AllProvidersFailedError, TransportError
        from ai_router.router import AIRouter
        from ai_router.types import Capability, TextRequest

        adapters = {
            "gemini": FakeAdapter("gemini", always_fail=TransportError("down")),
            "openai": FakeAdapter("openai", always_fail=TransportError("down")),
        }
        adapters["gemini"].gate = asyncio.Event()
        router = AIRouter(_two_text_providers(), adapters)

        tasks = [
            asyncio.ensure_future(router.route(Capability.TEXT, TextRequest(prompt="hi")))
            for _ in range(2)
        ]
        await asyncio.sleep(0.01)
        adapters["gemini"].gate.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(isinstance(r, AllProvidersFailedError) for r in results)
        assert results[0] is results[1]
        assert adapters["gemini"].call_count == 1


class TestCancellation:
    """Caller cancellation stops the fallback chain."""

    @pytest.mark.asyncio
    async def test_cancelled_route_propagates_cancelled_error(self):
        from ai_router.router import AIRouter
        from ai_router.types import Capability, TextRequest

        gemini = FakeAdapter("gemini")
        gemini.gate = asyncio.Event()
        openai = FakeAdapter("openai")
        router = AIRouter(_two_text_providers(), {"gemini": gemini, "openai": openai})

        task = asyncio.ensure_future(router.route(Capability.TEXT, TextRequest(prompt="hi")))
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.sleep(0.01)

        assert openai.call_count == 0
        assert router.coalescer.in_flight() == 0
        assert task.cancelled()
        assert router.get_circuit_breaker("gemini").consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_except_exception_does_not_swallow_cancellation(self):
        from ai_router.router import AIRouter
        from ai_router.types import Capability, TextRequest

        gemini = FakeAdapter("gemini")
        gemini.gate = asyncio.Event()
        router = AIRouter(_two_text_providers(), {"gemini": gemini, "openai": FakeAdapter("openai")})
        caught = []

        async def caller():
            try:
                await router.route(Capability.TEXT, TextRequest(prompt="hi"))
            except Exception as e:
                caught.append(e)

        task = asyncio.ensure_future(caller())
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert caught == []
        assert task.cancelled()

    @pytest.mark.asyncio
    async def test_outer_wait_for_raises_timeout_error(self):
        from ai_router.router import AIRouter
        from ai_router.types import Capability, TextRequest

        gemini = FakeAdapter("gemini")
        gemini.gate = asyncio.Event()
        router = AIRouter(_two_text_providers(), {"gemini": gemini, "openai": FakeAdapter("openai")})

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(router.route(Capability.TEXT, TextRequest(prompt="hi")), timeout=0.05)

    @pytest.mark.asyncio
    async def test_route_after_cancelled_caller_is_served(self):
        """A caller arriving right after the only subscriber left gets a real call."""
        from ai_router.router import AIRouter
        from ai_router.types import Capability, TextRequest

        gemini = FakeAdapter("gemini")
        gemini.gate = asyncio.Event()
        router = AIRouter(_two_text_providers(), {"gemini": gemini, "openai": FakeAdapter("openai")})

        first = asyncio.ensure_future(router.route(Capability.TEXT, TextRequest(prompt="hi")))
        await asyncio.sleep(0.01)
        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first

        second = asyncio.ensure_future(router.route(Capability.TEXT, TextRequest(prompt="hi")))
        await asyncio.sleep(0)
        gemini.gate.set()
        response = await second

        assert response.provider_id == "gemini"
        assert gemini.call_count == 2

    @pytest.mark.asyncio
    async def test_cancelled_trial_releases_half_open_slot(self):
        from ai_router.circuit_breaker import CircuitState
        from ai_router.errors import TransportError
        from ai_router.router import AIRouter
        from ai_router.types import Capability, TextRequest

        clock = FakeClock()
        gemini = FakeAdapter("gemini", failures=[TransportError("down")])
        router = AIRouter(
            _two_text_providers(failure_threshold=1, reset_timeout_ms=10, cache=False),
            {"gemini": gemini, "openai": FakeAdapter("openai")},
            clock=clock,
        )
        await router.route(Capability.TEXT, TextRequest(prompt="trip"))
        clock.advance_ms(10)

        gemini.gate = asyncio.Event()
        task = asyncio.ensure_future(router.route(Capability.TEXT, TextRequest(prompt="trial")))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.sleep(0.01)

        breaker = router.get_circuit_breaker("gemini")
        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.allow() is True


class TestEndToEnd:
    """Gemini/OpenAI vision scenario across breaker open and recovery."""

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_vision_fallback_and_recovery(self):
        from ai_router.circuit_breaker import CircuitState
        from ai_router.errors import TransportError
        from ai_router.router import AIRouter
        from ai_router.types import Capability, RouteOptions, VisionRequest

        clock = FakeClock()
        gemini = FakeAdapter("gemini", failures=[TransportError("boom")] * 5)
        openai = FakeAdapter("openai")
        router = AIRouter(
            _two_text_providers(failure_threshold=5, reset_timeout_ms=60000),
            {"gemini": gemini, "openai": openai},
            clock=clock,
        )
        img = VisionRequest(image_bytes=b"\xff\xd8\xff", mime_type="image/jpeg", prompt="Describe")
        options = RouteOptions(allow_cache=False)

        for _ in range(5):
            response = await router.route(Capability.VISION, img, options)
            assert response.provider_id == "openai"
        assert gemini.call_count == 5
        assert router.get_circuit_breaker("gemini").state == CircuitState.OPEN

        response = await router.route(Capability.VISION, img, options)
        assert response.provider_id == "openai"
        assert gemini.call_count == 5

        clock.advance_ms(60000)
        response = await router.route(Capability.VISION, img, options)
        assert response.provider_id == "gemini"
        assert gemini.call_count == 6
        assert router.get_circuit_breaker("gemini").state == CircuitState.CLOSED


class TestBatchingIntegration:
    """Batch-capable adapters receive grouped calls."""

    @pytest.mark.asyncio
    async def test_concurrent_distinct_requests_batched(self):
        from ai_router.config import BatchingConfig
        from ai_router.router import AIRouter
        from ai_router.types import Capability, TextRequest

        config = _two_text_providers(batching=BatchingConfig(enabled=True, batch_delay_ms=10, batch_size=5))
        gemini = FakeAdapter("gemini", batch=True)
        router = AIRouter(config, {"gemini": gemini, "openai": FakeAdapter("openai")})

        results = await asyncio.gather(*(
            router.route(Capability.TEXT, TextRequest(prompt=f"q{i}")) for i in range(3)
        ))

        assert len(gemini.batch_calls) == 1
        assert len(gemini.batch_calls[0]) == 3
        assert all(r.provider_id == "gemini" for r in results)
        assert gemini.call_count == 0


class TestStreaming:
    """Streaming with fallback before the first chunk only."""

    async def _collect(self, router, request):
        from ai_router.types import Capability

        return [chunk async for chunk in router.stream(Capability.TEXT, request)]

    @pytest.mark.asyncio
    async def test_streams_chunks(self):
        from ai_router.router import AIRouter
        from ai_router.types import TextRequest

        gemini = FakeAdapter("gemini", stream_chunks=["Hel", "lo"])
        router = AIRouter(_two_text_providers(), {"gemini": gemini, "openai": FakeAdapter("openai")})

        assert await self._collect(router, TextRequest(prompt="hi")) == ["Hel", "lo"]
        assert gemini.request_count == 1

    @pytest.mark.asyncio
    async def test_falls_back_before_first_chunk(self):
        from ai_router.errors import TransportError
        from ai_router.router import AIRouter
        from ai_router.types import TextRequest

        gemini = FakeAdapter("gemini", stream_chunks=[], always_fail=TransportError("down"))
        openai = FakeAdapter("openai", stream_chunks=["ok"])
        router = AIRouter(_two_text_providers(), {"gemini": gemini, "openai": openai})

        assert await self._collect(router, TextRequest(prompt="hi")) == ["ok"]
        assert router.get_circuit_breaker("gemini").consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_failure_after_first_chunk_interrupts(self):
        from ai_router.errors import StreamInterruptedError
        from ai_router.router import AIRouter
        from ai_router.types import Capability, TextRequest

        gemini = FakeAdapter("gemini", stream_chunks=["a", "b", "c"], stream_fail_after=1)
        openai = FakeAdapter("openai", stream_chunks=["x"])
        router = AIRouter(_two_text_providers(), {"gemini": gemini, "openai": openai})

        received = []
        with pytest.raises(StreamInterruptedError):
            async for chunk in router.stream(Capability.TEXT, TextRequest(prompt="hi")):
                received.append(chunk)

        assert received == ["a"]
        assert openai.call_count == 0

    @pytest.mark.asyncio
    async def test_no_streaming_provider(self):
        from ai_router.errors import NoCapableProviderError
        from ai_router.router import AIRouter
        from ai_router.types import TextRequest

        router = AIRouter(
            _two_text_providers(),
            {"gemini": FakeAdapter("gemini"), "openai": FakeAdapter("openai")},
        )
        with pytest.raises(NoCapableProviderError):
            await self._collect(router, TextRequest(prompt="hi"))


class TestRuntimeUpdates:
    """Provider list changes, stats and lifecycle."""

    @pytest.mark.asyncio
    async def test_update_providers_keeps_existing_breakers(self):
        from ai_router.config import ProviderConfig
        from ai_router.errors import TransportError
        from ai_router.router import AIRouter
        from ai_router.types import Capability, TextRequest

        gemini = FakeAdapter("gemini", always_fail=TransportError("down"))
        router = AIRouter(_two_text_providers(), {"gemini": gemini, "openai": FakeAdapter("openai")})
        await router.route(Capability.TEXT, TextRequest(prompt="hi"))

        router.update_providers(
            [
                ProviderConfig(id="gemini", capabilities={Capability.TEXT}, priority=1),
                ProviderConfig(id="claude", capabilities={Capability.TEXT}, priority=2),
            ],
            adapters={"claude": FakeAdapter("claude")},
        )

        assert router.get_circuit_breaker("gemini").consecutive_failures == 1
        assert router.registry.candidates(Capability.TEXT) == ["gemini", "claude"]
        response = await router.route(Capability.TEXT, TextRequest(prompt="new"))
        assert response.provider_id == "claude"

    @pytest.mark.asyncio
    async def test_provider_removed_mid_flight_is_skipped(self):
        from ai_router.config import ProviderConfig
        from ai_router.errors import AllProvidersFailedError, TransportError
        from ai_router.router import AIRouter
        from ai_router.types import Capability, TextRequest

        gemini = FakeAdapter("gemini", always_fail=TransportError("down"))
        gemini.gate = asyncio.Event()
        openai = FakeAdapter("openai")
        router = AIRouter(_two_text_providers(), {"gemini": gemini, "openai": openai})

        task = asyncio.ensure_future(router.route(Capability.TEXT, TextRequest(prompt="hi")))
        await asyncio.sleep(0.01)
        router.update_providers([ProviderConfig(id="gemini", capabilities={Capability.TEXT}, priority=1)])
        gemini.gate.set()

        with pytest.raises(AllProvidersFailedError) as exc_info:
            await task
        assert exc_info.value.provider_ids == ["gemini"]
        assert openai.call_count == 0

    def test_update_providers_requires_adapters(self):
        from ai_router.config import ProviderConfig
        from ai_router.errors import ConfigError
        from ai_router.router import AIRouter

        router = AIRouter(
            _two_text_providers(),
            {"gemini": FakeAdapter("gemini"), "openai": FakeAdapter("openai")},
        )
        with pytest.raises(ConfigError):
            router.update_providers([ProviderConfig(id="unknown")])

    @pytest.mark.asyncio
    async def test_get_stats(self):
        from ai_router.router import AIRouter
        from ai_router.types import Capability, TextRequest

        router = AIRouter(
            _two_text_providers(),
            {"gemini": FakeAdapter("gemini"), "openai": FakeAdapter("openai")},
        )
        await router.text(TextRequest(prompt="hi"))

        stats = router.get_stats()
        assert stats["providers"]["gemini"]["circuit_breaker"]["state"] == "closed"
        assert stats["providers"]["gemini"]["adapter"]["request_count"] == 1
        assert stats["providers"]["gemini"]["capabilities"] == ["text", "vision"]
        assert stats["cache"]["stores"] == 1
        assert stats["coalescer"]["in_flight"] == 0
        assert stats["batcher"] is None

    @pytest.mark.asyncio
    async def test_context_manager_closes_adapters(self):
        from ai_router.router import AIRouter

        adapters = {"gemini": FakeAdapter("gemini"), "openai": FakeAdapter("openai")}
        async with AIRouter(_two_text_providers(health=True), adapters) as router:
            assert router.health_monitor.running is True

        assert router.health_monitor.running is False
        assert all(a.closed for a in adapters.values())
