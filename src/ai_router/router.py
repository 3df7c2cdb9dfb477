"""AI capability router: the root orchestrator.

The AIRouter sends capability-typed requests to configured providers with:
- Priority-ordered fallback chains (deterministic tie-break by declaration order)
- Per-provider circuit breakers
- A provider-agnostic response cache
- Coalescing of concurrent identical requests
- Optional batch submission and background health probing

Example usage:
    config = get_effective_config()
    async with AIRouter.from_config(config) as router:
        response = await router.route(
            Capability.VISION,
            VisionRequest(image_bytes=img, mime_type="image/jpeg", prompt="Describe"),
        )

The router is an explicit instance owned by the application; construct one
at startup and pass it to the code that needs it.
"""

import asyncio
import logging
import time
from dataclasses import asdict
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional, Sequence

from .adapters.base import ProviderAdapter
from .adapters.factory import build_adapters
from .batcher import RequestBatcher
from .cache import ResponseCache, make_cache_key
from .circuit_breaker import CircuitBreaker, CircuitState
from .coalescer import RequestCoalescer
from .config import ProviderConfig, RouterConfig
from .errors import (
    AdapterError,
    AdapterTimeoutError,
    AllProvidersFailedError,
    CircuitOpenForAllError,
    ConfigError,
    MalformedResponseError,
    NoCapableProviderError,
    RouterTimeoutError,
    StreamInterruptedError,
    TransportError,
)
from .events import EventLog, RouterEventType
from .health import HealthMonitor
from .registry import CapabilityRegistry
from .types import (
    AudioRequest,
    Capability,
    ImageGenRequest,
    ProviderResponse,
    RouteOptions,
    SearchRequest,
    TextRequest,
    VisionRequest,
    validate_request,
)

logger = logging.getLogger(__name__)

_STATE_EVENTS = {
    CircuitState.OPEN: RouterEventType.CIRCUIT_OPEN,
    CircuitState.HALF_OPEN: RouterEventType.CIRCUIT_HALF_OPEN,
    CircuitState.CLOSED: RouterEventType.CIRCUIT_CLOSE,
}


class AIRouter:
    """Routes capability requests across providers with fallback and resilience."""

    def __init__(
        self,
        config: RouterConfig,
        adapters: Mapping[str, ProviderAdapter],
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the router.

        Args:
            config: Validated router configuration; its provider list defines
                the fallback chains.
            adapters: Provider id to adapter. Every configured provider must
                have one.
            clock: Monotonic time source shared by breakers and cache.

        Raises:
            ConfigError: If a configured provider has no adapter, or declares
                a capability its adapter does not implement.
        """
        self._config = config
        self._clock = clock
        self._adapters: Dict[str, ProviderAdapter] = dict(adapters)
        self._check_adapters(config.providers, self._adapters)

        self.events = EventLog(max_events=config.event_history)
        self._registry = CapabilityRegistry(config.providers)
        self._breakers: Dict[str, CircuitBreaker] = {}
        for provider in config.providers:
            self._breakers[provider.id] = self._new_breaker(provider.id)

        self._cache: Optional[ResponseCache] = None
        if config.cache.enabled:
            self._cache = ResponseCache(
                max_entries=config.cache.max_entries,
                default_ttl_ms=config.cache.ttl_ms,
                clock=clock,
            )
        self._coalescer = RequestCoalescer()
        self._batcher: Optional[RequestBatcher] = None
        if config.batching.enabled:
            self._batcher = RequestBatcher(
                batch_delay_ms=config.batching.batch_delay_ms,
                batch_size=config.batching.batch_size,
            )

        self._health: Optional[HealthMonitor] = None
        if config.health.enabled:
            self._health = HealthMonitor(
                self._adapters,
                self._registry,
                interval_ms=config.health.interval_ms,
                probe_timeout_ms=config.health.probe_timeout_ms,
                latency_smoothing=config.health.latency_smoothing,
                disable_after_failures=config.health.disable_after_failures,
                events=self.events,
            )
            self._registry.set_health_lookup(self._health.get_health, config.health.slow_latency_ms)

    @classmethod
    def from_config(cls, config: RouterConfig, **kwargs: Any) -> "AIRouter":
        """Build a router and its adapters from configuration."""
        return cls(config, build_adapters(config), **kwargs)

    @staticmethod
    def _check_adapters(providers: Sequence[ProviderConfig], adapters: Mapping[str, ProviderAdapter]) -> None:
        missing = [p.id for p in providers if p.id not in adapters]
        if missing:
            raise ConfigError(f"no adapter registered for providers {missing}")
        for provider in providers:
            unsupported = provider.capabilities - adapters[provider.id].capabilities
            if unsupported:
                raise ConfigError(
                    f"provider '{provider.id}' declares capabilities its adapter cannot serve: "
                    f"{sorted(c.value for c in unsupported)}"
                )

    def _new_breaker(self, provider_id: str) -> CircuitBreaker:
        return CircuitBreaker(
            provider_id,
            failure_threshold=self._config.circuit_breaker.failure_threshold,
            reset_timeout_ms=self._config.circuit_breaker.reset_timeout_ms,
            clock=self._clock,
            on_state_change=self._on_breaker_change,
        )

    def _current_breaker(self, provider_id: str) -> Optional[CircuitBreaker]:
        """Breaker for a provider, or None if it was removed by update_providers()."""
        breaker = self._breakers.get(provider_id)
        if breaker is None:
            logger.debug("Provider %s removed while a request was in flight", provider_id)
        return breaker

    def _on_breaker_change(self, provider_id: str, old: CircuitState, new: CircuitState) -> None:
        self.events.emit(
            _STATE_EVENTS[new],
            {"provider_id": provider_id, "from_state": old.value, "to_state": new.value},
        )

    # -- accessors ----------------------------------------------------------------

    @property
    def config(self) -> RouterConfig:
        return self._config

    @property
    def registry(self) -> CapabilityRegistry:
        return self._registry

    @property
    def cache(self) -> Optional[ResponseCache]:
        return self._cache

    @property
    def coalescer(self) -> RequestCoalescer:
        return self._coalescer

    @property
    def health_monitor(self) -> Optional[HealthMonitor]:
        return self._health

    def get_circuit_breaker(self, provider_id: str) -> CircuitBreaker:
        return self._breakers[provider_id]

    def get_adapter(self, provider_id: str) -> ProviderAdapter:
        return self._adapters[provider_id]

    def has_capability(self, capability: Capability) -> bool:
        """Whether any enabled provider declares the capability."""
        return self._registry.has_capability(capability)

    def get_provider_for_capability(self, capability: Capability) -> Optional[str]:
        """First provider the router would try for the capability, if any."""
        candidates = self._registry.candidates(capability)
        return candidates[0] if candidates else None

    def is_available(self) -> bool:
        """Whether at least one provider is enabled."""
        return any(self._registry.is_enabled(pid) for pid in self._registry.provider_ids)

    # -- lifecycle ----------------------------------------------------------------

    def start(self) -> None:
        """Start background work (health probing). Requires a running loop."""
        if self._health is not None:
            self._health.start()

    async def close(self) -> None:
        """Stop background work, cancel in-flight work and close adapters."""
        if self._health is not None:
            await self._health.stop()
        if self._batcher is not None:
            await self._batcher.close()
        await self._coalescer.cancel_all()
        for adapter in self._adapters.values():
            await adapter.aclose()

    async def __aenter__(self) -> "AIRouter":
        self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def update_providers(
        self,
        providers: Sequence[ProviderConfig],
        adapters: Optional[Mapping[str, ProviderAdapter]] = None,
    ) -> None:
        """Replace the provider list at runtime.

        Breakers for provider ids that survive the update keep their state.
        """
        merged = dict(self._adapters)
        if adapters is not None:
            merged.update(adapters)
        self._check_adapters(providers, merged)
        # In place: the health monitor shares this mapping.
        self._adapters.update(merged)
        self._config = self._config.model_copy(update={"providers": list(providers)})
        self._registry.replace(providers)

        breakers: Dict[str, CircuitBreaker] = {}
        for provider in providers:
            breakers[provider.id] = self._breakers.get(provider.id) or self._new_breaker(provider.id)
        self._breakers = breakers
        logger.info("Router providers updated: %s", [p.id for p in providers])

    def reset_provider_health(self, provider_id: str) -> None:
        """Close the provider's breaker and clear its counters and probe history."""
        self._breakers[provider_id].reset()
        self._adapters[provider_id].reset_health()
        if self._health is not None:
            self._health.reset(provider_id)

    # -- routing ------------------------------------------------------------------

    def _options(self, options: Optional[RouteOptions]) -> RouteOptions:
        if options is not None:
            return options
        return RouteOptions(timeout_ms=self._config.default_timeout_ms)

    async def route(
        self,
        capability: Capability,
        request: Any,
        options: Optional[RouteOptions] = None,
    ) -> ProviderResponse:
        """Route a request to the best available provider.

        Args:
            capability: Requested capability
            request: Capability-specific request payload
            options: Per-call options; defaults use the configured timeout

        Returns:
            ProviderResponse from the first provider that succeeded, or from
            the cache.

        Raises:
            ValueError: If the request does not match the capability.
            NoCapableProviderError: No enabled provider declares the capability.
            CircuitOpenForAllError: Every candidate's breaker is open.
            AllProvidersFailedError: Every attempted candidate failed
                (RouterTimeoutError when every attempt timed out).
            asyncio.CancelledError: The caller was cancelled; re-raised as is.
        """
        validate_request(capability, request)
        options = self._options(options)

        key = make_cache_key(capability, request)
        if options.allow_cache and self._cache is not None:
            cached = self._cache.get(key)
            if cached is not None:
                self.events.emit(RouterEventType.CACHE_HIT, {"capability": capability.value, "key": key[:16]})
                return cached

        candidates = self._registry.candidates(capability)
        if not candidates:
            self.events.emit(RouterEventType.ROUTE_FAILURE, {"capability": capability.value, "kind": "no_capable_provider"})
            raise NoCapableProviderError(
                f"No enabled provider supports {capability.value}",
                capability=capability.value,
            )

        if self._coalescer.is_pending(key):
            self.events.emit(RouterEventType.COALESCED, {"capability": capability.value, "key": key[:16]})
        else:
            self.events.emit(
                RouterEventType.ROUTE_REQUEST,
                {"capability": capability.value, "candidates": candidates},
            )

        try:
            return await self._coalescer.dedupe(
                key, lambda: self._execute(capability, request, options, key)
            )
        except asyncio.CancelledError:
            logger.info("Route for %s cancelled", capability.value)
            raise

    async def _execute(
        self,
        capability: Capability,
        request: Any,
        options: RouteOptions,
        key: str,
    ) -> ProviderResponse:
        """Walk the fallback chain once. Runs as the coalesced producer."""
        candidates = self._registry.candidates(capability)
        causes: List[AdapterError] = []
        skipped: List[str] = []

        for index, provider_id in enumerate(candidates):
            breaker = self._current_breaker(provider_id)
            if breaker is None:
                continue
            if not breaker.allow():
                skipped.append(provider_id)
                logger.debug("Skipping %s for %s: circuit %s", provider_id, capability.value, breaker.state.value)
                self.events.emit(
                    RouterEventType.PROVIDER_SKIPPED,
                    {"provider_id": provider_id, "capability": capability.value, "state": breaker.state.value},
                )
                continue

            adapter = self._adapters[provider_id]
            try:
                response = await self._attempt(adapter, capability, request, options)
            except AdapterError as e:
                breaker.record_failure()
                adapter.record_outcome(False)
                causes.append(e)
                logger.warning(
                    "Provider %s failed for %s (%s): %s",
                    provider_id,
                    capability.value,
                    type(e).__name__,
                    e,
                )
                self.events.emit(
                    RouterEventType.PROVIDER_FAILURE,
                    {"provider_id": provider_id, "capability": capability.value, "error": str(e), "error_type": type(e).__name__},
                )
                if index + 1 < len(candidates):
                    self.events.emit(
                        RouterEventType.PROVIDER_FALLBACK,
                        {"from_provider": provider_id, "capability": capability.value},
                    )
                continue
            except asyncio.CancelledError:
                # Neither success nor failure: hand back a claimed HALF_OPEN slot.
                breaker.release_trial()
                raise

            breaker.record_success()
            adapter.record_outcome(True)
            if options.allow_cache and self._cache is not None:
                self._cache.put(key, response, options.cache_ttl_ms)
            self.events.emit(
                RouterEventType.ROUTE_SUCCESS,
                {
                    "provider_id": provider_id,
                    "capability": capability.value,
                    "attempts": len(causes) + 1,
                    "latency_ms": response.latency_ms,
                },
            )
            return response

        return self._exhausted(capability, causes, skipped)

    def _exhausted(
        self,
        capability: Capability,
        causes: List[AdapterError],
        skipped: List[str],
    ) -> ProviderResponse:
        if not causes and not skipped:
            # Every candidate was removed by update_providers() mid-flight.
            self.events.emit(RouterEventType.ROUTE_FAILURE, {"capability": capability.value, "kind": "no_capable_provider"})
            raise NoCapableProviderError(
                f"No configured provider supports {capability.value}",
                capability=capability.value,
            )
        if not causes:
            self.events.emit(
                RouterEventType.ROUTE_FAILURE,
                {"capability": capability.value, "kind": "circuit_open_for_all", "providers": skipped},
            )
            raise CircuitOpenForAllError(
                f"All providers for {capability.value} have open circuits: {skipped}",
                capability=capability.value,
                provider_ids=skipped,
            )

        summary = "; ".join(str(c) for c in causes)
        if all(isinstance(c, AdapterTimeoutError) for c in causes):
            error_cls = RouterTimeoutError
            message = f"All providers for {capability.value} timed out: {summary}"
        else:
            error_cls = AllProvidersFailedError
            message = f"All providers failed for {capability.value}: {summary}"
        logger.error(message)
        self.events.emit(
            RouterEventType.ROUTE_FAILURE,
            {"capability": capability.value, "kind": error_cls.kind.value, "providers": [c.provider_id for c in causes]},
        )
        raise error_cls(message, capability=capability.value, causes=causes)

    async def _attempt(
        self,
        adapter: ProviderAdapter,
        capability: Capability,
        request: Any,
        options: RouteOptions,
    ) -> ProviderResponse:
        """One deadline-bounded provider call, normalized to AdapterError on failure."""
        timeout = options.timeout_ms / 1000.0
        deadline = asyncio.get_running_loop().time() + timeout
        if self._batcher is not None and adapter.supports_batch(capability):
            call = self._batcher.submit(adapter, capability, request, deadline)
        else:
            call = adapter.call(capability, request, deadline)

        try:
            response = await asyncio.wait_for(call, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise AdapterTimeoutError(
                f"no response within {options.timeout_ms}ms",
                provider_id=adapter.provider_id,
            ) from e
        except AdapterError as e:
            if e.provider_id is None:
                e.provider_id = adapter.provider_id
            raise
        except Exception as e:
            logger.exception("Adapter %s raised a non-adapter error", adapter.provider_id)
            raise TransportError(f"unexpected adapter error: {e!r}", provider_id=adapter.provider_id) from e

        if not isinstance(response, ProviderResponse):
            raise MalformedResponseError(
                f"adapter returned {type(response).__name__}, expected ProviderResponse",
                provider_id=adapter.provider_id,
            )
        return response

    # -- streaming ----------------------------------------------------------------

    async def stream(
        self,
        capability: Capability,
        request: Any,
        options: Optional[RouteOptions] = None,
    ) -> AsyncIterator[str]:
        """Stream response chunks from the first provider able to serve them.

        Falls back to the next streaming-capable candidate only until the
        first chunk has been yielded. Each chunk must arrive within
        ``timeout_ms``. Streams bypass the cache and the coalescer.

        Raises:
            NoCapableProviderError: No enabled provider can stream the capability.
            CircuitOpenForAllError / AllProvidersFailedError: As for route().
            StreamInterruptedError: The provider failed after yielding chunks.
        """
        validate_request(capability, request)
        options = self._options(options)
        timeout = options.timeout_ms / 1000.0

        candidates = [
            pid for pid in self._registry.candidates(capability)
            if self._adapters[pid].supports_streaming(capability)
        ]
        if not candidates:
            raise NoCapableProviderError(
                f"No enabled provider can stream {capability.value}",
                capability=capability.value,
            )

        causes: List[AdapterError] = []
        skipped: List[str] = []
        for provider_id in candidates:
            breaker = self._current_breaker(provider_id)
            if breaker is None:
                continue
            if not breaker.allow():
                skipped.append(provider_id)
                continue

            adapter = self._adapters[provider_id]
            deadline = asyncio.get_running_loop().time() + timeout
            chunks = 0
            resolved = False
            iterator = None
            try:
                iterator = adapter.stream(capability, request, deadline).__aiter__()
                while True:
                    try:
                        chunk = await asyncio.wait_for(iterator.__anext__(), timeout=timeout)
                    except StopAsyncIteration:
                        break
                    chunks += 1
                    yield chunk
                breaker.record_success()
                adapter.record_outcome(True)
                resolved = True
            except Exception as e:
                error = self._as_adapter_error(e, adapter.provider_id, options)
                breaker.record_failure()
                adapter.record_outcome(False)
                resolved = True
                logger.warning("Stream from %s failed for %s: %s", provider_id, capability.value, error)
                if chunks:
                    raise StreamInterruptedError(
                        f"Stream from {provider_id} failed after {chunks} chunks: {error}",
                        capability=capability.value,
                        cause=error,
                    ) from e
                causes.append(error)
                continue
            finally:
                if not resolved:
                    # Cancelled or closed by the consumer before completion.
                    breaker.release_trial()
                if iterator is not None and hasattr(iterator, "aclose"):
                    await iterator.aclose()
            return

        self._exhausted(capability, causes, skipped)

    @staticmethod
    def _as_adapter_error(error: Exception, provider_id: str, options: RouteOptions) -> AdapterError:
        if isinstance(error, AdapterError):
            if error.provider_id is None:
                error.provider_id = provider_id
            return error
        if isinstance(error, asyncio.TimeoutError):
            return AdapterTimeoutError(f"no chunk within {options.timeout_ms}ms", provider_id=provider_id)
        return TransportError(f"unexpected stream error: {error!r}", provider_id=provider_id)

    # -- convenience wrappers -----------------------------------------------------

    async def text(self, request: TextRequest, options: Optional[RouteOptions] = None) -> ProviderResponse:
        return await self.route(Capability.TEXT, request, options)

    async def vision(self, request: VisionRequest, options: Optional[RouteOptions] = None) -> ProviderResponse:
        return await self.route(Capability.VISION, request, options)

    async def audio(self, request: AudioRequest, options: Optional[RouteOptions] = None) -> ProviderResponse:
        return await self.route(Capability.AUDIO, request, options)

    async def search(self, request: SearchRequest, options: Optional[RouteOptions] = None) -> ProviderResponse:
        return await self.route(Capability.SEARCH, request, options)

    async def generate_image(self, request: ImageGenRequest, options: Optional[RouteOptions] = None) -> ProviderResponse:
        return await self.route(Capability.IMAGE_GEN, request, options)

    # -- diagnostics --------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        """Statistics for providers, breakers, health, cache and coalescing."""
        providers: Dict[str, Any] = {}
        for provider_id in self._registry.provider_ids:
            cfg = self._registry.get(provider_id)
            health = self._health.get_health(provider_id) if self._health is not None else None
            providers[provider_id] = {
                "enabled": self._registry.is_enabled(provider_id),
                "priority": cfg.priority if cfg is not None else None,
                "capabilities": sorted(c.value for c in cfg.capabilities) if cfg is not None else [],
                "circuit_breaker": self._breakers[provider_id].get_stats(),
                "health": asdict(health) if health is not None else None,
                "adapter": self._adapters[provider_id].get_health(),
            }
        return {
            "providers": providers,
            "cache": self._cache.get_stats() if self._cache is not None else None,
            "coalescer": {
                "in_flight": self._coalescer.in_flight(),
                "coalesced": self._coalescer.coalesced_count,
            },
            "batcher": (
                {"queued": self._batcher.queued(), "batches_sent": self._batcher.batches_sent}
                if self._batcher is not None
                else None
            ),
        }
