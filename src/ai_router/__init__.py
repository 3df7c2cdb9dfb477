"""AI Router - capability routing across AI providers with fallback and resilience.

Usage:
    from ai_router import AIRouter, Capability, TextRequest, get_effective_config

    async with AIRouter.from_config(get_effective_config()) as router:
        response = await router.route(Capability.TEXT, TextRequest(prompt="Hello"))
        print(response.provider_id, response.content)

For the read-only status endpoints:
    pip install "ai-router-core[http]"
"""

from ai_router.adapters import (
    HttpProviderAdapter,
    OpenAICompatibleAdapter,
    ProviderAdapter,
    build_adapters,
)
from ai_router.batcher import RequestBatcher
from ai_router.cache import ResponseCache, make_cache_key
from ai_router.circuit_breaker import CircuitBreaker, CircuitState
from ai_router.coalescer import RequestCoalescer
from ai_router.config import (
    ProviderConfig,
    RouterConfig,
    get_effective_config,
    load_config,
)
from ai_router.errors import (
    AdapterError,
    AllProvidersFailedError,
    CircuitOpenForAllError,
    ConfigError,
    NoCapableProviderError,
    RouterError,
    RouterErrorKind,
    RouterTimeoutError,
    StreamInterruptedError,
)
from ai_router.events import EventLog, RouterEvent, RouterEventType
from ai_router.health import HealthMonitor, ProviderHealth
from ai_router.registry import CapabilityRegistry
from ai_router.router import AIRouter
from ai_router.types import (
    AudioRequest,
    Capability,
    ImageGenRequest,
    ProviderResponse,
    RouteOptions,
    SearchRequest,
    TextRequest,
    VisionRequest,
)

__version__ = "0.1.0"

__all__ = [
    # Core orchestration
    "AIRouter",
    # Types
    "Capability",
    "TextRequest",
    "VisionRequest",
    "AudioRequest",
    "SearchRequest",
    "ImageGenRequest",
    "ProviderResponse",
    "RouteOptions",
    # Resilience components
    "CircuitBreaker",
    "CircuitState",
    "ResponseCache",
    "make_cache_key",
    "RequestCoalescer",
    "RequestBatcher",
    "HealthMonitor",
    "ProviderHealth",
    "CapabilityRegistry",
    # Adapters
    "ProviderAdapter",
    "HttpProviderAdapter",
    "OpenAICompatibleAdapter",
    "build_adapters",
    # Configuration
    "ProviderConfig",
    "RouterConfig",
    "load_config",
    "get_effective_config",
    # Events
    "EventLog",
    "RouterEvent",
    "RouterEventType",
    # Errors
    "AdapterError",
    "ConfigError",
    "RouterError",
    "RouterErrorKind",
    "NoCapableProviderError",
    "CircuitOpenForAllError",
    "AllProvidersFailedError",
    "RouterTimeoutError",
    "StreamInterruptedError",
    "__version__",
]
