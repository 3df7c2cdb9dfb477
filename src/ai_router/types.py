"""Core types for the AI capability router.

Defines the closed Capability enum, the capability-specific request shapes,
the provider-agnostic response, and the per-call routing options.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Union


class Capability(Enum):
    """Category of AI operation that multiple vendors may support."""

    TEXT = "text"
    VISION = "vision"
    AUDIO = "audio"
    SEARCH = "search"
    IMAGE_GEN = "image_gen"


@dataclass(frozen=True)
class TextRequest:
    """Text generation request."""

    capability: ClassVar[Capability] = Capability.TEXT

    prompt: str
    max_tokens: Optional[int] = None
    system_prompt: Optional[str] = None
    temperature: Optional[float] = None


@dataclass(frozen=True)
class VisionRequest:
    """Image analysis request: raw image bytes plus an instruction prompt."""

    capability: ClassVar[Capability] = Capability.VISION

    image_bytes: bytes
    mime_type: str
    prompt: str


@dataclass(frozen=True)
class AudioRequest:
    """Audio analysis request."""

    capability: ClassVar[Capability] = Capability.AUDIO

    audio_bytes: bytes
    mime_type: str
    prompt: Optional[str] = None


@dataclass(frozen=True)
class SearchRequest:
    """Web search request."""

    capability: ClassVar[Capability] = Capability.SEARCH

    query: str


@dataclass(frozen=True)
class ImageGenRequest:
    """Image generation request, optionally guided by a reference image."""

    capability: ClassVar[Capability] = Capability.IMAGE_GEN

    prompt: str
    reference_image_bytes: Optional[bytes] = None


AIRequest = Union[TextRequest, VisionRequest, AudioRequest, SearchRequest, ImageGenRequest]


def validate_request(capability: Capability, request: Any) -> None:
    """Check that a request payload matches the capability it is routed under.

    Raises:
        ValueError: If capability is not a Capability or the request shape
            belongs to another capability.
    """
    if not isinstance(capability, Capability):
        raise ValueError(f"unknown capability {capability!r}")
    expected = getattr(type(request), "capability", None)
    if expected is not capability:
        raise ValueError(
            f"{type(request).__name__} cannot be routed as {capability.value}"
        )


@dataclass
class ProviderResponse:
    """Response from a provider adapter.

    Text-like capabilities fill ``content``; image generation fills ``data``
    and/or ``url``. ``provider_id`` records which vendor served the request,
    which is informational only (cache hits are provider-agnostic).
    """

    provider_id: str
    capability: Capability
    content: str = ""
    data: Optional[bytes] = None
    url: Optional[str] = None
    model: Optional[str] = None
    latency_ms: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RouteOptions:
    """Per-call routing options.

    Attributes:
        timeout_ms: Hard deadline for each provider attempt.
        allow_cache: Whether to read from and write to the response cache.
        cache_ttl_ms: TTL for the stored response; None uses the cache default.
    """

    timeout_ms: int = 30000
    allow_cache: bool = True
    cache_ttl_ms: Optional[int] = None

    def __post_init__(self) -> None:
        if self.timeout_ms <= 0:
            raise ValueError("timeout_ms must be positive")
        if self.cache_ttl_ms is not None and self.cache_ttl_ms <= 0:
            raise ValueError("cache_ttl_ms must be positive")
