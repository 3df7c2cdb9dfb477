"""Provider adapters: the contract plus the built-in HTTP implementations."""

from .base import BatchResult, ProviderAdapter
from .factory import ADAPTER_BUILDERS, build_adapters
from .http import HttpProviderAdapter
from .openai_compat import DEFAULT_BASE_URL, DEFAULT_MODELS, OpenAICompatibleAdapter

__all__ = [
    "ADAPTER_BUILDERS",
    "BatchResult",
    "DEFAULT_BASE_URL",
    "DEFAULT_MODELS",
    "HttpProviderAdapter",
    "OpenAICompatibleAdapter",
    "ProviderAdapter",
    "build_adapters",
]
