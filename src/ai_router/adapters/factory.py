"""Build provider adapters from router configuration."""

import logging
from typing import Callable, Dict, Optional

import httpx

from ..config import ProviderConfig, RouterConfig, resolve_credential
from ..errors import ConfigError
from .base import ProviderAdapter
from .openai_compat import DEFAULT_MODELS, OpenAICompatibleAdapter

logger = logging.getLogger(__name__)

AdapterBuilder = Callable[[ProviderConfig, Optional[httpx.AsyncClient]], ProviderAdapter]


def _build_openai_compatible(
    provider: ProviderConfig,
    client: Optional[httpx.AsyncClient],
) -> ProviderAdapter:
    models = {cap: model for cap, model in DEFAULT_MODELS.items() if cap in provider.capabilities}
    models.update(provider.models)
    api_key = resolve_credential(provider.credential_ref)
    if provider.credential_ref and api_key is None:
        logger.warning("Credential %s for provider %s is not set", provider.credential_ref, provider.id)
    return OpenAICompatibleAdapter(
        provider.id,
        api_key=api_key,
        base_url=provider.base_url,
        models=models,
        max_retries=provider.max_retries,
        client=client,
    )


ADAPTER_BUILDERS: Dict[str, AdapterBuilder] = {
    "openai_compatible": _build_openai_compatible,
}


def build_adapters(
    config: RouterConfig,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, ProviderAdapter]:
    """Create one adapter per configured provider, keyed by provider id.

    Args:
        config: Router configuration
        client: Optional shared HTTP client (adapters then do not own it)

    Raises:
        ConfigError: If a provider names an unknown ``kind``.
    """
    adapters: Dict[str, ProviderAdapter] = {}
    for provider in config.providers:
        builder = ADAPTER_BUILDERS.get(provider.kind)
        if builder is None:
            raise ConfigError(
                f"provider '{provider.id}' has unknown kind '{provider.kind}'; "
                f"expected one of {sorted(ADAPTER_BUILDERS)}"
            )
        adapters[provider.id] = builder(provider, client)
    return adapters
