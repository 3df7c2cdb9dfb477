"""Capability registry: which providers may serve which capability, in what order.

Base order is configured priority (lower first) with configuration
declaration order breaking ties, so the fallback chain is deterministic. When
a health lookup is attached, providers with failing probes and then
providers slower than ``slow_latency_ms`` are moved behind the rest; the base
order is preserved within each group.
"""

import logging
import threading
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Sequence, Tuple

from .config import ProviderConfig
from .errors import ConfigError
from .types import Capability

if TYPE_CHECKING:
    from .health import ProviderHealth

logger = logging.getLogger(__name__)

HealthLookup = Callable[[str], Optional["ProviderHealth"]]


class CapabilityRegistry:
    """Maps capabilities to ordered provider id lists."""

    def __init__(
        self,
        providers: Sequence[ProviderConfig],
        health_lookup: Optional[HealthLookup] = None,
        slow_latency_ms: Optional[float] = None,
    ):
        self._lock = threading.Lock()
        self._health_lookup = health_lookup
        self._slow_latency_ms = slow_latency_ms
        self._providers: Dict[str, ProviderConfig] = {}
        self._declaration: Dict[str, int] = {}
        self._enabled: Dict[str, bool] = {}
        self._load(providers)

    def _load(self, providers: Sequence[ProviderConfig]) -> None:
        providers_by_id: Dict[str, ProviderConfig] = {}
        for provider in providers:
            if provider.id in providers_by_id:
                raise ConfigError(f"duplicate provider id '{provider.id}'")
            providers_by_id[provider.id] = provider
        self._providers = providers_by_id
        self._declaration = {pid: index for index, pid in enumerate(providers_by_id)}
        self._enabled = {pid: cfg.enabled for pid, cfg in providers_by_id.items()}

    def replace(self, providers: Sequence[ProviderConfig]) -> None:
        """Swap in a new provider list (runtime enabled flags are reset)."""
        with self._lock:
            self._load(providers)

    def set_health_lookup(self, lookup: Optional[HealthLookup], slow_latency_ms: Optional[float] = None) -> None:
        self._health_lookup = lookup
        if slow_latency_ms is not None:
            self._slow_latency_ms = slow_latency_ms

    @property
    def provider_ids(self) -> List[str]:
        """All configured provider ids in declaration order."""
        with self._lock:
            return list(self._providers)

    def get(self, provider_id: str) -> Optional[ProviderConfig]:
        with self._lock:
            return self._providers.get(provider_id)

    def is_enabled(self, provider_id: str) -> bool:
        with self._lock:
            return self._enabled.get(provider_id, False)

    def set_enabled(self, provider_id: str, enabled: bool) -> bool:
        """Toggle a provider at runtime.

        Returns:
            True if the flag changed.
        """
        with self._lock:
            if provider_id not in self._providers:
                raise KeyError(provider_id)
            changed = self._enabled[provider_id] != enabled
            self._enabled[provider_id] = enabled
        if changed:
            logger.info("Provider %s %s", provider_id, "enabled" if enabled else "disabled")
        return changed

    def _base_order(self, capability: Capability) -> List[Tuple[int, int, str]]:
        with self._lock:
            return [
                (cfg.priority, self._declaration[pid], pid)
                for pid, cfg in self._providers.items()
                if self._enabled[pid] and capability in cfg.capabilities
            ]

    def _health_rank(self, provider_id: str) -> Tuple[int, int]:
        if self._health_lookup is None:
            return (0, 0)
        health = self._health_lookup(provider_id)
        if health is None:
            return (0, 0)
        unhealthy = 0 if health.healthy else 1
        slow = 0
        if (
            self._slow_latency_ms is not None
            and health.average_latency_ms is not None
            and health.average_latency_ms > self._slow_latency_ms
        ):
            slow = 1
        return (unhealthy, slow)

    def candidates(self, capability: Capability) -> List[str]:
        """Ordered provider ids for a capability.

        Returns an empty list when no enabled provider declares it.
        """
        ranked = sorted(
            self._base_order(capability),
            key=lambda item: (self._health_rank(item[2]), item[0], item[1]),
        )
        return [pid for _, _, pid in ranked]

    def has_capability(self, capability: Capability) -> bool:
        return bool(self._base_order(capability))
