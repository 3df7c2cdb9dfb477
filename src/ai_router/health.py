"""Periodic provider health probing.

The monitor pings every provider whose adapter advertises ``supports_ping``
on a fixed interval and keeps a ProviderHealth record per provider. It never
changes circuit breaker state; breakers are driven only by real request
outcomes. The registry reads the records to move unhealthy or slow providers
to the back of the fallback chain.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional

from .adapters.base import ProviderAdapter
from .errors import AdapterError
from .events import EventLog, RouterEventType
from .registry import CapabilityRegistry

logger = logging.getLogger(__name__)


@dataclass
class ProviderHealth:
    """Latest probe results for one provider."""

    provider_id: str
    last_check_at: Optional[float] = None
    healthy: bool = True
    average_latency_ms: Optional[float] = None
    consecutive_failures: int = 0
    last_error: Optional[str] = None


class HealthMonitor:
    """Background prober feeding provider health into the registry ranking.

    Example:
        monitor = HealthMonitor(adapters, registry, interval_ms=60000)
        monitor.start()
        ...
        await monitor.stop()
    """

    def __init__(
        self,
        adapters: Mapping[str, ProviderAdapter],
        registry: CapabilityRegistry,
        interval_ms: int = 60000,
        probe_timeout_ms: int = 10000,
        latency_smoothing: float = 0.3,
        disable_after_failures: int = 0,
        events: Optional[EventLog] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the monitor.

        Args:
            adapters: Provider id to adapter, shared with the router.
            registry: Registry whose runtime enabled flags may be toggled.
            interval_ms: Delay between probe rounds.
            probe_timeout_ms: Deadline for a single ping.
            latency_smoothing: Weight of the newest sample in the latency EMA.
            disable_after_failures: Consecutive failed probes before the
                provider is disabled in the registry; 0 never disables.
            events: Event log for probe events.
            clock: Wall-clock source for ``last_check_at``.
        """
        self._adapters = adapters
        self._registry = registry
        self.interval_ms = interval_ms
        self.probe_timeout_ms = probe_timeout_ms
        self.latency_smoothing = latency_smoothing
        self.disable_after_failures = disable_after_failures
        self._events = events
        self._clock = clock
        self._health: Dict[str, ProviderHealth] = {}
        self._disabled_by_monitor: set = set()
        self._task: Optional["asyncio.Task[None]"] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def get_health(self, provider_id: str) -> Optional[ProviderHealth]:
        """Return the provider's health record, or None before its first probe."""
        return self._health.get(provider_id)

    def all_health(self) -> Dict[str, ProviderHealth]:
        return dict(self._health)

    def reset(self, provider_id: str) -> None:
        """Forget a provider's probe history."""
        self._health.pop(provider_id, None)

    def _record(self, provider_id: str, ok: bool, latency_ms: float, error: Optional[str]) -> ProviderHealth:
        health = self._health.setdefault(provider_id, ProviderHealth(provider_id=provider_id))
        health.last_check_at = self._clock()
        health.healthy = ok
        health.last_error = error
        if ok:
            health.consecutive_failures = 0
            if health.average_latency_ms is None:
                health.average_latency_ms = latency_ms
            else:
                alpha = self.latency_smoothing
                health.average_latency_ms = alpha * latency_ms + (1 - alpha) * health.average_latency_ms
        else:
            health.consecutive_failures += 1
        return health

    def _apply_toggle(self, health: ProviderHealth) -> None:
        if not self.disable_after_failures:
            return
        pid = health.provider_id
        if not health.healthy and health.consecutive_failures >= self.disable_after_failures:
            if self._registry.is_enabled(pid):
                self._registry.set_enabled(pid, False)
                self._disabled_by_monitor.add(pid)
                self._emit_toggle(pid, False)
        elif health.healthy and pid in self._disabled_by_monitor:
            self._registry.set_enabled(pid, True)
            self._disabled_by_monitor.discard(pid)
            self._emit_toggle(pid, True)

    def _emit_toggle(self, provider_id: str, enabled: bool) -> None:
        if self._events is not None:
            self._events.emit(
                RouterEventType.PROVIDER_TOGGLED,
                {"provider_id": provider_id, "enabled": enabled, "source": "health_monitor"},
            )

    def _should_probe(self, provider_id: str) -> bool:
        adapter = self._adapters.get(provider_id)
        if adapter is None or not adapter.supports_ping:
            return False
        # Providers the monitor disabled itself keep being probed so they can recover.
        return self._registry.is_enabled(provider_id) or provider_id in self._disabled_by_monitor

    async def probe(self, provider_id: str) -> ProviderHealth:
        """Ping one provider and update its health record."""
        adapter = self._adapters[provider_id]
        loop = asyncio.get_running_loop()
        timeout = self.probe_timeout_ms / 1000.0
        start = time.monotonic()
        error: Optional[str] = None
        try:
            await asyncio.wait_for(adapter.ping(loop.time() + timeout), timeout=timeout)
            ok = True
        except asyncio.TimeoutError:
            ok, error = False, f"probe timed out after {self.probe_timeout_ms}ms"
        except AdapterError as e:
            ok, error = False, str(e)
        except Exception as e:
            logger.exception("Health probe for %s raised unexpectedly", provider_id)
            ok, error = False, f"unexpected error: {e}"
        latency_ms = (time.monotonic() - start) * 1000.0

        health = self._record(provider_id, ok, latency_ms, error)
        if not ok:
            logger.warning("Health probe failed for %s: %s", provider_id, error)
        if self._events is not None:
            self._events.emit(
                RouterEventType.HEALTH_PROBE,
                {
                    "provider_id": provider_id,
                    "healthy": ok,
                    "latency_ms": round(latency_ms, 1),
                    "error": error,
                },
            )
        self._apply_toggle(health)
        return health

    async def probe_all(self) -> Dict[str, ProviderHealth]:
        """Run one probe round over every probe-able provider concurrently."""
        targets = [pid for pid in self._registry.provider_ids if self._should_probe(pid)]
        if targets:
            await asyncio.gather(*(self.probe(pid) for pid in targets))
        return self.all_health()

    async def _run(self) -> None:
        interval = self.interval_ms / 1000.0
        while True:
            try:
                await self.probe_all()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Health probe round failed")
            await asyncio.sleep(interval)

    def start(self) -> None:
        """Start the background probe loop on the running event loop."""
        if self.running:
            return
        self._task = asyncio.ensure_future(self._run())
        logger.info("Health monitor started (interval=%dms)", self.interval_ms)

    async def stop(self) -> None:
        """Stop the probe loop and wait for it to exit."""
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Health monitor stopped")
