"""In-flight request coalescing.

Concurrent callers asking for the same key share one underlying producer call:
the first caller registers a PendingRequest and starts the producer as a task,
later callers attach as subscribers. When the task resolves every subscriber
receives the identical result object (or the identical exception) and the
pending entry is removed.

The pending map is owned by the event loop; it must only be touched from
coroutines running on that loop.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict

logger = logging.getLogger(__name__)


@dataclass
class PendingRequest:
    """A producer call in flight, with the number of callers awaiting it."""

    key: str
    task: "asyncio.Task[Any]"
    subscribers: int = 0


class RequestCoalescer:
    """Deduplicates concurrent identical requests.

    Example:
        coalescer = RequestCoalescer()
        result = await coalescer.dedupe(key, lambda: expensive_call())
    """

    def __init__(self) -> None:
        self._pending: Dict[str, PendingRequest] = {}
        self._coalesced = 0

    def in_flight(self) -> int:
        """Number of distinct keys currently in flight."""
        return len(self._pending)

    def is_pending(self, key: str) -> bool:
        return key in self._pending

    @property
    def coalesced_count(self) -> int:
        """Total number of callers that attached to an existing request."""
        return self._coalesced

    async def dedupe(self, key: str, producer: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``producer`` once per key among concurrent callers.

        Args:
            key: Deduplication key
            producer: Zero-argument coroutine factory; only invoked by the
                first caller for a key

        Returns:
            The producer's result, shared by all subscribers

        Raises:
            Whatever the producer raised, re-raised in every subscriber.
            asyncio.CancelledError if this caller is cancelled; the producer is
            cancelled too when no other subscriber is waiting on it.
        """
        pending = self._pending.get(key)
        if pending is None:
            task = asyncio.ensure_future(producer())
            pending = PendingRequest(key=key, task=task)
            self._pending[key] = pending
            task.add_done_callback(lambda _t, p=pending: self._finish(p))
        else:
            self._coalesced += 1
            logger.debug("Coalesced request key=%s subscribers=%d", key[:16], pending.subscribers + 1)

        pending.subscribers += 1
        try:
            # shield: one subscriber's cancellation must not cancel the shared task
            return await asyncio.shield(pending.task)
        except asyncio.CancelledError:
            if not pending.task.done():
                pending.subscribers -= 1
                if pending.subscribers <= 0:
                    logger.debug("Last subscriber left, cancelling key=%s", key[:16])
                    # Unregister first so a caller arriving before the task
                    # unwinds starts a fresh producer.
                    if self._pending.get(key) is pending:
                        del self._pending[key]
                    pending.task.cancel()
            raise

    def _finish(self, pending: PendingRequest) -> None:
        if self._pending.get(pending.key) is pending:
            del self._pending[pending.key]
        # Retrieve the exception so an abandoned task does not log
        # "exception was never retrieved".
        if not pending.task.cancelled():
            pending.task.exception()

    async def cancel_all(self) -> None:
        """Cancel every in-flight producer and wait for them to unwind."""
        tasks = [p.task for p in self._pending.values()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
