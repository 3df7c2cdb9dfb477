"""Batch submission of compatible provider calls.

Attempts for the same (provider, capability) that arrive within
``batch_delay_ms`` of each other are grouped, up to ``batch_size`` items, into
one ``adapter.call_batch()`` call. The adapter returns one item per request,
in request order; each item is either a ProviderResponse or an AdapterError,
and each waiter only ever sees its own item.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from .errors import (
    AdapterError,
    AdapterTimeoutError,
    MalformedResponseError,
    TransportError,
)
from .types import Capability, ProviderResponse

if TYPE_CHECKING:
    from .adapters.base import ProviderAdapter

logger = logging.getLogger(__name__)

BatchKey = Tuple[str, Capability]


@dataclass
class _BatchItem:
    request: Any
    deadline: float
    future: "asyncio.Future[ProviderResponse]"


@dataclass
class _Batch:
    adapter: "ProviderAdapter"
    capability: Capability
    items: List[_BatchItem] = field(default_factory=list)
    timer: Optional[asyncio.TimerHandle] = None


class RequestBatcher:
    """Groups provider attempts into batch calls.

    Example:
        batcher = RequestBatcher(batch_delay_ms=1000, batch_size=5)
        response = await batcher.submit(adapter, Capability.TEXT, request, deadline)
    """

    def __init__(self, batch_delay_ms: int = 1000, batch_size: int = 5):
        if batch_delay_ms < 0:
            raise ValueError("batch_delay_ms must not be negative")
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.batch_delay_ms = batch_delay_ms
        self.batch_size = batch_size
        self._open: Dict[BatchKey, _Batch] = {}
        self._running: "set[asyncio.Task[None]]" = set()
        self._batches_sent = 0

    @property
    def batches_sent(self) -> int:
        return self._batches_sent

    def queued(self) -> int:
        """Number of requests waiting for their batch to be flushed."""
        return sum(len(b.items) for b in self._open.values())

    async def submit(
        self,
        adapter: "ProviderAdapter",
        capability: Capability,
        request: Any,
        deadline: float,
    ) -> ProviderResponse:
        """Queue a request and wait for its own demultiplexed result.

        Raises:
            AdapterError: The item (or the whole batch) failed.
        """
        loop = asyncio.get_running_loop()
        key: BatchKey = (adapter.provider_id, capability)
        batch = self._open.get(key)
        if batch is None:
            batch = _Batch(adapter=adapter, capability=capability)
            self._open[key] = batch
            batch.timer = loop.call_later(self.batch_delay_ms / 1000.0, self._flush, key)

        future: "asyncio.Future[ProviderResponse]" = loop.create_future()
        batch.items.append(_BatchItem(request=request, deadline=deadline, future=future))

        if len(batch.items) >= self.batch_size:
            self._flush(key)

        return await future

    def _flush(self, key: BatchKey) -> None:
        batch = self._open.pop(key, None)
        if batch is None:
            return
        if batch.timer is not None:
            batch.timer.cancel()
        items = [item for item in batch.items if not item.future.done()]
        if not items:
            return
        task = asyncio.ensure_future(self._dispatch(batch.adapter, batch.capability, items))
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def _dispatch(
        self,
        adapter: "ProviderAdapter",
        capability: Capability,
        items: List[_BatchItem],
    ) -> None:
        provider_id = adapter.provider_id
        deadline = min(item.deadline for item in items)
        timeout = max(deadline - asyncio.get_running_loop().time(), 0.0)
        self._batches_sent += 1
        logger.debug("Dispatching batch of %d to %s/%s", len(items), provider_id, capability.value)

        try:
            results = await asyncio.wait_for(
                adapter.call_batch(capability, [item.request for item in items], deadline),
                timeout=timeout,
            )
        except asyncio.CancelledError:
            for item in items:
                if not item.future.done():
                    item.future.set_exception(
                        TransportError("batch cancelled", provider_id=provider_id)
                    )
            raise
        except AdapterError as e:
            self._fail_all(items, e)
            return
        except asyncio.TimeoutError:
            self._fail_all(items, AdapterTimeoutError("batch call timed out", provider_id=provider_id))
            return
        except Exception as e:
            logger.exception("Batch call to %s raised unexpectedly", provider_id)
            self._fail_all(items, TransportError(f"unexpected error: {e}", provider_id=provider_id))
            return

        if len(results) != len(items):
            self._fail_all(
                items,
                MalformedResponseError(
                    f"batch returned {len(results)} results for {len(items)} requests",
                    provider_id=provider_id,
                ),
            )
            return

        for item, result in zip(items, results):
            if item.future.done():
                continue
            if isinstance(result, BaseException):
                item.future.set_exception(result)
            else:
                item.future.set_result(result)

    @staticmethod
    def _fail_all(items: List[_BatchItem], error: AdapterError) -> None:
        for item in items:
            if not item.future.done():
                item.future.set_exception(error)

    async def close(self) -> None:
        """Fail queued items and wait for dispatched batches to finish."""
        for key in list(self._open):
            batch = self._open.pop(key)
            if batch.timer is not None:
                batch.timer.cancel()
            self._fail_all(
                batch.items,
                TransportError("batcher closed", provider_id=batch.adapter.provider_id),
            )
        if self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)
