"""
Change feed providers for the projection engine CDC

This module turns committed write-store changes into a stream of deliveries.
It supports polling the write store's outbox table (for the embedded store)
and push-based delivery (for webhook/event-driven transports).

Delivery is at-least-once: a provider only moves its persisted checkpoint past
a position once every delivery up to it has been acknowledged, so anything in
flight when the process stops is delivered again on restart.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncGenerator, Awaitable, Callable, List, Optional, Set

from projection_engine.cdc.checkpoints import MemoryStateStore, StateStore
from projection_engine.types.events import ChangeEvent

logger = logging.getLogger(__name__)


@dataclass
class Delivery:
    """A change event plus the means to acknowledge it to the transport"""
    event: ChangeEvent
    position: int
    on_ack: Optional[Callable[[int], Awaitable[None]]] = field(default=None, repr=False)
    acked: bool = False

    async def ack(self):
        if self.acked:
            return
        self.acked = True
        if self.on_ack is not None:
            await self.on_ack(self.position)


class CDCProvider(ABC):
    """Abstract base class for CDC providers"""

    @abstractmethod
    async def start(self):
        """Start producing deliveries"""
        pass

    @abstractmethod
    async def stop(self):
        """Stop producing deliveries; open streams end"""
        pass

    @abstractmethod
    def get_change_stream(self) -> AsyncGenerator[Delivery, None]:
        """Generate a stream of deliveries"""
        pass

    async def join(self):
        """Wait until everything handed to the provider has been yielded downstream"""
        return None


class PushCDCProvider(CDCProvider):
    """
    CDC Provider that accepts externally pushed change events.
    This enables push-based CDC via webhooks or external event consumers.
    """

    def __init__(self, maxsize: int = 0):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.active = False
        self._position = 0

    async def start(self):
        self.active = True

    async def stop(self):
        self.active = False
        # Wake a consumer blocked on an empty queue
        await self.queue.put(None)

    async def push(self, event: ChangeEvent) -> Delivery:
        """Push a change event from an external source"""
        if not self.active:
            await self.start()
        self._position += 1
        delivery = Delivery(event=event, position=self._position)
        await self.queue.put(delivery)
        return delivery

    async def get_change_stream(self) -> AsyncGenerator[Delivery, None]:
        if not self.active:
            await self.start()

        while self.active:
            delivery = await self.queue.get()
            try:
                if delivery is None:
                    break
                yield delivery
            finally:
                # Marked done only once the consumer asks for the next one
                self.queue.task_done()

    async def join(self):
        await self.queue.join()


class PollingCDCProvider(CDCProvider):
    """
    Reads the write store's change_log in commit order.
    Optimized to minimize query load using an lsn cursor and batched reads.
    """

    def __init__(self, write_store, checkpoint_store: Optional[StateStore] = None,
                 stream_id: str = "change_log", batch_size: int = 100, poll_interval: float = 0.5):
        self.write_store = write_store
        self.checkpoint_store = checkpoint_store or MemoryStateStore()
        self.stream_id = stream_id
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self.active = False
        self._cursor = 0
        self._committed = 0
        self._inflight: Set[int] = set()

    @property
    def committed_position(self) -> int:
        return self._committed

    async def start(self):
        state = await self.checkpoint_store.get_state(self.stream_id)
        self._committed = int(state.get("lsn", 0))
        self._cursor = self._committed
        self._inflight.clear()
        self.active = True
        logger.info("Polling CDC: started %s at lsn %d", self.stream_id, self._committed)

    async def stop(self):
        self.active = False

    async def rewind(self):
        """Forget unacknowledged deliveries; they will be delivered again"""
        self._cursor = self._committed
        self._inflight.clear()

    async def poll_once(self) -> List[Delivery]:
        events = self.write_store.changes_since(self._cursor, self.batch_size)
        deliveries = []
        for event in events:
            self._inflight.add(event.version)
            deliveries.append(Delivery(event=event, position=event.version, on_ack=self._acknowledge))
        if events:
            self._cursor = events[-1].version
        return deliveries

    async def _acknowledge(self, position: int):
        self._inflight.discard(position)
        committed = (min(self._inflight) - 1) if self._inflight else self._cursor
        if committed > self._committed:
            self._committed = committed
            await self.checkpoint_store.save_state(self.stream_id, {"lsn": committed})

    async def get_change_stream(self) -> AsyncGenerator[Delivery, None]:
        if not self.active:
            await self.start()

        while self.active:
            deliveries = await self.poll_once()
            for delivery in deliveries:
                yield delivery
            if not deliveries:
                await asyncio.sleep(self.poll_interval)
