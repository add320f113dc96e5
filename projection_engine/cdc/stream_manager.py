"""
ChangeStreamManager - the transport delivery loop.

Deliveries are routed to a fixed set of partition queues by a stable hash of
the entity id. Each partition has one worker, so events for one entity are
applied strictly in delivery order while different entities proceed in
parallel.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

from projection_engine.cdc.change_feed import CDCProvider, Delivery
from projection_engine.cdc.consumer import ChangeConsumer
from projection_engine.types.results import ApplyOutcome
from projection_engine.util.hashing import partition_for

logger = logging.getLogger(__name__)


class ChangeStreamManager:
    def __init__(self, provider: CDCProvider, consumer: ChangeConsumer, partitions: int = 4):
        """
        Initialize the delivery loop.

        Args:
            provider: Source of deliveries (polling or push)
            consumer: Applies each event to the read store
            partitions: Number of ordered worker queues
        """
        if partitions <= 0:
            raise ValueError("partitions must be positive")
        self.provider = provider
        self.consumer = consumer
        self.partitions = partitions
        self.queues: List[asyncio.Queue] = []
        self.workers: List[asyncio.Task] = []
        self.pump: Optional[asyncio.Task] = None
        self.running = False
        self.counts = {outcome.value: 0 for outcome in ApplyOutcome}
        self.counts["errors"] = 0

    async def start(self):
        """Start partition workers and the pump pulling from the provider"""
        if self.running:
            return
        self.running = True
        self.queues = [asyncio.Queue() for _ in range(self.partitions)]
        self.workers = [
            asyncio.create_task(self._work(index, queue))
            for index, queue in enumerate(self.queues)
        ]
        await self.provider.start()
        self.pump = asyncio.create_task(self._pump())
        logger.info("Change stream started with %d partitions", self.partitions)

    async def _pump(self):
        async for delivery in self.provider.get_change_stream():
            if not self.running:
                break
            await self.dispatch(delivery)

    async def dispatch(self, delivery: Delivery):
        index = partition_for(delivery.event.entity_id, self.partitions)
        await self.queues[index].put(delivery)

    async def _work(self, index: int, queue: asyncio.Queue):
        while True:
            delivery = await queue.get()
            try:
                result = await self.consumer.process(delivery.event)
                self.counts[result.outcome.value] += 1
                await delivery.ack()
            except asyncio.CancelledError:
                raise
            except Exception:
                # Left unacknowledged: the transport delivers it again
                self.counts["errors"] += 1
                logger.exception(
                    "Partition %d failed on %s@%d",
                    index, delivery.event.entity_id, delivery.event.version,
                )
            finally:
                queue.task_done()

    async def drain(self):
        """Wait until every delivery the provider holds has been handled"""
        await self.provider.join()
        for queue in self.queues:
            await queue.join()

    async def stop(self):
        """Stop the CDC tracking"""
        self.running = False
        await self.provider.stop()
        tasks = ([self.pump] if self.pump else []) + self.workers
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self.workers = []
        self.pump = None
        logger.info("Change stream stopped: %s", self.counts)

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "partitions": self.partitions,
            "backlog": sum(q.qsize() for q in self.queues),
            "counts": dict(self.counts),
        }
