"""
SyncController - Main controller for the dual-path consistency core
"""
import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from projection_engine.backends.write_store import WriteStore
from projection_engine.cdc.change_feed import CDCProvider, PollingCDCProvider, PushCDCProvider
from projection_engine.cdc.checkpoints import MemoryStateStore, RedisStateStore, StateStore
from projection_engine.cdc.consumer import ChangeConsumer
from projection_engine.cdc.dead_letter import DeadLetterQueue, MemoryDeadLetterQueue, RedisDeadLetterQueue
from projection_engine.cdc.stream_manager import ChangeStreamManager
from projection_engine.config import SyncConfig
from projection_engine.dual_write.coordinator import DualWriteCoordinator
from projection_engine.ledger.base import SyncLedger
from projection_engine.ledger.memory_ledger import MemoryLedger
from projection_engine.ledger.redis_ledger import RedisLedger, connect_redis, verify_redis
from projection_engine.projection.projector import Projector
from projection_engine.projection.read_store import MemoryReadStore, ReadStore
from projection_engine.projection.redis_read_store import RedisReadStore
from projection_engine.reconcile.reconciler import Reconciler, ReconciliationWindow
from projection_engine.types.events import ChangeEvent, Command
from projection_engine.types.results import ApplyResult, Committed, ReconciliationReport

logger = logging.getLogger(__name__)


class SyncController:
    """
    Keeps the read store consistent with the write store.
    Coordinates: Write Store -> CDC Feed -> Change Consumer -> Read Store,
    with the Dual-Write Coordinator and the Reconciler alongside, all three
    serialized through the Ledger.
    """

    def __init__(
        self,
        config: Optional[SyncConfig] = None,
        write_store: Optional[WriteStore] = None,
        ledger: Optional[SyncLedger] = None,
        read_store: Optional[ReadStore] = None,
        dead_letters: Optional[DeadLetterQueue] = None,
        checkpoint_store: Optional[StateStore] = None,
        redis_client: Optional[Any] = None,
    ):
        self.config = config or SyncConfig()
        self.config.validate()
        cfg = self.config

        self.write_store = write_store or WriteStore(uri=cfg.write_store_uri)

        # Initialize ledger / read store / dead letters / checkpoints
        self.redis_client = None
        if cfg.store_type == "redis":
            client = redis_client or connect_redis(socket_timeout=cfg.store_timeout, **cfg.redis_config)
            self.redis_client = client
            self.ledger = ledger or RedisLedger(client, cfg.namespace)
            self.read_store = read_store or RedisReadStore(client, cfg.namespace)
            self.dead_letters = dead_letters or RedisDeadLetterQueue(client, cfg.namespace)
            self.checkpoint_store = checkpoint_store or RedisStateStore(client, cfg.namespace)
        else:
            self.ledger = ledger or MemoryLedger()
            self.read_store = read_store or MemoryReadStore()
            self.dead_letters = dead_letters or MemoryDeadLetterQueue()
            self.checkpoint_store = checkpoint_store or MemoryStateStore()

        self.projector = Projector()

        self.consumer = ChangeConsumer(
            self.ledger,
            self.read_store,
            projector=self.projector,
            dead_letters=self.dead_letters,
            max_attempts=cfg.consumer_max_attempts,
            retry_base_delay=cfg.retry_base_delay,
            retry_max_delay=cfg.retry_max_delay,
            store_timeout=cfg.store_timeout,
            cas_max_retries=cfg.cas_max_retries,
        )
        self.coordinator = DualWriteCoordinator(
            self.write_store,
            self.ledger,
            self.read_store,
            projector=self.projector,
            timeout=cfg.dual_write_timeout,
            store_timeout=cfg.store_timeout,
            cas_max_retries=cfg.cas_max_retries,
        )
        self.reconciler = Reconciler(
            self.write_store,
            self.ledger,
            self.read_store,
            projector=self.projector,
            concurrency=cfg.reconcile_concurrency,
            alert_threshold=cfg.repair_alert_threshold,
            store_timeout=cfg.store_timeout,
            cas_max_retries=cfg.cas_max_retries,
        )

        self.provider = self._create_provider()
        self.stream_manager = ChangeStreamManager(self.provider, self.consumer, cfg.consumer_partitions)
        self._reconcile_task: Optional[asyncio.Task] = None

    def _create_provider(self) -> CDCProvider:
        if self.config.cdc_provider == "push":
            return PushCDCProvider()
        return PollingCDCProvider(
            self.write_store,
            checkpoint_store=self.checkpoint_store,
            batch_size=self.config.cdc_batch_size,
            poll_interval=self.config.cdc_poll_interval,
        )

    @property
    def default_window(self) -> ReconciliationWindow:
        cfg = self.config
        return ReconciliationWindow(
            staleness=timedelta(seconds=cfg.staleness_threshold),
            recent=timedelta(seconds=cfg.recent_window),
            sample_rate=cfg.sample_rate,
            limit=cfg.reconcile_limit,
        )

    # ---- entry points ------------------------------------------------

    async def execute(self, command: Command) -> Committed:
        """Latency-critical write path: commit, then best-effort projection"""
        return await self.coordinator.execute(command)

    async def apply(self, event: ChangeEvent) -> ApplyResult:
        """Transport-driven apply of one change event (with retries and dead-lettering)"""
        return await self.consumer.process(event)

    async def push_change(self, event: ChangeEvent):
        """Hand an externally delivered event to the push provider"""
        if not isinstance(self.provider, PushCDCProvider):
            raise RuntimeError(f"Cannot push changes: CDC provider is {self.config.cdc_provider}")
        return await self.provider.push(event)

    # ---- background work ---------------------------------------------

    async def start(self, reconcile: bool = True):
        """Start the CDC delivery loop and, optionally, the periodic reconciler"""
        if self.redis_client is not None:
            await verify_redis(self.redis_client)
        await self.stream_manager.start()
        if reconcile and self._reconcile_task is None:
            self._reconcile_task = asyncio.create_task(self.reconciler.run_periodic(
                self.config.reconcile_interval,
                self.default_window,
                tombstone_retention=timedelta(seconds=self.config.tombstone_retention),
            ))

    async def stop(self):
        await self.stream_manager.stop()
        if self._reconcile_task is not None:
            self.reconciler.stop()
            self._reconcile_task.cancel()
            await asyncio.gather(self._reconcile_task, return_exceptions=True)
            self._reconcile_task = None

    async def reconcile(self, window: Optional[ReconciliationWindow] = None) -> ReconciliationReport:
        return await self.reconciler.reconcile(window or self.default_window)

    async def rebuild(self) -> ReconciliationReport:
        return await self.reconciler.rebuild()

    async def replay_dead_letters(self) -> List[ApplyResult]:
        return await self.consumer.replay_dead_letters()

    async def get_status(self) -> Dict[str, Any]:
        return {
            "stream": self.stream_manager.get_status(),
            "consumer": dict(self.consumer.stats),
            "dual_write": dict(self.coordinator.stats),
            "dead_letters": await self.dead_letters.size(),
            "write_store": self.write_store.get_stats(),
        }

    def close(self):
        self.write_store.close()
