"""
Shared fixtures for the projection engine tests.
"""
import asyncio

import pytest

from projection_engine.backends.write_store import WriteStore
from projection_engine.errors import TransientStoreError
from projection_engine.ledger.memory_ledger import MemoryLedger
from projection_engine.ledger.redis_ledger import RedisLedger
from projection_engine.projection.read_store import MemoryReadStore
from projection_engine.projection.redis_read_store import RedisReadStore

# Conditional import for fakeredis
try:
    import fakeredis
    FAKEREDIS_AVAILABLE = True
except ImportError:
    FAKEREDIS_AVAILABLE = False


def fake_redis_client():
    if not FAKEREDIS_AVAILABLE:
        pytest.skip("fakeredis is not installed, skipping Redis tests.")
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def redis_client():
    return fake_redis_client()


@pytest.fixture(params=["memory", "redis"])
def ledger(request):
    """Fixture to test both memory and Redis ledgers."""
    if request.param == "memory":
        yield MemoryLedger()
    else:
        yield RedisLedger(fake_redis_client(), namespace="test")


@pytest.fixture(params=["memory", "redis"])
def read_store(request):
    """Fixture to test both memory and Redis read stores."""
    if request.param == "memory":
        yield MemoryReadStore()
    else:
        yield RedisReadStore(fake_redis_client(), namespace="test")


@pytest.fixture
def write_store():
    store = WriteStore()
    yield store
    store.close()


class FlakyReadStore(MemoryReadStore):
    """
    Memory read store whose writes can be made to fail or stall.

    `failures` writes raise TransientStoreError before writes start landing
    again; `delay` makes every write sleep first (to trip timeouts).
    """

    def __init__(self, failures: int = 0, delay: float = 0.0):
        super().__init__()
        self.failures = failures
        self.delay = delay
        self.write_attempts = 0

    async def _maybe_fail(self):
        self.write_attempts += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures > 0:
            self.failures -= 1
            raise TransientStoreError("read store unavailable", store="read_store")

    async def upsert(self, projection, force=False, expected_version=None):
        await self._maybe_fail()
        return await super().upsert(projection, force=force, expected_version=expected_version)

    async def delete(self, entity_id, version, force=False, expected_version=None):
        await self._maybe_fail()
        return await super().delete(entity_id, version, force=force, expected_version=expected_version)


@pytest.fixture
def flaky_read_store():
    return FlakyReadStore()
