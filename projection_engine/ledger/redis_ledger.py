"""
Redis-backed ledger. Records are JSON strings under `<namespace>:ledger:<entity_id>`;
compare-and-set uses WATCH/MULTI so racing writers never overwrite each other.

All calls go through the asyncio client so per-call timeouts can cancel them.
"""
import json
from dataclasses import replace
from typing import List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from projection_engine.errors import TransientStoreError
from projection_engine.ledger.base import RecordPredicate, SyncLedger
from projection_engine.types.sync_record import SyncRecord


def connect_redis(host: str = 'localhost', port: int = 6379, db: int = 0,
                  password: Optional[str] = None, socket_timeout: Optional[float] = None) -> "redis.Redis":
    """Create an asyncio Redis client; connections open lazily on first use"""
    return redis.Redis(
        host=host, port=port, db=db, password=password,
        socket_timeout=socket_timeout, decode_responses=True,
    )


async def verify_redis(client: "redis.Redis"):
    """Fail fast if the server is unreachable"""
    try:
        await client.ping()
    except RedisError as e:
        raise ConnectionError(f"Could not connect to Redis: {e}. Please ensure Redis is running.") from e


class RedisLedger(SyncLedger):
    def __init__(self, client: "redis.Redis", namespace: str = "projection"):
        self.client = client
        self.namespace = namespace

    def _key(self, entity_id: str) -> str:
        return f"{self.namespace}:ledger:{entity_id}"

    async def get(self, entity_id: str) -> Optional[SyncRecord]:
        try:
            raw = await self.client.get(self._key(entity_id))
        except RedisError as e:
            raise TransientStoreError(f"Ledger read failed for {entity_id}: {e}", store="ledger") from e
        return SyncRecord.from_dict(json.loads(raw)) if raw else None

    async def compare_and_set(self, entity_id: str, expected_revision: int, record: SyncRecord) -> bool:
        key = self._key(entity_id)
        stored = replace(record, revision=expected_revision + 1)
        try:
            async with self.client.pipeline() as pipe:
                await pipe.watch(key)
                raw = await pipe.get(key)
                current_revision = json.loads(raw)["revision"] if raw else 0
                if current_revision != expected_revision:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(key, json.dumps(stored.to_dict()))
                await pipe.execute()
                return True
        except WatchError:
            return False
        except RedisError as e:
            raise TransientStoreError(f"Ledger write failed for {entity_id}: {e}", store="ledger") from e

    async def delete(self, entity_id: str, expected_revision: int) -> bool:
        key = self._key(entity_id)
        try:
            async with self.client.pipeline() as pipe:
                await pipe.watch(key)
                raw = await pipe.get(key)
                if not raw or json.loads(raw)["revision"] != expected_revision:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.delete(key)
                await pipe.execute()
                return True
        except WatchError:
            return False
        except RedisError as e:
            raise TransientStoreError(f"Ledger delete failed for {entity_id}: {e}", store="ledger") from e

    async def scan(self, predicate: RecordPredicate, limit: Optional[int] = None) -> List[SyncRecord]:
        try:
            # Use SCAN to walk keys without blocking the server
            keys = sorted([key async for key in self.client.scan_iter(match=f"{self.namespace}:ledger:*", count=500)])
            matched = []
            for start in range(0, len(keys), 500):
                chunk = keys[start:start + 500]
                for raw in await self.client.mget(chunk):
                    if not raw:
                        continue
                    record = SyncRecord.from_dict(json.loads(raw))
                    if predicate(record):
                        matched.append(record)
                        if limit is not None and len(matched) >= limit:
                            return matched
            return matched
        except RedisError as e:
            raise TransientStoreError(f"Ledger scan failed: {e}", store="ledger") from e
