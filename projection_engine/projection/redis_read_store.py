"""
Redis-backed read store.

Layout:
    <ns>:entity:<id>              JSON projection (version, document, partitions)
    <ns>:tomb:<id>                version at which the entity was deleted
    <ns>:layout:<layout>:<key>    SET of entity ids in that partition

Conditional writes WATCH the entity and tombstone keys, so two writers racing
on one entity are serialized by Redis rather than by a lock.
"""
import json
from typing import List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from projection_engine.errors import TransientStoreError
from projection_engine.projection.read_store import ReadStore, accepts_delete, accepts_upsert, holds_version
from projection_engine.types.projection import ProjectedEntity

MAX_WATCH_RETRIES = 10


class RedisReadStore(ReadStore):
    def __init__(self, client: "redis.Redis", namespace: str = "projection"):
        self.client = client
        self.namespace = namespace

    def _entity_key(self, entity_id: str) -> str:
        return f"{self.namespace}:entity:{entity_id}"

    def _tomb_key(self, entity_id: str) -> str:
        return f"{self.namespace}:tomb:{entity_id}"

    def _layout_key(self, layout: str, key: str) -> str:
        return f"{self.namespace}:layout:{layout}:{key}"

    @staticmethod
    def _decode(raw) -> Optional[ProjectedEntity]:
        return ProjectedEntity.from_dict(json.loads(raw)) if raw else None

    async def _current(self, pipe, entity_key: str, tomb_key: str):
        stored = self._decode(await pipe.get(entity_key))
        tomb = await pipe.get(tomb_key)
        return stored, int(tomb) if tomb is not None else None

    async def get(self, entity_id: str) -> Optional[ProjectedEntity]:
        try:
            return self._decode(await self.client.get(self._entity_key(entity_id)))
        except RedisError as e:
            raise TransientStoreError(f"Read store get failed for {entity_id}: {e}", store="read_store") from e

    async def upsert(self, projection: ProjectedEntity, force: bool = False,
                     expected_version: Optional[int] = None) -> bool:
        entity_key = self._entity_key(projection.entity_id)
        tomb_key = self._tomb_key(projection.entity_id)

        async def write(pipe) -> bool:
            stored, tombstone = await self._current(pipe, entity_key, tomb_key)
            if force:
                if expected_version is not None and not holds_version(stored, tombstone, expected_version):
                    return False
            elif not accepts_upsert(projection, stored, tombstone):
                return False
            pipe.multi()
            if stored is not None:
                for layout, key in stored.partitions.items():
                    pipe.srem(self._layout_key(layout, key), projection.entity_id)
            for layout, key in projection.partitions.items():
                pipe.sadd(self._layout_key(layout, key), projection.entity_id)
            pipe.set(entity_key, json.dumps(projection.to_dict(), sort_keys=True))
            pipe.delete(tomb_key)
            return True

        return await self._watched(projection.entity_id, write, entity_key, tomb_key)

    async def delete(self, entity_id: str, version: int, force: bool = False,
                     expected_version: Optional[int] = None) -> bool:
        entity_key = self._entity_key(entity_id)
        tomb_key = self._tomb_key(entity_id)

        async def write(pipe) -> bool:
            stored, tombstone = await self._current(pipe, entity_key, tomb_key)
            if force:
                if expected_version is not None and not holds_version(stored, tombstone, expected_version):
                    return False
            elif not accepts_delete(version, stored, tombstone):
                return False
            pipe.multi()
            if stored is not None:
                for layout, key in stored.partitions.items():
                    pipe.srem(self._layout_key(layout, key), entity_id)
                pipe.delete(entity_key)
            pipe.set(tomb_key, version if force else max(version, tombstone or 0))
            return True

        return await self._watched(entity_id, write, entity_key, tomb_key)

    async def _watched(self, entity_id: str, write, *keys) -> bool:
        """Run `write` under WATCH on `keys`, retrying when another writer interferes"""
        try:
            for _ in range(MAX_WATCH_RETRIES):
                async with self.client.pipeline() as pipe:
                    try:
                        await pipe.watch(*keys)
                        if not await write(pipe):
                            await pipe.unwatch()
                            return False
                        await pipe.execute()
                        return True
                    except WatchError:
                        continue
        except RedisError as e:
            raise TransientStoreError(f"Read store write failed for {entity_id}: {e}", store="read_store") from e
        raise TransientStoreError(f"Read store write for {entity_id} kept conflicting", store="read_store")

    async def list_partition(self, layout: str, key: str) -> List[ProjectedEntity]:
        try:
            ids = sorted(await self.client.smembers(self._layout_key(layout, key)))
            if not ids:
                return []
            raws = await self.client.mget([self._entity_key(i) for i in ids])
        except RedisError as e:
            raise TransientStoreError(f"Read store scan failed for {layout}:{key}: {e}", store="read_store") from e
        return [p for p in (self._decode(raw) for raw in raws) if p is not None]

    async def tombstone_version(self, entity_id: str) -> Optional[int]:
        try:
            tomb = await self.client.get(self._tomb_key(entity_id))
        except RedisError as e:
            raise TransientStoreError(f"Read store get failed for {entity_id}: {e}", store="read_store") from e
        return int(tomb) if tomb is not None else None

    async def purge_tombstone(self, entity_id: str):
        try:
            await self.client.delete(self._tomb_key(entity_id))
        except RedisError as e:
            raise TransientStoreError(f"Read store purge failed for {entity_id}: {e}", store="read_store") from e
