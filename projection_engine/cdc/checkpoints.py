"""
Checkpoint stores for change-feed positions
"""
import json
from abc import ABC, abstractmethod
from typing import Any, Dict

import redis.asyncio as redis
from redis.exceptions import RedisError

from projection_engine.errors import TransientStoreError


class StateStore(ABC):
    @abstractmethod
    async def get_state(self, stream_id: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def save_state(self, stream_id: str, state: Dict[str, Any]):
        pass


class MemoryStateStore(StateStore):
    def __init__(self):
        self._store = {}

    async def get_state(self, stream_id: str) -> Dict[str, Any]:
        return dict(self._store.get(stream_id, {}))

    async def save_state(self, stream_id: str, state: Dict[str, Any]):
        self._store[stream_id] = dict(state)


class RedisStateStore(StateStore):
    def __init__(self, client: "redis.Redis", namespace: str = "projection"):
        self.client = client
        self.namespace = namespace

    async def get_state(self, stream_id: str) -> Dict[str, Any]:
        try:
            raw = await self.client.get(f"{self.namespace}:stream_state:{stream_id}")
        except RedisError as e:
            raise TransientStoreError(f"Checkpoint read failed for {stream_id}: {e}", store="checkpoint") from e
        return json.loads(raw) if raw else {}

    async def save_state(self, stream_id: str, state: Dict[str, Any]):
        try:
            await self.client.set(f"{self.namespace}:stream_state:{stream_id}", json.dumps(state))
        except RedisError as e:
            raise TransientStoreError(f"Checkpoint write failed for {stream_id}: {e}", store="checkpoint") from e
