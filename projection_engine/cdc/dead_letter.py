"""
Dead-letter queue for change events that exhausted their retry budget
"""
import json
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List

import redis.asyncio as redis
from redis.exceptions import RedisError

from projection_engine.errors import TransientStoreError
from projection_engine.types.events import ChangeEvent


@dataclass
class DeadLetter:
    event: ChangeEvent
    error: str
    attempts: int
    failed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event.to_dict(),
            "error": self.error,
            "attempts": self.attempts,
            "failed_at": self.failed_at.isoformat(),
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "DeadLetter":
        return DeadLetter(
            event=ChangeEvent.from_dict(d["event"]),
            error=d.get("error", ""),
            attempts=int(d.get("attempts", 0)),
            failed_at=datetime.fromisoformat(d["failed_at"]),
        )


class DeadLetterQueue(ABC):
    @abstractmethod
    async def put(self, letter: DeadLetter):
        pass

    @abstractmethod
    async def list(self) -> List[DeadLetter]:
        pass

    @abstractmethod
    async def drain(self) -> List[DeadLetter]:
        """Remove and return every queued letter, oldest first"""

    async def size(self) -> int:
        return len(await self.list())


class MemoryDeadLetterQueue(DeadLetterQueue):
    def __init__(self):
        self._letters: List[DeadLetter] = []
        self._lock = threading.Lock()

    async def put(self, letter: DeadLetter):
        with self._lock:
            self._letters.append(letter)

    async def list(self) -> List[DeadLetter]:
        with self._lock:
            return list(self._letters)

    async def drain(self) -> List[DeadLetter]:
        with self._lock:
            letters, self._letters = self._letters, []
        return letters


class RedisDeadLetterQueue(DeadLetterQueue):
    def __init__(self, client: "redis.Redis", namespace: str = "projection"):
        self.client = client
        self.key = f"{namespace}:dead_letters"

    async def put(self, letter: DeadLetter):
        try:
            await self.client.rpush(self.key, json.dumps(letter.to_dict()))
        except RedisError as e:
            raise TransientStoreError(f"Dead-letter write failed: {e}", store="dead_letter") from e

    async def list(self) -> List[DeadLetter]:
        try:
            raws = await self.client.lrange(self.key, 0, -1)
        except RedisError as e:
            raise TransientStoreError(f"Dead-letter read failed: {e}", store="dead_letter") from e
        return [DeadLetter.from_dict(json.loads(raw)) for raw in raws]

    async def drain(self) -> List[DeadLetter]:
        try:
            async with self.client.pipeline() as pipe:
                pipe.lrange(self.key, 0, -1)
                pipe.delete(self.key)
                raws, _ = await pipe.execute()
        except RedisError as e:
            raise TransientStoreError(f"Dead-letter drain failed: {e}", store="dead_letter") from e
        return [DeadLetter.from_dict(json.loads(raw)) for raw in raws]
