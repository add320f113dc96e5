"""
Stable hashing helpers for partitioning, sharding and sampling by entity id.

Python's built-in hash() is salted per process, so everything that must agree
across workers goes through md5 instead.
"""
import hashlib


def stable_hash(entity_id: str) -> int:
    digest = hashlib.md5(entity_id.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big")


def partition_for(entity_id: str, partitions: int) -> int:
    return stable_hash(entity_id) % partitions


def in_sample(entity_id: str, rate: float) -> bool:
    """Deterministic sampling: the same entity is always in or out for a given rate"""
    if rate >= 1.0:
        return True
    if rate <= 0.0:
        return False
    return (stable_hash(entity_id) % 10_000) < int(rate * 10_000)
