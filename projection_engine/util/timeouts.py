"""
Per-call timeouts for store operations.

A call that times out is a failure, never an ambiguous success.
"""
import asyncio
from typing import Awaitable, Optional, TypeVar

from projection_engine.errors import TransientStoreError

T = TypeVar("T")


async def bounded(call: Awaitable[T], timeout: Optional[float], store: str) -> T:
    """Await `call`, converting a timeout into TransientStoreError"""
    if timeout is None:
        return await call
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise TransientStoreError(f"{store} call timed out after {timeout}s", store=store) from e
