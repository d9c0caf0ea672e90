"""
Per-order write serialization. All mutations of one order run under its lock;
different orders never contend.
"""
import asyncio
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import AsyncIterator, Protocol

from fulfillment.config import settings
from fulfillment.redis_client import get_redis


class OrderLocks(Protocol):
    def hold(self, order_id: str) -> AbstractAsyncContextManager[None]: ...


class InMemoryOrderLocks:
    """One asyncio.Lock per order id, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, order_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(order_id, asyncio.Lock())
        self._users[order_id] = self._users.get(order_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[order_id] -= 1
            if self._users[order_id] == 0:
                del self._users[order_id]
                del self._locks[order_id]


class RedisOrderLocks:
    """Redis lock per order, for API processes running side by side."""

    def __init__(self, timeout_sec: int | None = None) -> None:
        self.timeout_sec = timeout_sec or settings.order_lock_timeout_sec

    @asynccontextmanager
    async def hold(self, order_id: str) -> AsyncIterator[None]:
        r = await get_redis()
        async with r.lock(f"lock:order:{order_id}", timeout=self.timeout_sec, blocking_timeout=self.timeout_sec):
            yield
