# model/cache/_off.py
# CACHE_BACKEND=off: every read goes straight to the database.
from __future__ import annotations
from typing import Any, Awaitable, Callable


class QueryCache:
    def __init__(self, ttl_seconds: int = 0) -> None:
        self.ttl = ttl_seconds

    async def fetch(
        self, tag: str, key: str, loader: Callable[[], Awaitable[Any]]
    ) -> Any:
        return await loader()

    async def invalidate(self, *tags: str) -> None:
        return None


class ChangeFeed:
    def __init__(self, cache: QueryCache) -> None:
        self.cache = cache

    async def publish(self, *tables: str) -> None:
        return None

    async def listen(self) -> None:
        return None
