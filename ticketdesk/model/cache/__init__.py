# model/cache/__init__.py
import os
from typing import Optional
import redis.asyncio as redis

from .tags import INVALIDATES, tags_for

BACKEND = os.getenv("CACHE_BACKEND", "redis").lower()  # 'redis' | 'off'

if BACKEND == "off":
    from ._off import QueryCache as _QueryCache, ChangeFeed as _ChangeFeed
else:
    from ._redis import QueryCache as _QueryCache, ChangeFeed as _ChangeFeed


# Factories keep server.py simple and constructor-agnostic:
def new_cache(*, r: Optional[redis.Redis] = None, ttl_seconds: int = 60):
    if BACKEND == "off":
        return _QueryCache(ttl_seconds=ttl_seconds)
    if r is None:
        raise RuntimeError("QueryCache(redis) requires r=redis.Redis")
    return _QueryCache(r=r, ttl_seconds=ttl_seconds)


def new_feed(*, cache, r: Optional[redis.Redis] = None):
    if BACKEND == "off":
        return _ChangeFeed(cache=cache)
    if r is None:
        raise RuntimeError("ChangeFeed(redis) requires r=redis.Redis")
    return _ChangeFeed(r=r, cache=cache)


QueryCache = _QueryCache
ChangeFeed = _ChangeFeed
__all__ = [
    "QueryCache", "ChangeFeed", "new_cache", "new_feed", "BACKEND",
    "INVALIDATES", "tags_for",
]
