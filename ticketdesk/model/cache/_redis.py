# model/cache/_redis.py
from __future__ import annotations
import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional

import orjson
import redis.asyncio as redis

from ...helpers import now_iso
from .tags import tags_for

log = logging.getLogger(__name__)

CHANNEL = "ticketdesk:changes"


# ---- keys
def k_query(tag: str, key: str) -> str: return f"q:{tag}:{key}"
def k_tag(tag: str) -> str: return f"qtag:{tag}"
def k_gen(tag: str) -> str: return f"qgen:{tag}"


class QueryCache:
    """
    Cached query results as orjson blobs. Every cached key is registered in
    a per-tag set so a whole tag can be dropped at once.
    """

    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def get(self, tag: str, key: str) -> Optional[Any]:
        raw = await self.r.get(k_query(tag, key))
        return orjson.loads(raw) if raw is not None else None

    async def put(self, tag: str, key: str, value: Any) -> None:
        pipe = self.r.pipeline(transaction=True)
        pipe.set(k_query(tag, key), orjson.dumps(value), ex=self.ttl)
        pipe.sadd(k_tag(tag), k_query(tag, key))
        pipe.expire(k_tag(tag), self.ttl + 60)
        await pipe.execute()

    async def put_if_current(
        self, tag: str, key: str, value: Any, generation: Optional[str]
    ) -> bool:
        """
        put() unless the tag was invalidated since `generation` was read.
        A loader that raced a write must not cache what it saw before it.
        """
        async with self.r.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(k_gen(tag))
                if await pipe.get(k_gen(tag)) != generation:
                    return False
                pipe.multi()
                pipe.set(k_query(tag, key), orjson.dumps(value), ex=self.ttl)
                pipe.sadd(k_tag(tag), k_query(tag, key))
                pipe.expire(k_tag(tag), self.ttl + 60)
                await pipe.execute()
            except redis.WatchError:
                return False
        return True

    async def fetch(
        self, tag: str, key: str, loader: Callable[[], Awaitable[Any]]
    ) -> Any:
        try:
            generation = await self.r.get(k_gen(tag))
            cached = await self.get(tag, key)
        except redis.RedisError:
            log.warning("cache read failed for %s:%s", tag, key,
                        exc_info=True)
            return await loader()
        if cached is not None:
            return cached
        value = await loader()
        try:
            if not await self.put_if_current(tag, key, value, generation):
                log.debug("%s changed while loading %s, not cached", tag, key)
        except redis.RedisError:
            log.warning("cache write failed for %s:%s", tag, key,
                        exc_info=True)
        return value

    async def invalidate(self, *tags: str) -> None:
        for tag in tags:
            members = await self.r.smembers(k_tag(tag))
            pipe = self.r.pipeline(transaction=True)
            pipe.incr(k_gen(tag))
            if members:
                pipe.delete(*members)
            pipe.delete(k_tag(tag))
            await pipe.execute()


class ChangeFeed:
    """
    Realtime change notifications over redis pub/sub. Publishing drops the
    local cache tags right away; every subscribed process drops them again
    when the message arrives.
    """

    def __init__(
        self, r: redis.Redis, cache: QueryCache, channel: str = CHANNEL,
        min_retry_delay: float = 0.5, max_retry_delay: float = 30.0,
    ) -> None:
        self.r = r
        self.cache = cache
        self.channel = channel
        self.min_retry_delay = min_retry_delay
        self.max_retry_delay = max_retry_delay
        self.retry_delay = min_retry_delay

    async def publish(self, *tables: str) -> None:
        if not tables:
            return
        try:
            await self.cache.invalidate(*tags_for(tables))
            await self.r.publish(self.channel, orjson.dumps({
                "tables": list(tables),
                "at": now_iso(),
            }))
        except redis.RedisError:
            # the write itself already committed
            log.warning("change feed publish failed for %s", tables,
                        exc_info=True)

    async def apply(self, data: Any) -> List[str]:
        tables = orjson.loads(data).get("tables") or []
        tags = tags_for(tables)
        if tags:
            await self.cache.invalidate(*tags)
        return tags

    async def _listen_once(self) -> None:
        pubsub = self.r.pubsub()
        try:
            await pubsub.subscribe(self.channel)
            log.info("listening for changes on %s", self.channel)
            self.retry_delay = self.min_retry_delay
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    await self.apply(message["data"])
                except (orjson.JSONDecodeError, redis.RedisError):
                    log.exception("could not apply change message")
        finally:
            await pubsub.aclose()

    async def listen(self) -> None:
        """Runs until cancelled; a lost connection is retried with backoff."""
        while True:
            try:
                await self._listen_once()
            except redis.RedisError:
                log.warning("change feed connection lost, retrying in %.1fs",
                            self.retry_delay, exc_info=True)
            await asyncio.sleep(self.retry_delay)
            self.retry_delay = min(self.retry_delay * 2, self.max_retry_delay)
