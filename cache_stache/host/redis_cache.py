"""Reference host cache: a Redis-backed read-through cache that announces its reads."""
from __future__ import annotations

import logging
from typing import Any, Callable

import redis

from cache_stache.config.settings import StacheSettings
from cache_stache.instrumentation.events import CacheEventBus, read_event

logger = logging.getLogger(__name__)


class RedisCacheClient:
    """Publishes ``{"key", "hit", "store"}`` to ``event_bus`` for every answered read.

    ``store_name`` (the class name by default) is the identity an
    InstrumentationHook filters on. A read that fails at the Redis layer
    answers None and publishes nothing.
    """

    def __init__(
        self,
        client: Any | None = None,
        url: str = "redis://localhost:6379/0",
        default_ttl: int = 3600,
        event_bus: CacheEventBus | None = None,
        store_name: str | None = None,
    ) -> None:
        if client is None:
            client = redis.from_url(url, decode_responses=True, socket_connect_timeout=2, socket_timeout=2)
        self.client = client
        self.default_ttl = int(default_ttl)
        self.event_bus = event_bus
        self.store_name = store_name or type(self).__name__

    def get(self, key: str) -> str | None:
        try:
            value = self.client.get(key)
        except redis.RedisError as exc:
            logger.warning("Cache read failed for %s: %s", key, exc)
            return None
        self._publish_read(key, value is not None)
        return None if value is None else str(value)

    def set(self, key: str, value: str, ttl: int | None = None) -> bool:
        try:
            self.client.setex(key, self.default_ttl if ttl is None else int(ttl), value)
        except redis.RedisError as exc:
            logger.warning("Cache write failed for %s: %s", key, exc)
            return False
        return True

    def fetch(self, key: str, compute: Callable[[], str], ttl: int | None = None) -> str:
        """Return the cached value, or compute, store and return it."""
        cached = self.get(key)
        if cached is not None:
            return cached
        value = compute()
        self.set(key, value, ttl=ttl)
        return value

    def _publish_read(self, key: str, hit: bool) -> None:
        if self.event_bus is None:
            return
        try:
            self.event_bus.publish(read_event(key, hit, self.store_name))
        except Exception as exc:
            logger.error("Cache read subscriber failed: %s", exc)


def create_default_redis_client(event_bus: CacheEventBus | None = None) -> RedisCacheClient:
    """Create a host cache client from environment variables."""
    settings = StacheSettings()
    return RedisCacheClient(url=settings.REDIS_URL, event_bus=event_bus)
