"""Backing store connection descriptor.

A ``StoreConnection`` is one of three variants, resolved exactly once into a
``ClientPool`` holding at most ``redis_pool_size`` clients:

  - ``factory``: a zero-argument callable; each pooled client comes from one call
  - ``url``: a Redis URL; pooled clients share a bounded blocking connection pool
  - ``client``: a pre-built client handle; checkouts of it are capped at the pool size
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from queue import Empty, LifoQueue
from typing import Any, Callable, Iterator

import redis

from cache_stache.errors import ConfigurationError

DEFAULT_CHECKOUT_TIMEOUT = 5.0


class StoreConnectionKind(str, Enum):
    FACTORY = "factory"
    URL = "url"
    CLIENT = "client"


class ClientPool:
    """Up to ``size`` clients built lazily from ``build``; one caller per client at a time."""

    def __init__(self, build: Callable[[], Any], size: int, timeout: float = DEFAULT_CHECKOUT_TIMEOUT) -> None:
        if int(size) <= 0:
            raise ConfigurationError("redis_pool_size must be positive")
        self._build = build
        self.size = int(size)
        self.timeout = timeout
        self._idle: LifoQueue[Any] = LifoQueue(maxsize=self.size)
        self._lock = threading.Lock()
        self._created = 0
        self._in_use = 0

    @property
    def created(self) -> int:
        return self._created

    @property
    def in_use(self) -> int:
        return self._in_use

    @contextmanager
    def checkout(self) -> Iterator[Any]:
        client = self._acquire()
        try:
            yield client
        finally:
            self._release(client)

    def _acquire(self) -> Any:
        try:
            client = self._idle.get_nowait()
        except Empty:
            client = self._build_if_below_limit()
            if client is None:
                try:
                    client = self._idle.get(timeout=self.timeout)
                except Empty as exc:
                    raise TimeoutError(
                        f"no store client available within {self.timeout}s (pool size {self.size})"
                    ) from exc
        with self._lock:
            self._in_use += 1
        return client

    def _build_if_below_limit(self) -> Any | None:
        with self._lock:
            if self._created >= self.size:
                return None
            self._created += 1
        try:
            return self._build()
        except Exception:
            with self._lock:
                self._created -= 1
            raise

    def _release(self, client: Any) -> None:
        with self._lock:
            self._in_use -= 1
        self._idle.put_nowait(client)


@dataclass(frozen=True)
class StoreConnection:
    kind: StoreConnectionKind
    url: str | None = None
    factory: Callable[[], Any] | None = None
    client: Any | None = None

    @classmethod
    def from_url(cls, url: str) -> "StoreConnection":
        return cls(kind=StoreConnectionKind.URL, url=url)

    @classmethod
    def from_factory(cls, factory: Callable[[], Any]) -> "StoreConnection":
        return cls(kind=StoreConnectionKind.FACTORY, factory=factory)

    @classmethod
    def from_client(cls, client: Any) -> "StoreConnection":
        return cls(kind=StoreConnectionKind.CLIENT, client=client)

    def validate(self) -> None:
        if self.kind == StoreConnectionKind.URL:
            if not isinstance(self.url, str) or self.url.strip() == "":
                raise ConfigurationError("redis URL must be a non-empty string")
        elif self.kind == StoreConnectionKind.FACTORY:
            if not callable(self.factory):
                raise ConfigurationError("redis factory must be callable")
        elif self.client is None:
            raise ConfigurationError("redis client must not be None")

    def resolve(self, pool_size: int, timeout: float = DEFAULT_CHECKOUT_TIMEOUT) -> ClientPool:
        """Build the bounded client pool for this descriptor."""
        self.validate()

        if self.kind == StoreConnectionKind.URL:
            connections = redis.BlockingConnectionPool.from_url(
                str(self.url),
                max_connections=int(pool_size),
                timeout=timeout,
                decode_responses=True,
                socket_connect_timeout=2,
                socket_timeout=2,
            )
            return ClientPool(lambda: redis.Redis(connection_pool=connections), pool_size, timeout)

        if self.kind == StoreConnectionKind.FACTORY:
            factory = self.factory
            if factory is None:
                raise ConfigurationError("redis factory must be callable")
            return ClientPool(factory, pool_size, timeout)

        client = self.client
        return ClientPool(lambda: client, pool_size, timeout)
