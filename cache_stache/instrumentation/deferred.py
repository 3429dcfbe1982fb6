"""Per-request batching of counter increments."""
from __future__ import annotations

import logging
from collections import deque
from contextlib import contextmanager
from contextvars import ContextVar
from typing import TYPE_CHECKING, Iterator, Mapping

if TYPE_CHECKING:
    from cache_stache.store.bucket_store import BucketStore

logger = logging.getLogger(__name__)

MAX_DEFERRED_EVENTS = 1000


class DeferredFlushBuffer:
    """Bounded list of ``(bucket_ts, increments)`` pairs for one request.

    Once ``max_events`` entries are held, each new entry evicts the oldest
    one and bumps ``dropped``.
    """

    def __init__(self, max_events: int = MAX_DEFERRED_EVENTS) -> None:
        self.max_events = max(1, int(max_events))
        self._entries: deque[tuple[int, dict[str, float]]] = deque(maxlen=self.max_events)
        self.dropped = 0

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, bucket_ts: int, increments: Mapping[str, float]) -> None:
        if len(self._entries) == self.max_events:
            self.dropped += 1
        self._entries.append((int(bucket_ts), dict(increments)))

    def combine(self) -> dict[int, dict[str, float]]:
        """Sum increments per (bucket, field); zero totals are dropped."""
        combined: dict[int, dict[str, float]] = {}
        for bucket_ts, increments in self._entries:
            fields = combined.setdefault(bucket_ts, {})
            for name, value in increments.items():
                fields[name] = fields.get(name, 0) + value

        return {
            bucket_ts: {name: value for name, value in fields.items() if value != 0}
            for bucket_ts, fields in combined.items()
        }

    def clear(self) -> None:
        self._entries.clear()
        self.dropped = 0

    def flush(self, store: "BucketStore") -> int:
        """Write the combined increments, one store call per bucket.

        Returns the number of bucket increments issued. Never raises.
        """
        try:
            dropped = self.dropped
            combined = self.combine()
            self.clear()

            if dropped > 0:
                logger.warning("CacheStache: Dropped %d deferred events", dropped)

            issued = 0
            for bucket_ts in sorted(combined):
                fields = combined[bucket_ts]
                if not fields:
                    continue
                store.increment(bucket_ts, fields)
                issued += 1
            return issued
        except Exception as exc:
            logger.error("CacheStache deferred flush error: %s: %s", type(exc).__name__, exc, exc_info=True)
            return 0


_current_buffer: ContextVar[DeferredFlushBuffer | None] = ContextVar("cache_stache_deferred_buffer", default=None)


def current_buffer(create: bool = True) -> DeferredFlushBuffer | None:
    """The buffer for the running request context, created on demand."""
    buffer = _current_buffer.get()
    if buffer is None and create:
        buffer = DeferredFlushBuffer()
        _current_buffer.set(buffer)
    return buffer


@contextmanager
def request_scope(max_events: int = MAX_DEFERRED_EVENTS) -> Iterator[DeferredFlushBuffer]:
    """Give the enclosed request its own fresh buffer."""
    buffer = DeferredFlushBuffer(max_events=max_events)
    token = _current_buffer.set(buffer)
    try:
        yield buffer
    finally:
        _current_buffer.reset(token)
