"""Turns cache read notifications into bucketed counter increments."""
from __future__ import annotations

import logging
import random
import time
import traceback
from typing import Any, Callable, Iterable

from cache_stache.config.configuration import Configuration
from cache_stache.config.keyspace import Keyspace
from cache_stache.instrumentation.deferred import current_buffer
from cache_stache.instrumentation.events import (
    DEFAULT_PAYLOAD_SHAPE,
    CacheReadPayload,
    EventSource,
    PayloadShape,
)
from cache_stache.instrumentation.guard import internal_operation
from cache_stache.store.bucket_store import BucketStore

logger = logging.getLogger(__name__)

OVERALL_HITS = "overall:hits"
OVERALL_MISSES = "overall:misses"


def build_increments(hit: bool, keyspaces: Iterable[Keyspace]) -> dict[str, int]:
    """Counter deltas for one read: overall plus each matching keyspace, zeros omitted."""
    hit_value, miss_value = (1, 0) if hit else (0, 1)
    increments: dict[str, int] = {OVERALL_HITS: hit_value, OVERALL_MISSES: miss_value}
    for keyspace in keyspaces:
        increments[keyspace.hits_field()] = hit_value
        increments[keyspace.misses_field()] = miss_value
    return {name: value for name, value in increments.items() if value != 0}


class InstrumentationHook:
    """Subscribes to a host's cache read events and records hits and misses.

    Handling runs synchronously on the thread that publishes the event and
    never raises into it.
    """

    def __init__(
        self,
        config: Configuration,
        store: BucketStore | None = None,
        payload_shape: PayloadShape = DEFAULT_PAYLOAD_SHAPE,
        random_source: Callable[[], float] = random.random,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.payload_shape = payload_shape
        self.random_source = random_source
        self.clock = clock
        self._injected_store = store
        self.store: BucketStore | None = store
        self.installed = False
        self.monitored_identity: Any | None = None
        self._source: EventSource | None = None
        self._subscription: Any | None = None

    def install(self, source: EventSource, monitored_identity: Any) -> bool:
        """Start observing ``source``; only events from ``monitored_identity`` count.

        Returns False when disabled or already installed. Raises
        ``ConfigurationError`` for an invalid configuration, before subscribing.
        """
        self.config.validate()
        if not self.config.enabled:
            logger.info("CacheStache: Instrumentation disabled via configuration")
            return False
        if self.installed:
            return False

        if self.store is None:
            self.store = BucketStore(self.config, clock=self.clock)
        self.store.store_metadata()

        self.monitored_identity = monitored_identity
        self._source = source
        self._subscription = source.subscribe(self.on_event)
        self.installed = True
        logger.info("CacheStache: Instrumentation installed for %s", monitored_identity)
        return True

    def reset(self) -> None:
        if self._source is not None and self._subscription is not None:
            self._source.unsubscribe(self._subscription)
        self._source = None
        self._subscription = None
        self.installed = False
        self.monitored_identity = None
        self.store = self._injected_store

    def on_event(self, payload: CacheReadPayload) -> None:
        try:
            self._record(payload)
        except Exception as exc:
            logger.error(
                "CacheStache instrumentation error: %s: %s\n%s",
                type(exc).__name__,
                exc,
                "".join(traceback.format_tb(exc.__traceback__, limit=5)),
            )

    def _record(self, payload: CacheReadPayload) -> None:
        if internal_operation():
            return
        if not self.installed or self.store is None:
            return

        shape = self.payload_shape
        if shape.extract_store(payload) != self.monitored_identity:
            return

        key = shape.extract_key(payload)
        if key is None:
            return
        key_text = str(key)
        # Our own keys, in case a store call escaped the guard.
        if key_text.startswith(self.config.key_prefix):
            return

        sample_rate = float(self.config.sample_rate)
        if sample_rate < 1.0 and self.random_source() >= sample_rate:
            return

        bucket_ts = self.config.align(self.clock())
        increments = build_increments(
            shape.extract_hit(payload),
            self.config.matching_keyspaces(key_text),
        )
        if not increments:
            return

        buffer = current_buffer() if self.config.use_deferred_flush else None
        if buffer is not None:
            buffer.append(bucket_ts, increments)
        else:
            self.store.increment(bucket_ts, increments)

    def flush(self) -> int:
        """Write the current request's deferred increments; returns buckets written."""
        if self.store is None:
            return 0
        buffer = current_buffer(create=False)
        if buffer is None or len(buffer) == 0:
            return 0
        return buffer.flush(self.store)
