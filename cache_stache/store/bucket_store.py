"""Redis-backed storage for time-bucketed hit/miss counters.

Each bucket is a Redis hash under ``<namespace>:v1:<environment>:<timestamp>``
mapping field names (``overall:hits``, ``<keyspace>:misses``, ...) to float
counters. Methods come in two layers:

  - fallible (``write_increments``, ``read_range``, ``write_metadata``,
    ``read_metadata``, ``delete_expired``) raise ``StoreError``
  - safe (``increment``, ``fetch_range``, ``store_metadata``,
    ``fetch_metadata``, ``prune``, ``estimate_size``, ``health_check``) log
    the failure and return a default, for callers on a host request path
"""
from __future__ import annotations

import logging
import math
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Mapping

from cache_stache.config.configuration import Configuration
from cache_stache.config.connection import ClientPool, StoreConnection
from cache_stache.errors import ConfigurationError, StoreError
from cache_stache.instrumentation.guard import without_instrumentation
from cache_stache.store.key_policy import (
    bucket_key,
    bucket_timestamps,
    config_key,
    dumps_json,
    key_base,
    loads_json,
    timestamp_from_key,
)

logger = logging.getLogger(__name__)

# HINCRBYFLOAT every field, then extend the TTL unless a longer one is already set.
INCR_AND_EXPIRE_SCRIPT = """
local key = KEYS[1]
local expire_seconds = tonumber(ARGV[1])
local increments = cjson.decode(ARGV[2])

for field, value in pairs(increments) do
  redis.call('HINCRBYFLOAT', key, field, value)
end

local ttl = redis.call('TTL', key)
if ttl == -1 or ttl < expire_seconds then
  redis.call('EXPIRE', key, expire_seconds)
end

return redis.status_reply('OK')
"""

BYTES_PER_FIELD = 52
KEY_OVERHEAD_BYTES = 141
METADATA_ALLOWANCE_BYTES = 200
PRUNE_DELETE_BATCH = 500


@dataclass(frozen=True)
class BucketSnapshot:
    timestamp: int
    stats: dict[str, float] = field(default_factory=dict)


def format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{round(size / 1024.0, 1)} KB"
    if size < 1024 * 1024 * 1024:
        return f"{round(size / (1024.0 * 1024), 2)} MB"
    return f"{round(size / (1024.0 * 1024 * 1024), 2)} GB"


def _text(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


class BucketStore:
    """Counter buckets, config metadata and retention housekeeping."""

    def __init__(
        self,
        config: Configuration,
        client: Any | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.clock = clock
        self.pool: ClientPool | None = None
        self._connection_failed = False
        self._increment_script: Any | None = None

        try:
            connection = StoreConnection.from_client(client) if client is not None else config.store
            if connection is None:
                raise ConfigurationError("redis must be configured")
            self.pool = connection.resolve(config.redis_pool_size)
            with self.pool.checkout() as pooled:
                self._increment_script = pooled.register_script(INCR_AND_EXPIRE_SCRIPT)
        except Exception as exc:
            logger.error("CacheStache: Failed to build store client: %s", exc)
            self.pool = None
            self._connection_failed = True

    # -- keys -----------------------------------------------------------------

    def bucket_key(self, timestamp: int) -> str:
        return bucket_key(self.config.namespace, self.config.environment, timestamp)

    def config_key(self) -> str:
        return config_key(self.config.namespace, self.config.environment)

    def bucket_timestamps_in_range(self, from_ts: float, to_ts: float) -> list[int]:
        """Aligned timestamps for the range, limited to the most recent ``max_buckets``."""
        timestamps = bucket_timestamps(from_ts, to_ts, self.config.bucket_seconds)
        if len(timestamps) > self.config.max_buckets:
            logger.warning(
                "CacheStache: Truncating bucket range from %d to %d buckets (requested %s to %s)",
                len(timestamps),
                self.config.max_buckets,
                from_ts,
                to_ts,
            )
            timestamps = timestamps[-self.config.max_buckets:]
        return timestamps

    # -- fallible layer -------------------------------------------------------

    @contextmanager
    def _operation(self, name: str) -> Iterator[Any]:
        if self._connection_failed or self.pool is None:
            raise StoreError(name, "connection unavailable")
        try:
            with without_instrumentation(), self.pool.checkout() as client:
                yield client
        except StoreError:
            raise
        except Exception as exc:
            raise StoreError(name, f"{type(exc).__name__}: {exc}") from exc

    def write_increments(self, bucket_ts: int, increments: Mapping[str, float]) -> None:
        """Atomically add ``increments`` to one bucket and refresh its TTL."""
        if not increments:
            return

        key = self.bucket_key(bucket_ts)
        try:
            payload = dumps_json({str(name): float(value) for name, value in increments.items()})
        except (TypeError, ValueError) as exc:
            raise StoreError("increment", f"unserializable increments: {exc}") from exc

        script = self._increment_script
        with self._operation("increment") as client:
            if script is None:
                raise StoreError("increment", "increment script not registered")
            logger.debug("CacheStache: Redis EVAL increment on %s with %d fields", key, len(increments))
            script(keys=[key], args=[self.config.retention_seconds, payload], client=client)

    def read_range(self, from_ts: float, to_ts: float) -> list[BucketSnapshot]:
        """Non-empty buckets between ``from_ts`` and ``to_ts``, ascending."""
        timestamps = self.bucket_timestamps_in_range(from_ts, to_ts)
        if not timestamps:
            return []

        keys = [self.bucket_key(ts) for ts in timestamps]
        with self._operation("fetch_range") as client:
            logger.debug("CacheStache: Redis PIPELINE hgetall for %d keys", len(keys))
            pipe = client.pipeline(transaction=False)
            for key in keys:
                pipe.hgetall(key)
            results = pipe.execute()

            snapshots: list[BucketSnapshot] = []
            for ts, data in zip(timestamps, results):
                if not data:
                    continue
                stats = {_text(name): float(value) for name, value in data.items()}
                snapshots.append(BucketSnapshot(timestamp=ts, stats=stats))
        return snapshots

    def write_metadata(self) -> dict[str, int]:
        metadata = {
            "bucket_seconds": self.config.bucket_seconds,
            "retention_seconds": self.config.retention_seconds,
            "updated_at": int(self.clock()),
        }
        key = self.config_key()
        with self._operation("store_metadata") as client:
            logger.debug("CacheStache: Redis SETEX %s %s", key, self.config.retention_seconds)
            client.setex(key, self.config.retention_seconds, dumps_json(metadata))
        return metadata

    def read_metadata(self) -> dict[str, Any] | None:
        key = self.config_key()
        with self._operation("fetch_metadata") as client:
            logger.debug("CacheStache: Redis GET %s", key)
            raw = client.get(key)
            if raw is None:
                return None
            parsed = loads_json(raw)
        return parsed if isinstance(parsed, dict) else None

    def delete_expired(self, now: float | None = None) -> int:
        """Delete bucket keys older than ``now - retention_seconds``."""
        current = self.clock() if now is None else now
        cutoff = current - self.config.retention_seconds
        pattern = f"{key_base(self.config.namespace, self.config.environment)}:*"

        deleted = 0
        with self._operation("prune") as client:
            expired: list[Any] = []
            for key in client.scan_iter(match=pattern):
                ts = timestamp_from_key(key)
                if ts is None or ts >= cutoff:
                    continue
                expired.append(key)

            for start in range(0, len(expired), PRUNE_DELETE_BATCH):
                batch = expired[start:start + PRUNE_DELETE_BATCH]
                result = client.delete(*batch)
                deleted += int(result) if result is not None else 0

        logger.info("CacheStache: Pruned %d expired buckets", deleted)
        return deleted

    # -- safe layer -----------------------------------------------------------

    def increment(self, bucket_ts: int, increments: Mapping[str, float]) -> bool:
        try:
            self.write_increments(bucket_ts, increments)
            return True
        except StoreError as exc:
            logger.error("CacheStache: Failed to increment stats: %s", exc, exc_info=True)
            return False

    def fetch_range(self, from_ts: float, to_ts: float) -> list[BucketSnapshot]:
        try:
            return self.read_range(from_ts, to_ts)
        except StoreError as exc:
            logger.error("CacheStache: Failed to fetch buckets: %s", exc)
            return []

    def store_metadata(self) -> bool:
        try:
            self.write_metadata()
            return True
        except StoreError as exc:
            logger.error("CacheStache: Failed to store config metadata: %s", exc)
            return False

    def fetch_metadata(self) -> dict[str, Any] | None:
        try:
            return self.read_metadata()
        except StoreError as exc:
            logger.error("CacheStache: Failed to fetch config metadata: %s", exc)
            return None

    def prune(self, now: float | None = None) -> int:
        try:
            return self.delete_expired(now)
        except StoreError as exc:
            logger.error("CacheStache: Failed to prune buckets: %s", exc)
            return 0

    def estimate_size(self) -> dict[str, Any]:
        """Closed-form estimate of the Redis memory used at full retention."""
        try:
            max_buckets = int(math.ceil(self.config.retention_seconds / float(self.config.bucket_seconds)))
            fields_per_bucket = 2 + 2 * len(self.config.keyspaces)
            bytes_per_bucket = fields_per_bucket * BYTES_PER_FIELD + KEY_OVERHEAD_BYTES
            total_bytes = max_buckets * bytes_per_bucket + METADATA_ALLOWANCE_BYTES
        except Exception as exc:
            logger.error("CacheStache: Failed to estimate storage size: %s", exc)
            return {
                "max_buckets": 0,
                "fields_per_bucket": 0,
                "bytes_per_bucket": 0,
                "total_bytes": 0,
                "human_readable": "Unknown",
            }

        return {
            "max_buckets": max_buckets,
            "fields_per_bucket": fields_per_bucket,
            "bytes_per_bucket": bytes_per_bucket,
            "total_bytes": total_bytes,
            "human_readable": format_bytes(total_bytes),
        }

    def health_check(self) -> dict[str, Any]:
        """Round-trip the store and compare its recorded bucket layout with this configuration.

        ``layout_matches`` is False when the stored metadata was written with a
        different ``bucket_seconds`` or ``retention_seconds``, and None when no
        metadata is stored.
        """
        report: dict[str, Any] = {
            "connected": False,
            "message": "Connection unavailable",
            "pool_size": self.pool.size if self.pool is not None else 0,
            "clients_created": self.pool.created if self.pool is not None else 0,
            "layout_matches": None,
        }
        try:
            with self._operation("health_check") as client:
                client.ping()
            metadata = self.read_metadata()
        except StoreError as exc:
            logger.warning("CacheStache: Store health check failed: %s", exc)
            return report

        report["connected"] = True
        report["clients_created"] = self.pool.created if self.pool is not None else 0
        if metadata is None:
            report["message"] = "Connected; no layout metadata stored"
            return report

        stored = (metadata.get("bucket_seconds"), metadata.get("retention_seconds"))
        expected = (self.config.bucket_seconds, self.config.retention_seconds)
        report["layout_matches"] = stored == expected
        if stored == expected:
            report["message"] = "Connected"
        else:
            report["message"] = (
                f"Connected; stored layout bucket_seconds={stored[0]} retention_seconds={stored[1]} "
                f"differs from configured bucket_seconds={expected[0]} retention_seconds={expected[1]}"
            )
        return report
