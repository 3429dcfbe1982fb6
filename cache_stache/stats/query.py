"""Trailing-window rollups of bucketed hit/miss counters."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Sequence

from cache_stache.config.configuration import Configuration
from cache_stache.store.bucket_store import BucketSnapshot, BucketStore

DEFAULT_WINDOW_SECONDS = 3600


@dataclass(frozen=True)
class HitStats:
    hits: int = 0
    misses: int = 0
    total_operations: int = 0
    hit_rate_percent: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "total_operations": self.total_operations,
            "hit_rate_percent": self.hit_rate_percent,
        }


@dataclass(frozen=True)
class KeyspaceStats(HitStats):
    label: str = ""
    pattern: str = ""

    def as_dict(self) -> dict[str, Any]:
        rendered = super().as_dict()
        rendered["label"] = self.label
        rendered["pattern"] = self.pattern
        return rendered


@dataclass(frozen=True)
class BucketStats:
    timestamp: int
    time: datetime
    stats: dict[str, float]

    def as_dict(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp, "time": self.time, "stats": dict(self.stats)}


@dataclass(frozen=True)
class StatsResult:
    overall: HitStats
    keyspaces: dict[str, KeyspaceStats] = field(default_factory=dict)
    buckets: list[BucketStats] = field(default_factory=list)
    window_seconds: int = DEFAULT_WINDOW_SECONDS
    bucket_count: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "overall": self.overall.as_dict(),
            "keyspaces": {name: stats.as_dict() for name, stats in self.keyspaces.items()},
            "buckets": [bucket.as_dict() for bucket in self.buckets],
            "window_seconds": self.window_seconds,
            "bucket_count": self.bucket_count,
        }


def hit_rate_percent(hits: float, misses: float) -> float:
    total = hits + misses
    if total <= 0:
        return 0.0
    return round(hits / total * 100, 2)


def sum_fields(buckets: Sequence[BucketSnapshot], hits_field: str, misses_field: str) -> tuple[float, float]:
    """Float sums of two fields; a bucket without a field contributes 0."""
    total_hits = 0.0
    total_misses = 0.0
    for bucket in buckets:
        total_hits += float(bucket.stats.get(hits_field, 0.0))
        total_misses += float(bucket.stats.get(misses_field, 0.0))
    return total_hits, total_misses


def rounded_counts(hits: float, misses: float) -> dict[str, Any]:
    """Integer counts whose total is the sum of the rounded parts; the rate uses the raw floats."""
    rounded_hits = round(hits)
    rounded_misses = round(misses)
    return {
        "hits": rounded_hits,
        "misses": rounded_misses,
        "total_operations": rounded_hits + rounded_misses,
        "hit_rate_percent": hit_rate_percent(hits, misses),
    }


class StatsQuery:
    """Reduce the buckets of a trailing window to overall and per-keyspace stats.

    Read-only; safe to call concurrently.
    """

    def __init__(
        self,
        config: Configuration,
        store: BucketStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.store = store if store is not None else BucketStore(config, clock=clock)
        self.clock = clock

    def execute(self, window_seconds: int | None = None, now: float | None = None) -> StatsResult:
        window = int(window_seconds) if window_seconds is not None else DEFAULT_WINDOW_SECONDS
        to_ts = int(self.clock() if now is None else now)
        from_ts = to_ts - window

        buckets = self.store.fetch_range(from_ts, to_ts)

        return StatsResult(
            overall=self._overall(buckets),
            keyspaces=self._keyspaces(buckets),
            buckets=[self._format_bucket(bucket) for bucket in buckets],
            window_seconds=window,
            bucket_count=len(buckets),
        )

    def _overall(self, buckets: Sequence[BucketSnapshot]) -> HitStats:
        hits, misses = sum_fields(buckets, "overall:hits", "overall:misses")
        return HitStats(**rounded_counts(hits, misses))

    def _keyspaces(self, buckets: Sequence[BucketSnapshot]) -> dict[str, KeyspaceStats]:
        rollups: dict[str, KeyspaceStats] = {}
        for keyspace in self.config.keyspaces:
            hits, misses = sum_fields(buckets, keyspace.hits_field(), keyspace.misses_field())
            rollups[keyspace.name] = KeyspaceStats(
                **rounded_counts(hits, misses),
                label=keyspace.label,
                pattern=keyspace.pattern.pattern,
            )
        return rollups

    @staticmethod
    def _format_bucket(bucket: BucketSnapshot) -> BucketStats:
        return BucketStats(
            timestamp=bucket.timestamp,
            time=datetime.fromtimestamp(bucket.timestamp, tz=timezone.utc),
            stats=dict(bucket.stats),
        )
