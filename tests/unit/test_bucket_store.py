"""Unit tests for the bucketed counter store (hermetic, no live Redis required)."""
from __future__ import annotations

import json
import logging
import threading

import pytest
import redis

from cache_stache.config.configuration import Configuration
from cache_stache.config.connection import StoreConnection
from cache_stache.errors import StoreError
from cache_stache.instrumentation.guard import internal_operation
from cache_stache.store.bucket_store import INCR_AND_EXPIRE_SCRIPT, BucketStore, format_bytes


def test_increment_creates_bucket_with_float_fields(store, fake_redis, base_ts) -> None:
    assert store.increment(base_ts, {"overall:hits": 1, "views:hits": 1}) is True

    buckets = store.fetch_range(base_ts - 100, base_ts + 100)
    assert len(buckets) == 1
    assert buckets[0].timestamp == base_ts
    assert buckets[0].stats == {"overall:hits": 1.0, "views:hits": 1.0}
    assert fake_redis.scripts == [INCR_AND_EXPIRE_SCRIPT]


def test_increment_accumulates_across_calls(store, base_ts) -> None:
    store.increment(base_ts, {"overall:hits": 1})
    store.increment(base_ts, {"overall:hits": 1, "overall:misses": 1})

    stats = store.fetch_range(base_ts, base_ts)[0].stats
    assert stats == {"overall:hits": 2.0, "overall:misses": 1.0}


def test_increment_sets_retention_ttl_without_shortening(store, fake_redis, base_ts) -> None:
    key = store.bucket_key(base_ts)
    store.increment(base_ts, {"overall:hits": 1})
    assert fake_redis.ttl(key) == 3600

    fake_redis.expire(key, 7200)
    store.increment(base_ts, {"overall:hits": 1})
    assert fake_redis.ttl(key) == 7200

    fake_redis.expire(key, 10)
    store.increment(base_ts, {"overall:hits": 1})
    assert fake_redis.ttl(key) == 3600


def test_empty_increment_is_a_no_op(store, fake_redis, base_ts) -> None:
    assert store.increment(base_ts, {}) is True
    assert list(fake_redis.scan_iter("*")) == []


def test_increment_payload_is_json_of_floats(config, base_ts) -> None:
    captured: dict[str, object] = {}

    class _RecordingClient:
        def register_script(self, _script: str):
            def _run(keys, args, client=None):
                captured["keys"] = keys
                captured["args"] = args
                captured["guarded"] = internal_operation()

            return _run

    store = BucketStore(config, client=_RecordingClient())
    store.write_increments(base_ts, {"overall:hits": 1})

    assert captured["keys"] == [f"cache_stache:v1:test:{base_ts}"]
    assert captured["args"][0] == 3600
    assert json.loads(captured["args"][1]) == {"overall:hits": 1.0}
    assert captured["guarded"] is True


def test_concurrent_increments_do_not_lose_updates(store, fake_redis, base_ts) -> None:
    def _worker() -> None:
        for _ in range(250):
            store.increment(base_ts, {"overall:hits": 1, "views:misses": 0.5})

    threads = [threading.Thread(target=_worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert fake_redis.hash(store.bucket_key(base_ts)) == {"overall:hits": 2000.0, "views:misses": 1000.0}


def test_increment_failure_is_logged_and_leaves_no_partial_state(store, fake_redis, base_ts, caplog) -> None:
    fake_redis.fail_with = redis.ConnectionError("Redis error")

    with caplog.at_level(logging.ERROR):
        assert store.increment(base_ts, {"overall:hits": 1, "views:hits": 1}) is False
    assert "Failed to increment stats" in caplog.text

    fake_redis.fail_with = None
    assert store.fetch_range(base_ts, base_ts) == []


def test_write_increments_raises_store_error(store, fake_redis, base_ts) -> None:
    fake_redis.fail_with = redis.ConnectionError("Redis error")
    with pytest.raises(StoreError) as excinfo:
        store.write_increments(base_ts, {"overall:hits": 1})
    assert excinfo.value.operation == "increment"


def test_unserializable_increment_is_a_store_error(store, base_ts) -> None:
    with pytest.raises(StoreError, match="unserializable"):
        store.write_increments(base_ts, {"overall:hits": "lots"})  # type: ignore[dict-item]


def test_fetch_range_returns_ascending_non_empty_buckets(store, fake_redis, base_ts) -> None:
    store.increment(base_ts, {"overall:hits": 5, "overall:misses": 2})
    store.increment(base_ts + 300, {"overall:hits": 3, "overall:misses": 1})
    store.increment(base_ts + 600, {"overall:hits": 8, "overall:misses": 4})

    buckets = store.fetch_range(base_ts, base_ts + 700)
    assert [b.timestamp for b in buckets] == [base_ts, base_ts + 300, base_ts + 600]
    assert buckets[0].stats == {"overall:hits": 5.0, "overall:misses": 2.0}
    assert fake_redis.pipeline_executions == 1


def test_fetch_range_before_any_data_is_empty(store, base_ts) -> None:
    store.increment(base_ts, {"overall:hits": 1})
    assert store.fetch_range(base_ts - 3000, base_ts - 1) == []


def test_fetch_range_across_one_boundary(store, base_ts) -> None:
    store.increment(base_ts, {"overall:hits": 1})
    store.increment(base_ts + 300, {"overall:misses": 1})
    store.increment(base_ts + 600, {"overall:misses": 1})

    buckets = store.fetch_range(base_ts + 50, base_ts + 350)
    assert [b.timestamp for b in buckets] == [base_ts, base_ts + 300]


def test_fetch_range_truncates_to_most_recent_max_buckets(config, fake_redis, base_ts, caplog) -> None:
    config.max_buckets = 3
    store = BucketStore(config)
    for offset in range(6):
        store.increment(base_ts + offset * 300, {"overall:hits": 1})

    with caplog.at_level(logging.WARNING):
        buckets = store.fetch_range(base_ts, base_ts + 5 * 300)

    assert [b.timestamp for b in buckets] == [base_ts + 900, base_ts + 1200, base_ts + 1500]
    assert "Truncating bucket range from 6 to 3 buckets" in caplog.text


def test_fetch_range_decodes_bytes_responses(config, base_ts) -> None:
    class _BytesPipeline:
        def hgetall(self, _key):
            return self

        def execute(self):
            return [{b"overall:hits": b"4"}]

    class _BytesClient:
        def register_script(self, _script):
            return lambda keys, args, client=None: None

        def pipeline(self, transaction=True):
            return _BytesPipeline()

    store = BucketStore(config, client=_BytesClient())
    assert store.fetch_range(base_ts, base_ts)[0].stats == {"overall:hits": 4.0}


def test_fetch_range_failure_returns_empty(store, fake_redis, base_ts, caplog) -> None:
    store.increment(base_ts, {"overall:hits": 1})
    fake_redis.fail_with = redis.ConnectionError("Redis error")

    with caplog.at_level(logging.ERROR):
        assert store.fetch_range(base_ts, base_ts + 300) == []
    assert "Failed to fetch buckets" in caplog.text

    with pytest.raises(StoreError):
        store.read_range(base_ts, base_ts + 300)


def test_metadata_round_trip(store, fake_redis, base_ts) -> None:
    assert store.fetch_metadata() is None
    assert store.store_metadata() is True

    metadata = store.fetch_metadata()
    assert metadata == {"bucket_seconds": 300, "retention_seconds": 3600, "updated_at": base_ts}
    assert fake_redis.ttl("cache_stache:v1:test:config") == 3600


def test_metadata_failures_degrade_to_defaults(store, fake_redis, caplog) -> None:
    fake_redis.fail_with = redis.ConnectionError("Redis error")
    with caplog.at_level(logging.ERROR):
        assert store.store_metadata() is False
        assert store.fetch_metadata() is None
    assert "Failed to store config metadata" in caplog.text
    assert "Failed to fetch config metadata" in caplog.text


def test_prune_deletes_only_expired_buckets(store, fake_redis, base_ts) -> None:
    now = base_ts + 10_000
    store.increment(base_ts, {"overall:hits": 1})  # older than now - 3600
    store.increment(now - 300, {"overall:hits": 1})
    store.store_metadata()
    fake_redis.seed_bucket(f"cache_stache:v1:production:{base_ts}", {"overall:hits": 1})

    assert store.prune(now=now) == 1
    remaining = sorted(fake_redis.scan_iter("*"))
    assert remaining == sorted(
        [
            f"cache_stache:v1:test:{now - 300}",
            "cache_stache:v1:test:config",
            f"cache_stache:v1:production:{base_ts}",
        ]
    )


def test_prune_failure_returns_zero(store, fake_redis) -> None:
    fake_redis.fail_with = redis.ConnectionError("Redis error")
    assert store.prune() == 0


def test_estimate_size(config) -> None:
    config.keyspace("views", r"^views/")
    config.keyspace("models", r"model")
    estimate = BucketStore(config).estimate_size()

    assert estimate["max_buckets"] == 12
    assert estimate["fields_per_bucket"] == 6
    assert estimate["bytes_per_bucket"] == 6 * 52 + 141
    assert estimate["total_bytes"] == 12 * (6 * 52 + 141) + 200
    assert estimate["human_readable"] == "5.5 KB"


def test_estimate_size_failure_returns_unknown(config, caplog) -> None:
    config.retention_seconds = "forever"  # type: ignore[assignment]
    with caplog.at_level(logging.ERROR):
        estimate = BucketStore(config).estimate_size()
    assert estimate["total_bytes"] == 0
    assert estimate["human_readable"] == "Unknown"
    assert "Failed to estimate storage size" in caplog.text


def test_format_bytes() -> None:
    assert format_bytes(500) == "500 B"
    assert format_bytes(2048) == "2.0 KB"
    assert format_bytes(2_097_152) == "2.0 MB"
    assert format_bytes(2_147_483_648) == "2.0 GB"


def test_failed_client_construction_degrades_safely(base_ts, caplog) -> None:
    def _broken_factory():
        raise redis.ConnectionError("no route")

    config = Configuration(environment="test", store=StoreConnection.from_factory(_broken_factory))
    with caplog.at_level(logging.ERROR):
        store = BucketStore(config)

    assert store.increment(base_ts, {"overall:hits": 1}) is False
    assert store.fetch_range(base_ts, base_ts) == []
    assert store.health_check()["connected"] is False


def test_health_check_reports_connectivity_and_pool(config, fake_redis) -> None:
    report = BucketStore(config).health_check()
    assert report == {
        "connected": True,
        "message": "Connected; no layout metadata stored",
        "pool_size": 5,
        "clients_created": 1,
        "layout_matches": None,
    }

    fake_redis.fail_with = redis.ConnectionError("down")
    down = BucketStore(config).health_check()
    assert down["connected"] is False
    assert down["message"] == "Connection unavailable"


def test_health_check_flags_layout_drift(config, fake_redis, base_ts) -> None:
    BucketStore(config, clock=lambda: float(base_ts)).store_metadata()
    assert BucketStore(config).health_check()["layout_matches"] is True

    config.bucket_seconds = 60
    report = BucketStore(config).health_check()
    assert report["connected"] is True
    assert report["layout_matches"] is False
    assert "bucket_seconds=300" in report["message"]


def test_factory_clients_are_bounded_by_pool_size(fake_redis, base_ts) -> None:
    built: list[object] = []
    release = threading.Event()
    inside = threading.Semaphore(0)

    class _SlowClient:
        def __init__(self) -> None:
            built.append(self)

        def register_script(self, script: str):
            return fake_redis.register_script(script)

        def pipeline(self, transaction: bool = True):
            inside.release()
            release.wait(timeout=5)
            return fake_redis.pipeline(transaction)

    config = Configuration(environment="test", redis_pool_size=2, store=StoreConnection.from_factory(_SlowClient))
    store = BucketStore(config)

    threads = [threading.Thread(target=store.fetch_range, args=(base_ts, base_ts)) for _ in range(4)]
    for thread in threads:
        thread.start()
    assert inside.acquire(timeout=5)
    assert inside.acquire(timeout=5)
    assert not inside.acquire(timeout=0.2)
    assert store.pool is not None
    assert store.pool.in_use == 2

    release.set()
    for thread in threads:
        thread.join()

    assert len(built) == 2
    assert store.pool.created == 2
    assert store.pool.in_use == 0


def test_missing_store_connection_degrades_safely(base_ts, caplog) -> None:
    with caplog.at_level(logging.ERROR):
        store = BucketStore(Configuration(environment="test", store=None))

    assert "redis must be configured" in caplog.text
    assert store.increment(base_ts, {"overall:hits": 1}) is False
    with pytest.raises(StoreError, match="connection unavailable"):
        store.write_increments(base_ts, {"overall:hits": 1})
