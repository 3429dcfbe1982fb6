"""Shared hermetic fixtures: an in-memory Redis stand-in (no live Redis required)."""
from __future__ import annotations

import fnmatch
import json
import threading
from typing import Any

import pytest

from cache_stache.config.configuration import Configuration
from cache_stache.config.connection import StoreConnection
from cache_stache.store.bucket_store import BucketStore

BASE_TS = (1_700_000_000 // 300) * 300  # 1_699_999_800


class _FakePipeline:
    def __init__(self, owner: "_FakeRedis") -> None:
        self._owner = owner
        self._calls: list[tuple[str, tuple[Any, ...]]] = []

    def hgetall(self, key: str) -> "_FakePipeline":
        self._calls.append(("hgetall", (key,)))
        return self

    def execute(self) -> list[Any]:
        self._owner.pipeline_executions += 1
        results = [getattr(self._owner, name)(*args) for name, args in self._calls]
        self._calls = []
        return results


class _FakeScript:
    """Applies the increment-and-expire script atomically under the fake's lock."""

    def __init__(self, owner: "_FakeRedis") -> None:
        self._owner = owner

    def __call__(self, keys: list[str], args: list[Any], client: Any = None) -> bytes:
        owner = self._owner
        owner._check()
        key = keys[0]
        expire_seconds = int(args[0])
        increments = json.loads(args[1])
        with owner._lock:
            bucket = owner._hashes.setdefault(key, {})
            for name, value in increments.items():
                bucket[name] = repr(float(bucket.get(name, "0")) + float(value))
            ttl = owner._ttls.get(key, -1)
            if ttl == -1 or ttl < expire_seconds:
                owner._ttls[key] = expire_seconds
        return b"OK"


class _FakeRedis:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._hashes: dict[str, dict[str, str]] = {}
        self._strings: dict[str, str] = {}
        self._ttls: dict[str, int] = {}
        self.fail_with: Exception | None = None
        self.pipeline_executions = 0
        self.scripts: list[str] = []

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def ping(self) -> bool:
        self._check()
        return True

    def register_script(self, script: str) -> _FakeScript:
        self.scripts.append(script)
        return _FakeScript(self)

    def pipeline(self, transaction: bool = True) -> _FakePipeline:
        self._check()
        return _FakePipeline(self)

    def hgetall(self, key: str) -> dict[str, str]:
        self._check()
        return dict(self._hashes.get(key, {}))

    def ttl(self, key: str) -> int:
        if key not in self._hashes and key not in self._strings:
            return -2
        return self._ttls.get(key, -1)

    def expire(self, key: str, seconds: int) -> bool:
        self._ttls[key] = int(seconds)
        return True

    def get(self, key: str) -> str | None:
        self._check()
        return self._strings.get(key)

    def setex(self, key: str, ttl: int, value: str) -> bool:
        self._check()
        self._strings[key] = value
        self._ttls[key] = int(ttl)
        return True

    def delete(self, *keys: str) -> int:
        self._check()
        deleted = 0
        for key in keys:
            if self._hashes.pop(key, None) is not None or self._strings.pop(key, None) is not None:
                deleted += 1
            self._ttls.pop(key, None)
        return deleted

    def scan_iter(self, match: str = "*"):
        self._check()
        for key in list(self._hashes.keys()) + list(self._strings.keys()):
            if fnmatch.fnmatchcase(key, match):
                yield key

    def seed_bucket(self, key: str, fields: dict[str, float], ttl: int | None = None) -> None:
        self._hashes[key] = {name: repr(float(value)) for name, value in fields.items()}
        if ttl is not None:
            self._ttls[key] = ttl

    def hash(self, key: str) -> dict[str, float]:
        return {name: float(value) for name, value in self._hashes.get(key, {}).items()}


@pytest.fixture
def base_ts() -> int:
    return BASE_TS


@pytest.fixture
def fake_redis() -> _FakeRedis:
    return _FakeRedis()


@pytest.fixture
def config(fake_redis: _FakeRedis) -> Configuration:
    return Configuration(
        bucket_seconds=300,
        retention_seconds=3600,
        environment="test",
        store=StoreConnection.from_client(fake_redis),
    )


@pytest.fixture
def store(config: Configuration) -> BucketStore:
    return BucketStore(config, clock=lambda: float(BASE_TS))
