"""Bucket alignment, versioned key naming and stable JSON helpers."""
from __future__ import annotations

import json
import math
from typing import Any

KEY_VERSION = "v1"
CONFIG_SUFFIX = "config"


def dumps_json(obj: Any) -> str:
    """Serialize JSON with stable ordering and ASCII-safe output."""
    return json.dumps(obj, sort_keys=True, ensure_ascii=True, separators=(",", ":"))


def loads_json(text: str | bytes) -> Any:
    """Deserialize JSON text."""
    return json.loads(text)


def align_to_bucket(timestamp: float, bucket_seconds: int) -> int:
    """Floor ``timestamp`` to the start of its bucket.

    ``align(align(t)) == align(t)`` and ``align(t) <= t < align(t) + bucket_seconds``.
    """
    if not isinstance(bucket_seconds, int) or bucket_seconds <= 0:
        raise ValueError("bucket_seconds must be a positive integer")
    if isinstance(timestamp, float) and not math.isfinite(timestamp):
        raise ValueError("timestamp must be finite")
    return (int(math.floor(timestamp)) // bucket_seconds) * bucket_seconds


def bucket_timestamps(from_ts: float, to_ts: float, bucket_seconds: int) -> list[int]:
    """Every aligned bucket timestamp from ``align(from_ts)`` to ``align(to_ts)`` inclusive."""
    current = align_to_bucket(from_ts, bucket_seconds)
    last = align_to_bucket(to_ts, bucket_seconds)
    timestamps: list[int] = []
    while current <= last:
        timestamps.append(current)
        current += bucket_seconds
    return timestamps


def key_base(namespace: str, environment: str) -> str:
    """Key form: {namespace}:{version}:{environment}"""
    if not isinstance(namespace, str) or namespace == "":
        raise ValueError("namespace must be a non-empty string")
    if not isinstance(environment, str) or environment == "":
        raise ValueError("environment must be a non-empty string")
    return f"{namespace}:{KEY_VERSION}:{environment}"


def bucket_key(namespace: str, environment: str, timestamp: int) -> str:
    return f"{key_base(namespace, environment)}:{int(timestamp)}"


def config_key(namespace: str, environment: str) -> str:
    return f"{key_base(namespace, environment)}:{CONFIG_SUFFIX}"


def timestamp_from_key(key: str | bytes) -> int | None:
    """Return the bucket timestamp embedded in ``key``, or None for non-bucket keys."""
    text = key.decode("utf-8") if isinstance(key, bytes) else str(key)
    tail = text.rsplit(":", 1)[-1]
    if not tail.isdigit():
        return None
    return int(tail)
