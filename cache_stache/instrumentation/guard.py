"""Re-entrancy guard marking cache_stache's own store traffic.

The flag lives in a ``ContextVar``, so each thread and each asyncio task sees
its own value.
"""
from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

_internal_operation: ContextVar[bool] = ContextVar("cache_stache_internal_operation", default=False)


@contextmanager
def without_instrumentation() -> Iterator[None]:
    """Cache reads inside this block are ignored by the instrumentation hook."""
    token = _internal_operation.set(True)
    try:
        yield
    finally:
        _internal_operation.reset(token)


def internal_operation() -> bool:
    return _internal_operation.get()
