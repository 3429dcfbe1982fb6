"""Cache read notifications: payload shapes and an in-process event bus."""
from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Protocol

CacheReadPayload = Mapping[str, Any]
CacheReadCallback = Callable[[CacheReadPayload], None]


class EventSource(Protocol):
    def subscribe(self, callback: CacheReadCallback) -> Any: ...

    def unsubscribe(self, handle: Any) -> bool: ...


@dataclass(frozen=True)
class PayloadShape:
    """Where a producer puts the key, hit flag and store identity.

    ``key_fields`` is checked in order; the first present, non-empty value wins.
    """

    key_fields: tuple[str, ...] = ("key", "name")
    hit_field: str = "hit"
    store_field: str = "store"

    def extract_key(self, payload: CacheReadPayload) -> Any | None:
        for field_name in self.key_fields:
            value = payload.get(field_name)
            if value is not None and value != "":
                return value
        return None

    def extract_hit(self, payload: CacheReadPayload) -> bool:
        return bool(payload.get(self.hit_field))

    def extract_store(self, payload: CacheReadPayload) -> Any | None:
        return payload.get(self.store_field)


DEFAULT_PAYLOAD_SHAPE = PayloadShape()


def read_event(key: str, hit: bool, store: str) -> dict[str, Any]:
    return {"key": key, "hit": bool(hit), "store": store}


class CacheEventBus:
    """Synchronous publish/subscribe for cache read events.

    Callbacks run on the publishing thread, in subscription order.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[int, CacheReadCallback] = {}
        self._next_handle = 1

    def subscribe(self, callback: CacheReadCallback) -> int:
        with self._lock:
            handle = self._next_handle
            self._next_handle += 1
            self._subscribers[handle] = callback
        return handle

    def unsubscribe(self, handle: Any) -> bool:
        with self._lock:
            return self._subscribers.pop(handle, None) is not None

    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, payload: CacheReadPayload) -> None:
        callbacks = list(self._subscribers.values())
        for callback in callbacks:
            callback(payload)
