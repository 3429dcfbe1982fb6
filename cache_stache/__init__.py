from .errors import CacheStacheError, ConfigurationError, StoreError
from .config.connection import ClientPool, StoreConnection, StoreConnectionKind
from .config.keyspace import Keyspace
from .config.configuration import Configuration
from .config.settings import StacheSettings
from .keyspaces.matcher import KeyspaceMatcher
from .store.bucket_store import BucketSnapshot, BucketStore
from .instrumentation.guard import without_instrumentation
from .instrumentation.events import CacheEventBus, PayloadShape
from .instrumentation.deferred import DeferredFlushBuffer, request_scope
from .instrumentation.hook import InstrumentationHook
from .stats.query import HitStats, KeyspaceStats, StatsQuery, StatsResult
from .stats.windows import WINDOWS, find_window

__all__ = [
    "BucketSnapshot",
    "BucketStore",
    "CacheEventBus",
    "CacheStacheError",
    "ClientPool",
    "Configuration",
    "ConfigurationError",
    "DeferredFlushBuffer",
    "HitStats",
    "InstrumentationHook",
    "Keyspace",
    "KeyspaceMatcher",
    "KeyspaceStats",
    "PayloadShape",
    "StacheSettings",
    "StatsQuery",
    "StatsResult",
    "StoreConnection",
    "StoreConnectionKind",
    "StoreError",
    "WINDOWS",
    "find_window",
    "request_scope",
    "without_instrumentation",
]
