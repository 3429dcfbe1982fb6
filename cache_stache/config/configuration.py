"""Process configuration, built once during setup and read-only afterwards."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Pattern

from cache_stache.config.connection import StoreConnection
from cache_stache.config.keyspace import Keyspace
from cache_stache.config.settings import StacheSettings
from cache_stache.errors import ConfigurationError
from cache_stache.keyspaces.matcher import KeyspaceMatcher
from cache_stache.store.key_policy import align_to_bucket

logger = logging.getLogger(__name__)

DEFAULT_REDIS_URL = "redis://localhost:6379/0"


def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


@dataclass
class Configuration:
    bucket_seconds: int = 300
    retention_seconds: int = 604800
    sample_rate: float = 1.0
    enabled: bool = True
    use_deferred_flush: bool = False
    max_buckets: int = 288
    redis_pool_size: int = 5
    store: StoreConnection | None = field(default_factory=lambda: StoreConnection.from_url(DEFAULT_REDIS_URL))
    environment: str = "development"
    namespace: str = "cache_stache"

    _keyspaces: list[Keyspace] = field(default_factory=list, init=False, repr=False, compare=False)
    _matcher: KeyspaceMatcher = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._matcher = KeyspaceMatcher(())

    @classmethod
    def from_settings(cls, settings: StacheSettings | None = None, **overrides: Any) -> "Configuration":
        """Build a configuration from environment-backed settings.

        Keyword overrides win over anything the settings loaded.
        """
        loaded = settings if settings is not None else StacheSettings()
        values: dict[str, Any] = {
            "bucket_seconds": loaded.BUCKET_SECONDS,
            "retention_seconds": loaded.RETENTION_SECONDS,
            "sample_rate": loaded.SAMPLE_RATE,
            "enabled": loaded.ENABLED,
            "use_deferred_flush": loaded.USE_DEFERRED_FLUSH,
            "max_buckets": loaded.MAX_BUCKETS,
            "redis_pool_size": loaded.REDIS_POOL_SIZE,
            "store": StoreConnection.from_url(loaded.REDIS_URL),
            "environment": loaded.ENVIRONMENT,
            "namespace": loaded.NAMESPACE,
        }
        values.update(overrides)
        return cls(**values)

    @property
    def keyspaces(self) -> tuple[Keyspace, ...]:
        return tuple(self._keyspaces)

    def keyspace(self, name: str, pattern: Pattern[str] | str | None, label: str | None = None) -> Keyspace:
        """Register a keyspace; names must be unique."""
        ks = Keyspace(name=name, pattern=pattern, label=label or "")  # type: ignore[arg-type]

        if any(existing.name == ks.name for existing in self._keyspaces):
            raise ConfigurationError(f"Keyspace {ks.name} already defined")

        self._keyspaces.append(ks)
        self._matcher = KeyspaceMatcher(self._keyspaces)
        return ks

    def matching_keyspaces(self, key: str) -> tuple[Keyspace, ...]:
        return self._matcher.matching(key)

    def align(self, timestamp: float) -> int:
        return align_to_bucket(timestamp, self.bucket_seconds)

    @property
    def key_prefix(self) -> str:
        return f"{self.namespace}:"

    def validate(self) -> "Configuration":
        if not _is_positive_int(self.bucket_seconds):
            raise ConfigurationError("bucket_seconds must be positive")
        if not _is_positive_int(self.retention_seconds):
            raise ConfigurationError("retention_seconds must be positive")
        if self.store is None:
            raise ConfigurationError("redis must be configured")
        if not isinstance(self.store, StoreConnection):
            raise ConfigurationError("redis must be a StoreConnection (factory, URL or client)")
        self.store.validate()
        if not _is_positive_int(self.redis_pool_size):
            raise ConfigurationError("redis_pool_size must be positive")
        if (
            isinstance(self.sample_rate, bool)
            or not isinstance(self.sample_rate, (int, float))
            or not 0.0 <= float(self.sample_rate) <= 1.0
        ):
            raise ConfigurationError("sample_rate must be between 0 and 1")
        if not _is_positive_int(self.max_buckets):
            raise ConfigurationError("max_buckets must be positive")
        for segment_name in ("environment", "namespace"):
            segment = getattr(self, segment_name)
            if not isinstance(segment, str) or segment.strip() == "" or ":" in segment:
                raise ConfigurationError(f"{segment_name} must be a non-empty string without ':'")

        if self.retention_seconds % self.bucket_seconds != 0:
            logger.warning(
                "CacheStache: retention_seconds (%s) does not divide evenly by bucket_seconds (%s). "
                "This may result in partial bucket retention.",
                self.retention_seconds,
                self.bucket_seconds,
            )

        return self
