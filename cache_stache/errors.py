"""Error taxonomy for cache_stache."""
from __future__ import annotations


class CacheStacheError(Exception):
    """Base class for every error raised by cache_stache."""


class ConfigurationError(CacheStacheError, ValueError):
    """Invalid configuration, raised while configuration is assembled."""


class StoreError(CacheStacheError):
    """A bucket store operation failed (connectivity or serialization)."""

    def __init__(self, operation: str, message: str) -> None:
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation
