"""Named cache key families tracked alongside the overall hit rate."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Pattern

from cache_stache.errors import ConfigurationError

logger = logging.getLogger(__name__)


def humanize(name: str) -> str:
    """Render ``search_results`` as ``Search results``."""
    text = str(name).replace("_", " ").strip()
    if not text:
        return text
    return text[0].upper() + text[1:]


def _compile_pattern(name: str, pattern: object) -> Pattern[str]:
    if pattern is None:
        raise ConfigurationError(f"Keyspace {name} requires a match pattern (regex)")

    if isinstance(pattern, re.Pattern):
        if pattern.pattern == "":
            raise ConfigurationError(f"Keyspace {name} match pattern must not be empty")
        return pattern

    if isinstance(pattern, str):
        if pattern.strip() == "":
            raise ConfigurationError(f"Keyspace {name} match pattern must not be empty")
        try:
            return re.compile(pattern)
        except re.error as exc:
            raise ConfigurationError(f"Keyspace {name} match pattern is not a valid regex: {exc}") from exc

    raise ConfigurationError(
        f"Keyspace {name} match pattern must be a regex, got {type(pattern).__name__}"
    )


@dataclass(frozen=True)
class Keyspace:
    """A named regex over cache keys.

    ``pattern`` accepts a compiled pattern or regex source text; anything else
    is rejected at construction time.
    """

    name: str
    pattern: Pattern[str]
    label: str = field(default="")

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or self.name.strip() == "":
            raise ConfigurationError("Keyspace name must be a non-empty string")
        if ":" in self.name:
            raise ConfigurationError(f"Keyspace name must not contain ':': {self.name}")

        object.__setattr__(self, "pattern", _compile_pattern(self.name, self.pattern))
        if not self.label:
            object.__setattr__(self, "label", humanize(self.name))

    def matches(self, key: str) -> bool:
        try:
            return self.pattern.search(str(key)) is not None
        except Exception as exc:
            logger.error("CacheStache: Keyspace %s matcher error: %s", self.name, exc)
            return False

    def hits_field(self) -> str:
        return f"{self.name}:hits"

    def misses_field(self) -> str:
        return f"{self.name}:misses"
