"""Named trailing windows offered to dashboard and CLI collaborators."""
from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class WindowOption:
    param: str
    label: str
    seconds: int
    aliases: tuple[str, ...] = ()
    default: bool = False


WINDOWS: tuple[WindowOption, ...] = (
    WindowOption("5m", "5 minutes", 5 * 60, aliases=("5_minutes",)),
    WindowOption("15m", "15 minutes", 15 * 60, aliases=("15_minutes",)),
    WindowOption("1h", "1 hour", 60 * 60, aliases=("1_hour",), default=True),
    WindowOption("6h", "6 hours", 6 * 60 * 60, aliases=("6_hours",)),
    WindowOption("1d", "1 day", 24 * 60 * 60, aliases=("1_day", "24h")),
    WindowOption("1w", "1 week", 7 * 24 * 60 * 60, aliases=("1_week", "7d")),
)

DEFAULT_WINDOW = next(option for option in WINDOWS if option.default)


def options_for_select() -> list[tuple[str, str]]:
    return [(option.label, option.param) for option in WINDOWS]


def find_window(param: str | None) -> WindowOption:
    """Look up a window by param or alias; unknown values fall back to 1 hour."""
    if param is None:
        return DEFAULT_WINDOW
    normalized = str(param).strip()
    for option in WINDOWS:
        if normalized == option.param or normalized in option.aliases:
            return option
    return DEFAULT_WINDOW


def label_for(param: str | None) -> str:
    return find_window(param).label


def seconds_for(param: str | None) -> int:
    return find_window(param).seconds
