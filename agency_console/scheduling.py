"""Hold window computation.

Everything here is pure: the caller supplies ``now`` so results are
deterministic under test.
"""
from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Iterable, Optional

from .models import HoldWindow

DEFAULT_HOLD_PRESETS = (1, 2, 3)

_ONE_DAY = timedelta(days=1)


class HoldWindowError(ValueError):
    """Raised when a requested hold window is malformed."""


def _require_aware(value: datetime, name: str) -> datetime:
    if value.tzinfo is None or value.utcoffset() is None:
        raise HoldWindowError(f"{name} must be a timezone-aware datetime")
    return value


def hold_days_between(start: datetime, end: datetime) -> int:
    """Return the number of calendar days covered, rounding partial days up."""

    span = end - start
    if span <= timedelta(0):
        raise HoldWindowError("Hold end must be after hold start")
    return max(1, math.ceil(span / _ONE_DAY))


def compute_hold_window(
    now: datetime,
    *,
    days: Optional[int] = None,
    until: Optional[datetime] = None,
    allowed_days: Iterable[int] = DEFAULT_HOLD_PRESETS,
) -> HoldWindow:
    """Compute the hold triple from a preset day count or an explicit end."""

    _require_aware(now, "now")
    if (days is None) == (until is None):
        raise HoldWindowError("Provide exactly one of a day count or an end timestamp")

    if until is None:
        presets = tuple(allowed_days)
        if days not in presets:
            allowed = ", ".join(str(item) for item in presets)
            raise HoldWindowError(f"Hold duration must be one of: {allowed} days")
        return HoldWindow(days=days, start=now, end=now + timedelta(days=days))

    _require_aware(until, "until")
    if until <= now:
        raise HoldWindowError("Hold end timestamp must be in the future")
    return HoldWindow(days=hold_days_between(now, until), start=now, end=until)


def time_remaining(window: HoldWindow, now: datetime) -> timedelta:
    remaining = window.end - now
    if remaining <= timedelta(0):
        return timedelta(0)
    return remaining


def hold_elapsed(window: HoldWindow, now: datetime) -> bool:
    return now >= window.end


def format_remaining(delta: timedelta) -> str:
    """Render a countdown as ``Xd HH:MM:SS`` or ``HH:MM:SS``."""

    total_seconds = int(delta.total_seconds())
    if total_seconds <= 0:
        return "00:00:00"

    days, rest = divmod(total_seconds, 24 * 60 * 60)
    hours, rest = divmod(rest, 60 * 60)
    minutes, seconds = divmod(rest, 60)
    clock = f"{hours:02d}:{minutes:02d}:{seconds:02d}"
    if days > 0:
        return f"{days}d {clock}"
    return clock


__all__ = [
    "DEFAULT_HOLD_PRESETS",
    "HoldWindowError",
    "compute_hold_window",
    "format_remaining",
    "hold_days_between",
    "hold_elapsed",
    "time_remaining",
]
