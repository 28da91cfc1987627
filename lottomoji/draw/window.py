"""Pure helpers mapping wall-clock time onto draw windows."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional

MINUTES_PER_DAY = 24 * 60


def _validate_cadence(cadence_minutes: int) -> None:
    if isinstance(cadence_minutes, bool) or not isinstance(cadence_minutes, int):
        raise TypeError("cadence_minutes must be an integer")
    if cadence_minutes <= 0 or MINUTES_PER_DAY % cadence_minutes != 0:
        raise ValueError("cadence_minutes must be a positive divisor of 1440")


def _localize(moment: datetime, tz: Optional[tzinfo]) -> datetime:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(tz or timezone.utc)


def window_start(
    moment: datetime,
    cadence_minutes: int = 1,
    tz: Optional[tzinfo] = None,
) -> datetime:
    """Return the start of the window containing ``moment``.

    Minutes since local midnight are floored to a multiple of
    ``cadence_minutes`` and seconds are dropped, so every instant inside the
    same window maps to the same start.

    Parameters
    ----------
    moment : datetime
        Instant to map. Naive values are treated as UTC.
    cadence_minutes : int, default: 1
        Window length; must divide a day evenly.
    tz : Optional[tzinfo], default: None
        Zone whose local clock defines the windows. Defaults to UTC.
    """

    _validate_cadence(cadence_minutes)
    local = _localize(moment, tz)
    minute_of_day = local.hour * 60 + local.minute
    floored = minute_of_day - (minute_of_day % cadence_minutes)
    return local.replace(
        hour=floored // 60,
        minute=floored % 60,
        second=0,
        microsecond=0,
    )


def window_key(
    moment: datetime,
    cadence_minutes: int = 1,
    tz: Optional[tzinfo] = None,
) -> str:
    """Return the window key (``"YYYY-M-D-H-m"``, unpadded) for ``moment``.

    When the window starts inside a wall-clock hour that occurs twice (the
    fall-back transition of a DST zone), the UTC offset is appended, e.g.
    ``"2024-11-3-1-30-0400"`` and ``"2024-11-3-1-30-0500"``, so both
    occurrences keep distinct keys. All other keys carry no suffix.
    """

    start = window_start(moment, cadence_minutes, tz)
    key = f"{start.year}-{start.month}-{start.day}-{start.hour}-{start.minute}"
    if _is_ambiguous(start):
        key = f"{key}{start.strftime('%z')}"
    return key


def _is_ambiguous(local: datetime) -> bool:
    """Return ``True`` when ``local``'s wall-clock time maps to two instants."""
    return local.replace(fold=1 - local.fold).utcoffset() != local.utcoffset()


def next_draw_time(
    moment: datetime,
    cadence_minutes: int = 1,
    tz: Optional[tzinfo] = None,
) -> datetime:
    """Return the start of the window following the one containing ``moment``."""

    start = window_start(moment, cadence_minutes, tz)
    # Step in UTC so DST transitions do not shift the boundary.
    following = start.astimezone(timezone.utc) + timedelta(minutes=cadence_minutes)
    return window_start(following, cadence_minutes, tz)


__all__ = ["next_draw_time", "window_key", "window_start"]
