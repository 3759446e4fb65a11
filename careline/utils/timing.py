"""Clock and duration helpers shared by the dispatcher and the models."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], datetime]

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([dhms])\s*$")
_UNIT_MS = {"d": 86_400_000, "h": 3_600_000, "m": 60_000, "s": 1_000}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Interpret naive datetimes as UTC and normalise aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_duration(token: str) -> bool:
    return bool(_DURATION_RE.match(token))


def parse_duration(token: str) -> int:
    """Convert a ``<N>d|h|m|s`` token into milliseconds.

    >>> parse_duration("2d")
    172800000
    """
    match = _DURATION_RE.match(token)
    if match is None:
        raise ValueError(f"invalid duration {token!r}, expected <N>d|h|m|s")
    amount, unit = match.groups()
    return int(amount) * _UNIT_MS[unit]


def delay_until(wake_at: datetime, now: datetime) -> int:
    """Milliseconds from *now* until *wake_at*, clamped to zero."""
    delta = ensure_utc(wake_at) - ensure_utc(now)
    return max(0, int(delta / timedelta(milliseconds=1)))
