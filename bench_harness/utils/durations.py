"""Parse and format wall-clock durations such as ``24h`` or ``1h30m``."""

from __future__ import annotations

import re

_UNIT_SECONDS: dict[str, float] = {
    "h": 3600.0,
    "hr": 3600.0,
    "hour": 3600.0,
    "hours": 3600.0,
    "m": 60.0,
    "min": 60.0,
    "mins": 60.0,
    "minute": 60.0,
    "minutes": 60.0,
    "s": 1.0,
    "sec": 1.0,
    "secs": 1.0,
    "second": 1.0,
    "seconds": 1.0,
}

_PART = re.compile(r"(\d+(?:\.\d+)?)\s*([a-z]+)")


def parse_duration(value: object) -> float:
    """Return the number of seconds described by ``value``.

    Accepts plain numbers (seconds), numeric strings, and unit strings like
    ``"24h"``, ``"30 min"`` or ``"1h30m"``.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"Duration must be non-negative: {value!r}")
        return float(value)
    if not isinstance(value, str):
        raise ValueError(f"Invalid duration: {value!r}")
    text = value.strip().lower()
    if not text:
        raise ValueError("Duration string is empty.")
    try:
        seconds = float(text)
    except ValueError:
        pass
    else:
        if seconds < 0:
            raise ValueError(f"Duration must be non-negative: {value!r}")
        return seconds
    total = 0.0
    pos = 0
    for match in _PART.finditer(text):
        if text[pos : match.start()].strip():
            raise ValueError(f"Invalid duration: {value!r}")
        unit = match.group(2)
        if unit not in _UNIT_SECONDS:
            raise ValueError(f"Unknown duration unit {unit!r} in {value!r}")
        total += float(match.group(1)) * _UNIT_SECONDS[unit]
        pos = match.end()
    if pos == 0 or text[pos:].strip():
        raise ValueError(f"Invalid duration: {value!r}")
    return total


def format_duration(seconds: float) -> str:
    total_seconds = int(seconds)
    minutes, secs = divmod(total_seconds, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h{minutes:02d}m"
    if minutes:
        return f"{minutes}m{secs:02d}s"
    return f"{secs}s"


__all__ = ["format_duration", "parse_duration"]
