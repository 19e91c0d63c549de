# src/core/values.py — v1
"""Scalar, duration and timestamp helpers shared by rules and engines."""

from __future__ import annotations

import math
import re
from datetime import datetime, timezone

from entitysynth.core.models import Event, Scalar

_DURATION_RE = re.compile(r"^(\d+)\s*(s|m|h|d|w)?$", re.IGNORECASE)
_DURATION_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}

# Epoch values above this are treated as milliseconds (year ~5138 in seconds).
_MILLIS_THRESHOLD = 10**11


def utcnow() -> datetime:
    """Current time as a tz-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_attribute_string(value: Scalar) -> str | None:
    """Canonical string form of an event attribute value.

    Booleans render as ``true``/``false`` and integral floats drop their
    fractional part, so ``1``, ``1.0`` and ``"1"`` all compare equal.
    Returns None for None and NaN.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if math.isnan(value):
            return None
        if value.is_integer():
            return str(int(value))
        return repr(value)
    return str(value)


def attribute_value(event: Event, attribute: str) -> str | None:
    """Look up an attribute; absent and empty values both return None."""
    text = to_attribute_string(event.get(attribute))
    if text is None or text == "":
        return None
    return text


def parse_duration(value: str | int | float) -> int:
    """Parse a duration like ``90s``, ``75m``, ``24h``, ``8d`` into seconds.

    Bare numbers are seconds.

    Raises:
        ValueError: If the value is negative or not a recognised duration.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"Duration must be >= 0: {value!r}")
        return int(value)
    match = _DURATION_RE.match(str(value).strip())
    if not match:
        raise ValueError(f"Invalid duration: {value!r}. Use e.g. '75m' or '8d'.")
    amount = int(match.group(1))
    unit = (match.group(2) or "s").lower()
    return amount * _DURATION_UNITS[unit]


def event_time(event: Event, attribute: str) -> datetime | None:
    """Observation time carried by an event, or None if absent/invalid.

    Accepts epoch seconds or milliseconds (numeric or numeric string) and
    ISO-8601 strings.
    """
    raw = event.get(attribute)
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, str):
        try:
            raw = float(raw)
        except ValueError:
            try:
                parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
            except ValueError:
                return None
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)
    try:
        seconds = float(raw)
        if seconds > _MILLIS_THRESHOLD:
            seconds /= 1000.0
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        return None
