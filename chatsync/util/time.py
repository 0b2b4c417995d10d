"""Time-related helpers for chatsync."""

from __future__ import annotations

import datetime
from typing import Any

# Epoch values above this threshold are interpreted as milliseconds.
_MILLISECONDS_THRESHOLD = 1e11


def utc_now_iso() -> str:
    """Return current UTC time in ISO format without sub-second precision."""
    return datetime.datetime.now(datetime.UTC).isoformat(timespec="seconds")


def to_epoch_seconds(value: Any) -> float | None:
    """Return *value* converted to float seconds since the epoch.

    Numbers larger than ``1e11`` are treated as milliseconds. Strings are
    parsed as numbers first and as ISO-8601 timestamps otherwise; naive
    timestamps are assumed to be UTC. ``None`` is returned when the value
    cannot be interpreted.
    """

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime.datetime):
        return _datetime_seconds(value)
    if isinstance(value, (int, float)):
        numeric = float(value)
        if numeric != numeric:  # NaN
            return None
        if abs(numeric) >= _MILLISECONDS_THRESHOLD:
            return numeric / 1000.0
        return numeric
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return to_epoch_seconds(float(text))
        except ValueError:
            pass
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.datetime.fromisoformat(text)
        except ValueError:
            return None
        return _datetime_seconds(parsed)
    return None


def _datetime_seconds(value: datetime.datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.UTC)
    return value.timestamp()


def format_epoch(value: float) -> str:
    """Return local ``YYYY-MM-DD HH:MM:SS`` representation of *value*."""
    return (
        datetime.datetime.fromtimestamp(value, datetime.UTC)
        .astimezone()
        .strftime("%Y-%m-%d %H:%M:%S")
    )


__all__ = ["format_epoch", "to_epoch_seconds", "utc_now_iso"]
