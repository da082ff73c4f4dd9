"""Timeframe names and their nominal intervals."""
from __future__ import annotations

from datetime import timedelta

TIMEFRAME_SECONDS = {
    "M1": 60,
    "M5": 5 * 60,
    "M15": 15 * 60,
    "H1": 60 * 60,
    "H4": 4 * 60 * 60,
}

# pandas offset aliases for resampling
PANDAS_FREQ = {
    "M1": "1min",
    "M5": "5min",
    "M15": "15min",
    "H1": "1h",
    "H4": "4h",
}


def normalize(tf: str) -> str:
    key = str(tf).strip().upper()
    if key not in TIMEFRAME_SECONDS:
        raise ValueError(f"Unknown timeframe: {tf!r} (expected one of {', '.join(TIMEFRAME_SECONDS)})")
    return key


def interval(tf: str) -> timedelta:
    return timedelta(seconds=TIMEFRAME_SECONDS[normalize(tf)])


def seconds(tf: str) -> int:
    return TIMEFRAME_SECONDS[normalize(tf)]


def sort_timeframes(tfs) -> list:
    return sorted((normalize(t) for t in tfs), key=lambda t: TIMEFRAME_SECONDS[t])
