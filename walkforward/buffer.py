"""Fixed-capacity rolling candle window for one timeframe."""
from __future__ import annotations

from collections import deque
from typing import Iterator, Optional

from walkforward.types import Candle

DEFAULT_CAPACITY = 200
DEFAULT_MIN_BARS = 60


class CandleBuffer:
    def __init__(self, timeframe: str, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.timeframe = timeframe
        self.capacity = capacity
        self._bars: deque = deque(maxlen=capacity)

    def push(self, candle: Candle) -> bool:
        """Append a newer bar. Returns False (and keeps the buffer unchanged) for a repeat or older timestamp."""
        if self._bars and candle.ts <= self._bars[-1].ts:
            return False
        self._bars.append(candle)
        return True

    def is_ready(self, min_bars: int = DEFAULT_MIN_BARS) -> bool:
        return len(self._bars) >= min_bars

    @property
    def last(self) -> Optional[Candle]:
        return self._bars[-1] if self._bars else None

    def window(self) -> tuple:
        return tuple(self._bars)

    def __len__(self) -> int:
        return len(self._bars)

    def __iter__(self) -> Iterator[Candle]:
        return iter(self._bars)
