"""
Shared datatypes for the walk-forward simulator.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from dateutil.parser import isoparse

from walkforward.errors import MissingTimestamp

TIMESTAMP_KEYS = ("timestamp", "time", "datetime", "ts_utc")


class Direction:
    BUY = "BUY"
    SELL = "SELL"

    @staticmethod
    def opposite(direction: str) -> str:
        return Direction.SELL if direction == Direction.BUY else Direction.BUY

    @staticmethod
    def sign(direction: str) -> int:
        return 1 if direction == Direction.BUY else -1


class ExitReason:
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    REVERSE_SIGNAL = "reverse_signal"
    TIMEOUT = "timeout"
    END_OF_DATA = "end_of_data"

    ALL = (STOP_LOSS, TAKE_PROFIT, REVERSE_SIGNAL, TIMEOUT, END_OF_DATA)


def parse_timestamp(raw: Any) -> datetime:
    """Parse an ISO-8601 value (or datetime) into a UTC datetime without sub-seconds."""
    if isinstance(raw, datetime):
        ts = raw
    else:
        if raw is None:
            raise MissingTimestamp("timestamp is missing")
        text = str(raw).strip()
        if not text:
            raise MissingTimestamp("timestamp is blank")
        try:
            ts = isoparse(text)
        except (ValueError, OverflowError) as e:
            raise MissingTimestamp(f"unparseable timestamp {text!r}: {e}") from e
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    else:
        ts = ts.astimezone(timezone.utc)
    return ts.replace(microsecond=0)


@dataclass(frozen=True, order=True)
class Candle:
    ts: datetime
    open: float
    high: float
    low: float
    close: float

    @property
    def range(self) -> float:
        return self.high - self.low

    @property
    def body(self) -> float:
        return abs(self.close - self.open)

    @classmethod
    def from_mapping(cls, record: Mapping[str, Any]) -> "Candle":
        raw_ts = None
        for key in TIMESTAMP_KEYS:
            if key in record and record[key] is not None:
                raw_ts = record[key]
                break
        try:
            ts = parse_timestamp(raw_ts)
        except MissingTimestamp as e:
            e.record = dict(record)
            raise
        return cls(
            ts=ts,
            open=_as_float(record.get("open")),
            high=_as_float(record.get("high")),
            low=_as_float(record.get("low")),
            close=_as_float(record.get("close")),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "timestamp": format_ts(self.ts),
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
        }


def _as_float(v: Any) -> float:
    # Malformed numbers become NaN; the indicator layer treats them as unavailable.
    if v is None:
        return math.nan
    try:
        return float(v)
    except (TypeError, ValueError):
        return math.nan


def format_ts(ts: Optional[datetime]) -> Optional[str]:
    if ts is None:
        return None
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class AlignedWindow:
    start: datetime
    end: datetime
    series: Mapping[str, tuple]          # timeframe -> tuple[Candle, ...]
    segments: Mapping[str, tuple] = field(default_factory=dict)  # timeframe -> ((start, end), ...)

    def candles(self, timeframe: str) -> tuple:
        return self.series[timeframe]

    @property
    def timeframes(self) -> tuple:
        return tuple(self.series)


@dataclass(frozen=True)
class EquityPoint:
    ts: datetime
    equity: float


@dataclass(frozen=True)
class SignalDecision:
    signal: Optional[str]      # Direction.BUY / Direction.SELL / None
    reason: str
    context: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_signal(self) -> bool:
        return self.signal is not None


@dataclass
class Position:
    direction: str
    entry_price: float
    entry_time: datetime
    stop_loss: float
    take_profit: float
    risk_distance: float
    initial_stop: float
    size_units: float = 0.0
    entry_reason: str = ""
    entry_bar_index: int = 0
    breakeven_applied: bool = False
    trailing_applied: bool = False
    soft_exit_applied: bool = False
    max_favorable: float = 0.0
    max_adverse: float = 0.0
    alignment: str = "full"
    indicators_on_open: dict = field(default_factory=dict)


@dataclass(frozen=True)
class TradeRecord:
    deal_id: str
    symbol: str
    direction: str
    entry_time: datetime
    exit_time: datetime
    entry_price: float
    exit_price: float
    initial_stop: float
    final_stop: float
    take_profit: float
    exit_reason: str
    entry_reason: str
    risk_distance: float
    rr: float                   # planned reward:risk
    r_multiple: float           # realized points / risk distance
    points: float
    pips: float
    size_units: float
    pnl_money: float
    hold_minutes: float
    bars_held: int
    mfe_r: float
    mae_r: float
    breakeven_applied: bool
    trailing_applied: bool
    alignment: str
    indicators_on_open: Mapping[str, Any] = field(default_factory=dict)
    indicators_on_close: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_win(self) -> bool:
        return self.pips > 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "deal_id": self.deal_id,
            "symbol": self.symbol,
            "direction": self.direction,
            "entry_time": format_ts(self.entry_time),
            "exit_time": format_ts(self.exit_time),
            "entry_price": self.entry_price,
            "exit_price": self.exit_price,
            "initial_stop": self.initial_stop,
            "final_stop": self.final_stop,
            "take_profit": self.take_profit,
            "exit_reason": self.exit_reason,
            "entry_reason": self.entry_reason,
            "risk_distance": self.risk_distance,
            "rr": self.rr,
            "r_multiple": self.r_multiple,
            "points": self.points,
            "pips": self.pips,
            "size_units": self.size_units,
            "pnl_money": self.pnl_money,
            "hold_minutes": self.hold_minutes,
            "bars_held": self.bars_held,
            "mfe_r": self.mfe_r,
            "mae_r": self.mae_r,
            "breakeven_applied": self.breakeven_applied,
            "trailing_applied": self.trailing_applied,
            "alignment": self.alignment,
        }
