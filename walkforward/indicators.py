"""
Indicator snapshots over a trailing candle window.

The simulator only depends on the IndicatorProvider contract; the default
TechnicalIndicatorProvider computes everything with pandas/numpy. Fields that
cannot be computed (short window, malformed prices) come back as NaN rather
than raising.
"""
from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Any, Optional, Sequence

import numpy as np
import pandas as pd

from walkforward.errors import IndicatorUnavailable
from walkforward.types import Candle, format_ts

NAN = math.nan


@dataclass(frozen=True)
class IndicatorSnapshot:
    timestamp: Optional[datetime] = None
    close: float = NAN
    ema9: float = NAN
    ema20: float = NAN
    ema21: float = NAN
    ema50: float = NAN
    ema50_prev: float = NAN
    rsi: float = NAN
    rsi_prev: float = NAN
    atr: float = NAN
    macd_hist: float = NAN
    macd_hist_prev: float = NAN
    bb_pb: float = NAN
    adx: float = NAN
    composite_score: float = NAN
    trend: str = "neutral"

    def is_finite(self, name: str) -> bool:
        v = getattr(self, name, None)
        return isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for f in fields(self):
            v = getattr(self, f.name)
            if f.name == "timestamp":
                out[f.name] = format_ts(v)
            elif isinstance(v, float):
                out[f.name] = v if math.isfinite(v) else None
            else:
                out[f.name] = v
        return out


class IndicatorProvider(ABC):
    """Candle window (oldest first) -> snapshot of the newest bar."""

    @abstractmethod
    def compute(self, window: Sequence[Candle]) -> Optional[IndicatorSnapshot]:
        ...


# ──────────────────────────────────────────────
# Series helpers
# ──────────────────────────────────────────────

def _ema(s: pd.Series, span: int) -> pd.Series:
    out = s.ewm(span=span, adjust=False).mean()
    out.iloc[: span - 1] = np.nan
    return out


def _wilder(s: pd.Series, n: int) -> pd.Series:
    return s.ewm(alpha=1.0 / n, adjust=False, min_periods=n).mean()


def _true_range(high: pd.Series, low: pd.Series, close: pd.Series) -> pd.Series:
    prev_close = close.shift(1)
    return pd.concat(
        [high - low, (high - prev_close).abs(), (low - prev_close).abs()], axis=1
    ).max(axis=1, skipna=False)


def rsi_series(close: pd.Series, n: int = 14) -> pd.Series:
    delta = close.diff()
    gain = _wilder(delta.clip(lower=0), n)
    loss = _wilder((-delta).clip(lower=0), n)
    rs = gain / loss
    out = 100.0 - 100.0 / (1.0 + rs)
    # flat or one-directional windows
    out = out.where(loss != 0, 100.0).where(~((gain == 0) & (loss == 0)), 50.0)
    return out.where(gain.notna() & loss.notna())


def atr_series(high: pd.Series, low: pd.Series, close: pd.Series, n: int = 14) -> pd.Series:
    return _wilder(_true_range(high, low, close), n)


def adx_series(high: pd.Series, low: pd.Series, close: pd.Series, n: int = 14) -> pd.Series:
    up = high.diff()
    down = -low.diff()
    plus_dm = up.where((up > down) & (up > 0), 0.0)
    minus_dm = down.where((down > up) & (down > 0), 0.0)
    atr = atr_series(high, low, close, n)
    plus_di = 100.0 * _wilder(plus_dm, n) / atr
    minus_di = 100.0 * _wilder(minus_dm, n) / atr
    dx = 100.0 * (plus_di - minus_di).abs() / (plus_di + minus_di)
    return _wilder(dx, n)


def macd_hist_series(close: pd.Series, fast: int = 12, slow: int = 26, signal: int = 9) -> pd.Series:
    macd = _ema(close, fast) - _ema(close, slow)
    sig = macd.ewm(span=signal, adjust=False, min_periods=signal).mean()
    return macd - sig


def bollinger_pb_series(close: pd.Series, n: int = 20, k: float = 2.0) -> pd.Series:
    mid = close.rolling(n).mean()
    sd = close.rolling(n).std(ddof=0)
    upper = mid + k * sd
    lower = mid - k * sd
    return (close - lower) / (upper - lower)


def composite_score(hlc3: pd.Series, n: int = 50, start: int = 1, end: int = 45) -> float:
    """
    Fourier for-loop score of the newest bar.

    The subject at each bar is the magnitude of the zero-frequency DFT bin of
    the last n hlc3 values, which is |rolling mean|. The score adds +1 for each
    lag in [start, end] where the current subject is above the lagged one and
    -1 otherwise, so it ranges over [-(end-start+1), end-start+1].
    """
    subject = hlc3.rolling(n).mean().abs().to_numpy()
    t = len(subject) - 1
    if t < (n - 1) + end:
        return NAN
    now = subject[t]
    past = subject[t - end: t - start + 1]
    if not np.isfinite(now) or not np.all(np.isfinite(past)):
        return NAN
    return float(np.where(now > past, 1, -1).sum())


def _last(s: pd.Series, back: int = 0) -> float:
    if len(s) <= back:
        return NAN
    v = s.iloc[-1 - back]
    v = float(v) if v is not None else NAN
    return v if math.isfinite(v) else NAN


class TechnicalIndicatorProvider(IndicatorProvider):
    def __init__(self, rsi_n: int = 14, atr_n: int = 14, adx_n: int = 14,
                 bb_n: int = 20, bb_k: float = 2.0, composite_n: int = 50,
                 composite_start: int = 1, composite_end: int = 45):
        self.rsi_n = rsi_n
        self.atr_n = atr_n
        self.adx_n = adx_n
        self.bb_n = bb_n
        self.bb_k = bb_k
        self.composite_n = composite_n
        self.composite_start = composite_start
        self.composite_end = composite_end

    def compute(self, window: Sequence[Candle]) -> Optional[IndicatorSnapshot]:
        if not window:
            return None

        df = pd.DataFrame(
            {
                "open": [c.open for c in window],
                "high": [c.high for c in window],
                "low": [c.low for c in window],
                "close": [c.close for c in window],
            },
            dtype="float64",
        )
        df = df.replace([np.inf, -np.inf], np.nan)
        close, high, low = df["close"], df["high"], df["low"]

        ema20 = _ema(close, 20)
        ema50 = _ema(close, 50)
        rsi = rsi_series(close, self.rsi_n)
        hist = macd_hist_series(close)
        hlc3 = (high + low + close) / 3.0

        e20, e50 = _last(ema20), _last(ema50)
        if math.isfinite(e20) and math.isfinite(e50) and e20 != e50:
            trend = "bullish" if e20 > e50 else "bearish"
        else:
            trend = "neutral"

        return IndicatorSnapshot(
            timestamp=window[-1].ts,
            close=_last(close),
            ema9=_last(_ema(close, 9)),
            ema20=e20,
            ema21=_last(_ema(close, 21)),
            ema50=e50,
            ema50_prev=_last(ema50, 1),
            rsi=_last(rsi),
            rsi_prev=_last(rsi, 1),
            atr=_last(atr_series(high, low, close, self.atr_n)),
            macd_hist=_last(hist),
            macd_hist_prev=_last(hist, 1),
            bb_pb=_last(bollinger_pb_series(close, self.bb_n, self.bb_k)),
            adx=_last(adx_series(high, low, close, self.adx_n)),
            composite_score=composite_score(hlc3, self.composite_n, self.composite_start, self.composite_end),
            trend=trend,
        )


class SnapshotCache:
    """Per-timeframe memo of the latest snapshot, keyed on the window's newest timestamp."""

    def __init__(self, provider: IndicatorProvider):
        self.provider = provider
        self._latest: dict[str, tuple] = {}
        self.computations = 0

    def get(self, timeframe: str, window: Sequence[Candle]) -> Optional[IndicatorSnapshot]:
        if not window:
            return None
        key = window[-1].ts
        hit = self._latest.get(timeframe)
        if hit is not None and hit[0] == key:
            return hit[1]
        self.computations += 1
        try:
            snap = self.provider.compute(window)
        except IndicatorUnavailable:
            raise
        except Exception as e:
            raise IndicatorUnavailable(timeframe, ["snapshot"], error=f"{type(e).__name__}: {e}") from e
        self._latest[timeframe] = (key, snap)
        return snap
