from __future__ import annotations

import json
import math
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

import pytest

from walkforward import timeframes as tfs
from walkforward.data_loader import resample_candles
from walkforward.indicators import IndicatorProvider, IndicatorSnapshot
from walkforward.types import Candle

T0 = datetime(2026, 1, 5, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _isolated_db(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DB_PATH", str(tmp_path / "walkforward_test.sqlite3"))
    for name in ("SIM_MIN_BARS", "SIM_HISTORY_WINDOW", "SIM_TIMEFRAMES", "SIM_TIE_BREAK", "SIM_WORKERS",
                 "SIM_VARIANT_TIMEFRAMES", "SIM_DRIVER_TIMEFRAME", "SIM_DERIVE_TIMEFRAMES", "SIM_EXIT_TIMEFRAME",
                 "WF_LOG_ECHO"):
        monkeypatch.delenv(name, raising=False)


def bar(ts: datetime, o: float, h: float, lo: float, c: float) -> Candle:
    return Candle(ts=ts, open=o, high=h, low=lo, close=c)


def wave_series(n: int, start: datetime = T0, tf: str = "M5", base: float = 1.10,
                amp: float = 0.002, wick: float = 0.0002) -> list[Candle]:
    step = tfs.interval(tf)
    out = []
    prev = base
    for i in range(n):
        close = base + amp * math.sin(i / 20.0) + amp * 0.25 * math.sin(i / 3.0)
        o = prev
        out.append(Candle(
            ts=start + i * step,
            open=round(o, 5),
            high=round(max(o, close) + wick, 5),
            low=round(min(o, close) - wick, 5),
            close=round(close, 5),
        ))
        prev = close
    return out


def multi_tf(n_m5: int, start: datetime = T0) -> dict[str, list[Candle]]:
    m5 = wave_series(n_m5, start)
    return {
        "M5": m5,
        "M15": resample_candles(m5, "M5", "M15"),
        "H1": resample_candles(m5, "M5", "H1"),
    }


def write_symbol_files(data_dir: Path, symbol: str, series: dict[str, list[Candle]]) -> None:
    folder = data_dir / symbol
    folder.mkdir(parents=True, exist_ok=True)
    for tf, candles in series.items():
        (folder / f"{symbol}_{tf}.json").write_text(
            json.dumps([c.as_dict() for c in candles]), encoding="utf-8"
        )


class FixedProvider(IndicatorProvider):
    """Returns a preset snapshot per newest-bar timestamp, else a default."""

    def __init__(self, default: IndicatorSnapshot, by_ts: Optional[dict] = None):
        self.default = default
        self.by_ts = dict(by_ts or {})
        self.calls = 0

    def compute(self, window):
        if not window:
            return None
        self.calls += 1
        snap = self.by_ts.get(window[-1].ts, self.default)
        return replace(snap, timestamp=window[-1].ts, close=window[-1].close)


@pytest.fixture
def make_bar() -> Callable[..., Candle]:
    return bar


@pytest.fixture
def make_wave() -> Callable[..., list[Candle]]:
    return wave_series


@pytest.fixture
def make_multi_tf() -> Callable[..., dict]:
    return multi_tf


@pytest.fixture
def write_symbol() -> Callable[..., None]:
    return write_symbol_files


@pytest.fixture
def fixed_provider() -> Callable[..., FixedProvider]:
    return FixedProvider


@pytest.fixture
def t0() -> datetime:
    return T0


@pytest.fixture
def minutes() -> Callable[[int], timedelta]:
    return lambda n: timedelta(minutes=n)
