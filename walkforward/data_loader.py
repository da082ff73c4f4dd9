"""
Historical candle ingestion.

Reads per-timeframe candle files for an instrument, drops records without a
usable timestamp, sorts, de-duplicates (last write wins) and optionally derives
coarser timeframes (e.g. H4 from H1) by resampling.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterable, Optional

import pandas as pd

from shared.logger import log_event
from walkforward import timeframes as tfs
from walkforward.errors import InsufficientDataError, MissingTimestamp
from walkforward.types import Candle, parse_timestamp

FILE_EXTENSIONS = (".json", ".jsonl", ".csv", ".parquet")
OHLC = ["open", "high", "low", "close"]


def candles_from_records(records: Iterable[dict[str, Any]], source: str = "records") -> list[Candle]:
    """Build an ordered, de-duplicated candle list from raw mapping records."""
    by_ts: dict = {}
    dropped = 0
    sample = None
    for rec in records:
        try:
            candle = Candle.from_mapping(rec)
        except MissingTimestamp as e:
            dropped += 1
            if sample is None:
                sample = str(e)
            continue
        by_ts[candle.ts] = candle

    if dropped:
        log_event("WARN", "loader", f"dropped {dropped} record(s) without timestamp",
                  path=source, sample=sample)
    return [by_ts[ts] for ts in sorted(by_ts)]


def candles_from_frame(df: pd.DataFrame, source: str = "frame") -> list[Candle]:
    ts_col = next((c for c in ("timestamp", "time", "datetime", "ts_utc") if c in df.columns), None)
    if ts_col is None:
        raise ValueError(f"Candle data has no timestamp column: {source}")
    for c in OHLC:
        if c not in df.columns:
            raise ValueError(f"Candle data missing column {c}: {source}")

    out = df.copy()
    out["ts_utc"] = pd.to_datetime(out[ts_col], utc=True, errors="coerce")
    missing = int(out["ts_utc"].isna().sum())
    if missing:
        log_event("WARN", "loader", f"dropped {missing} record(s) without timestamp", path=source)
    for c in OHLC:
        out[c] = pd.to_numeric(out[c], errors="coerce")

    out = out.dropna(subset=["ts_utc"])
    out["ts_utc"] = out["ts_utc"].dt.floor("s")
    out = out.sort_values("ts_utc", kind="stable").drop_duplicates(subset=["ts_utc"], keep="last").reset_index(drop=True)

    return [
        Candle(
            ts=parse_timestamp(row.ts_utc.to_pydatetime()),
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
        )
        for row in out[["ts_utc"] + OHLC].itertuples(index=False)
    ]


def load_timeframe_file(path: Path) -> list[Candle]:
    p = Path(path)
    suffix = p.suffix.lower()
    if suffix == ".json":
        data = json.loads(p.read_text(encoding="utf-8"))
        if isinstance(data, dict):
            data = data.get("candles", [])
        if not isinstance(data, list):
            raise ValueError(f"JSON candle file must hold a list: {p}")
        return candles_from_records(data, source=str(p))
    if suffix == ".jsonl":
        records = []
        with p.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    records.append(json.loads(line))
        return candles_from_records(records, source=str(p))
    if suffix == ".csv":
        return candles_from_frame(pd.read_csv(p), source=str(p))
    if suffix == ".parquet":
        return candles_from_frame(pd.read_parquet(p), source=str(p))
    raise ValueError(f"Unsupported candle file type: {p}")


def merge_candles(existing: Iterable[Candle], incoming: Iterable[Candle]) -> list[Candle]:
    """Merge an incremental feed into an existing series; incoming bars replace same-timestamp bars."""
    by_ts = {c.ts: c for c in existing}
    for c in incoming:
        by_ts[c.ts] = c
    return [by_ts[ts] for ts in sorted(by_ts)]


def resample_candles(candles: list[Candle], source_tf: str, target_tf: str) -> list[Candle]:
    """Aggregate a finer series into a coarser one; buckets with missing source bars are dropped."""
    source_tf = tfs.normalize(source_tf)
    target_tf = tfs.normalize(target_tf)
    if tfs.seconds(target_tf) % tfs.seconds(source_tf) != 0:
        raise ValueError(f"{target_tf} is not a multiple of {source_tf}")
    if not candles:
        return []

    per_bucket = tfs.seconds(target_tf) // tfs.seconds(source_tf)
    df = pd.DataFrame(
        {
            "ts_utc": pd.to_datetime([c.ts for c in candles], utc=True),
            "open": [c.open for c in candles],
            "high": [c.high for c in candles],
            "low": [c.low for c in candles],
            "close": [c.close for c in candles],
        }
    ).set_index("ts_utc")

    agg = {"open": "first", "high": "max", "low": "min", "close": "last"}
    res = df.resample(tfs.PANDAS_FREQ[target_tf], label="left", closed="left").agg(agg)
    counts = df["close"].resample(tfs.PANDAS_FREQ[target_tf], label="left", closed="left").count()
    res = res[counts == per_bucket].dropna(subset=OHLC).reset_index()
    return candles_from_frame(res, source=f"resample:{source_tf}->{target_tf}")


def find_timeframe_file(data_dir: Path, symbol: str, timeframe: str) -> Optional[Path]:
    sym = symbol.upper()
    for base in (Path(data_dir) / sym, Path(data_dir)):
        for ext in FILE_EXTENSIONS:
            p = base / f"{sym}_{timeframe}{ext}"
            if p.exists():
                return p
    return None


def load_symbol_series(
    data_dir: Path,
    symbol: str,
    timeframes: Iterable[str],
    derive: Optional[dict] = None,
) -> dict[str, list[Candle]]:
    """Load every requested timeframe for one instrument."""
    derive = dict(derive or {})
    wanted = tfs.sort_timeframes(timeframes)
    series: dict[str, list[Candle]] = {}

    for tf in wanted:
        path = find_timeframe_file(data_dir, symbol, tf)
        if path is not None:
            series[tf] = load_timeframe_file(path)

    for tf in wanted:
        if tf in series:
            continue
        source = derive.get(tf)
        if source is None:
            raise InsufficientDataError(tf, 1, 0, detail=f"no candle file for {symbol} in {data_dir}")
        source = tfs.normalize(source)
        if source not in series:
            path = find_timeframe_file(data_dir, symbol, source)
            if path is None:
                raise InsufficientDataError(source, 1, 0, detail=f"no source file to derive {tf} for {symbol}")
            series[source] = load_timeframe_file(path)
        series[tf] = resample_candles(series[source], source, tf)
        log_event("INFO", "loader", f"derived {tf} from {source}", symbol=symbol, bars=len(series[tf]))

    return {tf: series[tf] for tf in wanted}
