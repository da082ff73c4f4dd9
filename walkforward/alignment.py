"""
Multi-timeframe alignment.

Computes the window every timeframe covers, clips each series to it and
checks interval/phase regularity inside contiguous segments. Gaps wider than
SESSION_GAP_MULT x interval are treated as session boundaries and start a new
segment. Problems are collected (a few samples per timeframe and kind) and
raised together as one AlignmentError; nothing is dropped silently.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Mapping, Optional, Sequence

from walkforward import timeframes as tfs
from walkforward.errors import AlignmentError, Violation
from walkforward.types import AlignedWindow, Candle, format_ts

SESSION_GAP_MULT = 10
MAX_SAMPLES = 5


@dataclass
class AlignmentReport:
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    bars: dict = field(default_factory=dict)        # timeframe -> clipped bar count
    segments: dict = field(default_factory=dict)    # timeframe -> ((first_ts, last_ts), ...)
    violations: list = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not self.violations

    def summary(self) -> str:
        status = "PASS" if self.is_clean else "FAIL"
        lines = [
            f"Alignment: {status}",
            f"  Window: {format_ts(self.start)} .. {format_ts(self.end)}",
        ]
        for tf, n in self.bars.items():
            lines.append(f"  {tf}: {n} bars in {len(self.segments.get(tf, ()))} segment(s)")
        if self.violations:
            lines.append("  Violations:")
            for v in self.violations:
                lines.append(f"    - {v.describe()}")
        return "\n".join(lines)


class _Collector:
    def __init__(self, timeframe: str):
        self.timeframe = timeframe
        self._by_kind: dict[str, Violation] = {}

    def add(self, kind: str, sample: str) -> None:
        v = self._by_kind.get(kind)
        if v is None:
            v = Violation(self.timeframe, kind)
            self._by_kind[kind] = v
        v.count += 1
        if len(v.samples) < MAX_SAMPLES:
            v.samples.append(sample)

    def violations(self) -> list[Violation]:
        return list(self._by_kind.values())


def _split_segments(candles: Sequence[Candle], interval_s: int) -> list[tuple[int, int]]:
    """Index ranges [lo, hi) of contiguous runs; a wide gap closes the current run."""
    if not candles:
        return []
    bounds = []
    lo = 0
    for i in range(1, len(candles)):
        gap = (candles[i].ts - candles[i - 1].ts).total_seconds()
        if gap > SESSION_GAP_MULT * interval_s:
            bounds.append((lo, i))
            lo = i
    bounds.append((lo, len(candles)))
    return bounds


def _check_segment(candles: Sequence[Candle], lo: int, hi: int, interval_s: int, out: _Collector) -> None:
    anchor = candles[lo].ts
    for i in range(lo + 1, hi):
        prev, cur = candles[i - 1], candles[i]
        step = (cur.ts - prev.ts).total_seconds()
        if step <= 0:
            out.add("non_monotonic", f"{format_ts(prev.ts)} -> {format_ts(cur.ts)}")
            continue
        if step != interval_s:
            out.add("irregular_step", f"{format_ts(prev.ts)} -> {format_ts(cur.ts)} ({int(step)}s)")
        offset = (cur.ts - anchor).total_seconds()
        if offset % interval_s != 0:
            out.add("phase_offset", f"{format_ts(cur.ts)} is {int(offset % interval_s)}s off {format_ts(anchor)}")


def inspect_alignment(series: Mapping[str, Sequence[Candle]]) -> tuple[AlignmentReport, dict]:
    """Run every check and return (report, clipped series) without raising."""
    report = AlignmentReport()
    ordered = tfs.sort_timeframes(series)

    empty = [tf for tf in ordered if not series[tf]]
    for tf in empty:
        report.violations.append(Violation(tf, "empty_series", 1))
    if empty or not ordered:
        return report, {}

    report.start = max(series[tf][0].ts for tf in ordered)
    report.end = min(series[tf][-1].ts for tf in ordered)
    if report.start >= report.end:
        report.violations.append(
            Violation("*", "empty_overlap", 1, [f"{format_ts(report.start)} >= {format_ts(report.end)}"])
        )
        return report, {}

    clipped: dict[str, tuple] = {}
    for tf in ordered:
        interval_s = tfs.seconds(tf)
        bars = tuple(c for c in series[tf] if report.start <= c.ts <= report.end)
        collector = _Collector(tf)
        if not bars:
            collector.add("empty_series", "no bars inside window")
        segments = _split_segments(bars, interval_s)
        for lo, hi in segments:
            _check_segment(bars, lo, hi, interval_s, collector)
        clipped[tf] = bars
        report.bars[tf] = len(bars)
        report.segments[tf] = tuple((bars[lo].ts, bars[hi - 1].ts) for lo, hi in segments)
        report.violations.extend(collector.violations())

    return report, clipped


def align_timeframes(series: Mapping[str, Sequence[Candle]]) -> AlignedWindow:
    """Build the immutable aligned window for one instrument or raise AlignmentError."""
    report, clipped = inspect_alignment(series)
    if report.violations:
        window = (report.start, report.end) if report.start is not None else None
        raise AlignmentError(report.violations, window=window)
    return AlignedWindow(start=report.start, end=report.end, series=clipped, segments=dict(report.segments))
