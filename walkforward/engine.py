"""
Walk-forward simulation loop (bar-based).

Replays the driver timeframe bar by bar. Every other timeframe advances
through its own cursor and only contributes bars that have closed by the
driver bar's close, so nothing after the current moment is visible to the
indicators, the rules or the position manager. A finer exit timeframe (M1 by
default) supplies the price path an open position is resolved against.
"""
from __future__ import annotations

import math
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional

from walkforward import timeframes as tfs
from walkforward.buffer import CandleBuffer
from walkforward.config import AssetProfile, SimulationSettings
from walkforward.errors import IndicatorUnavailable, InsufficientDataError
from walkforward.indicators import IndicatorProvider, SnapshotCache, TechnicalIndicatorProvider
from walkforward.metrics import PerformanceReport, compute_performance
from walkforward.position import PositionSimulator
from walkforward.signals import (
    ANCHOR,
    CONFIRMATION,
    EXECUTION,
    RuleSet,
    SignalEngine,
    TrendFn,
    pick_trend,
    trend_for,
)
from walkforward.sizing import SizingConfig, calculate_position_size
from walkforward.types import (
    AlignedWindow,
    Candle,
    EquityPoint,
    ExitReason,
    Position,
    SignalDecision,
    TradeRecord,
    format_ts,
)

INDICATOR_UNAVAILABLE = "indicator_unavailable"
MAX_REJECTION_SAMPLES = 5
SAMPLE_KEYS = ("trends", "fired_long", "fired_short", "timeframe", "missing", "error")


# ──────────────────────────────────────────────
# Run state
# ──────────────────────────────────────────────

@dataclass
class SimulationContext:
    """Everything one instrument run owns. Built fresh per run."""
    symbol: str
    settings: SimulationSettings
    profile: AssetProfile
    rule_set: RuleSet
    balance: float
    equity: float = 0.0
    trades: list = field(default_factory=list)
    equity_curve: list = field(default_factory=list)
    rejections: Counter = field(default_factory=Counter)
    rejection_samples: dict = field(default_factory=dict)
    skipped_signals: Counter = field(default_factory=Counter)
    decisions: list = field(default_factory=list)
    bars_processed: int = 0
    warmup_bars: int = 0
    duplicate_bars: int = 0

    def reject(self, reason: str, ts: datetime, context: Optional[dict] = None) -> None:
        self.rejections[reason] += 1
        samples = self.rejection_samples.setdefault(reason, [])
        if len(samples) < MAX_REJECTION_SAMPLES:
            sample = {"time": format_ts(ts)}
            if context:
                sample.update({k: v for k, v in context.items() if k in SAMPLE_KEYS})
            samples.append(sample)

    def record(self, trade: TradeRecord) -> None:
        self.trades.append(trade)
        self.equity = round(self.equity + trade.pips, 4)
        self.equity_curve.append(EquityPoint(trade.exit_time, self.equity))
        self.balance = round(self.balance + trade.pnl_money, 2)


@dataclass
class SimulationResult:
    symbol: str
    rule_set: str
    asset_class: str
    timeframes: tuple
    window_start: Optional[datetime]
    window_end: Optional[datetime]
    trades: list
    equity_curve: list
    report: PerformanceReport
    rejection_samples: dict = field(default_factory=dict)
    skipped_signals: dict = field(default_factory=dict)
    decisions: list = field(default_factory=list)
    open_position: Optional[Position] = None
    bars_processed: int = 0
    warmup_bars: int = 0
    duplicate_bars: int = 0
    snapshot_computations: int = 0
    settings: dict = field(default_factory=dict)
    profile: dict = field(default_factory=dict)

    @property
    def final_balance(self) -> float:
        return self.report.final_balance


# ──────────────────────────────────────────────
# Simulator
# ──────────────────────────────────────────────

class WalkForwardSimulator:
    def __init__(
        self,
        settings: SimulationSettings,
        rule_set: RuleSet,
        provider: Optional[IndicatorProvider] = None,
        profile: Optional[AssetProfile] = None,
        record_decisions: bool = False,
        trend_fn: TrendFn = pick_trend,
    ):
        self.settings = settings
        self.rule_set = rule_set
        self.provider = provider or TechnicalIndicatorProvider()
        self.profile = profile
        self.record_decisions = record_decisions
        self.trend_fn = trend_fn
        self.engine = SignalEngine(rule_set, trend_fn=trend_fn)

    def _close_time(self, ts: datetime, tf: str) -> datetime:
        if self.settings.timestamp_convention == "open":
            return ts + tfs.interval(tf)
        return ts

    def _check_history(self, window: AlignedWindow) -> None:
        need = self.settings.min_bars
        for tf in self.rule_set.timeframes:
            have = len(window.series.get(tf, ()))
            if have < need:
                raise InsufficientDataError(tf, need, have, detail="inside aligned window")

    def _snapshots(self, cache: SnapshotCache, buffers: dict) -> dict:
        snaps = {}
        for tf in self.rule_set.timeframes:
            snap = cache.get(tf, buffers[tf].window())
            if snap is None:
                raise IndicatorUnavailable(tf, ["snapshot"])
            snaps[tf] = snap
        return snaps

    def _alignment(self, direction: str, snaps: dict) -> str:
        roles = self.rule_set.roles
        want = trend_for(direction)
        agree = sum(1 for role in (CONFIRMATION, ANCHOR) if self.trend_fn(snaps.get(roles[role])) == want)
        return {2: "full", 1: "partial"}.get(agree, "divergent")

    @staticmethod
    def _indicator_dump(snaps: dict) -> dict[str, Any]:
        return {tf: snap.to_dict() for tf, snap in snaps.items() if snap is not None}

    @staticmethod
    def _unavailable_context(e: IndicatorUnavailable) -> dict[str, Any]:
        ctx: dict[str, Any] = {"timeframe": e.timeframe, "missing": e.missing}
        if e.error:
            ctx["error"] = e.error
        return ctx

    def _exit_timeframe(self, window: AlignedWindow, drv: str) -> Optional[str]:
        """Finer series that stops and targets are resolved against, if the window carries one."""
        tf = self.settings.exit_timeframe
        if not tf:
            return None
        tf = tfs.normalize(tf)
        if tf not in window.timeframes or tfs.seconds(tf) >= tfs.seconds(drv):
            return None
        return tf

    def _advance(self, window: AlignedWindow, tf: str, cursors: dict, now: datetime) -> list:
        series = window.candles(tf)
        k = start = cursors[tf]
        while k < len(series) and self._close_time(series[k].ts, tf) <= now:
            k += 1
        cursors[tf] = k
        return list(series[start:k])

    def run(self, symbol: str, window: AlignedWindow) -> SimulationResult:
        settings = self.settings
        profile = self.profile or settings.profile(symbol)
        drv = tfs.normalize(settings.driver_timeframe)
        if drv != self.rule_set.timeframes[0]:
            raise ValueError(f"driver {drv} must be the rule set's execution timeframe {self.rule_set.timeframes[0]}")
        self._check_history(window)

        ctx = SimulationContext(
            symbol=symbol,
            settings=settings,
            profile=profile,
            rule_set=self.rule_set,
            balance=settings.starting_balance,
        )
        sim = PositionSimulator(
            symbol,
            profile,
            max_hold_minutes=settings.max_hold_minutes,
            tie_break=settings.tie_break,
            trend_fn=self.trend_fn,
        )
        sizing = SizingConfig(risk_per_trade=settings.risk_per_trade, leverage=profile.leverage)
        cache = SnapshotCache(self.provider)

        timeframes = tfs.sort_timeframes(self.rule_set.timeframes)
        buffers = {tf: CandleBuffer(tf, settings.history_window) for tf in timeframes}
        others = [tf for tf in timeframes if tf != drv]
        exit_tf = self._exit_timeframe(window, drv)
        cursors = {tf: 0 for tf in others}
        if exit_tf is not None:
            cursors[exit_tf] = 0
        roles = self.rule_set.roles
        exec_tf, conf_tf = roles[EXECUTION], roles[CONFIRMATION]

        driver_bars = window.candles(drv)
        last_bar: Optional[Candle] = None
        last_time: Optional[datetime] = None
        last_snaps: dict = {}

        for i, bar in enumerate(driver_bars):
            if not buffers[drv].push(bar):
                ctx.duplicate_bars += 1
                continue
            now = self._close_time(bar.ts, drv)
            if not ctx.equity_curve:
                ctx.equity_curve.append(EquityPoint(now, 0.0))
            ctx.bars_processed += 1
            last_bar, last_time = bar, now

            for tf in others:
                for candle in self._advance(window, tf, cursors, now):
                    buffers[tf].push(candle)
            path = []
            if exit_tf is not None:
                fresh = self._advance(window, exit_tf, cursors, now)
                path = [(c, self._close_time(c.ts, exit_tf)) for c in fresh]

            ready = all(buffers[tf].is_ready(settings.min_bars) for tf in self.rule_set.timeframes)
            snaps: dict = {}
            unavailable: Optional[IndicatorUnavailable] = None
            if ready:
                try:
                    snaps = self._snapshots(cache, buffers)
                except IndicatorUnavailable as e:
                    unavailable = e
                last_snaps = snaps or last_snaps

            if sim.is_open:
                conf_snap = snaps.get(conf_tf)
                trade = sim.on_bar(
                    bar,
                    now,
                    atr=conf_snap.atr if conf_snap is not None else math.nan,
                    fast=snaps.get(exec_tf),
                    slow=conf_snap,
                    indicators=self._indicator_dump(snaps),
                    path=path,
                )
                if trade is not None:
                    ctx.record(trade)

            if not ready:
                ctx.warmup_bars += 1
                continue
            if unavailable is not None:
                ctx.reject(INDICATOR_UNAVAILABLE, now, self._unavailable_context(unavailable))
                self._log_decision(ctx, now, None, INDICATOR_UNAVAILABLE)
                continue

            decision = self.engine.evaluate(
                snaps, {tf: buffers[tf].window() for tf in self.rule_set.timeframes}
            )
            self._log_decision(ctx, now, decision.signal, decision.reason)
            if not decision.is_signal:
                ctx.reject(decision.reason, now, dict(decision.context))
                continue

            if sim.is_open:
                if sim.position.direction == decision.signal:
                    ctx.skipped_signals["position_open"] += 1
                    continue
                ctx.record(sim.close(bar.close, now, ExitReason.REVERSE_SIGNAL, self._indicator_dump(snaps)))

            self._open(ctx, sim, sizing, decision, bar, now, i, snaps)

        open_position = None
        if sim.is_open:
            if settings.close_open_at_end:
                ctx.record(sim.close(last_bar.close, last_time, ExitReason.END_OF_DATA,
                                     self._indicator_dump(last_snaps)))
            else:
                open_position = sim.position

        report = compute_performance(
            ctx.trades,
            [p.equity for p in ctx.equity_curve],
            ctx.rejections,
            starting_balance=settings.starting_balance,
        )
        return SimulationResult(
            symbol=symbol,
            rule_set=self.rule_set.name,
            asset_class=self.rule_set.asset_class,
            timeframes=self.rule_set.timeframes,
            window_start=window.start,
            window_end=window.end,
            trades=list(ctx.trades),
            equity_curve=list(ctx.equity_curve),
            report=report,
            rejection_samples=ctx.rejection_samples,
            skipped_signals=dict(ctx.skipped_signals),
            decisions=ctx.decisions,
            open_position=open_position,
            bars_processed=ctx.bars_processed,
            warmup_bars=ctx.warmup_bars,
            duplicate_bars=ctx.duplicate_bars,
            snapshot_computations=cache.computations,
            settings=settings.as_dict(),
            profile=asdict(profile),
        )

    def _log_decision(self, ctx: SimulationContext, ts: datetime, signal: Optional[str], reason: str) -> None:
        if self.record_decisions:
            ctx.decisions.append((ts, signal, reason))

    def _open(
        self,
        ctx: SimulationContext,
        sim: PositionSimulator,
        sizing: SizingConfig,
        decision: SignalDecision,
        bar: Candle,
        now: datetime,
        index: int,
        snaps: dict,
    ) -> None:
        conf_snap = snaps.get(self.rule_set.roles[CONFIRMATION])
        atr = conf_snap.atr if conf_snap is not None else math.nan
        try:
            pos = sim.open(
                decision.signal,
                bar.close,
                now,
                atr,
                reason=decision.reason,
                bar_index=index,
                alignment=self._alignment(decision.signal, snaps),
                indicators=self._indicator_dump(snaps),
            )
        except IndicatorUnavailable as e:
            ctx.reject(INDICATOR_UNAVAILABLE, now, self._unavailable_context(e))
            return
        sim.resize(calculate_position_size(ctx.balance, pos.risk_distance, pos.entry_price, sizing))
