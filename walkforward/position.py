"""
Position lifecycle for one instrument: flat -> open -> closed.

Stops and targets are resolved against the forward price path: the finer
bars inside each driver bar when available, else the driver bar's high/low.
When a single bar reaches both levels the configured tie-break policy
decides; the default assumes the stop was hit first. Breakeven and trailing
adjustments only ever move the stop toward the position's favour.
"""
from __future__ import annotations

import math
from datetime import datetime
from typing import Optional, Sequence

from walkforward.config import AssetProfile
from walkforward.errors import IndicatorUnavailable
from walkforward.indicators import IndicatorSnapshot
from walkforward.signals import TrendFn, pick_trend, trend_for
from walkforward.types import Candle, Direction, ExitReason, Position, TradeRecord


class TieBreak:
    STOP_FIRST = "stop_first"
    TARGET_FIRST = "target_first"
    NEAREST_TO_OPEN = "nearest_to_open"


def resolve_intrabar(position: Position, bar: Candle, policy: str = TieBreak.STOP_FIRST) -> Optional[tuple]:
    """Return (reason, price) if the bar reaches the stop or the target, else None."""
    if position.direction == Direction.BUY:
        stop_hit = bar.low <= position.stop_loss
        target_hit = bar.high >= position.take_profit
    else:
        stop_hit = bar.high >= position.stop_loss
        target_hit = bar.low <= position.take_profit

    stop = (ExitReason.STOP_LOSS, position.stop_loss)
    target = (ExitReason.TAKE_PROFIT, position.take_profit)
    if stop_hit and target_hit:
        if policy == TieBreak.TARGET_FIRST:
            return target
        if policy == TieBreak.NEAREST_TO_OPEN:
            to_stop = abs(bar.open - position.stop_loss)
            to_target = abs(bar.open - position.take_profit)
            return target if to_target < to_stop else stop
        return stop
    if stop_hit:
        return stop
    if target_hit:
        return target
    return None


class PositionSimulator:
    def __init__(
        self,
        symbol: str,
        profile: AssetProfile,
        max_hold_minutes: float = 240,
        tie_break: str = TieBreak.STOP_FIRST,
        trend_fn: TrendFn = pick_trend,
    ):
        self.symbol = symbol
        self.profile = profile
        self.max_hold_minutes = max_hold_minutes
        self.tie_break = tie_break
        self.trend_fn = trend_fn
        self.position: Optional[Position] = None
        self._bars_held = 0
        self._deals = 0

    @property
    def is_open(self) -> bool:
        return self.position is not None

    # ──────────────────────────────────────────────
    # Entry
    # ──────────────────────────────────────────────

    def stop_distance(self, atr: float, price: float) -> float:
        if atr is None or not math.isfinite(atr) or atr < 0:
            raise IndicatorUnavailable("atr", ["atr"])
        return max(atr * self.profile.stop_atr_mult, self.profile.min_stop_distance(price))

    def open(
        self,
        direction: str,
        price: float,
        ts: datetime,
        atr: float,
        reason: str = "",
        size_units: float = 0.0,
        bar_index: int = 0,
        alignment: str = "full",
        indicators: Optional[dict] = None,
    ) -> Position:
        if self.position is not None:
            raise RuntimeError(f"{self.symbol}: position already open")
        if direction not in (Direction.BUY, Direction.SELL):
            raise ValueError(f"Unknown direction: {direction!r}")

        p = self.profile
        s = Direction.sign(direction)
        entry = p.round_price(price)
        dist = self.stop_distance(atr, entry)
        stop = p.round_price(entry - s * dist)
        target = p.round_price(entry + s * dist * p.reward_multiple)

        self.position = Position(
            direction=direction,
            entry_price=entry,
            entry_time=ts,
            stop_loss=stop,
            take_profit=target,
            risk_distance=p.round_price(abs(entry - stop)),
            initial_stop=stop,
            size_units=size_units,
            entry_reason=reason,
            entry_bar_index=bar_index,
            alignment=alignment,
            indicators_on_open=dict(indicators or {}),
        )
        self._bars_held = 0
        return self.position

    def resize(self, size_units: float) -> None:
        if self.position is not None:
            self.position.size_units = size_units

    # ──────────────────────────────────────────────
    # Management
    # ──────────────────────────────────────────────

    def progress_r(self, price: float) -> float:
        pos = self.position
        if pos is None or pos.risk_distance <= 0:
            return 0.0
        return Direction.sign(pos.direction) * (price - pos.entry_price) / pos.risk_distance

    def target_progress(self, price: float) -> float:
        pos = self.position
        if pos is None:
            return 0.0
        span = abs(pos.take_profit - pos.entry_price)
        if span <= 0:
            return 0.0
        return Direction.sign(pos.direction) * (price - pos.entry_price) / span

    def _tighten(self, level: float) -> bool:
        pos = self.position
        level = self.profile.round_price(level)
        if Direction.sign(pos.direction) * (level - pos.stop_loss) > 0:
            pos.stop_loss = level
            return True
        return False

    def on_bar(
        self,
        bar: Candle,
        bar_time: datetime,
        atr: float = math.nan,
        fast: Optional[IndicatorSnapshot] = None,
        slow: Optional[IndicatorSnapshot] = None,
        indicators: Optional[dict] = None,
        path: Optional[Sequence[tuple]] = None,
    ) -> Optional[TradeRecord]:
        """
        Advance an open position by one driver bar; returns the TradeRecord if it closed.

        path holds (candle, close_time) pairs of a finer series covering the bar.
        When given, stops and targets are resolved against it in order and the
        exit is stamped with the finer bar's close. Otherwise the driver bar is used.
        """
        pos = self.position
        if pos is None:
            return None
        self._bars_held += 1
        s = Direction.sign(pos.direction)

        for step, step_time in (path or ((bar, bar_time),)):
            hit = resolve_intrabar(pos, step, self.tie_break)
            if hit is not None:
                reason, price = hit
                return self.close(price, step_time, reason, indicators)

        if pos.risk_distance > 0:
            fav = s * ((bar.high if s > 0 else bar.low) - pos.entry_price) / pos.risk_distance
            adv = s * (pos.entry_price - (bar.low if s > 0 else bar.high)) / pos.risk_distance
            pos.max_favorable = max(pos.max_favorable, fav)
            pos.max_adverse = max(pos.max_adverse, adv)

        r_now = self.progress_r(bar.close)

        if not pos.breakeven_applied and r_now >= self.profile.breakeven_r:
            self._tighten(pos.entry_price)
            pos.breakeven_applied = True

        if r_now >= self.profile.trailing_r and atr is not None and math.isfinite(atr) and atr > 0:
            if self._tighten(bar.close - s * atr * self.profile.trail_atr_mult):
                pos.trailing_applied = True

        if not pos.soft_exit_applied and self.target_progress(bar.close) >= self.profile.soft_exit_progress:
            against = trend_for(Direction.opposite(pos.direction))
            if self.trend_fn(fast) == against and self.trend_fn(slow) == against:
                self._tighten(pos.entry_price)
                pos.soft_exit_applied = True

        held = (bar_time - pos.entry_time).total_seconds() / 60.0
        if held >= self.max_hold_minutes:
            return self.close(bar.close, bar_time, ExitReason.TIMEOUT, indicators)
        return None

    # ──────────────────────────────────────────────
    # Exit
    # ──────────────────────────────────────────────

    def close(self, price: float, ts: datetime, reason: str, indicators: Optional[dict] = None) -> TradeRecord:
        pos = self.position
        if pos is None:
            raise RuntimeError(f"{self.symbol}: no open position to close")
        if reason not in ExitReason.ALL:
            raise ValueError(f"Unknown exit reason: {reason!r}")

        p = self.profile
        exit_price = p.round_price(price)
        points = round(Direction.sign(pos.direction) * (exit_price - pos.entry_price), p.price_digits)
        risk = pos.risk_distance
        self._deals += 1

        record = TradeRecord(
            deal_id=f"{self.symbol}-{pos.entry_time:%Y%m%d%H%M}-{self._deals}",
            symbol=self.symbol,
            direction=pos.direction,
            entry_time=pos.entry_time,
            exit_time=ts,
            entry_price=pos.entry_price,
            exit_price=exit_price,
            initial_stop=pos.initial_stop,
            final_stop=pos.stop_loss,
            take_profit=pos.take_profit,
            exit_reason=reason,
            entry_reason=pos.entry_reason,
            risk_distance=risk,
            rr=round(abs(pos.take_profit - pos.entry_price) / risk, 4) if risk > 0 else 0.0,
            r_multiple=round(points / risk, 4) if risk > 0 else 0.0,
            points=points,
            pips=round(p.to_pips(points), 2),
            size_units=pos.size_units,
            pnl_money=round(points * pos.size_units, 2),
            hold_minutes=(ts - pos.entry_time).total_seconds() / 60.0,
            bars_held=self._bars_held,
            mfe_r=round(pos.max_favorable, 4),
            mae_r=round(pos.max_adverse, 4),
            breakeven_applied=pos.breakeven_applied,
            trailing_applied=pos.trailing_applied,
            alignment=pos.alignment,
            indicators_on_open=pos.indicators_on_open,
            indicators_on_close=dict(indicators or {}),
        )
        self.position = None
        self._bars_held = 0
        return record
