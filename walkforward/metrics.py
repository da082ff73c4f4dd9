"""
Performance analytics for a simulated run.

Computes: win rate, profit factor, expectancy, max drawdown on the realized
equity curve, exit-reason and direction splits, entry-alignment buckets and
the histogram of bars where no signal was produced.
"""
from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

import numpy as np

from walkforward.types import Direction, ExitReason, TradeRecord


def _safe_div(a: float, b: float) -> float:
    if b == 0:
        return 0.0
    return a / b


def max_drawdown(values: Iterable[float]) -> float:
    """Largest fall from a running peak, found in one forward pass."""
    eq = np.fromiter(values, dtype=float)
    if eq.size == 0:
        return 0.0
    running_max = np.maximum.accumulate(eq)
    return float(np.max(running_max - eq))


def max_drawdown_pct(values: Iterable[float]) -> float:
    eq = np.fromiter(values, dtype=float)
    if eq.size == 0:
        return 0.0
    running_max = np.maximum.accumulate(eq)
    # peaks at or below zero carry no percentage
    drawdowns = np.divide(running_max - eq, running_max, out=np.zeros_like(eq), where=running_max > 0)
    return float(np.max(drawdowns))


def profit_factor(gross_profit: float, gross_loss: float) -> float:
    """gross_loss is a positive magnitude; no losses with some profit gives inf."""
    if gross_loss == 0:
        return float("inf") if gross_profit > 0 else 0.0
    return gross_profit / gross_loss


@dataclass
class PerformanceReport:
    total_trades: int = 0
    wins: int = 0
    losses: int = 0
    breakeven_trades: int = 0
    win_rate: float = 0.0

    gross_profit_pips: float = 0.0
    gross_loss_pips: float = 0.0
    profit_factor: float = 0.0
    net_pips: float = 0.0
    expectancy_pips: float = 0.0
    avg_win_pips: float = 0.0
    avg_loss_pips: float = 0.0
    avg_r_multiple: float = 0.0

    max_drawdown: float = 0.0          # in equity-curve units (pips)
    max_drawdown_pct: float = 0.0      # on the money balance curve
    avg_hold_minutes: float = 0.0

    starting_balance: float = 0.0
    final_balance: float = 0.0

    exit_reasons: dict = field(default_factory=dict)
    direction_split: dict = field(default_factory=dict)
    alignment: dict = field(default_factory=dict)
    rejection_reasons: dict = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        out = {}
        for k, v in self.__dict__.items():
            if isinstance(v, float) and math.isinf(v):
                out[k] = "inf"
            elif isinstance(v, dict):
                out[k] = dict(v)
            else:
                out[k] = v
        return out

    def summary(self) -> str:
        pf = "inf" if math.isinf(self.profit_factor) else f"{self.profit_factor:.2f}"
        lines = [
            "=== Walk-forward Results ===",
            f"  Trades:         {self.total_trades} ({self.wins}W / {self.losses}L / {self.breakeven_trades}BE)",
            f"  Win Rate:       {self.win_rate:.1%}",
            f"  Profit Factor:  {pf}",
            f"  Net:            {self.net_pips:.1f} pips",
            f"  Expectancy:     {self.expectancy_pips:.2f} pips",
            f"  Avg Win/Loss:   {self.avg_win_pips:.1f} / {self.avg_loss_pips:.1f} pips",
            f"  Max Drawdown:   {self.max_drawdown:.1f} pips ({self.max_drawdown_pct:.2%} of balance)",
            f"  Avg Hold:       {self.avg_hold_minutes:.0f} min",
            f"  Balance:        {self.starting_balance:.2f} -> {self.final_balance:.2f}",
        ]
        if self.exit_reasons:
            lines.append("  Exits:")
            for reason, n in self.exit_reasons.items():
                lines.append(f"    {reason}: {n}")
        if self.rejection_reasons:
            lines.append("  No-signal bars:")
            for reason, n in sorted(self.rejection_reasons.items(), key=lambda kv: (-kv[1], kv[0])):
                lines.append(f"    {reason}: {n}")
        return "\n".join(lines)


def _bucket(trades: Sequence[TradeRecord]) -> dict[str, Any]:
    n = len(trades)
    wins = sum(1 for t in trades if t.pips > 0)
    return {
        "trades": n,
        "wins": wins,
        "win_rate": round(_safe_div(wins, n), 4),
        "net_pips": round(float(np.sum([t.pips for t in trades])), 2),
    }


def compute_performance(
    trades: Sequence[TradeRecord],
    equity: Sequence[float],
    rejections: Mapping[str, int] | None = None,
    starting_balance: float = 0.0,
) -> PerformanceReport:
    """
    Args:
        trades:           Closed trades in close order
        equity:           Realized equity curve (starts at 0, one point per close)
        rejections:       Bars without a signal, counted by reason
        starting_balance: Money balance before the first trade
    """
    report = PerformanceReport(starting_balance=starting_balance, final_balance=starting_balance)
    report.rejection_reasons = dict(sorted(Counter(rejections or {}).items()))
    report.max_drawdown = round(max_drawdown(equity), 4)

    balances = [starting_balance]
    for t in trades:
        balances.append(balances[-1] + t.pnl_money)
    report.final_balance = round(balances[-1], 2)
    report.max_drawdown_pct = round(max_drawdown_pct(balances), 6)

    n = len(trades)
    report.total_trades = n
    if n == 0:
        return report

    pips = np.array([t.pips for t in trades], dtype=float)
    wins = pips[pips > 0]
    losses = pips[pips < 0]
    report.wins = len(wins)
    report.losses = len(losses)
    report.breakeven_trades = n - len(wins) - len(losses)
    report.win_rate = round(len(wins) / n, 4)

    report.gross_profit_pips = round(float(np.sum(wins)), 4)
    report.gross_loss_pips = round(float(np.sum(np.abs(losses))), 4)
    report.profit_factor = profit_factor(report.gross_profit_pips, report.gross_loss_pips)
    report.net_pips = round(float(np.sum(pips)), 4)
    report.expectancy_pips = round(float(np.mean(pips)), 4)
    report.avg_win_pips = round(float(np.mean(wins)), 4) if len(wins) > 0 else 0.0
    report.avg_loss_pips = round(float(np.mean(losses)), 4) if len(losses) > 0 else 0.0
    report.avg_r_multiple = round(float(np.mean([t.r_multiple for t in trades])), 4)
    report.avg_hold_minutes = round(float(np.mean([t.hold_minutes for t in trades])), 2)

    counts = Counter(t.exit_reason for t in trades)
    report.exit_reasons = {r: counts[r] for r in ExitReason.ALL if counts[r]}
    report.direction_split = {
        d: _bucket([t for t in trades if t.direction == d]) for d in (Direction.BUY, Direction.SELL)
    }
    report.alignment = {
        a: _bucket([t for t in trades if t.alignment == a]) for a in ("full", "partial", "divergent")
    }
    return report
