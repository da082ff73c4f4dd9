"""
Run feedback: parameter overrides before a run, result and improvement
documents after it.

Stores implement EvolutionFeedback. Overrides are keyed by rule name or rule
family and apply to a single instrument run only.
"""
from __future__ import annotations

import json
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

from walkforward.engine import SimulationResult
from walkforward.signals import RuleSet
from walkforward.types import ExitReason, format_ts


class EvolutionFeedback(ABC):
    @abstractmethod
    def load_overrides(self, symbol: str) -> dict[str, dict[str, Any]]:
        ...

    @abstractmethod
    def save_result(self, symbol: str, payload: dict[str, Any]) -> None:
        ...

    @abstractmethod
    def save_improvements(self, symbol: str, proposal: dict[str, Any]) -> None:
        ...

    def load_previous(self, symbol: str) -> Optional[dict[str, Any]]:
        return None


class NoOpFeedback(EvolutionFeedback):
    def load_overrides(self, symbol: str) -> dict[str, dict[str, Any]]:
        return {}

    def save_result(self, symbol: str, payload: dict[str, Any]) -> None:
        pass

    def save_improvements(self, symbol: str, proposal: dict[str, Any]) -> None:
        pass


class InMemoryFeedback(EvolutionFeedback):
    def __init__(self, overrides: Optional[dict[str, dict]] = None):
        self.overrides = {k.upper(): dict(v) for k, v in (overrides or {}).items()}
        self.results: dict[str, dict] = {}
        self.improvements: dict[str, dict] = {}

    def load_overrides(self, symbol: str) -> dict[str, dict[str, Any]]:
        return {k: dict(v) for k, v in self.overrides.get(symbol.upper(), {}).items()}

    def save_result(self, symbol: str, payload: dict[str, Any]) -> None:
        self.results[symbol.upper()] = payload

    def save_improvements(self, symbol: str, proposal: dict[str, Any]) -> None:
        self.improvements[symbol.upper()] = proposal

    def load_previous(self, symbol: str) -> Optional[dict[str, Any]]:
        return self.results.get(symbol.upper())


class JsonFileFeedback(EvolutionFeedback):
    """result_<SYMBOL>.json and improvements_<SYMBOL>.json in one directory."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def result_path(self, symbol: str) -> Path:
        return self.directory / f"result_{symbol.upper()}.json"

    def improvements_path(self, symbol: str) -> Path:
        return self.directory / f"improvements_{symbol.upper()}.json"

    @staticmethod
    def _read(path: Path) -> Optional[dict[str, Any]]:
        if not path.exists():
            return None
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"Feedback document root must be an object: {path}")
        return data

    def _write(self, path: Path, payload: dict[str, Any]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(payload, indent=2, sort_keys=True, default=str), encoding="utf-8")
        tmp.replace(path)

    def load_overrides(self, symbol: str) -> dict[str, dict[str, Any]]:
        doc = self._read(self.improvements_path(symbol)) or {}
        overrides = doc.get("parameter_overrides") or {}
        if not isinstance(overrides, dict):
            raise ValueError(f"parameter_overrides must be an object: {self.improvements_path(symbol)}")
        return {k: dict(v) for k, v in overrides.items()}

    def save_result(self, symbol: str, payload: dict[str, Any]) -> None:
        self._write(self.result_path(symbol), payload)

    def save_improvements(self, symbol: str, proposal: dict[str, Any]) -> None:
        self._write(self.improvements_path(symbol), proposal)

    def load_previous(self, symbol: str) -> Optional[dict[str, Any]]:
        return self._read(self.result_path(symbol))


@contextmanager
def override_scope(feedback: EvolutionFeedback, symbol: str) -> Iterator[dict[str, dict[str, Any]]]:
    """Overrides for one instrument run; the mapping is emptied when the run ends."""
    overrides = feedback.load_overrides(symbol)
    try:
        yield overrides
    finally:
        overrides.clear()


# ──────────────────────────────────────────────
# Documents
# ──────────────────────────────────────────────

def build_result_payload(result: SimulationResult) -> dict[str, Any]:
    report = result.report
    trades = result.trades
    ranked = sorted(trades, key=lambda t: t.pips)
    return {
        "pair": result.symbol,
        "rule_set": result.rule_set,
        "asset_class": result.asset_class,
        "timeframes": list(result.timeframes),
        "window": {"start": format_ts(result.window_start), "end": format_ts(result.window_end)},
        "settings": result.settings,
        "bars": {
            "processed": result.bars_processed,
            "warmup": result.warmup_bars,
            "duplicates": result.duplicate_bars,
            "snapshot_computations": result.snapshot_computations,
        },
        "performance": report.as_dict(),
        "skipped_signals": dict(result.skipped_signals),
        "rejection_samples": result.rejection_samples,
        "best_trades": [t.as_dict() for t in reversed(ranked[-3:])],
        "worst_trades": [t.as_dict() for t in ranked[:3]],
        "trades": [t.as_dict() for t in trades],
        "equity_curve": [{"time": format_ts(p.ts), "equity": p.equity} for p in result.equity_curve],
        "open_position": _position_dict(result),
    }


def _position_dict(result: SimulationResult) -> Optional[dict[str, Any]]:
    pos = result.open_position
    if pos is None:
        return None
    return {
        "direction": pos.direction,
        "entry_price": pos.entry_price,
        "entry_time": format_ts(pos.entry_time),
        "stop_loss": pos.stop_loss,
        "take_profit": pos.take_profit,
        "risk_distance": pos.risk_distance,
    }


def _share(n: int, total: int) -> float:
    return n / total if total else 0.0


def build_improvement_proposal(result: SimulationResult, rule_set: RuleSet) -> dict[str, Any]:
    report = result.report
    trades = result.trades
    losses = [t for t in trades if t.pips < 0]
    loss_total = len(losses) or 1
    loss_reasons: dict[str, int] = {}
    for t in losses:
        loss_reasons[t.exit_reason] = loss_reasons.get(t.exit_reason, 0) + 1

    params = {r.family: dict(r.params) for r in rule_set.rules}
    weaknesses: list[dict[str, Any]] = []
    recommendations: list[dict[str, Any]] = []
    overrides: dict[str, dict[str, Any]] = {}

    def nudge(family: str, key: str, delta: float) -> None:
        if family in params and params[family].get(key) is not None:
            overrides.setdefault(family, {})[key] = round(params[family][key] + delta, 4)

    if not trades:
        dominant = max(report.rejection_reasons.items(), key=lambda kv: kv[1], default=(None, 0))
        if dominant[0] is not None:
            weaknesses.append({
                "issue": "No trades were entered",
                "evidence": f"{dominant[1]} bars rejected as {dominant[0]}",
            })
            recommendations.append({
                "target": "rules",
                "suggestion": "Loosen momentum band and trend-strength filters.",
            })
            nudge("momentum_guardrail", "rsi_low_long", -5.0)
            nudge("momentum_guardrail", "rsi_high_short", 5.0)
            nudge("volatility_breakout", "adx_min", -5.0)
    else:
        stop_share = _share(loss_reasons.get(ExitReason.STOP_LOSS, 0), loss_total)
        if losses and stop_share > 0.45:
            weaknesses.append({
                "issue": "Stops are hit before price reaches targets",
                "evidence": f"{stop_share * 100:.1f}% of losses closed at stop_loss",
            })
            profile_mult = result.profile.get("stop_atr_mult")
            recommendations.append({
                "target": "stop_atr_mult",
                "suggestion": "Widen the ATR stop multiple.",
                "current": profile_mult,
                "suggested": round(profile_mult * 1.2, 3) if profile_mult else None,
            })

        reverse_share = _share(loss_reasons.get(ExitReason.REVERSE_SIGNAL, 0), loss_total)
        if losses and reverse_share > 0.15:
            weaknesses.append({
                "issue": "Opposite signals invalidate trades shortly after entry",
                "evidence": f"{reverse_share * 100:.1f}% of losses closed by reverse_signal",
            })
            recommendations.append({"target": "rules", "suggestion": "Tighten the momentum band."})
            nudge("momentum_guardrail", "rsi_low_long", 5.0)
            nudge("momentum_guardrail", "rsi_high_short", -5.0)

        timeout_share = _share(loss_reasons.get(ExitReason.TIMEOUT, 0), loss_total)
        if losses and timeout_share > 0.1:
            weaknesses.append({
                "issue": "Trades frequently stall without reaching the target",
                "evidence": f"{timeout_share * 100:.1f}% of losses closed by timeout",
            })
            recommendations.append({
                "target": "reward_multiple",
                "suggestion": "Lower the reward multiple or extend max hold time.",
            })

        divergent = report.alignment.get("divergent", {}).get("trades", 0)
        divergent_share = _share(divergent, len(trades))
        if divergent_share > 0.15:
            weaknesses.append({
                "issue": "Entries taken against higher timeframe direction",
                "evidence": f"{divergent_share * 100:.1f}% of trades were divergent",
            })
            recommendations.append({"target": "rules", "suggestion": "Require a stronger trend before entry."})
            nudge("volatility_breakout", "adx_min", 5.0)

        full_wr = report.alignment.get("full", {}).get("win_rate", 0.0)
        div_wr = report.alignment.get("divergent", {}).get("win_rate", 0.0)
        if full_wr > div_wr and divergent:
            recommendations.append({
                "target": "alignment",
                "suggestion": "Require trend alignment with entry direction.",
                "rationale": f"Full alignment win rate {full_wr:.1%} vs {div_wr:.1%} when divergent.",
            })

    keep = report.final_balance > report.starting_balance and report.win_rate >= 0.45
    return {
        "pair": result.symbol,
        "rule_set": result.rule_set,
        "summary": {
            "trades_analyzed": report.total_trades,
            "exit_reasons": report.exit_reasons,
            "loss_reasons": loss_reasons,
            "missed_trades": report.rejection_reasons,
        },
        "weaknesses": weaknesses,
        "recommendations": recommendations,
        "parameter_overrides": overrides,
        "missed_trade_samples": result.rejection_samples,
        "keep_pair": {
            "keep": keep,
            "rationale": (
                "Balance ended above start with an acceptable win rate."
                if keep
                else "Balance or win rate below threshold."
            ),
        },
    }
