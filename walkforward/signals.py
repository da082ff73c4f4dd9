"""
Rule-based signal classification over multi-timeframe indicator snapshots.

Rules are named pure predicates. Each declares the snapshot fields it reads;
a rule never fires while any of those fields is missing or non-finite. A rule
set is an ordered list of rules selected by (timeframe triple, asset class).
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Mapping, Optional, Sequence

from walkforward import timeframes as tfs
from walkforward.indicators import IndicatorSnapshot
from walkforward.types import Candle, Direction, SignalDecision

EXECUTION = "execution"
CONFIRMATION = "confirmation"
ANCHOR = "anchor"
ROLES = (EXECUTION, CONFIRMATION, ANCHOR)

NO_RULE_MATCH = "no_rule_match"
CONFLICTING_RULES = "conflicting_rules"


TrendFn = Callable[[Optional[IndicatorSnapshot]], str]


class Trend:
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


def pick_trend(snapshot: Optional[IndicatorSnapshot]) -> str:
    """ema20 vs ema50 when both are finite and differ, else the snapshot's own label, else neutral."""
    if snapshot is None:
        return Trend.NEUTRAL
    if snapshot.is_finite("ema20") and snapshot.is_finite("ema50"):
        if snapshot.ema20 > snapshot.ema50:
            return Trend.BULLISH
        if snapshot.ema20 < snapshot.ema50:
            return Trend.BEARISH
    label = getattr(snapshot, "trend", None)
    if label in (Trend.BULLISH, Trend.BEARISH):
        return label
    return Trend.NEUTRAL


def trend_for(direction: str) -> str:
    return Trend.BULLISH if direction == Direction.BUY else Trend.BEARISH


# ──────────────────────────────────────────────
# Rule primitives
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class RuleView:
    """What a predicate may look at: snapshots and candles by role, plus instrument constants."""
    snapshots: Mapping[str, Optional[IndicatorSnapshot]]
    candles: Mapping[str, Sequence[Candle]]
    timeframes: Mapping[str, str]            # role -> timeframe name
    pip_size: float = 0.0001
    volatility_floor: float = 0.0
    trend_fn: TrendFn = pick_trend

    def snap(self, role: str) -> IndicatorSnapshot:
        return self.snapshots[role]

    def trend(self, role: str) -> str:
        return self.trend_fn(self.snapshots.get(role))

    def last_two(self, role: str) -> Optional[tuple]:
        bars = self.candles.get(role) or ()
        if len(bars) < 2:
            return None
        prev, last = bars[-2], bars[-1]
        for c in (prev, last):
            if not all(math.isfinite(x) for x in (c.open, c.high, c.low, c.close)):
                return None
        return prev, last


@dataclass(frozen=True)
class RuleResult:
    fired: bool
    context: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Rule:
    name: str
    family: str
    side: str
    fields: tuple                      # ((role, attribute), ...)
    predicate: Callable[[RuleView, Mapping[str, Any]], bool]
    params: Mapping[str, Any] = field(default_factory=dict)

    def evaluate(self, view: RuleView) -> RuleResult:
        captured: dict[str, Any] = {}
        for role, attr in self.fields:
            snap = view.snapshots.get(role)
            if snap is None or not snap.is_finite(attr):
                return RuleResult(False)
            captured[f"{view.timeframes[role]}.{attr}"] = getattr(snap, attr)
        if not self.predicate(view, self.params):
            return RuleResult(False)
        return RuleResult(True, captured)


# ──────────────────────────────────────────────
# Predicates
# ──────────────────────────────────────────────

def _htf_ema_alignment(side: str):
    s = Direction.sign(side)

    def predicate(v: RuleView, p: Mapping[str, Any]) -> bool:
        conf, anchor, ex = v.snap(CONFIRMATION), v.snap(ANCHOR), v.snap(EXECUTION)
        if s * (conf.close - conf.ema50) <= 0 or s * (anchor.close - anchor.ema50) <= 0:
            return False
        pair = v.last_two(EXECUTION)
        if pair is None:
            return False
        prev, last = pair
        center = ex.ema50
        prev_center = ex.ema50_prev if ex.is_finite("ema50_prev") else center
        in_range = last.low <= center <= last.high
        crossed = (prev.close < prev_center and last.close > center) or (
            prev.close > prev_center and last.close < center
        )
        touches = abs(last.close - center) <= p["touch_pips"] * v.pip_size
        return in_range or crossed or touches

    return predicate


def _momentum_guardrail(side: str):
    def predicate(v: RuleView, p: Mapping[str, Any]) -> bool:
        ex = v.snap(EXECUTION)
        if side == Direction.BUY:
            band_ok = p["rsi_low_long"] <= ex.rsi <= p["rsi_high_long"]
            macd_ok = ex.macd_hist > 0 and ex.macd_hist > ex.macd_hist_prev
        else:
            band_ok = p["rsi_low_short"] <= ex.rsi <= p["rsi_high_short"]
            macd_ok = ex.macd_hist < 0 and ex.macd_hist < ex.macd_hist_prev
        return band_ok and macd_ok and v.trend(CONFIRMATION) == trend_for(side)

    return predicate


def _volatility_breakout(side: str):
    def predicate(v: RuleView, p: Mapping[str, Any]) -> bool:
        conf, ex = v.snap(CONFIRMATION), v.snap(EXECUTION)
        if conf.close <= 0:
            return False
        floor = p["atr_floor"] if p.get("atr_floor") is not None else v.volatility_floor
        if conf.atr / conf.close < floor or conf.adx < p["adx_min"]:
            return False
        if side == Direction.BUY:
            band_ok = ex.bb_pb >= p["pb_long"]
        else:
            band_ok = ex.bb_pb <= p["pb_short"]
        return band_ok and v.trend(ANCHOR) == trend_for(side)

    return predicate


def _engulfing(prev: Candle, last: Candle) -> Optional[str]:
    if last.close > last.open and prev.close < prev.open and last.close > prev.open and last.open < prev.close:
        return Trend.BULLISH
    if last.close < last.open and prev.close > prev.open and last.close < prev.open and last.open > prev.close:
        return Trend.BEARISH
    return None


def _pin_bar(last: Candle, wick_mult: float) -> Optional[str]:
    body = last.body
    upper = last.high - max(last.open, last.close)
    lower = min(last.open, last.close) - last.low
    if lower > body * wick_mult and lower > upper:
        return Trend.BULLISH
    if upper > body * wick_mult and upper > lower:
        return Trend.BEARISH
    return None


def _color_flip(prev: Candle, last: Candle, body_ratio: float) -> Optional[str]:
    if last.range <= 0 or last.body / last.range < body_ratio:
        return None
    if prev.close < prev.open and last.close > last.open:
        return Trend.BULLISH
    if prev.close > prev.open and last.close < last.open:
        return Trend.BEARISH
    return None


def _candle_reversal(side: str):
    want = trend_for(side)

    def predicate(v: RuleView, p: Mapping[str, Any]) -> bool:
        if v.trend(ANCHOR) != want:
            return False
        pair = v.last_two(EXECUTION)
        if pair is None:
            return False
        prev, last = pair
        if last.range > p["max_range_atr"] * v.snap(EXECUTION).atr:
            return False
        patterns = (
            _engulfing(prev, last),
            _pin_bar(last, p["pin_wick_mult"]),
            _color_flip(prev, last, p["body_ratio"]),
        )
        return want in patterns

    return predicate


def _fourier_trend(side: str):
    def predicate(v: RuleView, p: Mapping[str, Any]) -> bool:
        score = v.snap(EXECUTION).composite_score
        if side == Direction.BUY:
            hit = score >= p["score_long"]
        else:
            hit = score <= p["score_short"]
        return hit and v.trend(CONFIRMATION) == trend_for(side)

    return predicate


# family -> (predicate factory, fields, default params)
FAMILIES: dict[str, tuple] = {
    "htf_ema_alignment": (
        _htf_ema_alignment,
        ((CONFIRMATION, "close"), (CONFIRMATION, "ema50"), (ANCHOR, "close"), (ANCHOR, "ema50"),
         (EXECUTION, "ema50")),
        {"touch_pips": 0.1},
    ),
    "momentum_guardrail": (
        _momentum_guardrail,
        ((EXECUTION, "rsi"), (EXECUTION, "macd_hist"), (EXECUTION, "macd_hist_prev")),
        {"rsi_low_long": 50.0, "rsi_high_long": 70.0, "rsi_low_short": 30.0, "rsi_high_short": 50.0},
    ),
    "volatility_breakout": (
        _volatility_breakout,
        ((CONFIRMATION, "atr"), (CONFIRMATION, "close"), (CONFIRMATION, "adx"), (EXECUTION, "bb_pb")),
        {"adx_min": 20.0, "pb_long": 0.8, "pb_short": 0.2, "atr_floor": None},
    ),
    "candle_reversal": (
        _candle_reversal,
        ((EXECUTION, "atr"),),
        {"max_range_atr": 3.0, "pin_wick_mult": 2.0, "body_ratio": 0.3},
    ),
    "fourier_trend": (
        _fourier_trend,
        ((EXECUTION, "composite_score"),),
        {"score_long": 40.0, "score_short": -10.0},
    ),
}

# asset class adjustments to family defaults
ASSET_CLASS_DEFAULTS: dict[str, dict[str, dict[str, Any]]] = {
    "forex": {},
    "crypto": {
        "candle_reversal": {"max_range_atr": 4.0},
        "momentum_guardrail": {"rsi_high_long": 75.0, "rsi_low_short": 25.0},
    },
}

# timeframe triple -> (variant name, ordered families)
VARIANTS: dict[tuple, tuple] = {
    ("M5", "M15", "H1"): (
        "intraday",
        ("htf_ema_alignment", "momentum_guardrail", "volatility_breakout", "candle_reversal", "fourier_trend"),
    ),
    ("M15", "H1", "H4"): (
        "session",
        ("htf_ema_alignment", "momentum_guardrail", "volatility_breakout", "fourier_trend"),
    ),
}


@dataclass(frozen=True)
class RuleSet:
    name: str
    asset_class: str
    timeframes: tuple                 # (execution, confirmation, anchor)
    rules: tuple
    volatility_floor: float = 0.0
    pip_size: float = 0.0001

    @property
    def roles(self) -> dict[str, str]:
        return dict(zip(ROLES, self.timeframes))

    def rule(self, name: str) -> Rule:
        for r in self.rules:
            if r.name == name:
                return r
        raise KeyError(name)


def _rule_name(family: str, side: str) -> str:
    return f"{family}_{'long' if side == Direction.BUY else 'short'}"


def _split_overrides(overrides: Mapping[str, Mapping[str, Any]]) -> tuple[dict, dict]:
    known_rules = {_rule_name(f, s) for f in FAMILIES for s in (Direction.BUY, Direction.SELL)}
    by_family: dict[str, dict] = {}
    by_rule: dict[str, dict] = {}
    for key, params in (overrides or {}).items():
        if not isinstance(params, Mapping):
            raise ValueError(f"Override for {key!r} must be a mapping")
        if key in FAMILIES:
            family = key
            by_family[key] = dict(params)
        elif key in known_rules:
            family = key.rsplit("_", 1)[0]
            by_rule[key] = dict(params)
        else:
            raise ValueError(f"Unknown rule in overrides: {key}")
        unknown = sorted(set(params) - set(FAMILIES[family][2]))
        if unknown:
            raise ValueError(f"Unknown parameter(s) for {key}: {', '.join(unknown)}")
    return by_family, by_rule


def build_rule_set(
    timeframes: Sequence[str],
    asset_class: str,
    overrides: Optional[Mapping[str, Mapping[str, Any]]] = None,
    volatility_floor: float = 0.0,
    pip_size: float = 0.0001,
) -> RuleSet:
    triple = tuple(tfs.normalize(t) for t in timeframes)
    if triple not in VARIANTS:
        raise ValueError(f"No rule variant for timeframes {triple}; known: {sorted(VARIANTS)}")
    if asset_class not in ASSET_CLASS_DEFAULTS:
        raise ValueError(f"Unknown asset_class: {asset_class!r}")

    variant, families = VARIANTS[triple]
    by_family, by_rule = _split_overrides(overrides or {})

    rules = []
    for family in families:
        factory, fields_, defaults = FAMILIES[family]
        for side in (Direction.BUY, Direction.SELL):
            name = _rule_name(family, side)
            params = dict(defaults)
            params.update(ASSET_CLASS_DEFAULTS[asset_class].get(family, {}))
            params.update(by_family.get(family, {}))
            params.update(by_rule.get(name, {}))
            rules.append(Rule(name=name, family=family, side=side, fields=fields_,
                              predicate=factory(side), params=params))

    return RuleSet(
        name=f"{variant}_{asset_class}",
        asset_class=asset_class,
        timeframes=triple,
        rules=tuple(rules),
        volatility_floor=volatility_floor,
        pip_size=pip_size,
    )


def with_params(rule_set: RuleSet, name: str, **params: Any) -> RuleSet:
    """Copy of rule_set with one rule's parameters replaced."""
    rules = tuple(replace(r, params={**r.params, **params}) if r.name == name else r for r in rule_set.rules)
    return replace(rule_set, rules=rules)


# ──────────────────────────────────────────────
# Engine
# ──────────────────────────────────────────────

class SignalEngine:
    def __init__(self, rule_set: RuleSet, trend_fn: TrendFn = pick_trend):
        self.rule_set = rule_set
        self.trend_fn = trend_fn

    def evaluate(
        self,
        snapshots: Mapping[str, Optional[IndicatorSnapshot]],
        candles: Mapping[str, Sequence[Candle]],
    ) -> SignalDecision:
        """Classify one moment. Inputs are keyed by timeframe name; nothing is mutated."""
        roles = self.rule_set.roles
        view = RuleView(
            snapshots={role: snapshots.get(tf) for role, tf in roles.items()},
            candles={role: candles.get(tf, ()) for role, tf in roles.items()},
            timeframes=roles,
            pip_size=self.rule_set.pip_size,
            volatility_floor=self.rule_set.volatility_floor,
            trend_fn=self.trend_fn,
        )

        fired: dict[str, list] = {Direction.BUY: [], Direction.SELL: []}
        for rule in self.rule_set.rules:
            result = rule.evaluate(view)
            if result.fired:
                fired[rule.side].append((rule.name, result.context))

        trends = {tf: self.trend_fn(snapshots.get(tf)) for tf in roles.values()}
        longs, shorts = fired[Direction.BUY], fired[Direction.SELL]

        if longs and shorts:
            return SignalDecision(
                None,
                CONFLICTING_RULES,
                {"fired_long": [n for n, _ in longs], "fired_short": [n for n, _ in shorts], "trends": trends},
            )
        if not longs and not shorts:
            return SignalDecision(None, NO_RULE_MATCH, {"trends": trends})

        side = Direction.BUY if longs else Direction.SELL
        winners = longs or shorts
        name, captured = winners[0]
        return SignalDecision(
            side,
            name,
            {"rule": name, "fields": dict(captured), "fired": [n for n, _ in winners], "trends": trends},
        )
