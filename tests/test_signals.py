from __future__ import annotations

import math
from datetime import timedelta

import pytest

from walkforward.indicators import IndicatorSnapshot
from walkforward.signals import (
    CONFLICTING_RULES,
    EXECUTION,
    NO_RULE_MATCH,
    Rule,
    RuleSet,
    SignalEngine,
    Trend,
    build_rule_set,
    pick_trend,
    with_params,
)
from walkforward.types import Candle, Direction

TRIPLE = ("M5", "M15", "H1")


def _snap(**kw) -> IndicatorSnapshot:
    return IndicatorSnapshot(**kw)


def _always(side: str, name: str, field: str = "rsi") -> Rule:
    return Rule(name=name, family=name, side=side, fields=((EXECUTION, field),),
                predicate=lambda v, p: True)


def _rule_set(*rules: Rule) -> RuleSet:
    return RuleSet(name="test", asset_class="forex", timeframes=TRIPLE, rules=tuple(rules))


def test_pick_trend_prefers_ema_comparison() -> None:
    assert pick_trend(_snap(ema20=1.2, ema50=1.1, trend="bearish")) == Trend.BULLISH
    assert pick_trend(_snap(ema20=1.0, ema50=1.1)) == Trend.BEARISH
    assert pick_trend(_snap(ema20=1.1, ema50=1.1, trend="bearish")) == Trend.BEARISH
    assert pick_trend(_snap(ema20=math.nan, ema50=1.1, trend="bullish")) == Trend.BULLISH
    assert pick_trend(_snap(trend="sideways")) == Trend.NEUTRAL
    assert pick_trend(None) == Trend.NEUTRAL


def test_rule_with_non_finite_field_does_not_fire() -> None:
    engine = SignalEngine(_rule_set(_always(Direction.BUY, "needs_rsi")))
    decision = engine.evaluate({"M5": _snap(rsi=math.nan)}, {})
    assert decision.signal is None
    assert decision.reason == NO_RULE_MATCH


def test_missing_snapshot_does_not_fire() -> None:
    engine = SignalEngine(_rule_set(_always(Direction.BUY, "needs_rsi")))
    assert engine.evaluate({}, {}).reason == NO_RULE_MATCH


def test_both_sides_firing_is_a_conflict() -> None:
    engine = SignalEngine(_rule_set(_always(Direction.BUY, "a_long"), _always(Direction.SELL, "b_short")))
    decision = engine.evaluate({"M5": _snap(rsi=55.0)}, {})
    assert decision.signal is None
    assert decision.reason == CONFLICTING_RULES
    assert decision.context["fired_long"] == ["a_long"]
    assert decision.context["fired_short"] == ["b_short"]


def test_first_fired_rule_names_the_signal() -> None:
    never = Rule(name="never", family="never", side=Direction.SELL, fields=(), predicate=lambda v, p: False)
    engine = SignalEngine(_rule_set(never, _always(Direction.SELL, "first"), _always(Direction.SELL, "second")))
    decision = engine.evaluate({"M5": _snap(rsi=40.0)}, {})
    assert decision.signal == Direction.SELL
    assert decision.reason == "first"
    assert decision.context["fields"] == {"M5.rsi": 40.0}
    assert decision.context["fired"] == ["first", "second"]


def test_evaluate_is_pure() -> None:
    engine = SignalEngine(_rule_set(_always(Direction.BUY, "a_long")))
    snaps = {"M5": _snap(rsi=60.0)}
    first = engine.evaluate(snaps, {})
    second = engine.evaluate(snaps, {})
    assert first == second
    assert snaps == {"M5": _snap(rsi=60.0)}


def test_momentum_guardrail_long() -> None:
    rules = build_rule_set(TRIPLE, "forex")
    engine = SignalEngine(rules)
    snaps = {
        "M5": _snap(close=1.1, rsi=60.0, macd_hist=0.0002, macd_hist_prev=0.0001),
        "M15": _snap(close=1.1, ema20=1.101, ema50=1.100),
        "H1": _snap(close=1.1),
    }
    decision = engine.evaluate(snaps, {})
    assert decision.signal == Direction.BUY
    assert decision.reason == "momentum_guardrail_long"


def test_htf_alignment_short_on_center_cross(t0) -> None:
    engine = SignalEngine(build_rule_set(TRIPLE, "forex"))
    candles = {
        "M5": (
            Candle(t0, 1.1010, 1.1012, 1.1004, 1.1006),
            Candle(t0 + timedelta(minutes=5), 1.1006, 1.1007, 1.0996, 1.0998),
        )
    }
    snaps = {
        "M5": _snap(close=1.0998, ema50=1.1001, ema50_prev=1.1002),
        "M15": _snap(close=1.0990, ema50=1.1010),
        "H1": _snap(close=1.0980, ema50=1.1050),
    }
    decision = engine.evaluate(snaps, candles)
    assert decision.signal == Direction.SELL
    assert decision.reason == "htf_ema_alignment_short"
    assert decision.context["fields"]["H1.ema50"] == 1.1050


def test_candle_reversal_engulfing_long(t0) -> None:
    engine = SignalEngine(build_rule_set(TRIPLE, "forex"))
    candles = {
        "M5": (
            Candle(t0, 1.1010, 1.1011, 1.1000, 1.1002),
            Candle(t0 + timedelta(minutes=5), 1.1001, 1.1014, 1.1000, 1.1012),
        )
    }
    snaps = {
        "M5": _snap(close=1.1012, atr=0.0010),
        "M15": _snap(close=1.1012),
        "H1": _snap(close=1.1012, ema20=1.1000, ema50=1.0990),
    }
    decision = engine.evaluate(snaps, candles)
    assert decision.signal == Direction.BUY
    assert decision.reason == "candle_reversal_long"


def test_unknown_variant_and_overrides_are_rejected() -> None:
    with pytest.raises(ValueError, match="No rule variant"):
        build_rule_set(("M1", "M5", "M15"), "forex")
    with pytest.raises(ValueError, match="Unknown rule"):
        build_rule_set(TRIPLE, "forex", {"does_not_exist": {"x": 1}})
    with pytest.raises(ValueError, match="Unknown parameter"):
        build_rule_set(TRIPLE, "forex", {"momentum_guardrail": {"nope": 1}})


def test_overrides_apply_by_family_and_rule() -> None:
    rules = build_rule_set(
        TRIPLE,
        "forex",
        {"momentum_guardrail": {"rsi_low_long": 55.0}, "momentum_guardrail_short": {"rsi_low_short": 20.0}},
    )
    assert rules.rule("momentum_guardrail_long").params["rsi_low_long"] == 55.0
    assert rules.rule("momentum_guardrail_short").params["rsi_low_long"] == 55.0
    assert rules.rule("momentum_guardrail_short").params["rsi_low_short"] == 20.0
    assert rules.rule("momentum_guardrail_long").params["rsi_low_short"] == 30.0


def test_variants_by_timeframes_and_asset_class() -> None:
    intraday = build_rule_set(TRIPLE, "crypto")
    session = build_rule_set(("M15", "H1", "H4"), "forex")
    assert intraday.name == "intraday_crypto"
    assert session.name == "session_forex"
    assert any(r.family == "candle_reversal" for r in intraday.rules)
    assert not any(r.family == "candle_reversal" for r in session.rules)
    assert intraday.rule("candle_reversal_long").params["max_range_atr"] == 4.0


def test_with_params_replaces_one_rule_only() -> None:
    rules = build_rule_set(TRIPLE, "forex")
    tuned = with_params(rules, "volatility_breakout_long", adx_min=30.0)
    assert tuned.rule("volatility_breakout_long").params["adx_min"] == 30.0
    assert tuned.rule("volatility_breakout_short").params["adx_min"] == 20.0
    assert rules.rule("volatility_breakout_long").params["adx_min"] == 20.0


def _breakout_snaps(adx: float = 25.0, bb_pb: float = 0.1) -> dict:
    return {
        "M5": _snap(close=1.1, bb_pb=bb_pb),
        "M15": _snap(close=1.1, atr=0.0010, adx=adx),
        "H1": _snap(close=1.1, ema20=1.09, ema50=1.10),
    }


def test_volatility_breakout_short() -> None:
    engine = SignalEngine(build_rule_set(TRIPLE, "forex"))
    decision = engine.evaluate(_breakout_snaps(), {})
    assert decision.signal == Direction.SELL
    assert decision.reason == "volatility_breakout_short"
    assert decision.context["fields"]["M15.adx"] == 25.0


@pytest.mark.parametrize("adx,bb_pb", [(15.0, 0.1), (25.0, 0.5)])
def test_volatility_breakout_needs_trend_strength_and_band_extreme(adx, bb_pb) -> None:
    engine = SignalEngine(build_rule_set(TRIPLE, "forex"))
    assert engine.evaluate(_breakout_snaps(adx, bb_pb), {}).reason == NO_RULE_MATCH


def test_volatility_breakout_respects_atr_floor() -> None:
    rules = build_rule_set(TRIPLE, "forex", {"volatility_breakout": {"atr_floor": 0.01}})
    assert SignalEngine(rules).evaluate(_breakout_snaps(), {}).reason == NO_RULE_MATCH


def _fourier_snaps(score: float, ema20: float) -> dict:
    return {
        "M5": _snap(close=1.1, composite_score=score),
        "M15": _snap(ema20=ema20, ema50=1.100),
        "H1": _snap(),
    }


@pytest.mark.parametrize(
    "score,ema20,expected",
    [
        (45.0, 1.101, "fourier_trend_long"),
        (-20.0, 1.099, "fourier_trend_short"),
    ],
)
def test_fourier_trend_fires_with_confirmation(score, ema20, expected) -> None:
    engine = SignalEngine(build_rule_set(TRIPLE, "forex"))
    assert engine.evaluate(_fourier_snaps(score, ema20), {}).reason == expected


@pytest.mark.parametrize("score,ema20", [(45.0, 1.099), (0.0, 1.101), (-20.0, 1.101)])
def test_fourier_trend_stays_quiet(score, ema20) -> None:
    engine = SignalEngine(build_rule_set(TRIPLE, "forex"))
    assert engine.evaluate(_fourier_snaps(score, ema20), {}).reason == NO_RULE_MATCH


def test_engine_uses_the_injected_trend_classifier() -> None:
    calls = []

    def bearish(snapshot):
        calls.append(snapshot)
        return Trend.BEARISH

    engine = SignalEngine(build_rule_set(TRIPLE, "forex"), trend_fn=bearish)
    # the ema pair says bullish; the classifier says otherwise
    decision = engine.evaluate(_fourier_snaps(-20.0, 1.101), {})
    assert decision.reason == "fourier_trend_short"
    assert decision.context["trends"] == {"M5": "bearish", "M15": "bearish", "H1": "bearish"}
    assert calls
