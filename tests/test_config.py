from __future__ import annotations

from dataclasses import replace

import pytest

from shared.config import load_settings
from walkforward.config import (
    SimulationSettings,
    apply_overlay,
    asset_profile_for,
    load_simulation_settings,
    read_yaml,
    resolve_asset_class,
)


def test_asset_class_detection() -> None:
    assert resolve_asset_class("BTCUSD") == "crypto"
    assert resolve_asset_class("eurusd") == "forex"
    assert resolve_asset_class("BTCUSD", "forex") == "forex"
    with pytest.raises(ValueError):
        resolve_asset_class("EURUSD", "stocks")


def test_forex_and_crypto_profiles() -> None:
    eur = asset_profile_for("EURUSD")
    jpy = asset_profile_for("USDJPY")
    btc = asset_profile_for("BTCUSD")
    assert (eur.pip_size, eur.price_digits) == (0.0001, 5)
    assert (jpy.pip_size, jpy.price_digits) == (0.01, 3)
    assert btc.asset_class == "crypto"
    assert btc.stop_atr_mult == 2.5
    assert eur.min_stop_distance(1.1) == pytest.approx(0.0008)
    assert btc.min_stop_distance(50000.0) == pytest.approx(225.0)


def test_profile_overrides_skip_none() -> None:
    p = asset_profile_for("EURUSD", reward_multiple=3.0, stop_atr_mult=None)
    assert p.reward_multiple == 3.0
    assert p.stop_atr_mult == 1.5


def test_settings_from_env(monkeypatch) -> None:
    monkeypatch.setenv("SIM_MIN_BARS", "30")
    monkeypatch.setenv("SIM_TIE_BREAK", "TARGET_FIRST")
    monkeypatch.setenv("SIM_DERIVE_TIMEFRAMES", "h4:h1")
    monkeypatch.setenv("SIM_REWARD_MULTIPLE", "2.5")
    s = load_simulation_settings()
    assert s.min_bars == 30
    assert s.tie_break == "target_first"
    assert s.derive_timeframes == {"H4": "H1"}
    assert s.profile("EURUSD").reward_multiple == 2.5


def test_yaml_overlay(tmp_path) -> None:
    path = tmp_path / "sim.yml"
    path.write_text(
        "timeframes: [m5, m15, h1, h4]\n"
        "variant_timeframes: m15,h1,h4\n"
        "driver_timeframe: m15\n"
        "derive_timeframes:\n  h4: h1\n",
        encoding="utf-8",
    )
    s = load_simulation_settings(path)
    assert s.timeframes == ("M5", "M15", "H1", "H4")
    assert s.variant_timeframes == ("M15", "H1", "H4")
    assert s.driver_timeframe == "M15"
    assert s.derive_timeframes == {"H4": "H1"}


def test_overlay_rejects_unknown_keys() -> None:
    with pytest.raises(ValueError, match="Unknown simulation settings: bogus"):
        apply_overlay(SimulationSettings(), {"bogus": 1})


def test_yaml_root_must_be_mapping(tmp_path) -> None:
    path = tmp_path / "bad.yml"
    path.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError, match="mapping"):
        read_yaml(path)


@pytest.mark.parametrize(
    "changes",
    [
        {"driver_timeframe": "M1", "variant_timeframes": ("M5", "M15", "H1")},
        {"variant_timeframes": ("M5", "M15")},
        {"tie_break": "coin_flip"},
        {"min_bars": 300},
        {"risk_per_trade": 1.5},
        {"workers": 0},
        {"derive_timeframes": {"H1": "H4"}},
        {"timeframes": ("M5", "M15", "X9")},
        {"exit_timeframe": "M15"},
    ],
)
def test_validate_rejects_bad_settings(changes) -> None:
    with pytest.raises(ValueError):
        replace(SimulationSettings(), **changes).validate()


def test_as_dict_lists_tuples() -> None:
    d = SimulationSettings().as_dict()
    assert d["variant_timeframes"] == ["M5", "M15", "H1"]
    assert d["tie_break"] == "stop_first"


def test_shared_settings(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("WF_DATA_DIR", str(tmp_path / "candles"))
    monkeypatch.setenv("WF_LOG_ECHO", "off")
    s = load_settings()
    assert s.data_dir == tmp_path / "candles"
    assert s.log_echo is False


def test_exit_timeframe_setting(monkeypatch, tmp_path) -> None:
    assert load_simulation_settings().exit_timeframe == "M1"
    monkeypatch.setenv("SIM_EXIT_TIMEFRAME", "off")
    assert load_simulation_settings().exit_timeframe is None

    path = tmp_path / "sim.yml"
    path.write_text("exit_timeframe: m1\n", encoding="utf-8")
    assert load_simulation_settings(path).exit_timeframe == "M1"
