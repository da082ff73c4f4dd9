from __future__ import annotations

import json
from dataclasses import replace
from datetime import timedelta

import pytest

from walkforward.cli import main
from walkforward.config import SimulationSettings
from walkforward.errors import AlignmentError
from walkforward.feedback import InMemoryFeedback
from walkforward.runner import run_symbol, run_symbols, trade_log_path
from walkforward.types import Candle

TRIPLE = ("M5", "M15", "H1")


@pytest.fixture
def settings() -> SimulationSettings:
    return SimulationSettings(
        driver_timeframe="M5",
        timeframes=TRIPLE,
        variant_timeframes=TRIPLE,
        min_bars=60,
        history_window=200,
    ).validate()


@pytest.fixture
def data_dir(tmp_path, make_multi_tf, write_symbol):
    d = tmp_path / "candles"
    write_symbol(d, "EURUSD", make_multi_tf(900))
    return d


def test_run_symbol_writes_outputs(settings, data_dir, tmp_path) -> None:
    fb = InMemoryFeedback()
    out = tmp_path / "results"
    result = run_symbol("eurusd", settings, data_dir, out_dir=out, feedback=fb)

    assert result.symbol == "EURUSD"
    assert result.rule_set == "intraday_forex"
    assert result.bars_processed > 0
    assert trade_log_path(out, "EURUSD").exists()
    assert fb.results["EURUSD"]["pair"] == "EURUSD"
    assert "keep_pair" in fb.improvements["EURUSD"]


def test_unknown_override_fails_the_run(settings, data_dir) -> None:
    fb = InMemoryFeedback({"EURUSD": {"not_a_rule": {"x": 1}}})
    with pytest.raises(ValueError, match="Unknown rule"):
        run_symbol("EURUSD", settings, data_dir, feedback=fb)


def test_misaligned_data_raises(settings, tmp_path, make_multi_tf, write_symbol) -> None:
    series = make_multi_tf(900)
    series["H1"] = [replace(c, ts=c.ts + timedelta(minutes=1)) if i == 10 else c
                    for i, c in enumerate(series["H1"])]
    write_symbol(tmp_path, "EURUSD", series)
    with pytest.raises(AlignmentError) as exc:
        run_symbol("EURUSD", settings, tmp_path)
    assert "phase_offset" in exc.value.kinds()


def test_failures_are_isolated_per_instrument(settings, data_dir, tmp_path) -> None:
    out = tmp_path / "results"
    outcomes = run_symbols(["EURUSD", "GBPUSD"], settings, data_dir, out)

    assert [o.symbol for o in outcomes] == ["EURUSD", "GBPUSD"]
    ok, failed = outcomes
    assert ok.ok
    assert ok.summary["total_trades"] == len(
        trade_log_path(out, "EURUSD").read_text(encoding="utf-8").splitlines()
    )
    assert set(ok.outputs) == {"trade_log", "result", "improvements"}
    assert not failed.ok
    assert failed.error_type == "InsufficientDataError"
    assert failed.details["timeframe"] == "M5"
    assert not trade_log_path(out, "GBPUSD").exists()


def test_parallel_matches_sequential(settings, data_dir, tmp_path, make_multi_tf, write_symbol) -> None:
    write_symbol(data_dir, "USDJPY", {
        tf: [Candle(c.ts, c.open * 100, c.high * 100, c.low * 100, c.close * 100) for c in candles]
        for tf, candles in make_multi_tf(900).items()
    })
    seq = run_symbols(["USDJPY", "EURUSD"], settings, data_dir, tmp_path / "seq", workers=1)
    par = run_symbols(["USDJPY", "EURUSD"], settings, data_dir, tmp_path / "par", workers=2)

    assert [o.symbol for o in par] == ["USDJPY", "EURUSD"]
    assert [o.summary for o in par] == [o.summary for o in seq]
    for sym in ("USDJPY", "EURUSD"):
        assert trade_log_path(tmp_path / "par", sym).read_bytes() == trade_log_path(tmp_path / "seq", sym).read_bytes()


def _overlay(tmp_path):
    path = tmp_path / "sim.yml"
    path.write_text(
        "timeframes: [M5, M15, H1]\nvariant_timeframes: [M5, M15, H1]\nmin_bars: 60\n",
        encoding="utf-8",
    )
    return path


def test_cli_run(data_dir, tmp_path, capsys) -> None:
    out = tmp_path / "cli_out"
    code = main(["run", "EURUSD", "--config", str(_overlay(tmp_path)),
                 "--data-dir", str(data_dir), "--out", str(out)])
    assert code == 0
    assert "EURUSD: trades=" in capsys.readouterr().out
    result = json.loads((out / "result_EURUSD.json").read_text(encoding="utf-8"))
    assert result["rule_set"] == "intraday_forex"


def test_cli_run_reports_failure(data_dir, tmp_path, capsys) -> None:
    code = main(["run", "XAUUSD", "--config", str(_overlay(tmp_path)),
                 "--data-dir", str(data_dir), "--out", str(tmp_path / "o")])
    assert code == 1
    assert "XAUUSD: FAILED InsufficientDataError" in capsys.readouterr().err


def test_cli_validate(data_dir, tmp_path, capsys) -> None:
    code = main(["validate", "EURUSD", "--config", str(_overlay(tmp_path)), "--data-dir", str(data_dir)])
    assert code == 0
    assert "EURUSD" in capsys.readouterr().out
