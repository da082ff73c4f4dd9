from __future__ import annotations

import json
from datetime import timedelta

from scripts.init_db import main as init_db
from shared.db import connect
from walkforward.engine import SimulationResult
from walkforward.metrics import compute_performance
from walkforward.trade_log import save_simulation_result, trade_log_rows, write_trade_log
from walkforward.types import Direction, EquityPoint, ExitReason, Position, TradeRecord


def _result(t0, with_open: bool = True) -> SimulationResult:
    trade = TradeRecord(
        deal_id="EURUSD-202601050905-1", symbol="EURUSD", direction=Direction.SELL,
        entry_time=t0 + timedelta(minutes=5), exit_time=t0 + timedelta(minutes=25),
        entry_price=1.1, exit_price=1.098, initial_stop=1.101, final_stop=1.1,
        take_profit=1.098, exit_reason=ExitReason.TAKE_PROFIT, entry_reason="volatility_breakout_short",
        risk_distance=0.001, rr=2.0, r_multiple=2.0, points=0.002, pips=20.0,
        size_units=5000.0, pnl_money=10.0, hold_minutes=20.0, bars_held=4,
        mfe_r=2.1, mae_r=0.2, breakeven_applied=True, trailing_applied=False, alignment="full",
        indicators_on_open={"M5": {"rsi": 41.2, "adx": None}},
        indicators_on_close={"M5": {"rsi": 33.0}},
    )
    pos = None
    if with_open:
        pos = Position(direction=Direction.BUY, entry_price=1.0985, entry_time=t0 + timedelta(minutes=40),
                       stop_loss=1.0975, take_profit=1.1005, risk_distance=0.001, initial_stop=1.0975)
    return SimulationResult(
        symbol="EURUSD",
        rule_set="intraday_forex",
        asset_class="forex",
        timeframes=("M5", "M15", "H1"),
        window_start=t0,
        window_end=t0 + timedelta(hours=1),
        trades=[trade],
        equity_curve=[EquityPoint(t0 + timedelta(minutes=5), 0.0), EquityPoint(trade.exit_time, 20.0)],
        report=compute_performance([trade], [0.0, 20.0], {"no_rule_match": 7}, starting_balance=1000.0),
        open_position=pos,
        settings={"tie_break": "stop_first"},
    )


def test_rows_use_the_trade_log_schema(t0) -> None:
    closed, still_open = trade_log_rows(_result(t0))
    assert closed["dealId"] == "EURUSD-202601050905-1"
    assert closed["signal"] == "SELL"
    assert closed["stopLoss"] == 1.101
    assert closed["status"] == "CLOSED"
    assert closed["closeReason"] == "take_profit"
    assert closed["openedAt"] == "2026-01-05T00:05:00Z"
    assert closed["indicatorsOnOpening"] == {"M5": {"rsi": 41.2, "adx": None}}

    assert still_open["status"] == "OPEN"
    assert still_open["closeReason"] is None
    assert still_open["closedAt"] is None
    assert still_open["dealId"].endswith("-open")


def test_written_log_is_one_sorted_object_per_line(tmp_path, t0) -> None:
    path = write_trade_log(_result(t0), tmp_path / "nested" / "trades_EURUSD.jsonl")
    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    first = json.loads(lines[0])
    assert list(first) == sorted(first)
    assert first["closePrice"] == 1.098


def test_save_simulation_result(t0) -> None:
    run_id = save_simulation_result(_result(t0, with_open=False), note="unit")
    conn = connect()
    run = conn.execute("SELECT * FROM sim_runs WHERE id = ?", (run_id,)).fetchone()
    assert run["symbol"] == "EURUSD"
    assert run["window_start"] == "2026-01-05T00:00:00Z"
    assert json.loads(run["settings_json"]) == {"tie_break": "stop_first"}

    metrics = {r["metric"]: r["value"] for r in conn.execute(
        "SELECT metric, value FROM sim_results WHERE run_id = ?", (run_id,))}
    assert metrics["total_trades"] == 1.0
    assert metrics["profit_factor"] is None

    trades = conn.execute("SELECT deal_id, pips FROM sim_trades WHERE run_id = ?", (run_id,)).fetchall()
    assert [(r["deal_id"], r["pips"]) for r in trades] == [("EURUSD-202601050905-1", 20.0)]
    assert conn.execute("SELECT COUNT(*) FROM sim_equity WHERE run_id = ?", (run_id,)).fetchone()[0] == 2
    conn.close()


def test_init_db_creates_tables(capsys) -> None:
    init_db()
    out = capsys.readouterr().out
    for table in ("event_log", "sim_equity", "sim_results", "sim_runs", "sim_trades"):
        assert table in out
