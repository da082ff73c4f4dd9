"""
Trade log outputs: JSON lines per instrument and optional sqlite persistence.
"""
from __future__ import annotations

import json
import math
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from shared.db import connect, ensure_schema
from walkforward.engine import SimulationResult
from walkforward.types import format_ts

STATUS_CLOSED = "CLOSED"
STATUS_OPEN = "OPEN"


def trade_log_rows(result: SimulationResult) -> list[dict[str, Any]]:
    rows = []
    for t in result.trades:
        rows.append({
            "dealId": t.deal_id,
            "symbol": t.symbol,
            "signal": t.direction,
            "entryPrice": t.entry_price,
            "stopLoss": t.initial_stop,
            "takeProfit": t.take_profit,
            "openedAt": format_ts(t.entry_time),
            "status": STATUS_CLOSED,
            "closeReason": t.exit_reason,
            "closePrice": t.exit_price,
            "closedAt": format_ts(t.exit_time),
            "indicatorsOnOpening": dict(t.indicators_on_open),
            "indicatorsOnClosing": dict(t.indicators_on_close),
        })

    pos = result.open_position
    if pos is not None:
        rows.append({
            "dealId": f"{result.symbol}-{pos.entry_time:%Y%m%d%H%M}-open",
            "symbol": result.symbol,
            "signal": pos.direction,
            "entryPrice": pos.entry_price,
            "stopLoss": pos.stop_loss,
            "takeProfit": pos.take_profit,
            "openedAt": format_ts(pos.entry_time),
            "status": STATUS_OPEN,
            "closeReason": None,
            "closePrice": None,
            "closedAt": None,
            "indicatorsOnOpening": dict(pos.indicators_on_open),
            "indicatorsOnClosing": None,
        })
    return rows


def write_trade_log(result: SimulationResult, path: Path) -> Path:
    """Write one JSON object per line; key order is fixed so identical runs give identical bytes."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    with p.open("w", encoding="utf-8", newline="\n") as f:
        for row in trade_log_rows(result):
            f.write(json.dumps(row, sort_keys=True, allow_nan=False))
            f.write("\n")
    return p


def save_simulation_result(result: SimulationResult, note: str = "") -> int:
    """Save a SimulationResult to the database. Returns the run_id."""
    ts = datetime.now(timezone.utc).isoformat(timespec="seconds")
    db = connect()
    ensure_schema(db)

    cur = db.execute(
        """INSERT INTO sim_runs
           (created_utc, symbol, variant, asset_class, window_start, window_end, settings_json, note)
           VALUES (?,?,?,?,?,?,?,?)""",
        (ts, result.symbol, result.rule_set, result.asset_class,
         format_ts(result.window_start), format_ts(result.window_end),
         json.dumps(result.settings, sort_keys=True), note),
    )
    run_id = cur.lastrowid

    for k, v in result.report.as_dict().items():
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            db.execute(
                "INSERT INTO sim_results (run_id, metric, value) VALUES (?,?,?)",
                (run_id, k, float(v)),
            )
    if math.isinf(result.report.profit_factor):
        db.execute(
            "INSERT INTO sim_results (run_id, metric, value) VALUES (?,?,?)",
            (run_id, "profit_factor", None),
        )

    for t in result.trades:
        db.execute(
            """INSERT INTO sim_trades
               (run_id, deal_id, direction, entry_time, exit_time, entry_price, exit_price,
                stop_loss, take_profit, exit_reason, pips, r_multiple, pnl_money)
               VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)""",
            (run_id, t.deal_id, t.direction, format_ts(t.entry_time), format_ts(t.exit_time),
             t.entry_price, t.exit_price, t.initial_stop, t.take_profit, t.exit_reason,
             t.pips, t.r_multiple, t.pnl_money),
        )

    for point in result.equity_curve:
        db.execute(
            "INSERT INTO sim_equity (run_id, ts_utc, equity) VALUES (?,?,?)",
            (run_id, format_ts(point.ts), float(point.equity)),
        )

    db.commit()
    db.close()
    return run_id
