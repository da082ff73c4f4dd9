from __future__ import annotations

import argparse
import json
import sys
from dataclasses import replace
from pathlib import Path
from typing import Optional, Sequence

from shared.config import load_settings
from walkforward.alignment import inspect_alignment
from walkforward.config import load_simulation_settings
from walkforward.data_loader import load_symbol_series
from walkforward.errors import SimulationError
from walkforward.runner import run_symbols


def _cmd_run(args: argparse.Namespace) -> int:
    env = load_settings()
    settings = load_simulation_settings(Path(args.config) if args.config else None)
    if args.workers is not None:
        settings = replace(settings, workers=args.workers)
    if args.persist:
        settings = replace(settings, persist_db=True)
    settings = settings.validate()

    data_dir = Path(args.data_dir) if args.data_dir else env.data_dir
    out_dir = Path(args.out) if args.out else env.results_dir

    outcomes = run_symbols(args.symbols, settings, data_dir, out_dir)
    failed = 0
    for o in outcomes:
        if o.ok:
            s = o.summary or {}
            print(
                f"{o.symbol}: trades={s.get('total_trades')} win_rate={s.get('win_rate', 0.0):.1%} "
                f"pf={s.get('profit_factor')} net_pips={s.get('net_pips')} "
                f"max_dd={s.get('max_drawdown')} balance={s.get('final_balance')}"
            )
            for name, path in o.outputs.items():
                print(f"  {name}: {path}")
        else:
            failed += 1
            print(f"{o.symbol}: FAILED {o.error_type}: {o.error}", file=sys.stderr)
            if o.details:
                print(json.dumps(o.details, indent=2, default=str), file=sys.stderr)
    return 1 if failed else 0


def _cmd_validate(args: argparse.Namespace) -> int:
    env = load_settings()
    settings = load_simulation_settings(Path(args.config) if args.config else None)
    data_dir = Path(args.data_dir) if args.data_dir else env.data_dir

    failed = 0
    for symbol in args.symbols:
        try:
            series = load_symbol_series(data_dir, symbol.upper(), settings.timeframes, settings.derive_timeframes)
        except SimulationError as e:
            failed += 1
            print(f"{symbol.upper()}: FAILED {type(e).__name__}: {e}", file=sys.stderr)
            continue
        report, _ = inspect_alignment(series)
        print(f"{symbol.upper()}")
        print(report.summary())
        if not report.is_clean:
            failed += 1
    return 1 if failed else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Multi-timeframe walk-forward strategy evaluator")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_run = sub.add_parser("run", help="Simulate one or more instruments")
    p_run.add_argument("symbols", nargs="+")
    p_run.add_argument("--config", default=None, help="YAML overlay for simulation settings")
    p_run.add_argument("--data-dir", default=None)
    p_run.add_argument("--out", default=None, help="Directory for trade logs and result documents")
    p_run.add_argument("--workers", type=int, default=None)
    p_run.add_argument("--persist", action="store_true", help="Also save results to sqlite")

    p_val = sub.add_parser("validate", help="Check timeframe alignment without simulating")
    p_val.add_argument("symbols", nargs="+")
    p_val.add_argument("--config", default=None)
    p_val.add_argument("--data-dir", default=None)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.cmd == "run":
        return _cmd_run(args)
    if args.cmd == "validate":
        return _cmd_validate(args)
    return 2


if __name__ == "__main__":
    sys.exit(main())
