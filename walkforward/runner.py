"""
Instrument runs: load -> align -> build rules -> simulate -> write outputs.

Instruments are independent. run_symbols() runs them one after another, or in
separate processes when more than one worker is requested; each process
builds its own loader, rule set, simulator and feedback store.
"""
from __future__ import annotations

import time
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Sequence

from shared.logger import log_event
from walkforward.alignment import align_timeframes
from walkforward.config import SimulationSettings
from walkforward.data_loader import load_symbol_series
from walkforward.engine import SimulationResult, WalkForwardSimulator
from walkforward.errors import AlignmentError, InsufficientDataError, SimulationError
from walkforward.feedback import (
    EvolutionFeedback,
    JsonFileFeedback,
    NoOpFeedback,
    build_improvement_proposal,
    build_result_payload,
    override_scope,
)
from walkforward.indicators import IndicatorProvider
from walkforward.signals import build_rule_set
from walkforward.trade_log import save_simulation_result, write_trade_log


@dataclass
class InstrumentRunOutcome:
    symbol: str
    ok: bool
    summary: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    details: dict = field(default_factory=dict)
    outputs: dict = field(default_factory=dict)
    duration_seconds: float = 0.0


def _error_details(e: Exception) -> dict[str, Any]:
    if isinstance(e, AlignmentError):
        return {
            "window": [str(x) for x in e.window] if e.window else None,
            "violations": [
                {"timeframe": v.timeframe, "kind": v.kind, "count": v.count, "samples": v.samples}
                for v in e.violations
            ],
        }
    if isinstance(e, InsufficientDataError):
        return {"timeframe": e.timeframe, "required": e.required, "available": e.available}
    return {}


def trade_log_path(out_dir: Path, symbol: str) -> Path:
    return Path(out_dir) / f"trades_{symbol.upper()}.jsonl"


def run_symbol(
    symbol: str,
    settings: SimulationSettings,
    data_dir: Path,
    out_dir: Optional[Path] = None,
    feedback: Optional[EvolutionFeedback] = None,
    provider: Optional[IndicatorProvider] = None,
) -> SimulationResult:
    """Run one instrument. Fatal data problems raise; nothing is written for a failed run."""
    symbol = symbol.upper()
    feedback = feedback or NoOpFeedback()
    log_event("INFO", "runner", f"{symbol}: run started", variant=",".join(settings.variant_timeframes))

    try:
        series = load_symbol_series(data_dir, symbol, settings.timeframes, settings.derive_timeframes)
        window = align_timeframes(series)
    except SimulationError as e:
        log_event("ERROR", "runner", f"{symbol}: {type(e).__name__}: {e}")
        raise

    profile = settings.profile(symbol)
    with override_scope(feedback, symbol) as overrides:
        rule_set = build_rule_set(
            settings.variant_timeframes,
            profile.asset_class,
            overrides,
            volatility_floor=profile.volatility_floor,
            pip_size=profile.pip_size,
        )
        if overrides:
            log_event("INFO", "runner", f"{symbol}: applied overrides", rules=",".join(sorted(overrides)))

        simulator = WalkForwardSimulator(settings, rule_set, provider=provider, profile=profile)
        try:
            result = simulator.run(symbol, window)
        except SimulationError as e:
            log_event("ERROR", "runner", f"{symbol}: {type(e).__name__}: {e}")
            raise

    feedback.save_result(symbol, build_result_payload(result))
    feedback.save_improvements(symbol, build_improvement_proposal(result, rule_set))

    if out_dir is not None:
        path = write_trade_log(result, trade_log_path(out_dir, symbol))
        log_event("INFO", "runner", f"{symbol}: trade log written", path=path)
    if settings.persist_db:
        run_id = save_simulation_result(result, note=rule_set.name)
        log_event("INFO", "runner", f"{symbol}: saved to db", run_id=run_id)

    r = result.report
    log_event(
        "INFO", "runner", f"{symbol}: run finished",
        trades=r.total_trades, win_rate=r.win_rate, net_pips=r.net_pips, balance=r.final_balance,
    )
    return result


def _run_symbol_isolated(
    symbol: str,
    settings: SimulationSettings,
    data_dir: str,
    out_dir: Optional[str],
) -> InstrumentRunOutcome:
    start = time.time()
    feedback = JsonFileFeedback(Path(out_dir)) if out_dir else NoOpFeedback()
    try:
        result = run_symbol(
            symbol,
            settings,
            Path(data_dir),
            out_dir=Path(out_dir) if out_dir else None,
            feedback=feedback,
        )
    except (SimulationError, ValueError, OSError) as e:
        return InstrumentRunOutcome(
            symbol=symbol.upper(),
            ok=False,
            error=str(e),
            error_type=type(e).__name__,
            details=_error_details(e),
            duration_seconds=time.time() - start,
        )

    outputs = {}
    if out_dir:
        outputs = {
            "trade_log": str(trade_log_path(Path(out_dir), symbol)),
            "result": str(feedback.result_path(symbol)),
            "improvements": str(feedback.improvements_path(symbol)),
        }
    return InstrumentRunOutcome(
        symbol=symbol.upper(),
        ok=True,
        summary=result.report.as_dict(),
        outputs=outputs,
        duration_seconds=time.time() - start,
    )


def run_symbols(
    symbols: Sequence[str],
    settings: SimulationSettings,
    data_dir: Path,
    out_dir: Optional[Path] = None,
    workers: Optional[int] = None,
) -> list[InstrumentRunOutcome]:
    """Outcomes come back in input order regardless of worker count."""
    workers = workers or settings.workers
    args = [(s, settings, str(data_dir), str(out_dir) if out_dir else None) for s in symbols]

    if workers <= 1 or len(symbols) <= 1:
        return [_run_symbol_isolated(*a) for a in args]

    with ProcessPoolExecutor(max_workers=min(workers, len(symbols))) as pool:
        futures = [pool.submit(_run_symbol_isolated, *a) for a in args]
        return [f.result() for f in futures]
