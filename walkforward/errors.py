"""
Error taxonomy for the walk-forward simulator.

AlignmentError and InsufficientDataError abort a single instrument run.
IndicatorUnavailable and MissingTimestamp are recoverable: the former skips
evaluation for one bar, the latter drops one input record.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


class SimulationError(RuntimeError):
    """Base class for simulator failures."""


@dataclass
class Violation:
    timeframe: str
    kind: str           # empty_series | empty_overlap | non_monotonic | irregular_step | phase_offset
    count: int = 0
    samples: list = field(default_factory=list)

    def describe(self) -> str:
        text = f"{self.timeframe}: {self.kind} x{self.count}"
        if self.samples:
            text += " e.g. " + "; ".join(str(s) for s in self.samples)
        return text


class AlignmentError(SimulationError):
    def __init__(self, violations: list[Violation], window: Optional[tuple] = None):
        self.violations = list(violations)
        self.window = window
        lines = [f"{len(self.violations)} alignment violation(s)"]
        if window is not None:
            lines[0] += f" in window {window[0]} .. {window[1]}"
        for v in self.violations:
            lines.append(f"  - {v.describe()}")
        super().__init__("\n".join(lines))

    def kinds(self) -> set:
        return {v.kind for v in self.violations}


class InsufficientDataError(SimulationError):
    def __init__(self, timeframe: str, required: int, available: int, detail: str = ""):
        self.timeframe = timeframe
        self.required = required
        self.available = available
        msg = f"{timeframe}: need at least {required} bars, have {available}"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)


class IndicatorUnavailable(SimulationError):
    def __init__(self, timeframe: str, missing: Optional[list] = None, error: str = ""):
        self.timeframe = timeframe
        self.missing = list(missing or [])
        self.error = error
        msg = f"indicators unavailable on {timeframe}"
        if self.missing:
            msg += ": " + ", ".join(self.missing)
        if error:
            msg += f" ({error})"
        super().__init__(msg)


class MissingTimestamp(ValueError):
    def __init__(self, message: str, record: Optional[dict[str, Any]] = None):
        self.record = record
        super().__init__(message)
