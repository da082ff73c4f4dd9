"""
Simulation configuration loaded from environment, with an optional YAML overlay.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Optional

import yaml

from walkforward import timeframes as tfs


def _get_env(name: str, default: str) -> str:
    v = os.getenv(name)
    if v is None:
        return default
    v = v.strip()
    return v if v else default


def _as_bool(v: str) -> bool:
    return v.strip().lower() in ("1", "true", "yes", "y", "on")


def _as_tuple(v: Any) -> tuple:
    if isinstance(v, str):
        return tuple(p.strip().upper() for p in v.split(",") if p.strip())
    return tuple(str(p).strip().upper() for p in v)


CRYPTO_PREFIXES = ("BTC", "ETH", "SOL", "XRP", "LTC", "DOGE", "ADA", "BNB", "DOT")

TIE_BREAK_POLICIES = ("stop_first", "target_first", "nearest_to_open")


# ──────────────────────────────────────────────
# Asset profiles
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class AssetProfile:
    asset_class: str                 # forex | crypto
    stop_atr_mult: float
    reward_multiple: float
    min_stop_pips: float             # absolute floor, in pips
    min_stop_price_frac: float       # floor as a fraction of price
    min_stop_spread_mult: float      # floor as a multiple of the spread
    spread_pips: float
    pip_size: float
    price_digits: int
    volatility_floor: float          # minimum ATR / price for breakout rules
    leverage: float
    trail_atr_mult: float = 1.0
    breakeven_r: float = 1.0
    trailing_r: float = 1.5
    soft_exit_progress: float = 0.7

    def min_stop_distance(self, price: float) -> float:
        return max(
            self.min_stop_pips * self.pip_size,
            abs(price) * self.min_stop_price_frac,
            self.min_stop_spread_mult * self.spread_pips * self.pip_size,
        )

    def to_pips(self, distance: float) -> float:
        return distance / self.pip_size

    def round_price(self, price: float) -> float:
        return round(price, self.price_digits)


def is_crypto_symbol(symbol: str) -> bool:
    return symbol.upper().startswith(CRYPTO_PREFIXES)


def pip_size_for(symbol: str) -> float:
    s = symbol.upper()
    if is_crypto_symbol(s):
        return 1.0
    return 0.01 if "JPY" in s else 0.0001


def resolve_asset_class(symbol: str, asset_class: str = "auto") -> str:
    if asset_class in ("forex", "crypto"):
        return asset_class
    if asset_class != "auto":
        raise ValueError(f"Unknown asset_class: {asset_class!r}")
    return "crypto" if is_crypto_symbol(symbol) else "forex"


def asset_profile_for(symbol: str, asset_class: str = "auto", **overrides: Any) -> AssetProfile:
    resolved = resolve_asset_class(symbol, asset_class)
    if resolved == "crypto":
        profile = AssetProfile(
            asset_class="crypto",
            stop_atr_mult=2.5,
            reward_multiple=2.0,
            min_stop_pips=0.0,
            min_stop_price_frac=0.0045,
            min_stop_spread_mult=3.0,
            spread_pips=10.0,
            pip_size=1.0,
            price_digits=2,
            volatility_floor=0.0015,
            leverage=20.0,
        )
    else:
        jpy = "JPY" in symbol.upper()
        profile = AssetProfile(
            asset_class="forex",
            stop_atr_mult=1.5,
            reward_multiple=2.0,
            min_stop_pips=8.0,
            min_stop_price_frac=0.0,
            min_stop_spread_mult=2.0,
            spread_pips=1.0,
            pip_size=0.01 if jpy else 0.0001,
            price_digits=3 if jpy else 5,
            volatility_floor=0.0003,
            leverage=30.0,
        )
    clean = {k: v for k, v in overrides.items() if v is not None}
    return replace(profile, **clean) if clean else profile


# ──────────────────────────────────────────────
# Simulation settings
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class SimulationSettings:
    driver_timeframe: str = "M5"
    timeframes: tuple = ("M1", "M5", "M15", "H1", "H4")
    variant_timeframes: tuple = ("M5", "M15", "H1")   # execution, confirmation, anchor
    exit_timeframe: Optional[str] = "M1"              # finer path for stop/target resolution; None -> driver bars
    asset_class: str = "auto"                         # auto | forex | crypto

    history_window: int = 200
    min_bars: int = 60

    starting_balance: float = 1000.0
    risk_per_trade: float = 0.02
    max_hold_minutes: int = 240

    reward_multiple: Optional[float] = None           # None -> asset profile default
    stop_atr_mult: Optional[float] = None
    min_stop_pips: Optional[float] = None
    spread_pips: Optional[float] = None

    tie_break: str = "stop_first"                     # stop_first | target_first | nearest_to_open
    timestamp_convention: str = "open"                # open | close
    close_open_at_end: bool = True
    derive_timeframes: dict = field(default_factory=dict)   # e.g. {"H4": "H1"}

    workers: int = 1
    persist_db: bool = False

    def validate(self) -> "SimulationSettings":
        for tf in self.timeframes:
            tfs.normalize(tf)
        if tfs.normalize(self.driver_timeframe) not in self.timeframes:
            raise ValueError(f"driver_timeframe {self.driver_timeframe} not in timeframes {self.timeframes}")
        if len(self.variant_timeframes) != 3:
            raise ValueError("variant_timeframes must name exactly three timeframes")
        for tf in self.variant_timeframes:
            if tfs.normalize(tf) not in self.timeframes:
                raise ValueError(f"variant timeframe {tf} not in timeframes {self.timeframes}")
        if tfs.normalize(self.variant_timeframes[0]) != tfs.normalize(self.driver_timeframe):
            raise ValueError("first variant timeframe must be the driver timeframe")
        if self.exit_timeframe:
            exit_tf = tfs.normalize(self.exit_timeframe)
            if exit_tf in self.timeframes and tfs.seconds(exit_tf) >= tfs.seconds(self.driver_timeframe):
                raise ValueError(f"exit_timeframe {exit_tf} must be finer than driver {self.driver_timeframe}")
        if self.tie_break not in TIE_BREAK_POLICIES:
            raise ValueError(f"tie_break must be one of {TIE_BREAK_POLICIES}")
        if self.timestamp_convention not in ("open", "close"):
            raise ValueError("timestamp_convention must be 'open' or 'close'")
        if self.min_bars < 1 or self.history_window < self.min_bars:
            raise ValueError("history_window must be >= min_bars >= 1")
        if not 0 < self.risk_per_trade < 1:
            raise ValueError("risk_per_trade must be in (0, 1)")
        if self.workers < 1:
            raise ValueError("workers must be >= 1")
        for target, source in self.derive_timeframes.items():
            if tfs.seconds(target) <= tfs.seconds(source):
                raise ValueError(f"cannot derive {target} from finer-or-equal {source}")
        return self

    def profile(self, symbol: str) -> AssetProfile:
        return asset_profile_for(
            symbol,
            self.asset_class,
            reward_multiple=self.reward_multiple,
            stop_atr_mult=self.stop_atr_mult,
            min_stop_pips=self.min_stop_pips,
            spread_pips=self.spread_pips,
        )

    def as_dict(self) -> dict[str, Any]:
        out = {}
        for f in fields(self):
            v = getattr(self, f.name)
            out[f.name] = list(v) if isinstance(v, tuple) else v
        return out


def _optional_float(name: str) -> Optional[float]:
    raw = _get_env(name, "")
    return float(raw) if raw else None


def _optional_timeframe(name: str, default: str) -> Optional[str]:
    raw = _get_env(name, default).upper()
    return None if raw in ("NONE", "OFF", "0") else raw


def _parse_derive(raw: str) -> dict:
    # "H4:H1,M15:M5"
    out = {}
    for part in raw.split(","):
        if not part.strip():
            continue
        target, _, source = part.partition(":")
        out[tfs.normalize(target)] = tfs.normalize(source)
    return out


def load_simulation_settings(config_path: Optional[Path] = None) -> SimulationSettings:
    settings = SimulationSettings(
        driver_timeframe=_get_env("SIM_DRIVER_TIMEFRAME", "M5").upper(),
        timeframes=_as_tuple(_get_env("SIM_TIMEFRAMES", "M1,M5,M15,H1,H4")),
        variant_timeframes=_as_tuple(_get_env("SIM_VARIANT_TIMEFRAMES", "M5,M15,H1")),
        exit_timeframe=_optional_timeframe("SIM_EXIT_TIMEFRAME", "M1"),
        asset_class=_get_env("SIM_ASSET_CLASS", "auto").lower(),
        history_window=int(_get_env("SIM_HISTORY_WINDOW", "200")),
        min_bars=int(_get_env("SIM_MIN_BARS", "60")),
        starting_balance=float(_get_env("SIM_STARTING_BALANCE", "1000")),
        risk_per_trade=float(_get_env("SIM_RISK_PER_TRADE", "0.02")),
        max_hold_minutes=int(_get_env("SIM_MAX_HOLD_MINUTES", "240")),
        reward_multiple=_optional_float("SIM_REWARD_MULTIPLE"),
        stop_atr_mult=_optional_float("SIM_STOP_ATR_MULT"),
        min_stop_pips=_optional_float("SIM_MIN_STOP_PIPS"),
        spread_pips=_optional_float("SIM_SPREAD_PIPS"),
        tie_break=_get_env("SIM_TIE_BREAK", "stop_first").lower(),
        timestamp_convention=_get_env("SIM_TIMESTAMP_CONVENTION", "open").lower(),
        close_open_at_end=_as_bool(_get_env("SIM_CLOSE_OPEN_AT_END", "1")),
        derive_timeframes=_parse_derive(_get_env("SIM_DERIVE_TIMEFRAMES", "")),
        workers=int(_get_env("SIM_WORKERS", "1")),
        persist_db=_as_bool(_get_env("SIM_PERSIST_DB", "0")),
    )
    if config_path is not None:
        settings = apply_overlay(settings, read_yaml(config_path))
    return settings.validate()


def read_yaml(path: Path) -> dict[str, Any]:
    with Path(path).open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError("YAML root must be mapping")
    return data


def apply_overlay(settings: SimulationSettings, overlay: dict[str, Any]) -> SimulationSettings:
    known = {f.name for f in fields(SimulationSettings)}
    unknown = sorted(set(overlay) - known)
    if unknown:
        raise ValueError(f"Unknown simulation settings: {', '.join(unknown)}")

    changes: dict[str, Any] = {}
    for key, value in overlay.items():
        if key in ("timeframes", "variant_timeframes"):
            value = _as_tuple(value)
        elif key == "driver_timeframe":
            value = tfs.normalize(value)
        elif key == "exit_timeframe":
            value = tfs.normalize(value) if value else None
        elif key == "derive_timeframes":
            value = {tfs.normalize(k): tfs.normalize(v) for k, v in (value or {}).items()}
        changes[key] = value
    return replace(settings, **changes)
