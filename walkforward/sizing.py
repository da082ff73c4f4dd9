"""
Position sizing.

Fixed fractional: risk a share of the balance per trade, then cap the size so
the margin needed stays within a share of the balance.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class SizingConfig:
    risk_per_trade: float = 0.02       # 2% of balance per trade
    leverage: float = 30.0
    max_margin_fraction: float = 0.2   # margin per trade <= balance / 5


def calculate_position_size(
    balance: float,
    risk_distance: float,
    price: float,
    cfg: SizingConfig = None,
) -> float:
    """
    Position size in units of the instrument.

    Args:
        balance:       Current simulated balance
        risk_distance: Entry-to-stop distance in price units
        price:         Entry price (for the margin check)
        cfg:           Sizing configuration

    Returns:
        Units such that hitting the stop loses about balance * risk_per_trade.
    """
    if cfg is None:
        cfg = SizingConfig()
    if balance <= 0 or risk_distance <= 0 or price <= 0:
        return 0.0

    units = _fixed_fractional_size(balance, risk_distance, cfg)
    return _enforce_margin_limit(units, balance, price, cfg)


def _fixed_fractional_size(balance: float, risk_distance: float, cfg: SizingConfig) -> float:
    risk_amount = balance * cfg.risk_per_trade
    return risk_amount / risk_distance


def _enforce_margin_limit(units: float, balance: float, price: float, cfg: SizingConfig) -> float:
    """Cap position so required margin stays under max_margin_fraction of balance."""
    margin_required = units * price / cfg.leverage
    max_margin = balance * cfg.max_margin_fraction
    if margin_required > max_margin:
        units = max_margin * cfg.leverage / price
    return units
