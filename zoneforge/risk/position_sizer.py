"""Position sizing — pure math, no I/O.

Turns a risk budget and a stop distance into a tradable volume, respecting
the venue's lot constraints and the account's free margin.
"""

import math
from dataclasses import dataclass
from typing import Callable, Optional


@dataclass(frozen=True)
class SizingDecision:
    """Outcome of a sizing request.

    ``volume`` is set when accepted; ``reason`` names the failing guard
    otherwise (``invalid_stop_distance``, ``invalid_tick_value``,
    ``below_min_lot`` or ``insufficient_margin``).
    """

    volume: Optional[float]
    reason: Optional[str] = None
    risk_amount: float = 0.0
    raw_volume: float = 0.0
    margin_required: Optional[float] = None

    @property
    def accepted(self) -> bool:
        return self.volume is not None


def floor_to_step(volume: float, step: float) -> float:
    """Quantise *volume* down to a multiple of *step*."""
    if step <= 0:
        return volume
    # Tolerance keeps 0.3 / 0.1 from flooring to 2 steps.
    steps = math.floor(volume / step + 1e-9)
    decimals = len(f"{step:.10f}".rstrip("0").split(".")[1])
    return round(steps * step, decimals)


def size_position(
    balance: float,
    risk_pct: float,
    entry: float,
    stop: float,
    tick_value: float,
    lot_min: float,
    lot_max: float,
    lot_step: float,
    free_margin: float,
    margin_for_volume: Callable[[float], float],
) -> SizingDecision:
    """Calculate the volume that risks *risk_pct* of *balance* on the stop.

    Formula::

        risk_amount = balance × (risk_pct / 100)
        stop_dist   = |entry − stop|
        raw_volume  = risk_amount / (stop_dist × tick_value)
        volume      = min(floor_to_step(raw_volume, lot_step), lot_max)

    Args:
        balance: Account balance in account currency.
        risk_pct: Percentage of balance to risk (e.g. 1.0 for 1 %).
        entry: Expected entry price.
        stop: Stop-loss price.
        tick_value: Account-currency value of a 1.0 price move per unit.
        lot_min: Smallest tradable volume.
        lot_max: Largest tradable volume.
        lot_step: Volume increment.
        free_margin: Margin available for a new position.
        margin_for_volume: Returns the margin a given volume would need at
            *entry*.

    Returns:
        A ``SizingDecision``; never raises for a failing guard.
    """
    risk_amount = balance * (risk_pct / 100.0)
    stop_dist = abs(entry - stop)

    if stop_dist <= 0:
        return SizingDecision(None, "invalid_stop_distance", risk_amount)
    if tick_value <= 0:
        return SizingDecision(None, "invalid_tick_value", risk_amount)

    raw_volume = risk_amount / (stop_dist * tick_value)
    volume = min(floor_to_step(raw_volume, lot_step), lot_max)

    if volume < lot_min:
        return SizingDecision(None, "below_min_lot", risk_amount, raw_volume)

    margin = margin_for_volume(volume)
    if margin > free_margin:
        return SizingDecision(
            None, "insufficient_margin", risk_amount, raw_volume, margin,
        )

    return SizingDecision(volume, None, risk_amount, raw_volume, margin)
