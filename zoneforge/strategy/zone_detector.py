"""Supply/demand zone detection from closed H1 candles — pure functions.

A zone is the range of a strong engulfing candle: a bullish candle that
engulfs the body of the bearish candle before it forms a demand zone, the
mirror image forms a supply zone.
"""

from collections.abc import Iterable
from datetime import datetime
from typing import Optional

from zoneforge.strategy.models import CandleData, Zone, ZoneDirection


def _engulfing_direction(
    candle: CandleData, older: CandleData
) -> Optional[ZoneDirection]:
    """Classify *candle* against the bar immediately before it.

    Returns ``"demand"`` for a bullish engulfing, ``"supply"`` for a bearish
    engulfing, ``None`` otherwise.
    """
    for direction, sign in (("demand", 1), ("supply", -1)):
        older_against = sign * (older.close - older.open) < 0
        candle_with = sign * (candle.close - candle.open) > 0
        engulfs = (
            sign * (candle.close - older.open) > 0
            and sign * (older.close - candle.open) > 0
        )
        if older_against and candle_with and engulfs:
            return direction
    return None


def _is_strong(candle: CandleData, atr: float, body_ratio: float) -> bool:
    """A candle is strong when its range beats ATR and its body dominates it."""
    rng = candle.range
    if rng <= atr or rng <= 0:
        return False
    return candle.body / rng >= body_ratio


def detect_zones(
    candles: list[CandleData],
    atr: float,
    lookback: int = 50,
    body_ratio: float = 0.6,
    known_times: Iterable[datetime] = (),
) -> list[Zone]:
    """Scan recent closed candles for engulfing supply/demand zones.

    Call once per newly closed bar.  The latest closed bar is never a
    candidate; candidates are the ``lookback - 2`` bars behind it, each
    compared with the bar immediately older.

    Args:
        candles: Closed candle history, oldest-first.
        atr: Current ATR; a candidate's range must exceed it.
        lookback: Scan depth in bars, counted from the forming bar, so
            ``lookback=3`` examines only the bar before the latest closed one.
        body_ratio: Minimum ``body / range`` for a candidate, in ``(0, 1]``.
        known_times: Timestamps that already have a registered zone.

    Returns:
        New ``Zone`` objects, oldest-first.
    """
    if lookback < 3:
        raise ValueError(f"lookback must be at least 3, got {lookback}")
    if not 0 < body_ratio <= 1:
        raise ValueError(f"body_ratio must be in (0, 1], got {body_ratio}")

    series = candles[::-1]  # newest-first
    seen = set(known_times)
    zones: list[Zone] = []

    # Index 0 is the latest closed bar; *lookback* also counts the forming one.
    for i in range(1, min(len(series) - 1, lookback - 1)):
        candle = series[i]
        if candle.time in seen:
            continue
        if not _is_strong(candle, atr, body_ratio):
            continue
        direction = _engulfing_direction(candle, series[i + 1])
        if direction is None:
            continue
        seen.add(candle.time)
        zones.append(
            Zone(
                top=candle.high,
                bottom=candle.low,
                direction=direction,
                created_at=candle.time,
            )
        )

    zones.reverse()
    return zones
