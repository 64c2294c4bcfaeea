"""Technical indicators — ATR and EMA, plus the per-cycle snapshot. Pure functions, no I/O."""

import math
from dataclasses import dataclass

from zoneforge.errors import DataUnavailable
from zoneforge.strategy.models import CandleData


@dataclass(frozen=True)
class IndicatorSnapshot:
    """Latest single sample of each indicator, valid for one cycle only."""

    atr: float
    ema_fast: float
    ema_slow: float

    @property
    def trend_sign(self) -> int:
        """+1 when EMA-fast is above EMA-slow, -1 when below, 0 when equal."""
        if self.ema_fast > self.ema_slow:
            return 1
        if self.ema_fast < self.ema_slow:
            return -1
        return 0


def calculate_atr(candles: list[CandleData], period: int = 14) -> float:
    """Calculate the Average True Range over *period* candles.

    Uses the standard True Range definition:
        TR = max(high - low, |high - prev_close|, |low - prev_close|)

    Requires at least ``period + 1`` candles (need a previous close for TR).
    Returns the simple average of the last *period* true ranges.

    Raises ``ValueError`` if insufficient data.
    """
    if len(candles) < period + 1:
        raise ValueError(
            f"Need at least {period + 1} candles for ATR({period}), "
            f"got {len(candles)}"
        )

    true_ranges: list[float] = []
    for i in range(1, len(candles)):
        high = candles[i].high
        low = candles[i].low
        prev_close = candles[i - 1].close
        tr = max(
            high - low,
            abs(high - prev_close),
            abs(low - prev_close),
        )
        true_ranges.append(tr)

    recent = true_ranges[-period:]
    return sum(recent) / len(recent)


def calculate_ema(candles: list[CandleData], period: int) -> list[float]:
    """Calculate an Exponential Moving Average series of closes.

    ``EMA_today = close × k + EMA_yesterday × (1 - k)`` with
    ``k = 2 / (period + 1)``, seeded with the SMA of the first *period*
    closes.  Entries before the seed are ``float('nan')``.

    Raises ``ValueError`` if fewer than *period* candles are provided.
    """
    if len(candles) < period:
        raise ValueError(
            f"Need at least {period} candles for EMA({period}), "
            f"got {len(candles)}"
        )

    k = 2.0 / (period + 1)
    closes = [c.close for c in candles]
    ema: list[float] = [float("nan")] * len(closes)

    seed = sum(closes[:period]) / period
    ema[period - 1] = seed

    for i in range(period, len(closes)):
        ema[i] = closes[i] * k + ema[i - 1] * (1 - k)

    return ema


def build_snapshot(
    candles: list[CandleData],
    atr_period: int,
    ema_fast: int,
    ema_slow: int,
) -> IndicatorSnapshot:
    """Compute ATR and both EMAs on the latest closed bar.

    Raises:
        DataUnavailable: Too few candles, or a non-finite result.
    """
    try:
        atr = calculate_atr(candles, atr_period)
        fast = calculate_ema(candles, ema_fast)[-1]
        slow = calculate_ema(candles, ema_slow)[-1]
    except ValueError as exc:
        raise DataUnavailable(str(exc)) from exc

    if not all(math.isfinite(v) for v in (atr, fast, slow)) or atr <= 0:
        raise DataUnavailable(
            f"indicator values unusable (atr={atr}, ema_fast={fast}, ema_slow={slow})"
        )
    return IndicatorSnapshot(atr=atr, ema_fast=fast, ema_slow=slow)
