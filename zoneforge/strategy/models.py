"""Strategy data models — typed representations for strategy inputs and outputs."""

from dataclasses import dataclass
from datetime import datetime
from typing import Literal


ZoneDirection = Literal["demand", "supply"]


@dataclass(frozen=True)
class CandleData:
    """A single closed candlestick bar for strategy consumption."""

    time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: int = 0

    @property
    def body(self) -> float:
        return abs(self.close - self.open)

    @property
    def range(self) -> float:
        return self.high - self.low

    @property
    def is_bullish(self) -> bool:
        return self.close > self.open

    @property
    def is_bearish(self) -> bool:
        return self.close < self.open


@dataclass(frozen=True)
class Zone:
    """A supply or demand price band expected to produce one reversal trade.

    ``top`` and ``bottom`` are the high and low of the bar that formed the
    zone; ``created_at`` is that bar's open time.
    """

    top: float
    bottom: float
    direction: ZoneDirection
    created_at: datetime

    def __post_init__(self) -> None:
        if self.top < self.bottom:
            raise ValueError(
                f"zone top {self.top} must not be below bottom {self.bottom}"
            )
        if self.direction not in ("demand", "supply"):
            raise ValueError(f"unknown zone direction '{self.direction}'")

    @property
    def height(self) -> float:
        return self.top - self.bottom

    @property
    def sign(self) -> int:
        """+1 for demand (buy side), -1 for supply (sell side)."""
        return 1 if self.direction == "demand" else -1

    @property
    def trade_direction(self) -> str:
        return "buy" if self.direction == "demand" else "sell"

    def to_dict(self) -> dict:
        return {
            "direction": self.direction,
            "top": self.top,
            "bottom": self.bottom,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class EntrySignal:
    """A trade entry produced when a bar triggers a zone."""

    direction: str  # "buy" or "sell"
    entry_price: float
    stop_loss: float
    take_profit: float
    zone: Zone
    candle_time: datetime
    reason: str

    @property
    def sign(self) -> int:
        return 1 if self.direction == "buy" else -1
