"""Broker data models — typed representations of OANDA v20 API objects."""

import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional


_FRACTION_RE = re.compile(r"\.(\d+)")


def parse_time(value: str) -> datetime:
    """Parse an OANDA RFC 3339 timestamp into an aware UTC ``datetime``.

    OANDA sends nanosecond precision (``2025-01-10T00:00:00.000000000Z``);
    the fraction is truncated to microseconds.
    """
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class Candle:
    """A single candlestick bar."""

    time: str
    open: float
    high: float
    low: float
    close: float
    volume: int
    complete: bool


@dataclass(frozen=True)
class Quote:
    """Current top-of-book price.

    ``quote_to_home`` converts one unit of the quote currency into the
    account currency; it is the tick value used for sizing.
    """

    instrument: str
    bid: float
    ask: float
    time: str = ""
    quote_to_home: float = 1.0

    @property
    def mid(self) -> float:
        return (self.bid + self.ask) / 2.0


@dataclass(frozen=True)
class InstrumentSpec:
    """Venue constraints for one tradable instrument."""

    name: str
    tick_size: float
    lot_min: float
    lot_max: float
    lot_step: float
    margin_rate: float
    display_precision: int = 5

    def margin_required(
        self, volume: float, price: float, quote_to_home: float = 1.0,
    ) -> float:
        """Margin (account currency) needed to open *volume* units at *price*."""
        return abs(volume) * price * self.margin_rate * quote_to_home

    @classmethod
    def from_oanda(cls, data: dict) -> "InstrumentSpec":
        precision = int(data.get("displayPrecision", 5))
        units_precision = int(data.get("tradeUnitsPrecision", 0))
        step = 10.0 ** -units_precision
        return cls(
            name=data["name"],
            tick_size=10.0 ** -precision,
            lot_min=float(data.get("minimumTradeSize", step)),
            lot_max=float(data.get("maximumOrderUnits", math.inf)),
            lot_step=step,
            margin_rate=float(data.get("marginRate", "0.05")),
            display_precision=precision,
        )


@dataclass(frozen=True)
class AccountSummary:
    """Summary of an OANDA account."""

    account_id: str
    balance: float
    equity: float
    margin_available: float
    open_position_count: int
    currency: str


@dataclass(frozen=True)
class OrderRequest:
    """A market order request payload."""

    instrument: str
    units: float  # positive=buy, negative=sell
    stop_loss_price: float
    take_profit_price: float
    label: str = ""
    price_precision: int = 5


@dataclass(frozen=True)
class OrderResponse:
    """Response from placing an order."""

    order_id: str
    instrument: str
    units: float
    price: float
    time: str
    trade_id: str = ""


@dataclass(frozen=True)
class Trade:
    """An open trade with SL/TP details — the position the engine manages."""

    trade_id: str
    instrument: str
    units: float  # signed: positive=long, negative=short
    price: float
    unrealized_pnl: float
    stop_loss_price: Optional[float] = None
    take_profit_price: Optional[float] = None
    open_time: str = ""
    label: str = ""

    @property
    def direction(self) -> str:
        return "buy" if self.units > 0 else "sell"

    @property
    def sign(self) -> int:
        return 1 if self.units > 0 else -1

    @property
    def volume(self) -> float:
        return abs(self.units)
