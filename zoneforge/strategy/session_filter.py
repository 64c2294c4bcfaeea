"""Session filter — parses the trading-hours window and checks a time against it."""

import re
from dataclasses import dataclass
from datetime import datetime, time

from zoneforge.errors import ConfigurationError


_WINDOW_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*-\s*(\d{1,2}):(\d{2})\s*$")


@dataclass(frozen=True)
class TradingWindow:
    """A daily trading window, possibly wrapping past midnight."""

    start: time
    end: time

    @property
    def wraps_midnight(self) -> bool:
        return self.start >= self.end

    def __str__(self) -> str:
        return f"{self.start:%H:%M}-{self.end:%H:%M}"


def parse_trading_hours(text: str) -> TradingWindow:
    """Parse a ``"HH:MM-HH:MM"`` window string.

    Raises:
        ConfigurationError: If the string is malformed or out of range.
    """
    match = _WINDOW_RE.match(text or "")
    if match is None:
        raise ConfigurationError(
            f"Trading hours must look like 'HH:MM-HH:MM', got '{text}'"
        )
    sh, sm, eh, em = (int(g) for g in match.groups())
    for hour, minute in ((sh, sm), (eh, em)):
        if not (0 <= hour <= 23 and 0 <= minute <= 59):
            raise ConfigurationError(f"Trading hours out of range: '{text}'")
    return TradingWindow(start=time(sh, sm), end=time(eh, em))


def is_in_session(now: datetime | time, window: TradingWindow) -> bool:
    """Return True if *now* falls within *window*.

    Same-day windows are inclusive at both ends.  When ``start >= end`` the
    window wraps midnight and is active iff ``now >= start`` or ``now <= end``.
    """
    current = now.time() if isinstance(now, datetime) else now
    current = current.replace(second=0, microsecond=0, tzinfo=None)
    if window.wraps_midnight:
        return current >= window.start or current <= window.end
    return window.start <= current <= window.end
