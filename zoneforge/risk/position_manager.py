"""Position management — trailing stop and partial close for the open trade.

Rules:
  - Trailing stop: candidate SL = open price ± ``trail_atr_mult`` × ATR
    (plus for longs, minus for shorts).  Moved only when it beats the current
    SL by more than one tick, stays on the protective side of price, and at
    most once per newly closed bar.
  - Partial close: once profit reaches ``partial_close_atr_mult`` × ATR,
    close half the volume (floored to the lot step), once per trade.

Both are best-effort: a failed venue call is logged and re-evaluated on the
next cycle from the trade's then-current state.
"""

import logging
from datetime import datetime
from typing import Optional

from zoneforge.broker.models import InstrumentSpec, Quote, Trade
from zoneforge.errors import ExternalFailure
from zoneforge.risk.position_sizer import floor_to_step
from zoneforge.strategy.indicators import IndicatorSnapshot

logger = logging.getLogger("zoneforge.position")


class PositionManager:
    """Tracks throttle and latch state for the single managed trade.

    Args:
        broker: An ``OandaClient`` (or compatible duck-type / mock).
        trailing_enabled: Whether to trail the stop.
        trail_atr_mult: Trailing distance from the open price, in ATRs.
        partial_close_enabled: Whether to take partial profit.
        partial_close_atr_mult: Profit (in ATRs) that triggers the partial close.
    """

    def __init__(
        self,
        broker,
        trailing_enabled: bool = True,
        trail_atr_mult: float = 1.0,
        partial_close_enabled: bool = True,
        partial_close_atr_mult: float = 1.5,
    ) -> None:
        self._broker = broker
        self._trailing_enabled = trailing_enabled
        self._trail_mult = trail_atr_mult
        self._partial_enabled = partial_close_enabled
        self._partial_mult = partial_close_atr_mult

        self._trade_id: Optional[str] = None
        self._last_bar_acted: Optional[datetime] = None
        self._partial_done: bool = False

    @property
    def last_bar_acted(self) -> Optional[datetime]:
        return self._last_bar_acted

    @property
    def partial_done(self) -> bool:
        return self._partial_done

    def _track(self, trade: Optional[Trade]) -> None:
        """Reset markers whenever the managed trade changes or disappears."""
        trade_id = trade.trade_id if trade else None
        if trade_id != self._trade_id:
            self._trade_id = trade_id
            self._last_bar_acted = None
            self._partial_done = False

    async def manage(
        self,
        trade: Optional[Trade],
        bar_time: datetime,
        snapshot: IndicatorSnapshot,
        quote: Quote,
        spec: InstrumentSpec,
    ) -> dict:
        """Run one management cycle.

        Args:
            trade: The engine's open trade, or ``None``.
            bar_time: Open time of the latest closed bar.
            snapshot: This cycle's indicator values.
            quote: Current bid/ask.
            spec: Instrument constraints (tick size, lot step, precision).

        Returns:
            Dict describing what each action did this cycle.
        """
        self._track(trade)
        if trade is None:
            return {"trailing": "no_position", "partial": "no_position"}

        result = {
            "trade_id": trade.trade_id,
            "trailing": await self._trail(trade, bar_time, snapshot, quote, spec),
            "partial": await self._partial_close(trade, snapshot, quote, spec),
        }
        return result

    # ── Trailing stop ────────────────────────────────────────────────────

    async def _trail(
        self,
        trade: Trade,
        bar_time: datetime,
        snapshot: IndicatorSnapshot,
        quote: Quote,
        spec: InstrumentSpec,
    ) -> str:
        """Move the SL to ``open ± ATR × trail_mult`` at most once per bar.

        Returns one of ``disabled``, ``throttled``, ``unchanged``, ``moved``
        or ``failed``.  Only ``failed`` leaves the bar marker unset.
        """
        if not self._trailing_enabled:
            return "disabled"
        if bar_time == self._last_bar_acted:
            return "throttled"

        sign = trade.sign
        candidate = round(
            trade.price + sign * snapshot.atr * self._trail_mult,
            spec.display_precision,
        )
        exit_price = quote.bid if sign > 0 else quote.ask
        current = trade.stop_loss_price

        improves = current is None or sign * (candidate - current) > spec.tick_size
        protective = sign * (exit_price - candidate) > 0
        if not (improves and protective):
            self._last_bar_acted = bar_time
            return "unchanged"

        try:
            await self._broker.modify_trade_sl(
                trade.trade_id, candidate, spec.display_precision,
            )
        except ExternalFailure as exc:
            logger.warning("Trailing stop update failed: %s", exc)
            return "failed"

        self._last_bar_acted = bar_time
        logger.info(
            "Trailed SL on trade %s (%s): %s → %.5f",
            trade.trade_id, trade.direction,
            f"{current:.5f}" if current is not None else "none", candidate,
        )
        return "moved"

    # ── Partial close ────────────────────────────────────────────────────

    async def _partial_close(
        self,
        trade: Trade,
        snapshot: IndicatorSnapshot,
        quote: Quote,
        spec: InstrumentSpec,
    ) -> str:
        """Close half the volume once profit reaches ``ATR × partial_mult``.

        Returns one of ``disabled``, ``done``, ``below_threshold``,
        ``too_small``, ``failed`` or ``closed``.
        """
        if not self._partial_enabled:
            return "disabled"
        if self._partial_done:
            return "done"

        sign = trade.sign
        exit_price = quote.bid if sign > 0 else quote.ask
        profit = sign * (exit_price - trade.price)
        if profit < snapshot.atr * self._partial_mult:
            return "below_threshold"

        half = floor_to_step(trade.volume / 2.0, spec.lot_step)
        if half <= 0:
            return "too_small"

        try:
            await self._broker.close_trade_partial(trade.trade_id, half)
        except ExternalFailure as exc:
            logger.warning("Partial close failed: %s", exc)
            return "failed"

        self._partial_done = True
        logger.info(
            "Partially closed trade %s: %.2f of %.2f units at profit %.5f",
            trade.trade_id, half, trade.volume, profit,
        )
        return "closed"
