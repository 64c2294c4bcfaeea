"""Entry evaluation — turns a zone touch on the latest closed bar into an order.

For every live zone, in registry order:

  - Demand: bar low reaches the zone bottom, bar closes bullish,
    EMA-fast above EMA-slow → buy at the ask.
  - Supply: bar high reaches the zone top, bar closes bearish,
    EMA-fast below EMA-slow → sell at the bid.

Stops and targets sit ``sl_atr_mult`` / ``tp_atr_mult`` ATRs from entry.  A
filled zone is consumed; a rejected or failed one stays live.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from zoneforge.broker.models import (
    AccountSummary,
    InstrumentSpec,
    OrderRequest,
    OrderResponse,
    Quote,
)
from zoneforge.errors import ExternalFailure, OrderRejected
from zoneforge.risk.position_sizer import SizingDecision, size_position
from zoneforge.strategy.indicators import IndicatorSnapshot
from zoneforge.strategy.models import CandleData, EntrySignal, Zone
from zoneforge.strategy.session_filter import TradingWindow, is_in_session
from zoneforge.strategy.zone_registry import ZoneRegistry

logger = logging.getLogger("zoneforge.entry")


@dataclass(frozen=True)
class EntryOutcome:
    """What happened to one triggered zone."""

    zone: Zone
    signal: EntrySignal
    status: str  # "filled", "rejected" or "failed"
    reason: str = ""
    decision: Optional[SizingDecision] = None
    order: Optional[OrderResponse] = None

    def to_dict(self) -> dict:
        return {
            "direction": self.signal.direction,
            "zone": self.zone.to_dict(),
            "entry": self.signal.entry_price,
            "sl": self.signal.stop_loss,
            "tp": self.signal.take_profit,
            "units": self.decision.volume if self.decision else None,
            "status": self.status,
            "reason": self.reason,
            "order_id": self.order.order_id if self.order else None,
        }


def build_signal(
    zone: Zone,
    candle: CandleData,
    snapshot: IndicatorSnapshot,
    quote: Quote,
    sl_atr_mult: float,
    tp_atr_mult: float,
) -> Optional[EntrySignal]:
    """Return an ``EntrySignal`` if *candle* triggers *zone*, else ``None``."""
    sign = zone.sign
    edge, extreme = (zone.bottom, candle.low) if sign > 0 else (zone.top, candle.high)

    touched = sign * (edge - extreme) >= 0
    rejected = sign * (candle.close - candle.open) > 0
    with_trend = snapshot.trend_sign == sign
    if not (touched and rejected and with_trend):
        return None

    entry = quote.ask if sign > 0 else quote.bid
    return EntrySignal(
        direction=zone.trade_direction,
        entry_price=entry,
        stop_loss=entry - sign * snapshot.atr * sl_atr_mult,
        take_profit=entry + sign * snapshot.atr * tp_atr_mult,
        zone=zone,
        candle_time=candle.time,
        reason=(
            f"{zone.direction} zone {zone.bottom:.5f}–{zone.top:.5f} "
            f"retested by {candle.time.isoformat()} bar"
        ),
    )


class EntryEvaluator:
    """Matches registry zones against the latest closed bar and places orders.

    Args:
        registry: The live zone registry (zones are removed on fill).
        broker: An ``OandaClient`` (or compatible duck-type / mock).
        instrument: Instrument traded.
        window: Trading-hours window; outside it nothing is evaluated.
        risk_pct: Percentage of balance risked per trade.
        sl_atr_mult: Stop distance in ATRs.
        tp_atr_mult: Target distance in ATRs.
        label: Tag attached to orders so the engine can find its trade.
        max_entries: Fills allowed per pass.
    """

    def __init__(
        self,
        registry: ZoneRegistry,
        broker,
        instrument: str,
        window: TradingWindow,
        risk_pct: float = 1.0,
        sl_atr_mult: float = 1.5,
        tp_atr_mult: float = 3.0,
        label: str = "",
        max_entries: int = 1,
    ) -> None:
        self._registry = registry
        self._broker = broker
        self._instrument = instrument
        self._window = window
        self._risk_pct = risk_pct
        self._sl_mult = sl_atr_mult
        self._tp_mult = tp_atr_mult
        self._label = label
        self._max_entries = max_entries

    def is_active(self, utc_now: datetime) -> bool:
        """True while *utc_now* is inside the trading-hours window."""
        return is_in_session(utc_now, self._window)

    async def evaluate(
        self,
        candle: CandleData,
        snapshot: IndicatorSnapshot,
        quote: Quote,
        spec: InstrumentSpec,
        utc_now: datetime,
    ) -> list[EntryOutcome]:
        """Run one pass over the registry for the latest closed *candle*.

        A consumed zone shifts its successors down one slot, so the same
        index is examined again after a removal.
        """
        if not self.is_active(utc_now):
            logger.debug("Outside trading hours %s — entries skipped", self._window)
            return []

        outcomes: list[EntryOutcome] = []
        account: Optional[AccountSummary] = None
        fills = 0
        i = 0
        while i < len(self._registry):
            zone = self._registry[i]
            signal = build_signal(
                zone, candle, snapshot, quote, self._sl_mult, self._tp_mult,
            )
            if signal is None:
                i += 1
                continue

            if account is None:
                account = await self._broker.get_account_summary()
            outcome = await self._enter(signal, account, quote, spec)
            outcomes.append(outcome)

            if outcome.status != "filled":
                i += 1
                continue

            self._registry.remove(zone)
            fills += 1
            if fills >= self._max_entries:
                break
            account = None

        return outcomes

    async def _enter(
        self,
        signal: EntrySignal,
        account: AccountSummary,
        quote: Quote,
        spec: InstrumentSpec,
    ) -> EntryOutcome:
        """Size and submit one signal."""
        decision = size_position(
            balance=account.balance,
            risk_pct=self._risk_pct,
            entry=signal.entry_price,
            stop=signal.stop_loss,
            tick_value=quote.quote_to_home,
            lot_min=spec.lot_min,
            lot_max=spec.lot_max,
            lot_step=spec.lot_step,
            free_margin=account.margin_available,
            margin_for_volume=lambda v: spec.margin_required(
                v, signal.entry_price, quote.quote_to_home,
            ),
        )
        if not decision.accepted:
            logger.warning(
                "Sizing rejected %s %s: %s (raw volume %.4f)",
                signal.direction, self._instrument, decision.reason,
                decision.raw_volume,
            )
            return EntryOutcome(
                signal.zone, signal, "rejected", decision.reason or "", decision,
            )

        order_req = OrderRequest(
            instrument=self._instrument,
            units=signal.sign * decision.volume,
            stop_loss_price=round(signal.stop_loss, spec.display_precision),
            take_profit_price=round(signal.take_profit, spec.display_precision),
            label=self._label,
            price_precision=spec.display_precision,
        )
        try:
            order = await self._broker.place_order(order_req)
        except OrderRejected as exc:
            logger.warning(
                "Order rejected for %s %s: %s",
                signal.direction, self._instrument, exc,
            )
            return EntryOutcome(signal.zone, signal, "rejected", exc.reason, decision)
        except ExternalFailure as exc:
            logger.warning(
                "Order failed for %s %s: %s", signal.direction, self._instrument, exc,
            )
            return EntryOutcome(signal.zone, signal, "failed", str(exc), decision)

        logger.info(
            "Entered %s %s %.2f units @ %.5f (SL %.5f, TP %.5f) — %s",
            signal.direction, self._instrument, decision.volume, order.price,
            order_req.stop_loss_price, order_req.take_profit_price, signal.reason,
        )
        return EntryOutcome(signal.zone, signal, "filled", "", decision, order)
