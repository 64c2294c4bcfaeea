"""ZoneForge — Trading engine (orchestration loop).

Owns the zone registry, the entry evaluator and the position manager, and
drives them from two callbacks:

  - ``on_tick``: every poll.  On a newly closed H1 bar it runs
    detection → insert → purge → entry evaluation; on every poll it runs
    position management.
  - ``on_timer``: on a fixed interval, purge only.

``run`` is the only driver and awaits one callback at a time, so the
registry is never touched by two callbacks at once.
"""

import asyncio
import logging
import time
from collections import deque
from datetime import datetime, timezone
from typing import Optional

from zoneforge.api.routers import push_signal, update_bot_status, update_zone_snapshot
from zoneforge.broker.models import Candle, InstrumentSpec, Trade, parse_time
from zoneforge.broker.oanda_client import OandaClient
from zoneforge.config import Config
from zoneforge.errors import DataUnavailable
from zoneforge.risk.position_manager import PositionManager
from zoneforge.strategy.entry import EntryEvaluator
from zoneforge.strategy.indicators import build_snapshot
from zoneforge.strategy.models import CandleData
from zoneforge.strategy.zone_detector import detect_zones
from zoneforge.strategy.zone_registry import ZoneRegistry

logger = logging.getLogger("zoneforge")

_GRANULARITY = "H1"
_RECENT_RESULTS = 100  # per-tick results kept by an unlimited run


def to_closed_candles(raw: list[Candle]) -> list[CandleData]:
    """Convert broker candles to strategy candles, dropping the forming bar."""
    return [
        CandleData(parse_time(c.time), c.open, c.high, c.low, c.close, c.volume)
        for c in raw
        if c.complete
    ]


class TradingEngine:
    """Runs the zone strategy for one instrument and at most one position.

    Args:
        config: Validated application configuration.
        broker: An ``OandaClient`` (or compatible duck-type / mock).
    """

    def __init__(self, config: Config, broker: OandaClient) -> None:
        self._config = config
        self._broker = broker
        self.registry = ZoneRegistry(
            capacity=config.zone_capacity,
            max_age_days=config.zone_max_age_days,
        )
        self.evaluator = EntryEvaluator(
            registry=self.registry,
            broker=broker,
            instrument=config.trade_pair,
            window=config.trading_window,
            risk_pct=config.risk_per_trade_pct,
            sl_atr_mult=config.sl_atr_mult,
            tp_atr_mult=config.tp_atr_mult,
            label=config.order_label,
        )
        self.position_manager = PositionManager(
            broker=broker,
            trailing_enabled=config.trailing_enabled,
            trail_atr_mult=config.trail_atr_mult,
            partial_close_enabled=config.partial_close_enabled,
            partial_close_atr_mult=config.partial_close_atr_mult,
        )
        self._spec: Optional[InstrumentSpec] = None
        self._last_bar_time: Optional[datetime] = None
        self._running: bool = False
        self._cycle_count: int = 0

    @property
    def instrument(self) -> str:
        return self._config.trade_pair

    @property
    def last_bar_time(self) -> Optional[datetime]:
        return self._last_bar_time

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Fetch instrument constraints and publish the initial status."""
        try:
            self._spec = await self._broker.get_instrument(self.instrument)
            summary = await self._broker.get_account_summary()
            update_bot_status(balance=summary.balance, equity=summary.equity)
        except Exception as exc:
            logger.error(
                "Failed to initialise %s (OANDA unreachable?): %s — will retry each cycle",
                self.instrument, exc,
            )
        update_bot_status(
            running=True,
            pair=self.instrument,
            trading_hours=str(self._config.trading_window),
            zone_capacity=self.registry.capacity,
            started_at=datetime.now(timezone.utc).isoformat(),
        )
        self._running = True

    def stop(self) -> None:
        """Signal the engine to stop after the current cycle."""
        self._running = False

    # ── Polling loop ─────────────────────────────────────────────────────

    async def run(
        self,
        poll_interval: int | None = None,
        max_cycles: int = 0,
    ) -> list[dict]:
        """Run ticks (and the purge timer) until stopped.

        Args:
            poll_interval: Seconds between ticks.  Defaults to config.
            max_cycles: Stop after this many ticks (0 = unlimited).

        Returns:
            Per-tick result dicts: all of them when *max_cycles* is set,
            otherwise only the most recent ones.
        """
        if poll_interval is None:
            poll_interval = self._config.poll_interval_seconds
        results: deque[dict] = deque(
            maxlen=max_cycles if max_cycles > 0 else _RECENT_RESULTS,
        )
        cycle = 0
        last_purge = time.monotonic()

        while self._running:
            cycle += 1
            try:
                result = await self.on_tick()
                results.append(result)
                logger.debug("Cycle %d: %s", cycle, result.get("action", "unknown"))
            except Exception as exc:
                logger.error("Cycle %d error: %s", cycle, exc)
                results.append({"action": "error", "reason": str(exc)})

            if time.monotonic() - last_purge >= self._config.purge_interval_seconds:
                last_purge = time.monotonic()
                try:
                    await self.on_timer()
                except Exception as exc:
                    logger.error("Timer purge error: %s", exc)

            if max_cycles > 0 and cycle >= max_cycles:
                break

            # Interruptible sleep — checks _running every second
            for _ in range(poll_interval):
                if not self._running:
                    break
                await asyncio.sleep(1)

        update_bot_status(running=False)
        return list(results)

    # ── Callbacks ────────────────────────────────────────────────────────

    async def on_timer(self, utc_now: Optional[datetime] = None) -> int:
        """Purge expired and broken zones.  Returns the number removed."""
        if utc_now is None:
            utc_now = datetime.now(timezone.utc)
        try:
            quote = await self._broker.get_quote(self.instrument)
        except DataUnavailable as exc:
            logger.info("Timer purge skipped: %s", exc)
            return 0
        removed = self.registry.purge(utc_now, quote.bid)
        self._publish_zones()
        update_bot_status(last_purge_at=utc_now.isoformat())
        return len(removed)

    async def on_tick(self, utc_now: Optional[datetime] = None) -> dict:
        """Execute one cycle.

        Returns a dict describing the action taken:

        - ``{"action": "skipped", "reason": "data_unavailable", ...}``
        - ``{"action": "managed", ...}`` — no new bar
        - ``{"action": "new_bar", "zones_added": ..., "entries": [...], ...}``

        Args:
            utc_now: Current UTC datetime.  Defaults to ``datetime.now(UTC)``.
        """
        if utc_now is None:
            utc_now = datetime.now(timezone.utc)
        self._cycle_count += 1
        update_bot_status(
            cycle_count=self._cycle_count,
            last_cycle_at=utc_now.isoformat(),
        )

        try:
            candles = await self._fetch_closed_candles()
            snapshot = build_snapshot(
                candles,
                self._config.atr_period,
                self._config.ema_fast,
                self._config.ema_slow,
            )
            quote = await self._broker.get_quote(self.instrument)
            if self._spec is None:
                self._spec = await self._broker.get_instrument(self.instrument)
        except DataUnavailable as exc:
            logger.info("Cycle skipped — data unavailable: %s", exc)
            return {"action": "skipped", "reason": "data_unavailable", "detail": str(exc)}

        latest = candles[-1]
        trade = await self._find_open_trade()
        result: dict = {"action": "managed", "bar_time": latest.time.isoformat()}

        # 1 ── New closed bar: detect → insert → purge → enter
        if latest.time != self._last_bar_time:
            found = detect_zones(
                candles,
                atr=snapshot.atr,
                lookback=self._config.zone_lookback,
                body_ratio=self._config.zone_body_ratio,
                known_times=self.registry.known_times(),
            )
            added = sum(1 for zone in found if self.registry.insert(zone))
            purged = self.registry.purge(utc_now, quote.bid)

            entries: list[dict] = []
            if trade is None:
                outcomes = await self.evaluator.evaluate(
                    latest, snapshot, quote, self._spec, utc_now,
                )
                for outcome in outcomes:
                    entry = {
                        **outcome.to_dict(),
                        "pair": self.instrument,
                        "evaluated_at": utc_now.isoformat(),
                    }
                    entries.append(entry)
                    push_signal(entry)
                    if outcome.status == "filled":
                        update_bot_status(last_order_time=utc_now.isoformat())
            else:
                logger.debug("Position %s open — entries skipped", trade.trade_id)

            self._last_bar_time = latest.time
            self._publish_zones()
            update_bot_status(last_bar_time=latest.time.isoformat())
            result.update(
                action="new_bar",
                zones_added=added,
                zones_purged=len(purged),
                entries=entries,
            )

        # 2 ── Every cycle: manage the open position
        result["management"] = await self.position_manager.manage(
            trade, latest.time, snapshot, quote, self._spec,
        )
        update_bot_status(in_session=self.evaluator.is_active(utc_now))
        return result

    # ── Helpers ──────────────────────────────────────────────────────────

    async def _fetch_closed_candles(self) -> list[CandleData]:
        raw = await self._broker.fetch_candles(
            self.instrument, _GRANULARITY, count=self._config.candle_count,
        )
        candles = to_closed_candles(raw)
        if not candles:
            raise DataUnavailable(f"No closed {_GRANULARITY} candles for {self.instrument}")
        return candles

    async def _find_open_trade(self) -> Optional[Trade]:
        """Return the engine's own open trade on the instrument, if any."""
        trades = await self._broker.list_open_trades()
        for t in trades:
            if t.instrument != self.instrument:
                continue
            if self._config.order_label and t.label != self._config.order_label:
                continue
            return t
        return None

    def _publish_zones(self) -> None:
        update_zone_snapshot(self.registry.to_dicts())
        update_bot_status(zones=len(self.registry), zones_dropped=self.registry.dropped)
